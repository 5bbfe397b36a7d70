"""
Inventory store.

The inventory record is the only state the provisioner keeps between runs.
Configuration, certificate issuance and the management commands all read it
instead of asking the cloud again.

Durability
save writes to a temporary file in the same directory, fsyncs it and then
renames it over the target with os.replace. A crash mid write leaves either
the old record or the new one, never a truncated file.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from toolchain_provisioner.core.errors import InventoryCorrupt, InventoryMissing
from toolchain_provisioner.core.serialization import inventory_from_dict, inventory_to_dict
from toolchain_provisioner.core.types import Inventory

logger = logging.getLogger(__name__)


def atomic_write_text(path: Path, text: str) -> None:
    """Write text to path so readers never observe a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise


@dataclass
class InventoryStore:
    """
    File backed inventory record.

    path
    Location of inventory.json.
    """

    path: Path

    def load(self) -> Optional[Inventory]:
        """
        Return the stored inventory, or None when nothing was provisioned yet.

        Raises InventoryCorrupt when the file exists but is not a readable
        record, for example after a bad hand edit.
        """
        if not self.path.exists():
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError(f"expected a JSON object, found {type(data).__name__}")
            return inventory_from_dict(data)
        except KeyError as e:
            raise InventoryCorrupt(f"host entry without {e} in {self.path}", subject=str(self.path)) from e
        except (ValueError, TypeError) as e:
            raise InventoryCorrupt(f"cannot read {self.path}: {e}", subject=str(self.path)) from e

    def require(self) -> Inventory:
        inventory = self.load()
        if inventory is None or not inventory.hosts:
            raise InventoryMissing(f"no inventory record at {self.path}", subject=str(self.path))
        return inventory

    def save(self, inventory: Inventory) -> None:
        if not inventory.created_at:
            inventory.created_at = datetime.now(timezone.utc).isoformat(timespec="seconds")
        text = json.dumps(inventory_to_dict(inventory), indent=2, sort_keys=True) + "\n"
        atomic_write_text(self.path, text)
        logger.info("inventory saved to %s with %d hosts", self.path, len(inventory.hosts))

    def delete(self) -> bool:
        """Remove the record. Returns False when there was nothing to remove."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        logger.info("inventory %s removed", self.path)
        return True
