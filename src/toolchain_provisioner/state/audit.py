from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from toolchain_provisioner.core.types import Operation


@dataclass
class OperationAuditLog:
    """
    JSON line audit log of provider operations.

    Each record appends one JSON object per line, so a partially applied plan
    can be reconstructed after an abort.
    """

    path: Path
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record(self, plan_id: str, operation: Operation, outcome: str, detail: str = "") -> None:
        event: dict[str, Any] = {
            "plan_id": plan_id,
            "operation": operation.kind.value,
            "resource_kind": operation.resource_kind.value,
            "name": operation.name,
            "outcome": outcome,
            "ts_unix": int(time.time()),
        }
        if detail:
            event["detail"] = detail

        line = json.dumps(event, sort_keys=True)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")

    def read(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        lines = self.path.read_text(encoding="utf-8").splitlines()
        return [json.loads(line) for line in lines if line.strip()]
