"""
Settings loading.

Reads the declarative settings file (YAML) that describes the project, the
instance shape, the three service domains and how to reach the hosts.

Schema example
project_id: my-project
region: us-central1
zone: us-central1-a
machine_type: e2-standard-2
boot_disk_size: 50
jenkins_domain: jenkins.example.com
sonarqube_domain: sonar.example.com
nexus_domain: nexus.example.com
admin_email: ops@example.com
ssh_user: deploy
ssh_public_key_file: ~/.ssh/id_rsa.pub

Any key can be overridden from the environment as TOOLCHAIN_<KEY>, for example
TOOLCHAIN_MACHINE_TYPE=e2-medium.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from toolchain_provisioner.core.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("provisioner.yaml")
ENV_PREFIX = "TOOLCHAIN_"
DEFAULT_IMAGE = "projects/ubuntu-os-cloud/global/images/family/ubuntu-2204-lts"

REQUIRED_KEYS = (
    "project_id",
    "region",
    "zone",
    "jenkins_domain",
    "sonarqube_domain",
    "nexus_domain",
    "admin_email",
    "ssh_user",
    "ssh_public_key_file",
)

OPTIONAL_KEYS = (
    "machine_type",
    "boot_disk_size",
    "ssh_private_key_file",
    "service_account_file",
    "network_name",
    "image",
    "state_dir",
)

MIN_BOOT_DISK_GB = 10


@dataclass(frozen=True)
class ProvisionerSettings:
    """
    Validated settings.

    state_dir
    Directory that holds inventory.json, vm-info.txt, inventory.ini and the
    audit log.

    ssh_private_key_file
    Defaults to the public key path without the .pub suffix.
    """

    project_id: str
    region: str
    zone: str
    jenkins_domain: str
    sonarqube_domain: str
    nexus_domain: str
    admin_email: str
    ssh_user: str
    ssh_public_key_file: Path
    machine_type: str = "e2-standard-2"
    boot_disk_size: int = 50
    ssh_private_key_file: Optional[Path] = None
    service_account_file: Optional[Path] = None
    network_name: str = "toolchain-network"
    image: str = DEFAULT_IMAGE
    state_dir: Path = Path(".")

    @property
    def private_key_path(self) -> Path:
        if self.ssh_private_key_file is not None:
            return self.ssh_private_key_file
        if self.ssh_public_key_file.suffix == ".pub":
            return self.ssh_public_key_file.with_suffix("")
        return self.ssh_public_key_file

    @property
    def inventory_path(self) -> Path:
        return self.state_dir / "inventory.json"

    @property
    def info_path(self) -> Path:
        return self.state_dir / "vm-info.txt"

    @property
    def ini_path(self) -> Path:
        return self.state_dir / "inventory.ini"

    @property
    def audit_path(self) -> Path:
        return self.state_dir / "provision-audit.jsonl"

    def domain(self, key: str) -> str:
        """Return the domain configured under key, for example jenkins_domain."""
        value = getattr(self, key, None)
        if not isinstance(value, str):
            raise ConfigError(f"unknown domain key {key}", subject=key)
        return value

    def ssh_public_key(self) -> str:
        try:
            return self.ssh_public_key_file.read_text(encoding="utf-8").strip()
        except OSError as e:
            raise ConfigError(
                f"cannot read ssh public key: {e}",
                subject=str(self.ssh_public_key_file),
                remediation="generate one with ssh-keygen -t rsa -b 4096",
            ) from e


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(
            f"settings file not found: {path}",
            subject=str(path),
            remediation="copy provisioner.yaml.example to provisioner.yaml and edit it",
        )

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML syntax: {e}", subject=str(path)) from e

    if data is None:
        raise ConfigError("settings file is empty", subject=str(path))
    if not isinstance(data, dict):
        raise ConfigError("settings file must contain a mapping", subject=str(path))
    return data


def _apply_env_overrides(data: dict[str, Any], environ: Mapping[str, str]) -> dict[str, Any]:
    merged = dict(data)
    for key in REQUIRED_KEYS + OPTIONAL_KEYS:
        env_key = ENV_PREFIX + key.upper()
        if env_key in environ:
            logger.debug("settings key %s overridden from %s", key, env_key)
            merged[key] = environ[env_key]
    return merged


def _expand(value: Any) -> Path:
    return Path(os.path.expanduser(str(value)))


def settings_from_dict(data: Mapping[str, Any], source: str = "<settings>") -> ProvisionerSettings:
    """
    Validate a raw mapping and build ProvisionerSettings.

    Every problem is collected first so the user sees them all in one error.
    """

    problems: list[str] = []

    unknown = sorted(set(data) - set(REQUIRED_KEYS) - set(OPTIONAL_KEYS))
    if unknown:
        problems.append(f"unknown keys: {', '.join(unknown)}")

    missing = [k for k in REQUIRED_KEYS if data.get(k) in (None, "")]
    if missing:
        problems.append(f"missing keys: {', '.join(missing)}")

    boot_disk_size = 50
    if data.get("boot_disk_size") is not None:
        try:
            boot_disk_size = int(data["boot_disk_size"])
        except (TypeError, ValueError):
            problems.append("boot_disk_size must be an integer number of GB")
        else:
            if boot_disk_size < MIN_BOOT_DISK_GB:
                problems.append(f"boot_disk_size must be at least {MIN_BOOT_DISK_GB} GB")

    region = str(data.get("region") or "")
    zone = str(data.get("zone") or "")
    if region and zone and not zone.startswith(region + "-"):
        problems.append(f"zone {zone} is not in region {region}")

    admin_email = str(data.get("admin_email") or "")
    if admin_email and "@" not in admin_email:
        problems.append("admin_email must be an email address")

    if problems:
        raise ConfigError("; ".join(problems), subject=source)

    optional: dict[str, Any] = {}
    for key in ("machine_type", "network_name", "image"):
        if data.get(key):
            optional[key] = str(data[key])
    for key in ("ssh_private_key_file", "service_account_file", "state_dir"):
        if data.get(key):
            optional[key] = _expand(data[key])

    return ProvisionerSettings(
        project_id=str(data["project_id"]),
        region=region,
        zone=zone,
        jenkins_domain=str(data["jenkins_domain"]),
        sonarqube_domain=str(data["sonarqube_domain"]),
        nexus_domain=str(data["nexus_domain"]),
        admin_email=admin_email,
        ssh_user=str(data["ssh_user"]),
        ssh_public_key_file=_expand(data["ssh_public_key_file"]),
        boot_disk_size=boot_disk_size,
        **optional,
    )


def load_settings(path: Path | None = None, environ: Mapping[str, str] | None = None) -> ProvisionerSettings:
    """Load settings from a YAML file and apply environment overrides."""
    env = os.environ if environ is None else environ
    config_path = path or Path(env.get(ENV_PREFIX + "CONFIG", str(DEFAULT_CONFIG_PATH)))
    data = _apply_env_overrides(_read_yaml(config_path), env)
    settings = settings_from_dict(data, source=str(config_path))
    logger.debug("loaded settings for project %s from %s", settings.project_id, config_path)
    return settings
