"""
Prerequisite checks.

Run before provisioning to catch local problems early: a missing or invalid
settings file, missing SSH keys, or a service account file that does not
exist. Every check runs even when an earlier one fails so the operator sees
the whole list at once.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Mapping, Optional

from toolchain_provisioner.config.settings import ProvisionerSettings, load_settings
from toolchain_provisioner.core.errors import ConfigError


@dataclass
class PrerequisiteCheck:
    name: str
    ok: bool
    detail: str = ""


@dataclass
class PrerequisiteReport:
    checks: List[PrerequisiteCheck] = field(default_factory=list)
    settings: Optional[ProvisionerSettings] = None

    @property
    def ok(self) -> bool:
        return all(c.ok for c in self.checks)


def _file_check(name: str, path: Path, remediation: str) -> PrerequisiteCheck:
    if path.is_file():
        return PrerequisiteCheck(name, True, str(path))
    return PrerequisiteCheck(name, False, f"{path} not found; {remediation}")


def check_prerequisites(
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> PrerequisiteReport:
    report = PrerequisiteReport()

    try:
        settings = load_settings(config_path, environ=environ)
    except ConfigError as e:
        report.checks.append(PrerequisiteCheck("settings", False, str(e)))
        return report

    report.settings = settings
    report.checks.append(PrerequisiteCheck("settings", True, f"project {settings.project_id}"))
    report.checks.append(
        _file_check("ssh public key", settings.ssh_public_key_file, "generate one with ssh-keygen -t rsa -b 4096")
    )
    report.checks.append(
        _file_check("ssh private key", settings.private_key_path, "set ssh_private_key_file")
    )
    if settings.service_account_file is not None:
        report.checks.append(
            _file_check(
                "service account",
                settings.service_account_file,
                "download a key for a service account with Compute Admin",
            )
        )
    else:
        report.checks.append(
            PrerequisiteCheck("service account", True, "not configured, application default credentials are used")
        )
    return report
