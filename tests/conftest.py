from __future__ import annotations

import logging
from pathlib import Path

import pytest

from toolchain_provisioner.config.settings import ProvisionerSettings, settings_from_dict


class FakeClock:
    """
    Manual clock for retry and polling loops.

    sleep advances time instead of blocking and records every pause.
    """

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def settings_dict(tmp_path: Path) -> dict:
    key = tmp_path / "id_rsa.pub"
    if not key.exists():
        key.write_text("ssh-rsa AAAAB3Nza test@example\n", encoding="utf-8")
    return {
        "project_id": "acme-ci",
        "region": "us-central1",
        "zone": "us-central1-a",
        "jenkins_domain": "jenkins.example.com",
        "sonarqube_domain": "sonar.example.com",
        "nexus_domain": "nexus.example.com",
        "admin_email": "ops@example.com",
        "ssh_user": "deploy",
        "ssh_public_key_file": str(key),
        "state_dir": str(tmp_path / "state"),
    }


@pytest.fixture
def settings(tmp_path: Path) -> ProvisionerSettings:
    return settings_from_dict(settings_dict(tmp_path))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(autouse=True)
def reset_package_logger():
    yield
    logger = logging.getLogger("toolchain_provisioner")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
