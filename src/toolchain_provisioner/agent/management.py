"""
Day two management commands.

status, credentials and verify read the running hosts over the remote
channel. They never change anything. An unreachable host is reported in the
result rather than raised, so one dead host does not hide the others.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, TypeVar

from toolchain_provisioner.configure.services import ServiceDefinition, service_for_role
from toolchain_provisioner.core.types import HostRecord, Inventory
from toolchain_provisioner.remote.base import ChannelFactory, ChannelUnavailable, RemoteChannel

logger = logging.getLogger(__name__)

T = TypeVar("T")

STATUS_COMMAND = "docker ps --format '{{.Names}}\\t{{.Status}}'"
COMMAND_TIMEOUT_SECONDS = 30.0


@dataclass
class HostStatus:
    """
    Containers running on one host.

    containers holds one "name<TAB>status" line per container.
    """

    role: str
    host: str
    reachable: bool
    containers: List[str] = field(default_factory=list)
    error: str = ""


@dataclass
class ServiceCredential:
    service: str
    role: str
    username: str
    password: Optional[str]
    note: str = ""


@dataclass
class ServiceCheck:
    """
    Result of probing one service port from its own host.

    http_code is "000" when nothing answered.
    """

    service: str
    role: str
    port: int
    http_code: str

    @property
    def ok(self) -> bool:
        return self.http_code.isdigit() and 200 <= int(self.http_code) < 500


class ManagementCommands:
    def __init__(self, channels: ChannelFactory) -> None:
        self._channels = channels

    def _on_host(self, host: HostRecord, fn: Callable[[RemoteChannel], T]) -> T:
        channel = self._channels.connect(host)
        try:
            return fn(channel)
        finally:
            channel.close()

    def status(self, inventory: Inventory) -> List[HostStatus]:
        results: list[HostStatus] = []
        for role in inventory.roles():
            host = inventory.hosts[role]
            try:
                out = self._on_host(host, lambda ch: ch.run(STATUS_COMMAND, COMMAND_TIMEOUT_SECONDS))
            except ChannelUnavailable as e:
                logger.warning("status: %s unreachable: %s", host.name, e)
                results.append(HostStatus(role=role, host=host.name, reachable=False, error=str(e)))
                continue

            if not out.ok:
                results.append(HostStatus(role=role, host=host.name, reachable=True, error=out.output()))
                continue
            lines = [line for line in out.stdout.splitlines() if line.strip()]
            results.append(HostStatus(role=role, host=host.name, reachable=True, containers=lines))
        return results

    def credentials(self, inventory: Inventory) -> List[ServiceCredential]:
        """
        Initial admin credentials of every service.

        Jenkins and Nexus generate a password file inside their container on
        first start. The file disappears once the setup wizard finishes, after
        which the password is reported as not available.
        """

        results: list[ServiceCredential] = []
        for role in inventory.roles():
            svc = service_for_role(role)
            if svc is None:
                continue
            if svc.credential_path is None:
                results.append(
                    ServiceCredential(
                        service=svc.display_name,
                        role=role,
                        username="admin",
                        password=None,
                        note=svc.default_credentials or "",
                    )
                )
                continue
            results.append(self._read_password(inventory.hosts[role], svc))
        return results

    def _read_password(self, host: HostRecord, svc: ServiceDefinition) -> ServiceCredential:
        command = f"docker exec {svc.container} cat {svc.credential_path}"
        try:
            out = self._on_host(host, lambda ch: ch.run(command, COMMAND_TIMEOUT_SECONDS))
        except ChannelUnavailable as e:
            return ServiceCredential(svc.display_name, host.role, "admin", None, note=f"host unreachable: {e}")

        if not out.ok or not out.stdout.strip():
            return ServiceCredential(svc.display_name, host.role, "admin", None, note="not available yet")
        return ServiceCredential(svc.display_name, host.role, "admin", out.stdout.strip())

    def verify(self, inventory: Inventory) -> List[ServiceCheck]:
        results: list[ServiceCheck] = []
        for role in inventory.roles():
            svc = service_for_role(role)
            if svc is None:
                continue
            command = f"curl -s -o /dev/null -w '%{{http_code}}' http://127.0.0.1:{svc.port}/"
            try:
                out = self._on_host(inventory.hosts[role], lambda ch: ch.run(command, COMMAND_TIMEOUT_SECONDS))
                code = out.stdout.strip() or "000"
            except ChannelUnavailable as e:
                logger.warning("verify: %s unreachable: %s", inventory.hosts[role].name, e)
                code = "000"
            results.append(ServiceCheck(service=svc.display_name, role=role, port=svc.port, http_code=code))
        return results
