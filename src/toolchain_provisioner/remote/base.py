"""
Remote execution interfaces.

The configurator and the management commands run shell commands on hosts
through a RemoteChannel. SSH is the production transport, tests use scripted
fakes.

wait_for_channel
Freshly created instances take a while to boot and start sshd. Connecting is
retried on a fixed interval until the startup window closes, then the host is
reported with ConnectivityTimeout. A host that rejects our credentials is
reported with HostAccessDenied on the first attempt.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Protocol

from toolchain_provisioner.core.errors import ConnectivityTimeout, HostAccessDenied
from toolchain_provisioner.core.types import HostRecord

logger = logging.getLogger(__name__)


class ChannelUnavailable(Exception):
    """The host refused or dropped the connection. Retrying may help."""


class ChannelRejected(ChannelUnavailable):
    """The host answered but refused our credentials. Retrying will not help."""


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def output(self) -> str:
        """stderr when present, else stdout, stripped. Useful in error details."""
        return (self.stderr or self.stdout).strip()


class RemoteChannel(Protocol):
    def run(self, command: str, timeout: float | None = None) -> CommandResult:
        """Run one shell command and wait for it to exit."""

    def close(self) -> None:
        """Release the connection."""


class ChannelFactory(Protocol):
    def connect(self, host: HostRecord) -> RemoteChannel:
        """Open a channel or raise ChannelUnavailable (ChannelRejected for bad credentials)."""


def wait_for_channel(
    factory: ChannelFactory,
    host: HostRecord,
    timeout: float,
    interval: float,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> RemoteChannel:
    started = clock()
    attempt = 0
    while True:
        attempt += 1
        try:
            return factory.connect(host)
        except ChannelRejected as e:
            raise HostAccessDenied(f"{host.name} ({host.address})", cause=e) from e
        except ChannelUnavailable as e:
            waited = clock() - started
            if waited >= timeout:
                raise ConnectivityTimeout(f"{host.name} ({host.address})", waited, cause=e) from e
            logger.info("%s not reachable yet (attempt %d): %s", host.name, attempt, e)
            sleep(interval)
