"""
Scripted hosts for tests.

FakeHost answers commands from a response table. A response may be a single
CommandResult, returned every time, or a list consumed one entry per call so
a check can fail before apply and pass after it. The last list entry repeats
once the list is exhausted.

FakeChannelFactory looks hosts up by address and can make a host unreachable
forever or for a number of connection attempts. A host can also reject our
key outright.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict, List, Union

from toolchain_provisioner.core.types import HostRecord
from toolchain_provisioner.remote.base import ChannelRejected, ChannelUnavailable, CommandResult

Response = Union[CommandResult, List[CommandResult]]


@dataclass
class FakeHost:
    """
    responses
    Map of exact command text to a response.

    default
    Returned for commands missing from responses.

    reachable
    When False every connect raises ChannelUnavailable.

    unreachable_attempts
    Number of connects that fail before the host comes up.

    rejects_key
    When True every connect raises ChannelRejected.
    """

    responses: Dict[str, Response] = field(default_factory=dict)
    default: CommandResult = field(default_factory=lambda: CommandResult(0))
    reachable: bool = True
    unreachable_attempts: int = 0
    rejects_key: bool = False
    commands: List[str] = field(default_factory=list)
    connects: int = 0

    def answer(self, command: str) -> CommandResult:
        self.commands.append(command)
        response = self.responses.get(command, self.default)
        if isinstance(response, list):
            if len(response) > 1:
                return response.pop(0)
            return response[0]
        return response

    def ran(self, fragment: str) -> bool:
        return any(fragment in c for c in self.commands)


class FakeChannel:
    def __init__(self, host: FakeHost) -> None:
        self._host = host
        self.closed = False

    def run(self, command: str, timeout: float | None = None) -> CommandResult:
        return self._host.answer(command)

    def close(self) -> None:
        self.closed = True


class FakeChannelFactory:
    def __init__(self, hosts: Dict[str, FakeHost]) -> None:
        self.hosts = hosts
        self._lock = threading.Lock()

    def connect(self, host: HostRecord) -> FakeChannel:
        with self._lock:
            fake = self.hosts.get(host.address)
            if fake is None:
                raise ChannelUnavailable(f"no route to {host.address}")
            fake.connects += 1
            if fake.rejects_key:
                raise ChannelRejected(f"authentication failed for {host.address}")
            if not fake.reachable:
                raise ChannelUnavailable(f"connection refused by {host.address}")
            if fake.unreachable_attempts > 0:
                fake.unreachable_attempts -= 1
                raise ChannelUnavailable(f"connection refused by {host.address}")
        return FakeChannel(fake)
