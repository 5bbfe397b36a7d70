"""
SSH transport on paramiko.

Hosts are brand new, so their host keys cannot be known in advance and are
accepted on first contact. Commands run through sudo -n because every
configuration step manages system packages or services.

Command timeout
The timeout given to exec_command only bounds single reads. The exit status
is polled against a deadline instead, draining output meanwhile so a chatty
command never stalls on a full channel window. A command still running at the
deadline is abandoned and reported as ChannelUnavailable.
"""

from __future__ import annotations

import logging
import shlex
import socket
import time
from pathlib import Path
from typing import Callable

import paramiko

from toolchain_provisioner.core.types import HostRecord
from toolchain_provisioner.remote.base import ChannelRejected, ChannelUnavailable, CommandResult

logger = logging.getLogger(__name__)

_CHUNK = 16 * 1024


class SshChannel:
    poll_interval = 0.2

    def __init__(
        self,
        client: paramiko.SSHClient,
        host: HostRecord,
        use_sudo: bool = True,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._host = host
        self._use_sudo = use_sudo
        self._sleep = sleep
        self._clock = clock

    def run(self, command: str, timeout: float | None = None) -> CommandResult:
        wrapped = f"sudo -n sh -c {shlex.quote(command)}" if self._use_sudo else command
        logger.debug("%s$ %s", self._host.name, command)
        try:
            _, stdout, stderr = self._client.exec_command(wrapped, timeout=timeout)
            channel = stdout.channel
            deadline = None if timeout is None else self._clock() + timeout
            out, err = bytearray(), bytearray()
            while True:
                while channel.recv_ready():
                    out += channel.recv(_CHUNK)
                while channel.recv_stderr_ready():
                    err += channel.recv_stderr(_CHUNK)
                if channel.exit_status_ready():
                    break
                if deadline is not None and self._clock() >= deadline:
                    channel.close()
                    raise ChannelUnavailable(f"{self._host.name}: command still running after {timeout:.0f}s")
                self._sleep(self.poll_interval)
            exit_code = channel.recv_exit_status()
            out += stdout.read()
            err += stderr.read()
        except (paramiko.SSHException, socket.timeout, OSError) as e:
            raise ChannelUnavailable(f"{self._host.name}: {e}") from e
        return CommandResult(
            exit_code=exit_code,
            stdout=out.decode("utf-8", errors="replace"),
            stderr=err.decode("utf-8", errors="replace"),
        )

    def close(self) -> None:
        self._client.close()


class SshChannelFactory:
    """
    Opens SSH channels with a private key.

    connect_timeout bounds the TCP connect and the SSH banner exchange of one
    attempt. Retrying across attempts is wait_for_channel's job. A rejected
    key raises ChannelRejected, which is never retried.
    """

    def __init__(self, username: str, key_file: Path, connect_timeout: float = 15.0, port: int = 22) -> None:
        self._username = username
        self._key_file = key_file
        self._connect_timeout = connect_timeout
        self._port = port

    def connect(self, host: HostRecord) -> SshChannel:
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        username = host.ssh_user or self._username
        try:
            client.connect(
                host.address,
                port=self._port,
                username=username,
                key_filename=str(self._key_file),
                look_for_keys=False,
                allow_agent=False,
                timeout=self._connect_timeout,
                banner_timeout=self._connect_timeout,
            )
        except paramiko.AuthenticationException as e:
            client.close()
            raise ChannelRejected(f"{username}@{host.address} rejected key {self._key_file}: {e}") from e
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise ChannelUnavailable(f"cannot connect to {host.address}:{self._port}: {e}") from e
        return SshChannel(client, host)
