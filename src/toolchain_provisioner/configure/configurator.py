"""
Post provision configurator.

Purpose
Bring every provisioned host to its configured state over a remote channel.

Behavior
Hosts are independent and run in parallel. A host that never accepts a
channel within the startup window is reported with ConnectivityTimeout, one
that rejects our key with HostAccessDenied. A step that cannot reach its
postcondition stops its own host with StepFailed.
None of these stops the other hosts.

Per host, steps run strictly in order:
1) check; exit 0 means the postcondition holds and the step is skipped
2) apply
3) check again; the step only counts as applied when the re-check passes

Steps after a failed step are recorded as not_run so the report always lists
the full step sequence for every host.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Sequence

from toolchain_provisioner.configure.steps import steps_for_role
from toolchain_provisioner.core.errors import ConnectivityTimeout, HostAccessDenied, StepFailed
from toolchain_provisioner.core.types import (
    ConfigReport,
    ConfigStep,
    HostRecord,
    HostReport,
    Inventory,
    StepOutcome,
    StepStatus,
)
from toolchain_provisioner.remote.base import (
    ChannelFactory,
    ChannelUnavailable,
    RemoteChannel,
    wait_for_channel,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConfiguratorConfig:
    """
    Configurator configuration.

    startup_timeout_seconds
    How long a host may refuse connections before it counts as unreachable.

    connect_interval_seconds
    Pause between connection attempts.

    command_timeout_seconds
    Upper bound on one remote command. Package installs are slow.

    max_parallel_hosts
    Hosts configured at once.
    """

    startup_timeout_seconds: float = 300.0
    connect_interval_seconds: float = 10.0
    command_timeout_seconds: float = 900.0
    max_parallel_hosts: int = 3


class Configurator:
    def __init__(
        self,
        channels: ChannelFactory,
        config: ConfiguratorConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._channels = channels
        self._config = config or ConfiguratorConfig()
        self._sleep = sleep
        self._clock = clock

    def configure(self, inventory: Inventory, steps: Sequence[ConfigStep]) -> ConfigReport:
        hosts = [inventory.hosts[role] for role in inventory.roles()]
        if not hosts:
            return ConfigReport()

        workers = max(1, min(self._config.max_parallel_hosts, len(hosts)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="configure") as pool:
            reports = list(pool.map(lambda h: self.configure_host(h, steps), hosts))

        report = ConfigReport(hosts=reports)
        for h in report.failures():
            logger.error("%s (%s) failed: %s", h.role, h.host, h.error)
        return report

    def configure_host(self, host: HostRecord, steps: Sequence[ConfigStep]) -> HostReport:
        report = HostReport(role=host.role, host=host.name)
        selected = steps_for_role(steps, host.role)

        try:
            channel = wait_for_channel(
                self._channels,
                host,
                timeout=self._config.startup_timeout_seconds,
                interval=self._config.connect_interval_seconds,
                sleep=self._sleep,
                clock=self._clock,
            )
        except (ConnectivityTimeout, HostAccessDenied) as e:
            report.error = e
            report.outcomes = [StepOutcome(s.name, StepStatus.not_run, "host unreachable") for s in selected]
            return report

        try:
            for index, step in enumerate(selected):
                try:
                    outcome = self._run_step(channel, host, step)
                except StepFailed as e:
                    report.error = e
                    report.outcomes.append(StepOutcome(step.name, StepStatus.failed, e.detail))
                    report.outcomes.extend(
                        StepOutcome(s.name, StepStatus.not_run, f"stopped after {step.name} failed")
                        for s in selected[index + 1 :]
                    )
                    break
                logger.info("%s %s: %s", host.name, step.name, outcome.status)
                report.outcomes.append(outcome)
        finally:
            channel.close()

        return report

    def _run_step(self, channel: RemoteChannel, host: HostRecord, step: ConfigStep) -> StepOutcome:
        check, apply = step.render(host)
        timeout = self._config.command_timeout_seconds

        try:
            if channel.run(check, timeout).ok:
                return StepOutcome(step.name, StepStatus.skipped, "already satisfied")

            result = channel.run(apply, timeout)
            if not result.ok:
                raise StepFailed(host.name, step.name, f"apply exited {result.exit_code}: {result.output()}")

            if not channel.run(check, timeout).ok:
                raise StepFailed(host.name, step.name, "postcondition still unmet after apply")
        except ChannelUnavailable as e:
            raise StepFailed(host.name, step.name, f"channel lost: {e}") from e

        return StepOutcome(step.name, StepStatus.applied)
