"""
Provisioning engine.

This engine coordinates:
observation, planning, guarded execution, inventory persistence, host
configuration, certificate issuance and the read only management commands.

Determinism and safety
The planner remains deterministic and never calls the provider.
Teardown is guarded by an exact confirmation token, checked before the
provider is contacted.
A failed apply leaves the inventory file untouched, so it always describes
the last successful provisioning run.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from toolchain_provisioner.agent.costs import CostEstimate, estimate_costs
from toolchain_provisioner.agent.execution_mode import ExecutionMode
from toolchain_provisioner.agent.guard import GuardDecision, TeardownGuard
from toolchain_provisioner.agent.management import (
    HostStatus,
    ManagementCommands,
    ServiceCheck,
    ServiceCredential,
)
from toolchain_provisioner.config.settings import ProvisionerSettings
from toolchain_provisioner.configure.certificates import CertificateIssuer, Resolver
from toolchain_provisioner.configure.configurator import Configurator, ConfiguratorConfig
from toolchain_provisioner.configure.services import service_for_role
from toolchain_provisioner.configure.steps import build_catalog
from toolchain_provisioner.core.types import (
    ConfigReport,
    Inventory,
    Plan,
    PlanMode,
    ResourceSpec,
    ResourceState,
)
from toolchain_provisioner.execution.executor import ExecutorConfig, ReconciliationExecutor
from toolchain_provisioner.intent.desired import build_desired_resources, desired_instances
from toolchain_provisioner.inventory.render import render_info, render_ini
from toolchain_provisioner.inventory.store import InventoryStore, atomic_write_text
from toolchain_provisioner.planner import PlannerConfig, ReconcilePlanner
from toolchain_provisioner.provider.base import ProviderClient
from toolchain_provisioner.remote.base import ChannelFactory
from toolchain_provisioner.state.audit import OperationAuditLog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProvisionResult:
    """
    Outcome of a provision run.

    mode
    apply or dry_run

    inventory
    None for a dry run.
    """

    mode: ExecutionMode
    plan: Plan
    inventory: Optional[Inventory] = None


@dataclass(frozen=True)
class TeardownResult:
    guard: GuardDecision
    plan: Plan
    removed_files: List[str] = field(default_factory=list)


class ProvisioningEngine:
    """
    Provisioning engine.

    provider
    Cloud control API client.

    channels
    Opens remote channels to provisioned hosts.

    resolver
    DNS resolver used by the certificate precheck. None means the system
    resolver.

    sleep and clock
    Injected into the executor and configurator so tests never wait.
    """

    def __init__(
        self,
        settings: ProvisionerSettings,
        provider: ProviderClient,
        channels: ChannelFactory,
        planner: ReconcilePlanner | None = None,
        executor_config: ExecutorConfig | None = None,
        configurator_config: ConfiguratorConfig | None = None,
        guard: TeardownGuard | None = None,
        resolver: Optional[Resolver] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self._provider = provider
        self._channels = channels
        self._planner = planner or ReconcilePlanner(PlannerConfig(fixed_label_kinds=provider.fixed_label_kinds))
        self._guard = guard or TeardownGuard()
        self._configurator_config = configurator_config or ConfiguratorConfig()
        self._resolver = resolver
        self._sleep = sleep
        self._clock = clock
        self._cancel = threading.Event()
        self._executor = ReconciliationExecutor(
            provider,
            config=executor_config,
            audit=OperationAuditLog(settings.audit_path),
            cancel=self._cancel,
            sleep=sleep,
            clock=clock,
        )
        self.store = InventoryStore(settings.inventory_path)

    @classmethod
    def from_settings(cls, settings: ProvisionerSettings) -> "ProvisioningEngine":
        """Build an engine on Compute Engine and SSH."""
        from toolchain_provisioner.provider.gce import GceProvider
        from toolchain_provisioner.remote.ssh import SshChannelFactory

        provider = GceProvider(
            settings.project_id,
            settings.zone,
            credentials_file=settings.service_account_file,
        )
        channels = SshChannelFactory(settings.ssh_user, settings.private_key_path)
        return cls(settings, provider, channels)

    def cancel(self) -> None:
        """Stop issuing new provider operations. Running ones finish."""
        logger.warning("abort requested, waiting for running operations to finish")
        self._cancel.set()

    # Planning

    def observe(self, desired: List[ResourceSpec]) -> List[ResourceState]:
        """
        Observed state for planning.

        list_resources only reports resources carrying the ownership label.
        Desired names it did not report are fetched one by one, so an out of
        band resource with a desired name is still seen and never recreated.
        """
        observed = {s.key: s for s in self._provider.list_resources()}
        for spec in desired:
            if spec.key not in observed:
                observed[spec.key] = self._provider.get_resource_state(spec.kind, spec.name)
        return list(observed.values())

    def plan(self, mode: PlanMode = PlanMode.provision, desired: List[ResourceSpec] | None = None) -> Plan:
        if desired is None:
            desired = build_desired_resources(self.settings)
        plan = self._planner.plan(desired, self.observe(desired), mode=mode)
        logger.info("%s", plan.explanation)
        return plan

    # Provisioning

    def provision(self, dry_run: bool = False, mode: PlanMode = PlanMode.provision) -> ProvisionResult:
        desired = build_desired_resources(self.settings)
        plan = self.plan(mode, desired)
        if dry_run:
            return ProvisionResult(mode=ExecutionMode.dry_run, plan=plan)

        inventory = self._executor.apply(plan, instances=desired_instances(desired))
        self._enrich(inventory)
        self.write_inventory(inventory)
        return ProvisionResult(mode=ExecutionMode.apply, plan=plan, inventory=inventory)

    def _enrich(self, inventory: Inventory) -> None:
        inventory.project_id = self.settings.project_id
        inventory.zone = self.settings.zone
        for role, host in inventory.hosts.items():
            host.ssh_user = self.settings.ssh_user
            svc = service_for_role(role)
            if svc is not None:
                host.domain = self.settings.domain(svc.domain_key)

    def write_inventory(self, inventory: Inventory) -> None:
        self.store.save(inventory)
        atomic_write_text(self.settings.info_path, render_info(inventory))
        atomic_write_text(self.settings.ini_path, render_ini(inventory))

    # Configuration

    def configure(self) -> ConfigReport:
        inventory = self.store.require()
        configurator = Configurator(
            self._channels,
            self._configurator_config,
            sleep=self._sleep,
            clock=self._clock,
        )
        return configurator.configure(inventory, build_catalog())

    def issue_certificates(self) -> ConfigReport:
        inventory = self.store.require()
        issuer = CertificateIssuer(
            self._channels,
            self.settings.admin_email,
            resolver=self._resolver,
            config=self._configurator_config,
            sleep=self._sleep,
            clock=self._clock,
        )
        return issuer.issue(inventory)

    # Management

    def info(self) -> str:
        return render_info(self.store.require())

    def status(self) -> List[HostStatus]:
        return ManagementCommands(self._channels).status(self.store.require())

    def credentials(self) -> List[ServiceCredential]:
        return ManagementCommands(self._channels).credentials(self.store.require())

    def verify(self) -> List[ServiceCheck]:
        return ManagementCommands(self._channels).verify(self.store.require())

    def estimate_costs(self) -> CostEstimate:
        return estimate_costs(self.settings.machine_type, self.settings.boot_disk_size)

    def teardown(self, confirmation: str | None) -> TeardownResult:
        """
        Delete every desired resource that exists, then the local records.

        Raises ConfirmationRequired before any provider call unless
        confirmation is exactly the guard token.
        """

        decision = self._guard.require(confirmation)
        desired = build_desired_resources(self.settings, ssh_public_key="")
        plan = self.plan(PlanMode.teardown, desired)
        self._executor.apply(plan)

        removed: list[str] = []
        if self.store.delete():
            removed.append(str(self.store.path))
        for path in (self.settings.info_path, self.settings.ini_path):
            if path.exists():
                path.unlink()
                removed.append(str(path))
        return TeardownResult(guard=decision, plan=plan, removed_files=removed)
