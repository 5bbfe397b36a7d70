"""
Reconciliation executor.

This executor applies a Plan against a ProviderClient.

Behavior
For each wave of the plan, in order:
1) Re-check observed state before mutating. A create whose resource now
   exists with a matching shape is already satisfied, a delete whose
   resource is gone is already absent. This guards against a stale plan.
2) Submit the operation. Transient provider errors are retried with
   exponential backoff up to a fixed attempt ceiling.
3) Poll the operation until it succeeds, fails, or the timeout elapses.

Operations inside one wave have no dependency on each other and may run in
parallel on a small thread pool.

Failure policy
Any failure raises ProvisionFailed and abandons the rest of the plan. A
conflict found on a re-check raises PlanConflict. Both are written to the
audit log before they propagate.
Nothing is rolled back: partial infrastructure stays inspectable and a later
run resumes from it.

Cancellation
Setting the cancel event stops new operations from being issued. Operations
already submitted are still polled to completion.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Callable, Sequence

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from toolchain_provisioner.core.errors import (
    PlanConflict,
    ProvisionCancelled,
    ProvisionerError,
    ProvisionFailed,
)
from toolchain_provisioner.core.types import (
    HostRecord,
    Inventory,
    Operation,
    OperationKind,
    Plan,
    ResourceKind,
    ResourceSpec,
)
from toolchain_provisioner.planner.planner import shape_differences
from toolchain_provisioner.provider.base import (
    OperationHandle,
    OperationState,
    ProviderClient,
    ProviderError,
    TransientProviderError,
)
from toolchain_provisioner.state.audit import OperationAuditLog

logger = logging.getLogger(__name__)


class ApplyOutcome(StrEnum):
    applied = "applied"
    already_satisfied = "already_satisfied"
    already_absent = "already_absent"


@dataclass(frozen=True)
class ExecutorConfig:
    """
    Executor configuration.

    max_attempts
    Attempt ceiling for each provider call, including the first attempt.

    backoff_initial_seconds and backoff_max_seconds
    Exponential backoff bounds between attempts.

    poll_interval_seconds and operation_timeout_seconds
    How often to poll a submitted operation and when to give up on it.

    max_parallel
    Upper bound on concurrent operations inside one wave.
    """

    max_attempts: int = 5
    backoff_initial_seconds: float = 2.0
    backoff_max_seconds: float = 60.0
    poll_interval_seconds: float = 5.0
    operation_timeout_seconds: float = 600.0
    max_parallel: int = 3


class ReconciliationExecutor:
    """
    Applies plans and collects the resulting inventory.

    sleep and clock are injectable so tests can run retries and polling
    without waiting.
    """

    def __init__(
        self,
        provider: ProviderClient,
        config: ExecutorConfig | None = None,
        audit: OperationAuditLog | None = None,
        cancel: threading.Event | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._provider = provider
        self._config = config or ExecutorConfig()
        self._audit = audit
        self._cancel = cancel or threading.Event()
        self._sleep = sleep
        self._clock = clock

    def apply(self, plan: Plan, instances: Sequence[ResourceSpec] = ()) -> Inventory:
        """
        Apply the plan and return the inventory of instances.

        instances lists desired instances to include in the inventory even
        when the plan does not touch them, so a no-op run still yields the
        full inventory.
        """

        logger.info("applying plan %s: %s", plan.plan_id, plan.explanation)
        for index, wave in enumerate(plan.waves, start=1):
            if self._cancel.is_set():
                raise ProvisionCancelled(
                    f"abort requested before wave {index} of {len(plan.waves)}",
                    subject=f"plan {plan.plan_id}",
                )
            logger.debug("wave %d: %s", index, ", ".join(op.describe() for op in wave))
            self._run_wave(plan.plan_id, wave)

        return self._collect_inventory(plan, instances)

    def _run_wave(self, plan_id: str, wave: list[Operation]) -> None:
        workers = min(self._config.max_parallel, len(wave))
        if workers <= 1:
            for op in wave:
                self._apply_operation(plan_id, op)
            return

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="provision") as pool:
            futures = [pool.submit(self._apply_operation, plan_id, op) for op in wave]

        errors: list[ProvisionerError] = []
        for future in futures:
            try:
                future.result()
            except ProvisionerError as e:
                errors.append(e)

        if errors:
            for extra in errors[1:]:
                logger.error("also failed in the same wave: %s", extra)
            raise errors[0]

    def _apply_operation(self, plan_id: str, op: Operation) -> ApplyOutcome:
        if self._cancel.is_set():
            raise ProvisionCancelled(f"abort requested before {op.describe()}", subject=op.describe())

        try:
            if op.kind == OperationKind.create:
                outcome = self._create(op)
            elif op.kind == OperationKind.update:
                self._wait(op.describe(), self._call(op.describe(), self._provider.update_resource, op.spec))
                outcome = ApplyOutcome.applied
            else:
                outcome = self._delete(op)
        except ProvisionFailed as e:
            self._record(plan_id, op, "failed", str(e.cause))
            raise
        except PlanConflict as e:
            self._record(plan_id, op, "conflict", e.message)
            raise

        logger.info("%s: %s", op.describe(), outcome)
        self._record(plan_id, op, outcome.value)
        return outcome

    def _create(self, op: Operation) -> ApplyOutcome:
        spec = op.spec
        if spec is None:
            raise ProvisionFailed(op.describe(), "create operation carries no desired spec")

        state = self._call(op.describe(), self._provider.get_resource_state, spec.kind, spec.name)
        if state.exists:
            diff = shape_differences(spec.shape, state.shape)
            if diff:
                raise PlanConflict(
                    f"{spec.kind} {spec.name} appeared with a different {', '.join(diff)} since planning",
                    subject=spec.name,
                )
            logger.info("%s: already exists with matching shape", op.describe())
            return ApplyOutcome.already_satisfied

        self._wait(op.describe(), self._call(op.describe(), self._provider.create_resource, spec))
        return ApplyOutcome.applied

    def _delete(self, op: Operation) -> ApplyOutcome:
        state = self._call(op.describe(), self._provider.get_resource_state, op.resource_kind, op.name)
        if not state.exists:
            return ApplyOutcome.already_absent

        handle = self._call(op.describe(), self._provider.delete_resource, op.resource_kind, op.name)
        self._wait(op.describe(), handle)
        return ApplyOutcome.applied

    def _call(self, description: str, fn: Callable[..., Any], *args: Any) -> Any:
        """
        Call the provider with retries on transient errors.

        Permanent provider errors fail immediately.
        """

        retrying = Retrying(
            stop=stop_after_attempt(self._config.max_attempts),
            wait=wait_exponential(
                multiplier=self._config.backoff_initial_seconds,
                max=self._config.backoff_max_seconds,
            ),
            retry=retry_if_exception_type(TransientProviderError),
            sleep=self._sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            return retrying(fn, *args)
        except TransientProviderError as e:
            raise ProvisionFailed(
                description,
                f"gave up after {self._config.max_attempts} attempts: {e}",
                remediation="the provider kept throttling or was unavailable; check provider quota and status",
            ) from e
        except ProviderError as e:
            raise ProvisionFailed(description, e) from e

    def _wait(self, description: str, handle: OperationHandle) -> None:
        timeout = self._config.operation_timeout_seconds
        deadline = self._clock() + timeout
        while True:
            status = self._call(description, self._provider.operation_status, handle)
            if status.state == OperationState.succeeded:
                return
            if status.state == OperationState.failed:
                raise ProvisionFailed(description, status.error or "operation failed")
            if self._clock() >= deadline:
                raise ProvisionFailed(
                    description,
                    f"operation {handle.operation_id} not finished after {timeout:.0f}s",
                    remediation="check the operation in the provider console, then run provision again",
                )
            self._sleep(self._config.poll_interval_seconds)

    def _collect_inventory(self, plan: Plan, instances: Sequence[ResourceSpec]) -> Inventory:
        specs: dict[str, ResourceSpec] = {s.name: s for s in instances}
        for op in plan.operations:
            if op.spec is not None and op.resource_kind == ResourceKind.instance:
                specs.setdefault(op.name, op.spec)

        hosts: dict[str, HostRecord] = {}
        for name in sorted(specs):
            spec = specs[name]
            description = f"read instance {name}"
            state = self._call(description, self._provider.get_resource_state, ResourceKind.instance, name)
            if not state.exists or not state.address:
                raise ProvisionFailed(
                    description,
                    "instance has no external address",
                    remediation="check that the instance is running with an external NAT address",
                )
            role = spec.role or name
            hosts[role] = HostRecord(role=role, name=name, address=state.address)

        return Inventory(hosts=hosts)

    def _record(self, plan_id: str, op: Operation, outcome: str, detail: str = "") -> None:
        if self._audit is not None:
            self._audit.record(plan_id, op, outcome, detail)
