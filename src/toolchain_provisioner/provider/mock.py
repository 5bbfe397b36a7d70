"""
In memory provider.

This provider is used for tests and local simulations.
It behaves like a cloud control API keyed by resource kind and name.

Features
- Operations complete asynchronously after a configurable number of polls
- Transient failures can be injected per call to exercise retries
- Operations can be forced to fail terminally
- Instances get sequential external addresses unless one is pinned
- Every mutating call is recorded in calls for assertions
- list_resources only reports resources carrying the ownership label

Call keys have the form "<verb>/<name>", for example "create/jenkins-server"
or "status/jenkins-server".
"""

from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass, field, replace
from typing import Callable, Optional

from toolchain_provisioner.core.types import ResourceKind, ResourceSpec, ResourceState
from toolchain_provisioner.intent.desired import MANAGED_LABEL, MANAGED_VALUE
from toolchain_provisioner.provider.base import (
    OperationHandle,
    OperationState,
    OperationStatus,
    ProviderClient,
    ProviderError,
    TransientProviderError,
)


@dataclass
class _PendingOperation:
    key: str
    remaining_polls: int
    error: str
    apply: Callable[[], None]
    done: bool = False


@dataclass
class InMemoryProvider(ProviderClient):
    """
    In memory provider.

    transient_failures
    Map of call key to the number of TransientProviderError raises before the
    call succeeds.

    failing_operations
    Map of call key to an error message. The operation is accepted but ends
    in the failed state.

    pending_polls
    How many polls return pending before an operation completes.

    addresses
    Pinned external addresses by instance name.
    """

    resources: dict[tuple[ResourceKind, str], ResourceState] = field(default_factory=dict)
    transient_failures: dict[str, int] = field(default_factory=dict)
    failing_operations: dict[str, str] = field(default_factory=dict)
    pending_polls: int = 0
    addresses: dict[str, str] = field(default_factory=dict)
    calls: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._lock = threading.Lock()
        self._operations: dict[str, _PendingOperation] = {}
        self._op_ids = itertools.count(1)
        self._address_ids = itertools.count(10)

    def seed(self, spec: ResourceSpec, address: str = "", shape: Optional[dict] = None) -> ResourceState:
        """Add a resource as if it had been created out of band."""
        state = ResourceState(
            kind=spec.kind,
            name=spec.name,
            shape=dict(shape if shape is not None else spec.shape),
            labels=dict(spec.labels),
            address=address,
            provider_id=f"seed-{spec.name}",
        )
        self.resources[spec.key] = state
        return state

    def _maybe_fail(self, key: str) -> None:
        remaining = self.transient_failures.get(key, 0)
        if remaining > 0:
            self.transient_failures[key] = remaining - 1
            raise TransientProviderError(f"{key}: rate limit exceeded")

    def _submit(self, key: str, apply: Callable[[], None]) -> OperationHandle:
        op_id = f"op-{next(self._op_ids)}"
        self._operations[op_id] = _PendingOperation(
            key=key,
            remaining_polls=self.pending_polls,
            error=self.failing_operations.get(key, ""),
            apply=apply,
        )
        return OperationHandle(operation_id=op_id, description=key)

    def get_resource_state(self, kind: ResourceKind, name: str) -> ResourceState:
        with self._lock:
            self._maybe_fail(f"get/{name}")
            state = self.resources.get((kind, name))
            if state is None:
                return ResourceState(kind=kind, name=name, exists=False)
            return replace(state, shape=dict(state.shape), labels=dict(state.labels))

    def list_resources(self) -> list[ResourceState]:
        with self._lock:
            self._maybe_fail("list/*")
            return [
                replace(s, shape=dict(s.shape), labels=dict(s.labels))
                for s in self.resources.values()
                if s.labels.get(MANAGED_LABEL) == MANAGED_VALUE
            ]

    def create_resource(self, spec: ResourceSpec) -> OperationHandle:
        key = f"create/{spec.name}"
        with self._lock:
            self.calls.append(key)
            self._maybe_fail(key)
            if spec.key in self.resources:
                raise ProviderError(f"{spec.kind} {spec.name} already exists")

            def apply() -> None:
                address = ""
                if spec.kind == ResourceKind.instance:
                    address = self.addresses.get(spec.name) or f"10.128.0.{next(self._address_ids)}"
                self.resources[spec.key] = ResourceState(
                    kind=spec.kind,
                    name=spec.name,
                    shape=dict(spec.shape),
                    labels=dict(spec.labels),
                    address=address,
                    provider_id=f"id-{spec.name}",
                )

            return self._submit(key, apply)

    def update_resource(self, spec: ResourceSpec) -> OperationHandle:
        key = f"update/{spec.name}"
        with self._lock:
            self.calls.append(key)
            self._maybe_fail(key)
            if spec.key not in self.resources:
                raise ProviderError(f"{spec.kind} {spec.name} does not exist")

            def apply() -> None:
                self.resources[spec.key].labels.update(spec.labels)

            return self._submit(key, apply)

    def delete_resource(self, kind: ResourceKind, name: str) -> OperationHandle:
        key = f"delete/{name}"
        with self._lock:
            self.calls.append(key)
            self._maybe_fail(key)

            def apply() -> None:
                self.resources.pop((kind, name), None)

            return self._submit(key, apply)

    def operation_status(self, handle: OperationHandle) -> OperationStatus:
        with self._lock:
            op = self._operations[handle.operation_id]
            self._maybe_fail("status/" + op.key.split("/", 1)[1])
            if op.remaining_polls > 0:
                op.remaining_polls -= 1
                return OperationStatus(state=OperationState.pending)
            if op.error:
                return OperationStatus(state=OperationState.failed, error=op.error)
            if not op.done:
                op.apply()
                op.done = True
            return OperationStatus(state=OperationState.succeeded)
