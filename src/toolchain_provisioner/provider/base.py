"""
Provider interfaces.

Goal
Define a narrow, typed interface to the cloud control API so the planner and
executor are testable against a fake without any live cloud account.

Design notes
Mutating calls return an OperationHandle immediately. The executor polls
operation_status until the operation reaches a terminal state, so waiting,
timeouts and retries live in one place instead of in every adapter.

Adapters raise TransientProviderError for failures worth retrying (rate
limiting, temporary unavailability) and ProviderError for everything else.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Protocol

from toolchain_provisioner.core.types import ResourceKind, ResourceSpec, ResourceState


class ProviderError(Exception):
    """A provider call failed and retrying will not help."""


class TransientProviderError(ProviderError):
    """A provider call failed in a way that may succeed on retry."""


class OperationState(StrEnum):
    pending = "pending"
    succeeded = "succeeded"
    failed = "failed"


@dataclass(frozen=True)
class OperationStatus:
    state: OperationState
    error: str = ""

    @property
    def terminal(self) -> bool:
        return self.state != OperationState.pending


@dataclass(frozen=True)
class OperationHandle:
    """
    Reference to a submitted provider operation.

    raw carries the adapter specific operation object, for example a
    google ExtendedOperation.
    """

    operation_id: str
    description: str
    raw: Any = None


class ProviderClient(Protocol):
    """
    Provider capability set expected by the engine.

    list_resources returns only resources carrying the ownership label, so
    reconcile mode never sees out of band objects.

    fixed_label_kinds names the kinds update_resource cannot relabel.
    """

    fixed_label_kinds: frozenset[ResourceKind] = frozenset()

    def get_resource_state(self, kind: ResourceKind, name: str) -> ResourceState:
        """Return observed state, with exists False when the name is unknown."""

    def list_resources(self) -> list[ResourceState]:
        """Return every managed resource."""

    def create_resource(self, spec: ResourceSpec) -> OperationHandle:
        """Submit a create operation."""

    def update_resource(self, spec: ResourceSpec) -> OperationHandle:
        """Submit an in place update of mutable attributes."""

    def delete_resource(self, kind: ResourceKind, name: str) -> OperationHandle:
        """Submit a delete operation."""

    def operation_status(self, handle: OperationHandle) -> OperationStatus:
        """Poll a submitted operation once."""
