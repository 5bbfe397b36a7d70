"""
Core types.

This file defines the shared data structures used across the provisioner.

Important design choice
We keep these types provider neutral and transport neutral.

Provider neutral means:
We describe desired cloud objects by kind, name and shape parameters, not by
provider API payloads. Only the provider adapter knows how a shape maps to a
real API call.

Transport neutral means:
Configuration steps are plain shell commands. A RemoteChannel may be SSH or a
test double, callers do not care.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from string import Template
from typing import Any, Dict, List, Optional, Tuple


class ResourceKind(StrEnum):
    """
    Kinds of cloud objects the planner manages.

    network
      A VPC network that every instance attaches to.

    firewall_rule
      An ingress rule on the network.

    instance
      A compute instance that hosts one service role.
    """

    network = "network"
    firewall_rule = "firewall_rule"
    instance = "instance"


class OperationKind(StrEnum):
    create = "create"
    update = "update"
    delete = "delete"


class PlanMode(StrEnum):
    """
    How the planner treats observed resources that are not desired.

    provision
      Never delete. Out of band resources are left alone.

    reconcile
      Delete managed resources that are no longer desired.

    teardown
      Delete every desired resource that currently exists.
    """

    provision = "provision"
    reconcile = "reconcile"
    teardown = "teardown"


class StepStatus(StrEnum):
    applied = "applied"
    skipped = "skipped"
    failed = "failed"
    not_run = "not_run"


ResourceKey = Tuple[ResourceKind, str]


@dataclass(frozen=True)
class ResourceSpec:
    """
    Desired state of one cloud object.

    shape
    Parameters fixed at creation, such as machine type, disk size and zone.
    A divergence here can only be fixed by recreating the resource.

    labels
    Metadata that can be changed in place.

    options
    Inputs used only when the resource is created, such as the boot image or
    the ssh key metadata. They are never compared against observed state.

    role
    Logical role name for instances, for example ci-host.

    depends_on
    Names of resources that must exist before this one.
    """

    kind: ResourceKind
    name: str
    shape: Dict[str, Any] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    options: Dict[str, Any] = field(default_factory=dict)
    role: str = ""
    depends_on: Tuple[str, ...] = ()

    @property
    def key(self) -> ResourceKey:
        return (self.kind, self.name)


@dataclass
class ResourceState:
    """
    Observed state of one cloud object as reported by the provider.

    exists is False when the provider does not know the name.
    address is the external address for instances, empty otherwise.
    """

    kind: ResourceKind
    name: str
    exists: bool = True
    shape: Dict[str, Any] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    address: str = ""
    provider_id: str = ""

    @property
    def key(self) -> ResourceKey:
        return (self.kind, self.name)


@dataclass(frozen=True)
class Operation:
    """
    A single provider operation produced by the planner.

    spec is None for deletes because there is no desired state left.
    """

    kind: OperationKind
    resource_kind: ResourceKind
    name: str
    spec: Optional[ResourceSpec] = None
    reason: str = ""

    def describe(self) -> str:
        return f"{self.kind} {self.resource_kind} {self.name}"


@dataclass
class Plan:
    """
    Plan is the structured output of the planner.

    operations
    Every operation in execution order.

    waves
    The same operations grouped into batches with no dependency between
    members of one batch. The executor runs the batches in order.

    explanation
    Stored for audit and operator review.
    """

    plan_id: str
    mode: PlanMode
    operations: List[Operation] = field(default_factory=list)
    waves: List[List[Operation]] = field(default_factory=list)
    explanation: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.operations


@dataclass
class HostRecord:
    """
    How to reach one provisioned host.

    domain is the public DNS name of the service the host runs.
    """

    role: str
    name: str
    address: str
    ssh_user: str = ""
    domain: str = ""


@dataclass
class Inventory:
    """
    Durable record of what provisioning produced.

    hosts maps role name to HostRecord.
    """

    project_id: str = ""
    zone: str = ""
    hosts: Dict[str, HostRecord] = field(default_factory=dict)
    created_at: str = ""

    def host(self, role: str) -> Optional[HostRecord]:
        return self.hosts.get(role)

    def roles(self) -> List[str]:
        return sorted(self.hosts.keys())


@dataclass(frozen=True)
class ConfigStep:
    """
    One idempotent unit of remote configuration.

    check
    Shell command that exits 0 when the postcondition already holds.

    apply
    Shell command that establishes the postcondition.

    roles
    Roles the step applies to. An empty tuple means every role.

    requires
    Names of steps that must run earlier on the same host.

    Commands may reference $domain, $address and $host_name. They are
    substituted per host with string.Template so shell and nginx variables
    pass through unchanged.
    """

    name: str
    check: str
    apply: str
    roles: Tuple[str, ...] = ()
    requires: Tuple[str, ...] = ()
    description: str = ""

    def applies_to(self, role: str) -> bool:
        return not self.roles or role in self.roles

    def render(self, host: HostRecord) -> Tuple[str, str]:
        values = {"domain": host.domain, "address": host.address, "host_name": host.name}
        return (
            Template(self.check).safe_substitute(values),
            Template(self.apply).safe_substitute(values),
        )


@dataclass
class StepOutcome:
    step: str
    status: StepStatus
    detail: str = ""


@dataclass
class HostReport:
    """
    Result of configuring one host.

    error holds the ConnectivityTimeout, HostAccessDenied or StepFailed that
    stopped the host, None when every step reached its postcondition.
    """

    role: str
    host: str
    outcomes: List[StepOutcome] = field(default_factory=list)
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def count(self, status: StepStatus) -> int:
        return sum(1 for o in self.outcomes if o.status == status)


@dataclass
class ConfigReport:
    """Aggregated result of a configuration pass over every host."""

    hosts: List[HostReport] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(h.ok for h in self.hosts)

    def failures(self) -> List[HostReport]:
        return [h for h in self.hosts if not h.ok]

    def errors_of(self, error_type: type) -> List[Exception]:
        return [h.error for h in self.hosts if isinstance(h.error, error_type)]
