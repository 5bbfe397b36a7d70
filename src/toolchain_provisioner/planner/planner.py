"""
Reconciliation planner.

Purpose
This planner diffs desired resources against observed provider state and
produces an ordered Plan of create, update and delete operations.

Why deterministic
The plan that touches a cloud account must be stable, auditable and
repeatable. Given the same inputs the planner always returns the same
operations in the same order.

Matching rules
Resources are matched by kind and logical name, never by provider ID.

absent in observed          -> create
present, labels differ      -> update, unless the provider fixes labels of
                               that kind at creation
present, shape differs      -> PlanConflict, recreation is a human decision
observed but not desired    -> delete, reconcile mode only and only when the
                               resource carries the ownership label
teardown mode               -> delete every desired resource that exists
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from toolchain_provisioner.core.errors import PlanConflict
from toolchain_provisioner.core.types import (
    Operation,
    OperationKind,
    Plan,
    PlanMode,
    ResourceKey,
    ResourceKind,
    ResourceSpec,
    ResourceState,
)
from toolchain_provisioner.intent.desired import MANAGED_LABEL, MANAGED_VALUE
from toolchain_provisioner.planner.graph import (
    build_dependency_graph,
    dependency_generations,
    select_waves,
)


def shape_differences(desired: Mapping[str, Any], observed: Mapping[str, Any]) -> list[str]:
    """
    Return the desired shape keys whose observed value differs.

    Keys only present in observed are provider detail and are ignored.
    """
    return sorted(k for k, v in desired.items() if observed.get(k) != v)


def label_differences(desired: Mapping[str, str], observed: Mapping[str, str]) -> list[str]:
    return sorted(k for k, v in desired.items() if observed.get(k) != v)


@dataclass
class PlannerConfig:
    """
    Planner configuration.

    managed_label and managed_value
    Ownership label. Reconcile mode only deletes resources that carry it, so
    resources created out of band are never destroyed.

    fixed_label_kinds
    Kinds whose labels the provider cannot change after creation. A label
    difference on these is accepted as is and never planned as an update.
    """

    managed_label: str = MANAGED_LABEL
    managed_value: str = MANAGED_VALUE
    fixed_label_kinds: frozenset[ResourceKind] = frozenset()


class ReconcilePlanner:
    """
    A strict planner that produces a Plan from desired and observed state.

    The planner never calls the provider. Observation is the caller's job,
    which keeps planning pure and easy to test.
    """

    def __init__(self, config: PlannerConfig | None = None) -> None:
        self._config = config or PlannerConfig()

    def plan(
        self,
        desired: Iterable[ResourceSpec],
        observed: Iterable[ResourceState],
        mode: PlanMode = PlanMode.provision,
        plan_id: str | None = None,
    ) -> Plan:
        """Diff desired against observed and return an ordered Plan."""

        desired_by_key = self._index_desired(desired)
        observed_by_key = {s.key: s for s in observed if s.exists}

        ops: dict[ResourceKey, Operation] = {}
        if mode == PlanMode.teardown:
            ops.update(self._teardown_ops(desired_by_key, observed_by_key))
        else:
            ops.update(self._converge_ops(desired_by_key, observed_by_key))
            if mode == PlanMode.reconcile:
                ops.update(self._prune_ops(desired_by_key, observed_by_key))

        return self._order(plan_id or uuid.uuid4().hex[:12], mode, ops, desired_by_key, observed_by_key)

    def _index_desired(self, desired: Iterable[ResourceSpec]) -> dict[ResourceKey, ResourceSpec]:
        """
        Index desired resources by key.

        A duplicate name within one kind is ambiguous, so it is a conflict.
        """

        by_key: dict[ResourceKey, ResourceSpec] = {}
        for spec in desired:
            if spec.key in by_key:
                raise PlanConflict(
                    f"{spec.kind} {spec.name} is declared more than once",
                    subject=spec.name,
                    remediation="give every desired resource a unique name",
                )
            by_key[spec.key] = spec
        return by_key

    def _converge_ops(
        self,
        desired: dict[ResourceKey, ResourceSpec],
        observed: dict[ResourceKey, ResourceState],
    ) -> dict[ResourceKey, Operation]:
        ops: dict[ResourceKey, Operation] = {}
        for key, spec in desired.items():
            state = observed.get(key)
            if state is None:
                ops[key] = Operation(
                    kind=OperationKind.create,
                    resource_kind=spec.kind,
                    name=spec.name,
                    spec=spec,
                    reason="absent from provider",
                )
                continue

            diff = shape_differences(spec.shape, state.shape)
            if diff:
                raise PlanConflict(
                    f"{spec.kind} {spec.name} exists with a different {', '.join(diff)}",
                    subject=spec.name,
                    remediation=(
                        "these parameters cannot change in place; tear the resource down "
                        "explicitly or restore the previous settings"
                    ),
                )

            if spec.kind in self._config.fixed_label_kinds:
                continue
            labels = label_differences(spec.labels, state.labels)
            if labels:
                ops[key] = Operation(
                    kind=OperationKind.update,
                    resource_kind=spec.kind,
                    name=spec.name,
                    spec=spec,
                    reason=f"labels differ: {', '.join(labels)}",
                )
        return ops

    def _prune_ops(
        self,
        desired: dict[ResourceKey, ResourceSpec],
        observed: dict[ResourceKey, ResourceState],
    ) -> dict[ResourceKey, Operation]:
        ops: dict[ResourceKey, Operation] = {}
        for key, state in observed.items():
            if key in desired:
                continue
            if state.labels.get(self._config.managed_label) != self._config.managed_value:
                continue
            ops[key] = Operation(
                kind=OperationKind.delete,
                resource_kind=state.kind,
                name=state.name,
                reason="managed but no longer desired",
            )
        return ops

    def _teardown_ops(
        self,
        desired: dict[ResourceKey, ResourceSpec],
        observed: dict[ResourceKey, ResourceState],
    ) -> dict[ResourceKey, Operation]:
        ops: dict[ResourceKey, Operation] = {}
        for key, spec in desired.items():
            if key not in observed:
                continue
            ops[key] = Operation(
                kind=OperationKind.delete,
                resource_kind=spec.kind,
                name=spec.name,
                reason="teardown",
            )
        return ops

    def _order(
        self,
        plan_id: str,
        mode: PlanMode,
        ops: dict[ResourceKey, Operation],
        desired: dict[ResourceKey, ResourceSpec],
        observed: dict[ResourceKey, ResourceState],
    ) -> Plan:
        """
        Order operations over the dependency graph.

        Deletes run first, in reverse dependency order, so freed quota is
        available to creates. Creates and updates follow in dependency order.
        """

        keys = set(desired) | set(observed)
        depends_on = {key: spec.depends_on for key, spec in desired.items()}
        generations = dependency_generations(build_dependency_graph(keys, depends_on))

        deletes = {k for k, op in ops.items() if op.kind == OperationKind.delete}
        forward = {k for k, op in ops.items() if op.kind != OperationKind.delete}

        waves = [
            [ops[k] for k in wave] for wave in select_waves(generations, deletes, reverse=True)
        ]
        waves += [[ops[k] for k in wave] for wave in select_waves(generations, forward)]
        operations = [op for wave in waves for op in wave]

        counts = {kind: sum(1 for op in operations if op.kind == kind) for kind in OperationKind}
        explanation = (
            f"Plan created in {mode} mode. "
            f"Create {counts[OperationKind.create]}, "
            f"update {counts[OperationKind.update]}, "
            f"delete {counts[OperationKind.delete]}. "
            f"Waves {len(waves)}."
        )

        return Plan(
            plan_id=plan_id,
            mode=mode,
            operations=operations,
            waves=waves,
            explanation=explanation,
        )
