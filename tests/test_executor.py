import threading

import pytest

from toolchain_provisioner.core.errors import PlanConflict, ProvisionCancelled, ProvisionFailed
from toolchain_provisioner.core.types import OperationKind, PlanMode, ResourceKind
from toolchain_provisioner.execution.executor import ExecutorConfig, ReconciliationExecutor
from toolchain_provisioner.intent.desired import build_desired_resources, desired_instances
from toolchain_provisioner.planner import ReconcilePlanner
from toolchain_provisioner.provider.mock import InMemoryProvider
from toolchain_provisioner.state.audit import OperationAuditLog


def _executor(provider, clock, **kwargs):
    config = kwargs.pop("config", ExecutorConfig(max_parallel=1))
    return ReconciliationExecutor(provider, config=config, sleep=clock.sleep, clock=clock, **kwargs)


def test_apply_creates_everything_and_returns_inventory(settings, clock):
    desired = build_desired_resources(settings)
    provider = InMemoryProvider(addresses={"jenkins-server": "34.1.1.1"})
    plan = ReconcilePlanner().plan(desired, provider.list_resources())

    inventory = _executor(provider, clock).apply(plan, desired_instances(desired))

    assert inventory.roles() == ["artifact-host", "ci-host", "quality-host"]
    assert inventory.host("ci-host").address == "34.1.1.1"
    assert inventory.host("ci-host").name == "jenkins-server"
    assert len(provider.resources) == 6
    assert provider.calls.index(f"create/{settings.network_name}") < provider.calls.index(
        "create/jenkins-server"
    )


def test_second_plan_after_apply_is_empty(settings, clock):
    desired = build_desired_resources(settings)
    provider = InMemoryProvider()
    planner = ReconcilePlanner()
    _executor(provider, clock).apply(planner.plan(desired, provider.list_resources()))

    again = planner.plan(desired, provider.list_resources())

    assert again.is_empty


def test_noop_plan_still_reads_back_inventory(settings, clock):
    desired = build_desired_resources(settings)
    provider = InMemoryProvider()
    for spec in desired:
        provider.seed(spec, address="10.0.0.5" if spec.kind == ResourceKind.instance else "")
    plan = ReconcilePlanner().plan(desired, provider.list_resources())

    inventory = _executor(provider, clock).apply(plan, desired_instances(desired))

    assert plan.is_empty
    assert provider.calls == []
    assert len(inventory.hosts) == 3


def test_transient_errors_are_retried_with_backoff(settings, clock):
    desired = build_desired_resources(settings)
    provider = InMemoryProvider(transient_failures={"create/jenkins-server": 2})
    plan = ReconcilePlanner().plan(desired, [])

    _executor(provider, clock).apply(plan)

    assert provider.calls.count("create/jenkins-server") == 3
    assert clock.sleeps[:2] == [2.0, 4.0]


def test_exhausted_retries_raise_provision_failed_and_abandon_the_plan(settings, clock):
    desired = build_desired_resources(settings)
    provider = InMemoryProvider(transient_failures={f"create/{settings.network_name}": 10})
    plan = ReconcilePlanner().plan(desired, [])

    with pytest.raises(ProvisionFailed) as err:
        _executor(provider, clock, config=ExecutorConfig(max_attempts=3, max_parallel=1)).apply(plan)

    assert err.value.operation == f"create network {settings.network_name}"
    assert "3 attempts" in str(err.value)
    assert provider.calls == [f"create/{settings.network_name}"] * 3
    assert provider.resources == {}


def test_failed_operation_leaves_applied_changes_in_place(settings, clock):
    desired = build_desired_resources(settings)
    provider = InMemoryProvider(failing_operations={"create/nexus-server": "QUOTA_EXCEEDED"})
    plan = ReconcilePlanner().plan(desired, [])

    with pytest.raises(ProvisionFailed) as err:
        _executor(provider, clock).apply(plan)

    assert "QUOTA_EXCEEDED" in str(err.value)
    assert (ResourceKind.network, settings.network_name) in provider.resources
    assert (ResourceKind.instance, "nexus-server") not in provider.resources
    assert not any(c.startswith("delete/") for c in provider.calls)


def test_polling_times_out(settings, clock):
    desired = build_desired_resources(settings)
    provider = InMemoryProvider(pending_polls=1000)
    plan = ReconcilePlanner().plan(desired, [])
    config = ExecutorConfig(poll_interval_seconds=5.0, operation_timeout_seconds=20.0, max_parallel=1)

    with pytest.raises(ProvisionFailed) as err:
        _executor(provider, clock, config=config).apply(plan)

    assert "not finished after 20s" in str(err.value)
    assert clock.now >= 20.0


def test_polling_waits_for_pending_operations(settings, clock):
    desired = build_desired_resources(settings)
    provider = InMemoryProvider(pending_polls=2)
    plan = ReconcilePlanner().plan(desired, [])

    _executor(provider, clock).apply(plan)

    assert len(provider.resources) == 6
    assert clock.sleeps.count(5.0) == 2 * 6


def test_create_is_skipped_when_resource_appeared_with_matching_shape(settings, clock):
    desired = build_desired_resources(settings)
    provider = InMemoryProvider()
    plan = ReconcilePlanner().plan(desired, [])
    network = desired[0]
    provider.seed(network)

    _executor(provider, clock).apply(plan)

    assert f"create/{network.name}" not in provider.calls
    assert len(provider.resources) == 6


def test_create_conflicts_when_resource_appeared_with_other_shape(settings, clock):
    desired = build_desired_resources(settings)
    provider = InMemoryProvider()
    plan = ReconcilePlanner().plan(desired, [])
    provider.seed(desired[0], shape={"auto_create_subnetworks": False})

    with pytest.raises(PlanConflict):
        _executor(provider, clock).apply(plan)

    assert provider.calls == []


def test_conflict_found_on_the_create_recheck_is_audited(settings, clock, tmp_path):
    desired = build_desired_resources(settings)
    provider = InMemoryProvider()
    audit = OperationAuditLog(tmp_path / "audit.jsonl")
    plan = ReconcilePlanner().plan(desired, [], plan_id="p2")
    provider.seed(desired[0], shape={"auto_create_subnetworks": False})

    with pytest.raises(PlanConflict):
        _executor(provider, clock, audit=audit).apply(plan)

    events = audit.read()
    assert [(e["name"], e["outcome"]) for e in events] == [(settings.network_name, "conflict")]
    assert "auto_create_subnetworks" in events[0]["detail"]


def test_teardown_plan_deletes_everything(settings, clock):
    desired = build_desired_resources(settings)
    provider = InMemoryProvider()
    for spec in desired:
        provider.seed(spec)
    plan = ReconcilePlanner().plan(desired, provider.list_resources(), mode=PlanMode.teardown)

    inventory = _executor(provider, clock).apply(plan)

    assert provider.resources == {}
    assert inventory.hosts == {}
    assert provider.calls[-1] == f"delete/{settings.network_name}"


def test_delete_of_already_absent_resource_is_skipped(settings, clock):
    desired = build_desired_resources(settings)
    provider = InMemoryProvider()
    provider.seed(desired[0])
    plan = ReconcilePlanner().plan(desired, provider.list_resources(), mode=PlanMode.teardown)
    provider.resources.clear()

    _executor(provider, clock).apply(plan)

    assert provider.calls == []


def test_cancel_before_apply_issues_nothing(settings, clock):
    desired = build_desired_resources(settings)
    provider = InMemoryProvider()
    plan = ReconcilePlanner().plan(desired, [])
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(ProvisionCancelled):
        _executor(provider, clock, cancel=cancel).apply(plan)

    assert provider.calls == []


def test_cancel_between_waves_keeps_applied_resources(settings, clock):
    desired = build_desired_resources(settings)
    cancel = threading.Event()

    class CancellingProvider(InMemoryProvider):
        def create_resource(self, spec):
            handle = super().create_resource(spec)
            if spec.kind == ResourceKind.network:
                cancel.set()
            return handle

    provider = CancellingProvider()
    plan = ReconcilePlanner().plan(desired, [])

    with pytest.raises(ProvisionCancelled):
        _executor(provider, clock, cancel=cancel).apply(plan)

    assert list(provider.resources) == [(ResourceKind.network, settings.network_name)]
    assert provider.calls == [f"create/{settings.network_name}"]


def test_parallel_wave_creates_all_instances(settings, clock):
    desired = build_desired_resources(settings)
    provider = InMemoryProvider()
    plan = ReconcilePlanner().plan(desired, [])

    inventory = _executor(provider, clock, config=ExecutorConfig(max_parallel=3)).apply(
        plan, desired_instances(desired)
    )

    assert len(inventory.hosts) == 3
    assert sorted(c for c in provider.calls if c.startswith("create/") and "server" in c) == [
        "create/jenkins-server",
        "create/nexus-server",
        "create/sonarqube-server",
    ]


def test_audit_log_records_each_operation(settings, clock, tmp_path):
    desired = build_desired_resources(settings)
    provider = InMemoryProvider(failing_operations={"create/jenkins-server": "boom"})
    audit = OperationAuditLog(tmp_path / "audit.jsonl")
    plan = ReconcilePlanner().plan(desired, [], plan_id="p1")

    with pytest.raises(ProvisionFailed):
        _executor(provider, clock, audit=audit).apply(plan)

    events = audit.read()
    assert {e["plan_id"] for e in events} == {"p1"}
    assert events[0]["name"] == settings.network_name
    assert events[0]["outcome"] == "applied"
    assert events[-1]["name"] == "jenkins-server"
    assert events[-1]["outcome"] == "failed"
    assert events[-1]["operation"] == OperationKind.create.value


def test_missing_address_on_readback_fails(settings, clock):
    desired = build_desired_resources(settings)
    provider = InMemoryProvider()
    for spec in desired:
        provider.seed(spec)
    plan = ReconcilePlanner().plan(desired, provider.list_resources())

    with pytest.raises(ProvisionFailed) as err:
        _executor(provider, clock).apply(plan, desired_instances(desired))

    assert "no external address" in str(err.value)
