from unittest.mock import patch

import paramiko

from toolchain_provisioner.configure.configurator import Configurator, ConfiguratorConfig
from toolchain_provisioner.configure.steps import build_catalog
from toolchain_provisioner.core.errors import ConnectivityTimeout, HostAccessDenied, StepFailed
from toolchain_provisioner.core.types import ConfigStep, HostRecord, Inventory, StepStatus
from toolchain_provisioner.remote.base import CommandResult
from toolchain_provisioner.remote.mock import FakeChannelFactory, FakeHost
from toolchain_provisioner.remote.ssh import SshChannelFactory

OK = CommandResult(0)
FAIL = CommandResult(1, stderr="not there")


def make_inventory() -> Inventory:
    hosts = {
        "ci-host": HostRecord("ci-host", "jenkins-server", "10.0.0.1", "deploy", "jenkins.example.com"),
        "quality-host": HostRecord("quality-host", "sonarqube-server", "10.0.0.2", "deploy", "sonar.example.com"),
        "artifact-host": HostRecord("artifact-host", "nexus-server", "10.0.0.3", "deploy", "nexus.example.com"),
    }
    return Inventory(project_id="acme-ci", zone="us-central1-a", hosts=hosts)


def _configurator(factory, clock, **overrides):
    config = ConfiguratorConfig(**{"startup_timeout_seconds": 60.0, "connect_interval_seconds": 10.0, **overrides})
    return Configurator(factory, config, sleep=clock.sleep, clock=clock)


def _steps():
    return [
        ConfigStep(name="install", check="check install", apply="do install"),
        ConfigStep(name="start", check="check start", apply="do start", requires=("install",)),
    ]


def test_unreachable_host_is_isolated_and_reported_once(clock):
    fresh = {"check install": [FAIL, OK], "check start": [FAIL, OK]}
    factory = FakeChannelFactory(
        {
            "10.0.0.1": FakeHost(responses=dict(fresh)),
            "10.0.0.2": FakeHost(reachable=False),
            "10.0.0.3": FakeHost(responses={"check install": [FAIL, OK], "check start": [FAIL, OK]}),
        }
    )

    report = _configurator(factory, clock, max_parallel_hosts=1).configure(make_inventory(), _steps())

    timeouts = report.errors_of(ConnectivityTimeout)
    assert len(timeouts) == 1
    assert "sonarqube-server" in str(timeouts[0])
    assert [h.role for h in report.failures()] == ["quality-host"]
    for role in ("ci-host", "artifact-host"):
        host = next(h for h in report.hosts if h.role == role)
        assert host.ok
        assert host.count(StepStatus.applied) == 2
    quality = next(h for h in report.hosts if h.role == "quality-host")
    assert [o.status for o in quality.outcomes] == [StepStatus.not_run, StepStatus.not_run]


def test_unreachable_host_is_retried_until_the_startup_timeout(clock):
    factory = FakeChannelFactory({"10.0.0.1": FakeHost(reachable=False)})
    inventory = Inventory(hosts={"ci-host": make_inventory().hosts["ci-host"]})

    report = _configurator(factory, clock).configure(inventory, _steps())

    assert factory.hosts["10.0.0.1"].connects == 7
    assert clock.now == 60.0
    assert not report.ok


def test_host_that_boots_late_is_configured(clock):
    host = FakeHost(unreachable_attempts=2)
    factory = FakeChannelFactory({"10.0.0.1": host})
    inventory = Inventory(hosts={"ci-host": make_inventory().hosts["ci-host"]})

    report = _configurator(factory, clock).configure(inventory, _steps())

    assert report.ok
    assert host.connects == 3


def test_satisfied_steps_are_skipped_without_apply(clock):
    host = FakeHost()
    factory = FakeChannelFactory({"10.0.0.1": host})
    inventory = Inventory(hosts={"ci-host": make_inventory().hosts["ci-host"]})

    report = _configurator(factory, clock).configure(inventory, _steps())

    assert report.ok
    assert report.hosts[0].count(StepStatus.skipped) == 2
    assert host.commands == ["check install", "check start"]


def test_failed_apply_stops_only_that_host(clock):
    broken = FakeHost(responses={"check install": FAIL, "do install": CommandResult(100, stderr="E: no space")})
    healthy = FakeHost()
    factory = FakeChannelFactory({"10.0.0.1": broken, "10.0.0.3": healthy})
    inventory = make_inventory()
    del inventory.hosts["quality-host"]

    report = _configurator(factory, clock).configure(inventory, _steps())

    failed = report.errors_of(StepFailed)
    assert len(failed) == 1
    assert failed[0].step == "install"
    assert "E: no space" in failed[0].detail
    ci = next(h for h in report.hosts if h.role == "ci-host")
    assert [(o.step, o.status) for o in ci.outcomes] == [
        ("install", StepStatus.failed),
        ("start", StepStatus.not_run),
    ]
    assert not broken.ran("do start")
    assert next(h for h in report.hosts if h.role == "artifact-host").ok


def test_step_fails_when_recheck_still_fails(clock):
    host = FakeHost(responses={"check install": FAIL})
    factory = FakeChannelFactory({"10.0.0.1": host})
    inventory = Inventory(hosts={"ci-host": make_inventory().hosts["ci-host"]})

    report = _configurator(factory, clock).configure(inventory, _steps())

    error = report.hosts[0].error
    assert isinstance(error, StepFailed)
    assert "postcondition" in error.detail
    assert host.commands == ["check install", "do install", "check install"]


def test_second_run_changes_nothing(clock):
    host = FakeHost(responses={"check install": [FAIL, OK], "check start": [FAIL, OK]})
    factory = FakeChannelFactory({"10.0.0.1": host})
    inventory = Inventory(hosts={"ci-host": make_inventory().hosts["ci-host"]})
    configurator = _configurator(factory, clock)

    first = configurator.configure(inventory, _steps())
    host.commands.clear()
    second = configurator.configure(inventory, _steps())

    assert first.hosts[0].count(StepStatus.applied) == 2
    assert second.hosts[0].count(StepStatus.skipped) == 2
    assert not host.ran("do ")


def test_catalog_steps_are_filtered_by_role(clock):
    hosts = {addr: FakeHost() for addr in ("10.0.0.1", "10.0.0.2", "10.0.0.3")}
    factory = FakeChannelFactory(hosts)

    report = _configurator(factory, clock).configure(make_inventory(), build_catalog())

    quality = next(h for h in report.hosts if h.role == "quality-host")
    ci = next(h for h in report.hosts if h.role == "ci-host")
    assert "max-map-count" in [o.step for o in quality.outcomes]
    assert "max-map-count" not in [o.step for o in ci.outcomes]
    assert hosts["10.0.0.1"].ran("server_name jenkins.example.com;")


def test_empty_inventory_gives_empty_report(clock):
    report = _configurator(FakeChannelFactory({}), clock).configure(Inventory(), _steps())

    assert report.ok
    assert report.hosts == []


class _ByAddress:
    """Routes each host to the factory registered for its address."""

    def __init__(self, factories, fallback):
        self._factories = factories
        self._fallback = fallback

    def connect(self, host):
        return self._factories.get(host.address, self._fallback).connect(host)


def test_rejected_ssh_key_fails_only_that_host_without_retrying(clock, tmp_path):
    fakes = FakeChannelFactory({"10.0.0.2": FakeHost(), "10.0.0.3": FakeHost()})
    ssh = SshChannelFactory("deploy", tmp_path / "id_rsa")
    factory = _ByAddress({"10.0.0.1": ssh}, fakes)

    with patch("toolchain_provisioner.remote.ssh.paramiko.SSHClient") as client_cls:
        client_cls.return_value.connect.side_effect = paramiko.AuthenticationException("denied")
        report = _configurator(factory, clock).configure(make_inventory(), _steps())

    assert [h.role for h in report.failures()] == ["ci-host"]
    denied = report.errors_of(HostAccessDenied)
    assert len(denied) == 1
    assert "jenkins-server" in str(denied[0])
    assert client_cls.return_value.connect.call_count == 1
    assert clock.sleeps == []
    ci = next(h for h in report.hosts if h.role == "ci-host")
    assert [o.status for o in ci.outcomes] == [StepStatus.not_run, StepStatus.not_run]
    assert next(h for h in report.hosts if h.role == "artifact-host").ok


def test_host_rejecting_the_key_is_reported_by_the_fake_factory(clock):
    factory = FakeChannelFactory({"10.0.0.1": FakeHost(rejects_key=True)})
    inventory = Inventory(hosts={"ci-host": make_inventory().hosts["ci-host"]})

    report = _configurator(factory, clock).configure(inventory, _steps())

    assert isinstance(report.hosts[0].error, HostAccessDenied)
    assert factory.hosts["10.0.0.1"].connects == 1
