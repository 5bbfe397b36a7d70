import json

import pytest
import yaml
from click.testing import CliRunner

from conftest import FakeClock, settings_dict
from toolchain_provisioner.agent.engine import ProvisioningEngine
from toolchain_provisioner.cli import main
from toolchain_provisioner.config.settings import load_settings
from toolchain_provisioner.execution.executor import ExecutorConfig
from toolchain_provisioner.provider.mock import InMemoryProvider
from toolchain_provisioner.remote.base import CommandResult
from toolchain_provisioner.remote.mock import FakeChannelFactory, FakeHost

ADDRESSES = {
    "jenkins-server": "34.1.1.1",
    "sonarqube-server": "34.1.1.2",
    "nexus-server": "34.1.1.3",
}


class Harness:
    """Runs the CLI against an in memory provider and scripted hosts."""

    def __init__(self, tmp_path):
        self.config_path = tmp_path / "provisioner.yaml"
        self.config_path.write_text(yaml.safe_dump(settings_dict(tmp_path)), encoding="utf-8")
        self.provider = InMemoryProvider(addresses=dict(ADDRESSES))
        self.hosts = {address: FakeHost() for address in ADDRESSES.values()}
        self.clock = FakeClock()
        self.resolver = lambda name: ["34.1.1.1"]

    def engine_factory(self, config_path):
        return ProvisioningEngine(
            load_settings(config_path, environ={}),
            self.provider,
            FakeChannelFactory(self.hosts),
            executor_config=ExecutorConfig(max_parallel=1),
            resolver=self.resolver,
            sleep=self.clock.sleep,
            clock=self.clock,
        )

    def invoke(self, *args, input=None):
        runner = CliRunner()
        return runner.invoke(
            main,
            ["--config", str(self.config_path), *args],
            obj={"engine_factory": self.engine_factory},
            input=input,
        )


@pytest.fixture
def harness(tmp_path):
    return Harness(tmp_path)


def test_provision_prints_plan_and_dns_records(harness):
    result = harness.invoke("provision")

    assert result.exit_code == 0, result.output
    assert "Create 6" in result.output
    assert "jenkins.example.com  A  34.1.1.1" in result.output


def test_provision_dry_run_applies_nothing(harness):
    result = harness.invoke("provision", "--dry-run")

    assert result.exit_code == 0, result.output
    assert "Dry run" in result.output
    assert harness.provider.calls == []


def test_provision_failure_names_the_operation_and_exits_one(harness):
    harness.provider.failing_operations["create/jenkins-server"] = "QUOTA_EXCEEDED"

    result = harness.invoke("provision")

    assert result.exit_code == 1
    assert "create instance jenkins-server failed: QUOTA_EXCEEDED" in result.output


def test_commands_needing_inventory_fail_before_provision(harness):
    for command in ("configure", "status", "credentials", "info"):
        result = harness.invoke(command)
        assert result.exit_code == 1
        assert "run provision first" in result.output


def test_configure_reports_every_host_and_exits_one_on_failure(harness):
    harness.invoke("provision")
    harness.hosts["34.1.1.2"].reachable = False

    result = harness.invoke("configure")

    assert result.exit_code == 1
    assert "ci-host (jenkins-server): ok" in result.output
    assert "quality-host (sonarqube-server): FAILED" in result.output
    assert "artifact-host (nexus-server): ok" in result.output


def test_configure_succeeds_when_all_hosts_are_configured(harness):
    harness.invoke("provision")

    result = harness.invoke("configure")

    assert result.exit_code == 0, result.output
    assert "All hosts configured" in result.output


def test_issue_certificates_with_wrong_dns_exits_one(harness):
    harness.invoke("provision")

    result = harness.invoke("issue-certificates")

    assert result.exit_code == 1
    assert "verify DNS propagation" in result.output
    assert not any(h.ran("certbot") for h in harness.hosts.values())


def test_teardown_with_wrong_token_exits_two_without_provider_calls(harness):
    harness.invoke("provision")
    calls = list(harness.provider.calls)

    result = harness.invoke("teardown", "--confirm", "yes")

    assert result.exit_code == 2
    assert "DESTROY" in result.output
    assert harness.provider.calls == calls


def test_teardown_prompts_for_the_token(harness):
    harness.invoke("provision")

    result = harness.invoke("teardown", input="DESTROY\n")

    assert result.exit_code == 0, result.output
    assert "Infrastructure destroyed" in result.output
    assert harness.provider.resources == {}


def test_teardown_prompt_with_empty_answer_refuses(harness):
    harness.invoke("provision")

    result = harness.invoke("teardown", input="\n")

    assert result.exit_code == 2
    assert len(harness.provider.resources) == 6


def test_status_and_credentials(harness):
    harness.invoke("provision")
    jenkins = harness.hosts["34.1.1.1"]
    jenkins.responses["docker ps --format '{{.Names}}\\t{{.Status}}'"] = CommandResult(0, stdout="jenkins\tUp\n")
    jenkins.responses["docker exec jenkins cat /var/jenkins_home/secrets/initialAdminPassword"] = CommandResult(
        0, stdout="abc123\n"
    )
    harness.hosts["34.1.1.3"].reachable = False

    status = harness.invoke("status")
    creds = harness.invoke("credentials")

    assert status.exit_code == 0, status.output
    assert "jenkins\tUp" in status.output
    assert "artifact-host (nexus-server): unreachable" in status.output
    assert "Password: abc123" in creds.output
    assert "admin / admin" in creds.output


def test_verify_exits_one_when_a_service_does_not_answer(harness):
    harness.invoke("provision")
    for host in harness.hosts.values():
        host.default = CommandResult(0, stdout="200")
    harness.hosts["34.1.1.2"].default = CommandResult(7, stdout="000")

    result = harness.invoke("verify")

    assert result.exit_code == 1
    assert "✓ Jenkins (ci-host) port 8080: HTTP 200" in result.output
    assert "✗ SonarQube (quality-host) port 9000: HTTP 000" in result.output


def test_costs(harness):
    result = harness.invoke("costs")

    assert result.exit_code == 0, result.output
    assert "163.68" in result.output


def test_check_reports_missing_private_key(harness):
    result = harness.invoke("check")

    assert result.exit_code == 1
    assert "✓ settings" in result.output
    assert "✓ ssh public key" in result.output
    assert "✗ ssh private key" in result.output


def test_check_reports_invalid_settings(tmp_path):
    path = tmp_path / "provisioner.yaml"
    path.write_text("project_id: only\n", encoding="utf-8")

    result = CliRunner().invoke(main, ["--config", str(path), "check"])

    assert result.exit_code == 1
    assert "✗ settings" in result.output
    assert "missing keys" in result.output


def test_log_options_are_accepted(harness):
    result = harness.invoke("--log-level", "INFO", "--log-format", "json", "costs")

    assert result.exit_code == 0, result.output
    assert "Total" in result.output


def test_provision_dry_run_as_json(harness):
    result = harness.invoke("provision", "--dry-run", "--json")

    assert result.exit_code == 0, result.output
    plan = json.loads(result.stdout)
    assert plan["mode"] == "provision"
    assert [op["name"] for op in plan["operations"]][0] == "toolchain-network"
    assert {op["kind"] for op in plan["operations"]} == {"create"}


def test_configure_report_as_json(harness):
    harness.invoke("provision")
    harness.hosts["34.1.1.3"].reachable = False

    result = harness.invoke("configure", "--json")

    assert result.exit_code == 1
    report = json.loads(result.stdout)
    assert report["ok"] is False
    failed = [h for h in report["hosts"] if not h["ok"]]
    assert [h["role"] for h in failed] == ["artifact-host"]
    assert "host unreachable" in failed[0]["error"]


def test_configure_and_status_survive_a_host_rejecting_the_key(harness):
    harness.invoke("provision")
    harness.hosts["34.1.1.2"].rejects_key = True

    configure = harness.invoke("configure")
    status = harness.invoke("status")

    assert configure.exit_code == 1
    assert "quality-host (sonarqube-server): FAILED" in configure.output
    assert "ci-host (jenkins-server): ok" in configure.output
    assert "Traceback" not in configure.output
    assert status.exit_code == 0, status.output
    assert "quality-host (sonarqube-server): unreachable" in status.output


def test_hand_edited_inventory_is_reported_without_a_traceback(harness):
    harness.invoke("provision")
    inventory_path = harness.config_path.parent / "state" / "inventory.json"
    inventory_path.write_text('{"hosts": [{"name": "jenkins-server"}]}', encoding="utf-8")

    result = harness.invoke("status")

    assert result.exit_code == 1
    assert "inventory.json" in result.output
    assert "re-run provision" in result.output
    assert "Traceback" not in result.output
