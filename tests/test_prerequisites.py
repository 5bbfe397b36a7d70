import yaml

from conftest import settings_dict
from toolchain_provisioner.agent.prerequisites import check_prerequisites


def write_config(tmp_path, **overrides):
    path = tmp_path / "provisioner.yaml"
    path.write_text(yaml.safe_dump(dict(settings_dict(tmp_path), **overrides)), encoding="utf-8")
    return path


def test_all_prerequisites_present(tmp_path):
    (tmp_path / "id_rsa").write_text("private\n", encoding="utf-8")
    path = write_config(tmp_path)

    report = check_prerequisites(path, environ={})

    assert report.ok
    assert report.settings is not None
    assert [c.name for c in report.checks] == ["settings", "ssh public key", "ssh private key", "service account"]
    assert "application default credentials" in report.checks[-1].detail


def test_missing_service_account_file_is_reported(tmp_path):
    (tmp_path / "id_rsa").write_text("private\n", encoding="utf-8")
    path = write_config(tmp_path, service_account_file=str(tmp_path / "sa.json"))

    report = check_prerequisites(path, environ={})

    assert not report.ok
    failed = [c for c in report.checks if not c.ok]
    assert [c.name for c in failed] == ["service account"]
    assert "Compute Admin" in failed[0].detail


def test_invalid_settings_stop_the_remaining_checks(tmp_path):
    report = check_prerequisites(tmp_path / "absent.yaml", environ={})

    assert not report.ok
    assert [c.name for c in report.checks] == ["settings"]
    assert report.settings is None
