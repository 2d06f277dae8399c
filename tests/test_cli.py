from click.testing import CliRunner

import forgeprovisioner.cli as cli_module
from forgeprovisioner.errors import ProvisionerError


def patch_controller(monkeypatch, captured):
    class FakeController:
        def __init__(self, **kwargs):
            captured.update(kwargs)

        def run(self):
            return None

    monkeypatch.setattr(cli_module, "ShellProvisionerController", FakeController)


def patch_script_runner(monkeypatch, captured, exit_code=0, error=None):
    class FakeRunner:
        @classmethod
        def from_environment(cls, environ, logger, console, options, ssh_wait_seconds):
            captured["options"] = options
            captured["ssh_wait_seconds"] = ssh_wait_seconds
            return cls()

        def run_from_environment(self, environ, stdout, stderr):
            if error is not None:
                raise error
            return exit_code

        def copy_to(self, local_path, remote_path, mode):
            captured["copy_to"] = (local_path, remote_path, mode)

        def copy_from(self, remote_path, local_path):
            captured["copy_from"] = (remote_path, local_path)

    monkeypatch.setattr(cli_module, "ScriptRunner", FakeRunner)


def test_controller_uses_config_and_allows_cli_override(tmp_path, monkeypatch):
    config_file = tmp_path / "forge.yml"
    config_file.write_text(
        "namespace: forge-system\n" "image_tag: v2\n" "workers: 8\n" "poll_interval_seconds: 10\n",
        encoding="utf-8",
    )
    captured = {}
    patch_controller(monkeypatch, captured)

    result = CliRunner().invoke(
        cli_module.main,
        ["--config", str(config_file), "controller", "--workers", "2", "--kubeconfig", "/etc/kube"],
    )

    assert result.exit_code == 0, result.output
    assert captured["namespace"] == "forge-system"
    assert captured["image_tag"] == "v2"
    assert captured["workers"] == 2
    assert captured["poll_interval_seconds"] == 10.0
    assert captured["kubeconfig"] == "/etc/kube"
    assert captured["kubectl_binary"] == "kubectl"


def test_cli_uses_default_config_file_when_present(tmp_path, monkeypatch):
    (tmp_path / ".forge-provisioner.yml").write_text("namespace: builds\n", encoding="utf-8")
    captured = {}
    patch_controller(monkeypatch, captured)
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli_module.main, ["controller"])

    assert result.exit_code == 0, result.output
    assert captured["namespace"] == "builds"


def test_cli_rejects_invalid_config(tmp_path):
    config_file = tmp_path / "forge.yml"
    config_file.write_text("source: nope\n", encoding="utf-8")

    result = CliRunner().invoke(cli_module.main, ["--config", str(config_file), "controller"])

    assert result.exit_code != 0
    assert "Unknown configuration keys: source" in result.output


def test_run_exits_with_remote_status(tmp_path, monkeypatch):
    captured = {}
    patch_script_runner(monkeypatch, captured, exit_code=3)
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli_module.main, ["run", "--pty", "--ssh-wait-seconds", "15"])

    assert result.exit_code == 3
    assert captured["options"].pty is True
    assert captured["options"].keepalive_seconds == 0.0
    assert captured["ssh_wait_seconds"] == 15.0


def test_run_reports_provisioner_errors(tmp_path, monkeypatch):
    patch_script_runner(monkeypatch, {}, error=ProvisionerError("FORGE_SSH_HOST is not set"))
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli_module.main, ["run"])

    assert result.exit_code == 1
    assert "FORGE_SSH_HOST is not set" in result.output


def test_upload_parses_octal_mode(tmp_path, monkeypatch):
    local = tmp_path / "setup.sh"
    local.write_text("echo hi\n", encoding="utf-8")
    captured = {}
    patch_script_runner(monkeypatch, captured)
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli_module.main, ["upload", str(local), "/tmp/setup.sh", "--mode", "0750"])

    assert result.exit_code == 0, result.output
    assert captured["copy_to"] == (str(local), "/tmp/setup.sh", 0o750)


def test_upload_rejects_non_octal_mode(tmp_path, monkeypatch):
    local = tmp_path / "setup.sh"
    local.write_text("echo hi\n", encoding="utf-8")
    patch_script_runner(monkeypatch, {})
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli_module.main, ["upload", str(local), "/tmp/setup.sh", "--mode", "rwx"])

    assert result.exit_code == 2
    assert "not an octal file mode" in result.output


def test_download_passes_paths(tmp_path, monkeypatch):
    captured = {}
    patch_script_runner(monkeypatch, captured)
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli_module.main, ["download", "/var/log/app.log", "app.log"])

    assert result.exit_code == 0, result.output
    assert captured["copy_from"] == ("/var/log/app.log", "app.log")
