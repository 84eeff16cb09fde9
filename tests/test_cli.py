"""Tests for the observe-deploy command line entry point."""

import pytest

from observe_deploy import cli
from observe_deploy.workflow.context import RunOutcome, Stage


@pytest.fixture
def flows(monkeypatch):
    """Replace both flows with stubs returning a configurable outcome."""
    calls = {}
    outcome = RunOutcome(flow="install")

    def fake_install(config, host, vars_file=None):
        calls["install"] = (config, host, vars_file)
        return outcome

    def fake_update(config, host):
        calls["update"] = (config, host)
        return outcome

    monkeypatch.setattr(cli, "run_install", fake_install)
    monkeypatch.setattr(cli, "run_config_update", fake_update)
    return calls, outcome


def test_install_success(flows, tmp_path, capsys):
    calls, _ = flows
    vars_file = tmp_path / "observe_vars.yaml"

    assert cli.main(["install", "--vars-file", str(vars_file)]) == 0
    config, host, passed_vars = calls["install"]
    assert passed_vars == vars_file
    assert host.command_timeout == config.command_timeout
    assert "completed successfully" in capsys.readouterr().out


def test_update_uses_files_dir(flows, tmp_path):
    calls, _ = flows

    assert cli.main(["update", "--files-dir", str(tmp_path)]) == 0
    config, _ = calls["update"]
    assert config.source_directory == tmp_path


def test_preflight_failure_exit_status(flows):
    _, outcome = flows
    outcome.failed_stage = Stage.variable_validation
    outcome.error_type = "PreflightError"
    outcome.error = "Required variables are missing, empty or invalid: observe_token"

    assert cli.main(["install"]) == cli.EXIT_PREFLIGHT


def test_mid_run_failure_exit_status(flows, capsys):
    _, outcome = flows
    outcome.failed_stage = Stage.initialize_agent
    outcome.error_type = "InitializationError"
    outcome.error = "observe-agent init-config exited with status 1"

    assert cli.main(["install"]) == cli.EXIT_FAILED
    assert "failed at initialize_agent" in capsys.readouterr().out


def test_invalid_configuration(flows, monkeypatch):
    monkeypatch.setenv("OBSERVE_COMMAND_TIMEOUT", "not-a-number")

    assert cli.main(["update"]) == cli.EXIT_PREFLIGHT
    assert "update" not in flows[0]


def test_flow_is_required():
    with pytest.raises(SystemExit):
        cli.main([])
