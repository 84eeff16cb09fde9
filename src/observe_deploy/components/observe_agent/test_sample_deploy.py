import pytest


@pytest.mark.observe_agent
def test_observe_agent_installed(host):
    agent = host.package("observe-agent")
    assert agent.is_installed
    assert "observe-agent" in host.check_output("apt-mark showhold")
    for config_file in (
        "/etc/observe-agent/otel-collector.yaml",
        "/etc/observe-agent/connections/host_monitoring/logs.yaml",
    ):
        deployed = host.file(config_file)
        assert deployed.exists
        assert deployed.user == "root"
        assert deployed.mode == 0o644
    assert host.file("/etc/observe-agent/observe-agent.yaml").contains(
        "BEGIN OBSERVE DEPLOY MANAGED BLOCK - LOG EXCLUSIONS"
    )
    observe_agent = host.service("observe-agent")
    assert observe_agent.is_enabled
    assert observe_agent.is_running
