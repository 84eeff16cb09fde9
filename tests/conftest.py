"""Shared pytest fixtures for Observe agent deployment tests.

This module provides a simulated Debian host which answers the apt, dpkg,
systemctl and observe-agent commands issued by the deployment stages, together
with a configuration rooted in a temporary directory.
"""

import os
from datetime import date
from pathlib import Path

import pytest

from observe_deploy.components.observe_agent.models import (
    DeploymentVariables,
    ObserveAgentConfig,
)
from observe_deploy.errors import CommandTimeoutError
from observe_deploy.lib.command_helpers import CommandResult, mask_secrets
from observe_deploy.workflow.host import TargetHost

UBUNTU_2204 = """PRETTY_NAME="Ubuntu 22.04.4 LTS"
NAME="Ubuntu"
VERSION_ID="22.04"
VERSION="22.04.4 LTS (Jammy Jellyfish)"
ID=ubuntu
ID_LIKE=debian
"""

UBUNTU_2404 = """PRETTY_NAME="Ubuntu 24.04.1 LTS"
NAME="Ubuntu"
VERSION_ID="24.04"
VERSION="24.04.1 LTS (Noble Numbat)"
ID=ubuntu
ID_LIKE=debian
"""

GENERATED_AGENT_CONFIG = """token: "${OBSERVE_TOKEN}"
observe_url: "${OBSERVE_URL}"
self_monitoring:
  enabled: true
host_monitoring:
  enabled: true
  logs:
    enabled: true
"""

TOKEN = "ds1TESTtoken:abcdef0123456789"  # noqa: S105
URL = "https://123456789012.collect.observeinc.com/"


class SimulatedHost:
    """A command runner standing in for a Debian host with systemd.

    State changes made by commands (installing, enabling, starting, holding) are
    reflected in later fact queries so that repeated runs observe their own effects.
    """

    def __init__(self, agent_config_path: Path, os_release: str = UBUNTU_2204):
        self.agent_config_path = agent_config_path
        self.os_release = os_release
        self.has_systemd = True
        self.installed_version = None
        self.candidate_version = "1.2.0"
        self.held = set()
        self.enabled = False
        self.active_state = "inactive"
        self.state_after_start = "active"
        self.init_returncode = 0
        self.failing = {}
        self.timeouts = set()
        self.calls = []

    def commands(self) -> list[str]:
        return [" ".join(call) for call in self.calls]

    def ran(self, needle: str) -> bool:
        return any(needle in command for command in self.commands())

    def __call__(self, args, timeout, secrets=(), env=None):  # noqa: ARG002
        args = list(args)
        self.calls.append(args)
        command = " ".join(args)
        if any(needle in command for needle in self.timeouts):
            msg = f"Command timed out after {timeout}s: {command}"
            raise CommandTimeoutError(mask_secrets(msg, secrets))
        for needle, returncode in self.failing.items():
            if needle in command:
                return self._result(args, secrets, returncode, stderr="failed")
        if args[:2] == ["/bin/sh", "-c"]:
            return self._fact(args, secrets)
        return self._action(args, secrets)

    def _result(self, args, secrets, returncode=0, stdout="", stderr=""):
        return CommandResult(
            args=[mask_secrets(arg, secrets) for arg in args],
            returncode=returncode,
            stdout=mask_secrets(stdout, secrets),
            stderr=mask_secrets(stderr, secrets),
        )

    def _fact(self, args, secrets):
        command = args[2]
        if "/etc/os-release" in command:
            stdout = self.os_release
        elif "which systemd" in command:
            stdout = "/usr/bin/systemd" if self.has_systemd else "false"
        elif command.startswith("dpkg-query"):
            stdout = (
                f"install ok installed {self.installed_version}"
                if self.installed_version
                else ""
            )
        elif command == "apt-mark showhold":
            stdout = "\n".join(sorted(self.held))
        elif "ActiveState" in command:
            stdout = self.active_state
        elif "is-enabled" in command:
            stdout = "enabled" if self.enabled else "disabled"
        else:
            return self._result(args, secrets, 127, stderr="unknown fact")
        return self._result(args, secrets, stdout=stdout)

    def _action(self, args, secrets):  # noqa: C901
        match args:
            case ["apt-get", "update"]:
                pass
            case ["apt-get", "install", "-y", _]:
                self.installed_version = self.candidate_version
            case ["systemctl", "daemon-reload"]:
                pass
            case ["systemctl", "enable", _]:
                self.enabled = True
            case ["systemctl", "start" | "restart", _]:
                self.active_state = self.state_after_start
            case ["systemctl", "stop", _]:
                self.active_state = "inactive"
            case ["apt-mark", "hold", package]:
                self.held.add(package)
            case [_, "init-config", *_]:
                if self.init_returncode:
                    return self._result(
                        args, secrets, self.init_returncode, stderr="invalid token"
                    )
                if not self.agent_config_path.exists():
                    self.agent_config_path.write_text(GENERATED_AGENT_CONFIG)
            case _:
                return self._result(args, secrets, 127, stderr="command not found")
        return self._result(args, secrets)


@pytest.fixture(autouse=True)
def clean_observe_environment(monkeypatch):
    """Keep OBSERVE_* variables of the developer's shell out of the tests."""
    for name in list(os.environ):
        if name.upper().startswith("OBSERVE_"):
            monkeypatch.delenv(name)


@pytest.fixture
def config(tmp_path):
    sources = tmp_path.joinpath("etc", "apt", "sources.list.d")
    sources.mkdir(parents=True)
    return ObserveAgentConfig(
        configuration_directory=tmp_path.joinpath("etc", "observe-agent"),
        sources_list_directory=sources,
        file_owner=None,
        file_group=None,
        query_retries=2,
        retry_delay=0,
    )


@pytest.fixture
def simulated_host(config):
    return SimulatedHost(agent_config_path=config.agent_configuration_file)


@pytest.fixture
def target_host(simulated_host):
    return TargetHost(
        runner=simulated_host, query_retries=2, retry_delay=0, sleep=lambda _: None
    )


@pytest.fixture
def variables():
    return DeploymentVariables(token=TOKEN, url=URL)


@pytest.fixture
def fixed_clock():
    return lambda: date(2026, 10, 18)


@pytest.fixture
def noble_host(simulated_host):
    """The simulated host reporting Ubuntu 24.04."""
    simulated_host.os_release = UBUNTU_2404
    return simulated_host


@pytest.fixture
def generated_agent_config():
    return GENERATED_AGENT_CONFIG
