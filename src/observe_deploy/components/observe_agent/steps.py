import shlex

from pyinfra import host
from pyinfra.api import MaskString, StringCommand, deploy
from pyinfra.operations import apt, files, server, systemd

from observe_deploy.components.observe_agent.models import (
    DeploymentVariables,
    HostFacts,
    ObserveAgentConfig,
    init_config_command,
)
from observe_deploy.facts.has_systemd import HasSystemd
from observe_deploy.facts.packages import HeldPackages
from observe_deploy.facts.system import OsRelease
from observe_deploy.lib.file_helpers import validate_yaml
from observe_deploy.workflow.stages import select_artifacts


def _host_facts() -> HostFacts:
    return HostFacts.from_os_release(host.get_fact(OsRelease))


def masked_init_command(
    observe_config: ObserveAgentConfig, variables: DeploymentVariables
) -> StringCommand:
    """Build the init-config command with the token hidden from pyinfra output."""
    token = variables.token.get_secret_value()
    return StringCommand(
        *(
            MaskString(shlex.quote(arg)) if arg == token else shlex.quote(arg)
            for arg in init_config_command(observe_config, variables)
        )
    )


# Wrapper function to do everything in one call.
@deploy("Install and configure Observe agent.")
def install_and_configure_observe_agent(
    observe_config: ObserveAgentConfig, variables: DeploymentVariables
):
    agent_install = install_observe_agent(observe_config)
    backup_observe_agent_configuration(observe_config, agent_install)
    configure_observe_agent(observe_config)
    initialize_observe_agent(observe_config, variables)
    if host.get_fact(HasSystemd):
        observe_agent_service(observe_config)
        pin_observe_agent(observe_config)


@deploy("Install Observe agent.")
def install_observe_agent(observe_config: ObserveAgentConfig):
    repository = apt.repo(
        name="Add Observe repository",
        src=observe_config.repo_line,
        present=True,
        filename=observe_config.repo_filename,
    )
    apt.update(
        name="Update apt cache",
        _if=repository.did_change,
    )
    agent_install = apt.packages(
        name="Install Observe agent",
        packages=[observe_config.package_name],
        present=True,
        latest=observe_config.install_latest,
    )
    for directory in (
        observe_config.configuration_directory,
        observe_config.logs_configuration_directory,
    ):
        files.directory(
            name=f"Create {directory}",
            path=str(directory),
            present=True,
            user=observe_config.file_owner,
            group=observe_config.file_group,
            mode=observe_config.directory_mode,
        )
    return agent_install


@deploy("Back up Observe agent configuration.")
def backup_observe_agent_configuration(
    observe_config: ObserveAgentConfig, agent_install=None
):
    # Only back up when the package changed, unless called without an install.
    condition = {"_if": agent_install.did_change} if agent_install else {}
    for path in observe_config.tracked_files.values():
        server.shell(
            name=f"Back up {path}",
            commands=[f"test ! -f {path} || cp -p {path} {path}.backup-$(date +%F)"],
            _ignore_errors=True,
            **condition,
        )


@deploy("Configure Observe agent: place configuration files")
def configure_observe_agent(observe_config: ObserveAgentConfig):
    # Sources are selected and validated locally before anything is uploaded.
    for artifact in select_artifacts(observe_config, _host_facts()):
        validate_yaml(artifact.source_path.read_bytes(), str(artifact.source_path))
        files.put(
            name=f"Copy {artifact.logical_name.value} ({artifact.variant})",
            src=str(artifact.source_path),
            dest=str(artifact.dest_path),
            user=artifact.owner,
            group=artifact.group,
            mode=artifact.mode,
        )


@deploy("Configure Observe agent: initialize and exclude logs")
def initialize_observe_agent(
    observe_config: ObserveAgentConfig, variables: DeploymentVariables
):
    server.shell(
        name="Initialize Observe agent configuration",
        commands=[masked_init_command(observe_config, variables)],
    )
    files.block(
        name="Configure log exclusions",
        path=str(observe_config.agent_configuration_file),
        content=observe_config.log_exclusion_block(),
        marker=observe_config.log_exclusion_marker,
        backup=True,
    )


@deploy("Configure Observe agent: Setup systemd service")
def observe_agent_service(
    observe_config: ObserveAgentConfig,
    do_restart=False,  # noqa: FBT002
):
    systemd.service(
        name="Start and enable Observe agent service",
        service=observe_config.service_name,
        running=True,
        enabled=True,
        restarted=do_restart,
        daemon_reload=observe_config.daemon_reload,
    )
    server.shell(
        name="Verify Observe agent service is running",
        commands=[
            "test \"$(systemctl show --property=ActiveState --value"
            f' {observe_config.service_name})" = active'
        ],
    )


@deploy("Stop Observe agent service")
def stop_observe_agent(observe_config: ObserveAgentConfig):
    systemd.service(
        name="Stop Observe agent service",
        service=observe_config.service_name,
        running=False,
    )


@deploy("Pin Observe agent version")
def pin_observe_agent(observe_config: ObserveAgentConfig):
    if observe_config.package_name not in host.get_fact(HeldPackages):
        server.shell(
            name="Pin Observe agent version",
            commands=[f"apt-mark hold {observe_config.package_name}"],
        )


@deploy("Update Observe agent configuration.")
def update_observe_agent_configuration(observe_config: ObserveAgentConfig):
    stop_observe_agent(observe_config)
    backup_observe_agent_configuration(observe_config)
    configure_observe_agent(observe_config)
    observe_agent_service(observe_config, do_restart=True)
