import logging
import shutil
from datetime import datetime
from pathlib import Path

from observe_deploy.components.observe_agent.models import (
    ConfigArtifact,
    DeploymentVariables,
    HostFacts,
    ObserveAgentConfig,
    init_config_command,
    load_deployment_variables,
)
from observe_deploy.errors import (
    BackupError,
    ContentValidationError,
    FactProbeError,
    InitializationError,
    PreflightError,
    ServiceVerificationError,
    TransientToolError,
)
from observe_deploy.facts.has_systemd import HasSystemd
from observe_deploy.facts.packages import DebPackageVersion, HeldPackages
from observe_deploy.facts.services import ServiceActiveState, ServiceEnabled
from observe_deploy.facts.system import OsRelease
from observe_deploy.lib.block_helpers import apply_block
from observe_deploy.lib.file_helpers import (
    atomic_write,
    backup_path,
    ensure_directory,
    validate_yaml,
)
from observe_deploy.workflow.context import (
    BackupOutcome,
    BackupRecord,
    BestEffortStatus,
    RunContext,
    ServiceState,
    Stage,
    StageResult,
)
from observe_deploy.workflow.host import APT_ENV, TargetHost

log = logging.getLogger(__name__)

ACTIVE = "active"
PENDING_STATES = frozenset({"activating", "reloading"})


def probe_facts(host: TargetHost) -> HostFacts:
    """Determine the OS family and version of the host.

    :raises FactProbeError: When the facts can not be gathered or the host does not
        run systemd.
    """
    try:
        release = host.get_fact(OsRelease)
        has_systemd = host.get_fact(HasSystemd)
    except TransientToolError as exc:
        msg = f"Unable to gather host facts: {exc}"
        raise FactProbeError(msg) from exc
    facts = HostFacts.from_os_release(release)
    if not has_systemd:
        msg = "The host does not run systemd"
        raise FactProbeError(msg)
    return facts


def validate_variables(
    vars_file: Path | None = None, variables: DeploymentVariables | None = None
) -> DeploymentVariables:
    if variables is not None:
        return variables
    return load_deployment_variables(vars_file)


def select_artifacts(
    config: ObserveAgentConfig, facts: HostFacts
) -> tuple[ConfigArtifact, ...]:
    """Pick the configuration sources for the host and confirm they exist.

    A missing variant is never replaced by the default files.
    """
    artifacts = tuple(config.artifacts(facts))
    missing = [
        str(artifact.source_path)
        for artifact in artifacts
        if not artifact.source_path.is_file()
    ]
    if missing:
        msg = (
            f"Configuration source files for {facts.os_family} {facts.os_version}"
            f" are missing: {', '.join(missing)}"
        )
        raise PreflightError(msg)
    return artifacts


def ensure_repository(config: ObserveAgentConfig, host: TargetHost) -> StageResult:
    """Register the apt source and refresh the package index when it changed.

    A failed refresh puts the previous source list back, so the next run sees a
    change and refreshes again.
    """
    path = config.sources_list_path
    previous = path.read_bytes() if path.is_file() else None
    changed = atomic_write(
        path,
        f"{config.repo_line}\n".encode(),
        owner=config.file_owner,
        group=config.file_group,
        mode=config.file_mode,
    )
    if not changed:
        return StageResult.from_changed(
            Stage.repository, False, "package index refresh skipped"
        )
    try:
        host.run(["apt-get", "update"], env=APT_ENV)
    except TransientToolError:
        if previous is None:
            path.unlink(missing_ok=True)
        else:
            atomic_write(path, previous)
        raise
    return StageResult.from_changed(
        Stage.repository, True, f"registered {config.repo_url}"
    )


def ensure_package(config: ObserveAgentConfig, host: TargetHost) -> StageResult:
    package = config.package_name
    installed = host.get_fact(DebPackageVersion, package)
    if installed and not config.install_latest:
        return StageResult.from_changed(Stage.package, False, installed)
    host.run(["apt-get", "install", "-y", package], env=APT_ENV)
    current = host.get_fact(DebPackageVersion, package)
    if not current:
        msg = f"{package} is not installed after running apt-get install"
        raise TransientToolError(msg)
    return StageResult.from_changed(Stage.package, current != installed, current)


def provision_directories(config: ObserveAgentConfig) -> StageResult:
    changes = [
        ensure_directory(
            directory,
            owner=config.file_owner,
            group=config.file_group,
            mode=config.directory_mode,
        )
        for directory in (
            config.configuration_directory,
            config.logs_configuration_directory,
        )
    ]
    return StageResult.from_changed(Stage.directories, any(changes))


def _copy_aside(path: Path, destination: Path) -> None:
    try:
        shutil.copy2(path, destination)
    except OSError as exc:
        msg = f"Unable to back up {path}: {exc.strerror or exc}"
        raise BackupError(msg) from exc


def backup_configuration(
    ctx: RunContext, config: ObserveAgentConfig
) -> BackupOutcome:
    """Copy each existing tracked file to `<path>.backup-<date>`.

    Failures are collected and logged, they never propagate.
    """
    records = []
    failures = []
    for path in config.tracked_files.values():
        if not path.is_file():
            log.debug("No existing %s to back up", path)
            continue
        destination = backup_path(path, ctx.backup_date)
        try:
            _copy_aside(path, destination)
        except BackupError as exc:
            log.warning("%s", exc)
            failures.append(str(exc))
            continue
        records.append(
            BackupRecord(
                original_path=path,
                backup_path=destination,
                created_at=datetime.now().astimezone(),
            )
        )
    if failures:
        status = BestEffortStatus.failed_non_fatal
    elif records:
        status = BestEffortStatus.success
    else:
        status = BestEffortStatus.skipped
    return BackupOutcome(status=status, records=records, failures=failures)


def _read_validated(
    artifacts: tuple[ConfigArtifact, ...],
) -> list[tuple[ConfigArtifact, bytes]]:
    contents = []
    for artifact in artifacts:
        content = artifact.source_path.read_bytes()
        validate_yaml(content, str(artifact.source_path))
        contents.append((artifact, content))
    return contents


def validate_configuration(ctx: RunContext) -> StageResult:
    """Confirm that every selected source parses before any destination is written."""
    _read_validated(ctx.artifacts)
    return StageResult.from_changed(Stage.validate_configuration, False)


def deploy_configuration(ctx: RunContext) -> StageResult:
    """Place each selected source atomically with its owner, group and mode.

    Sources are validated again as they are read, so no destination is written
    unless all of them parse.
    """
    contents = _read_validated(ctx.artifacts)
    changed = [
        atomic_write(
            artifact.dest_path,
            content,
            owner=artifact.owner,
            group=artifact.group,
            mode=artifact.mode,
        )
        for artifact, content in contents
    ]
    variants = sorted({artifact.variant for artifact in ctx.artifacts})
    return StageResult.from_changed(
        Stage.deploy_configuration,
        any(changed),
        f"variant {', '.join(variants)}",
    )


def initialize_agent(
    ctx: RunContext, config: ObserveAgentConfig, host: TargetHost
) -> StageResult:
    variables = ctx.variables
    token = variables.token.get_secret_value()
    try:
        result = host.run(
            init_config_command(config, variables), secrets=[token], check=False
        )
    except TransientToolError as exc:
        msg = f"{config.agent_binary} init-config could not be run: {exc}"
        raise InitializationError(msg) from exc
    if not result.ok:
        msg = (
            f"{config.agent_binary} init-config exited with status"
            f" {result.returncode}: {result.stderr.strip()}"
        )
        raise InitializationError(msg)
    return StageResult.from_changed(Stage.initialize_agent, True)


def apply_log_exclusions(ctx: RunContext, config: ObserveAgentConfig) -> StageResult:
    path = config.agent_configuration_file
    if not path.is_file():
        msg = f"{path} was not created by {config.agent_binary} init-config"
        raise InitializationError(msg)
    try:
        current = path.read_text()
    except UnicodeDecodeError as exc:
        msg = f"{path} is not valid UTF-8: {exc.reason}"
        raise ContentValidationError(msg) from exc
    updated = apply_block(
        current, config.log_exclusion_block(), marker=config.log_exclusion_marker
    )
    if updated == current:
        return StageResult.from_changed(Stage.log_exclusions, False)
    validate_yaml(updated, str(path))
    # An existing backup from today holds the pre-run contents and is kept.
    destination = backup_path(path, ctx.backup_date)
    if not destination.exists():
        shutil.copy2(path, destination)
    atomic_write(path, updated.encode())
    return StageResult.from_changed(Stage.log_exclusions, True)


def stop_service(config: ObserveAgentConfig, host: TargetHost) -> StageResult:
    service = config.service_name
    if host.get_fact(ServiceActiveState, service) != ACTIVE:
        return StageResult.from_changed(Stage.stop_service, False)
    host.run(["systemctl", "stop", service])
    return StageResult.from_changed(Stage.stop_service, True)


def ensure_service(
    config: ObserveAgentConfig,
    host: TargetHost,
    restart: bool = False,  # noqa: FBT001, FBT002
) -> StageResult:
    service = config.service_name
    if config.daemon_reload:
        host.run(["systemctl", "daemon-reload"])
    enabled = host.get_fact(ServiceEnabled, service)
    if not enabled:
        host.run(["systemctl", "enable", service])
    if restart:
        host.run(["systemctl", "restart", service])
        return StageResult.from_changed(Stage.service, True, "restarted")
    active = host.get_fact(ServiceActiveState, service) == ACTIVE
    if not active:
        host.run(["systemctl", "start", service])
    return StageResult.from_changed(Stage.service, not (enabled and active))


def verify_service(
    config: ObserveAgentConfig, host: TargetHost
) -> tuple[StageResult, ServiceState]:
    """Query the live ActiveState of the unit, a successful start is not proof.

    A unit still activating is polled again before the state is judged.

    :raises ServiceVerificationError: If the unit does not report `active`.
    """
    service = config.service_name
    state = host.get_fact(ServiceActiveState, service)
    for attempt in range(1, host.query_retries + 1):
        if state not in PENDING_STATES:
            break
        host.sleep(host.retry_delay * attempt)
        state = host.get_fact(ServiceActiveState, service)
    if state != ACTIVE:
        msg = f"{service} reports ActiveState {state!r}, expected {ACTIVE!r}"
        raise ServiceVerificationError(msg)
    service_state = ServiceState(
        name=service,
        enabled=host.get_fact(ServiceEnabled, service),
        active=True,
    )
    return (
        StageResult.from_changed(Stage.verify_service, False, ACTIVE),
        service_state,
    )


def pin_package(config: ObserveAgentConfig, host: TargetHost) -> StageResult:
    package = config.package_name
    if package in host.get_fact(HeldPackages):
        return StageResult.from_changed(Stage.pin_version, False, "already held")
    host.run(["apt-mark", "hold", package])
    return StageResult.from_changed(Stage.pin_version, True, "held")
