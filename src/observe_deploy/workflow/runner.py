"""Sequence the deployment stages for a single host.

A run either reaches the end of its flow or ends in a reported failure. Failures in
the configuration, initialization and service stages trigger a best effort restore
of the tracked configuration files; earlier failures leave nothing to restore.
"""

import logging
from collections.abc import Callable
from datetime import date
from pathlib import Path
from typing import Any

from observe_deploy.components.observe_agent.models import (
    DeploymentVariables,
    ObserveAgentConfig,
)
from observe_deploy.errors import ObserveDeployError, TransientToolError
from observe_deploy.lib.command_helpers import mask_secrets
from observe_deploy.workflow import stages
from observe_deploy.workflow.context import (
    ROLLBACK_STAGES,
    BackupOutcome,
    BestEffortStatus,
    RunContext,
    RunOutcome,
    Stage,
    StageResult,
    StageStatus,
)
from observe_deploy.workflow.host import TargetHost
from observe_deploy.workflow.rollback import restore_configuration

log = logging.getLogger(__name__)

BACKUP_STATUSES = {
    BestEffortStatus.success: StageStatus.changed,
    BestEffortStatus.skipped: StageStatus.skipped,
    BestEffortStatus.failed_non_fatal: StageStatus.unchanged,
}


class StageFailedError(Exception):
    def __init__(self, stage: Stage, error: ObserveDeployError):
        super().__init__(str(error))
        self.stage = stage
        self.error = error


class DeploymentRun:
    """Bookkeeping for one flow: stage results, run context and failure handling."""

    def __init__(
        self,
        flow: str,
        config: ObserveAgentConfig,
        host: TargetHost,
        clock: Callable[[], date] | None = None,
    ):
        self.config = config
        self.host = host
        self.outcome = RunOutcome(flow=flow)
        self.ctx = RunContext(clock=clock) if clock else RunContext()

    def record(self, result: StageResult) -> StageResult:
        log.info(
            "%s: %s%s",
            result.stage.value,
            result.status.value,
            f" ({result.detail})" if result.detail else "",
        )
        self.outcome.results.append(result)
        return result

    def call(self, stage: Stage, func: Callable[..., Any], *args: Any) -> Any:
        """Run a stage callable, turning its failure into a StageFailedError."""
        try:
            return func(*args)
        except ObserveDeployError as exc:
            error = exc
        except OSError as exc:
            error = TransientToolError(f"{exc.strerror or exc}: {exc.filename or ''}")
        except Exception as exc:  # noqa: BLE001
            error = ObserveDeployError(
                self._masked(f"Unexpected {type(exc).__name__}: {exc}")
            )
        error.stage = stage.value
        self.outcome.results.append(
            StageResult(stage=stage, status=StageStatus.failed, detail=str(error))
        )
        raise StageFailedError(stage, error)

    def _masked(self, text: str) -> str:
        variables = self.ctx.variables
        if variables is None:
            return text
        return mask_secrets(text, [variables.token.get_secret_value()])

    def step(self, stage: Stage, func: Callable[..., Any], *args: Any) -> StageResult:
        return self.record(self.call(stage, func, *args))

    def update(self, **changes: Any) -> None:
        self.ctx = self.ctx.model_copy(update=changes)

    def probe(self) -> None:
        facts = self.call(Stage.fact_probe, stages.probe_facts, self.host)
        self.record(
            StageResult(
                stage=Stage.fact_probe,
                status=StageStatus.unchanged,
                detail=f"{facts.os_family} {facts.os_version}",
            )
        )
        self.update(facts=facts)

    def select_sources(self) -> None:
        artifacts = self.call(
            Stage.preflight, stages.select_artifacts, self.config, self.ctx.facts
        )
        self.record(
            StageResult(
                stage=Stage.preflight,
                status=StageStatus.unchanged,
                detail=", ".join(str(artifact.source_path) for artifact in artifacts),
            )
        )
        self.update(artifacts=artifacts)

    def backup(self, backup: BackupOutcome) -> None:
        self.outcome.backup = backup
        detail = "; ".join(
            [str(record.backup_path) for record in backup.records] + backup.failures
        )
        if backup.status == BestEffortStatus.failed_non_fatal:
            detail = f"failed (non fatal): {detail}"
        self.record(
            StageResult(
                stage=Stage.backup,
                status=BACKUP_STATUSES[backup.status],
                detail=detail,
            )
        )
        self.update(backups=tuple(backup.records))

    def verify(self) -> None:
        verified, self.outcome.service_state = self.call(
            Stage.verify_service, stages.verify_service, self.config, self.host
        )
        self.record(verified)

    def fail(self, failure: StageFailedError) -> RunOutcome:
        outcome = self.outcome
        outcome.failed_stage = failure.stage
        outcome.error_type = type(failure.error).__name__
        outcome.error = str(failure.error)
        log.error(
            "%s failed at %s: %s", outcome.flow, failure.stage.value, failure.error
        )
        if failure.stage in ROLLBACK_STAGES:
            outcome.rollback_attempted = True
            outcome.rollback = restore_configuration(self.ctx, self.config)
            log.warning("Rollback finished: %s", outcome.rollback.state.value)
        return outcome


def run_install(  # noqa: PLR0913
    config: ObserveAgentConfig,
    host: TargetHost,
    vars_file: Path | None = None,
    variables: DeploymentVariables | None = None,
    clock: Callable[[], date] | None = None,
) -> RunOutcome:
    """Install, configure, start and pin the Observe agent on the host.

    :param vars_file: YAML file providing observe_token and observe_url.
    :param variables: Already loaded variables, used instead of vars_file.
    :param clock: Returns the date used to name backups.
    """
    run = DeploymentRun("install", config, host, clock)
    try:
        run.probe()
        loaded = run.call(
            Stage.variable_validation, stages.validate_variables, vars_file, variables
        )
        run.record(
            StageResult(stage=Stage.variable_validation, status=StageStatus.unchanged)
        )
        run.update(variables=loaded)
        run.select_sources()
        run.step(Stage.validate_configuration, stages.validate_configuration, run.ctx)

        run.step(Stage.repository, stages.ensure_repository, config, host)
        package = run.step(Stage.package, stages.ensure_package, config, host)
        run.update(package_changed=package.changed)
        run.step(Stage.directories, stages.provision_directories, config)

        # Backups are only taken when the package was installed or upgraded.
        if run.ctx.package_changed:
            run.backup(stages.backup_configuration(run.ctx, config))
        else:
            run.backup(BackupOutcome(status=BestEffortStatus.skipped))

        run.step(Stage.deploy_configuration, stages.deploy_configuration, run.ctx)
        run.step(
            Stage.initialize_agent, stages.initialize_agent, run.ctx, config, host
        )
        run.step(Stage.log_exclusions, stages.apply_log_exclusions, run.ctx, config)
        run.step(Stage.service, stages.ensure_service, config, host)
        run.verify()
        run.step(Stage.pin_version, stages.pin_package, config, host)
    except StageFailedError as failure:
        return run.fail(failure)
    log.info("Observe agent installation completed successfully")
    return run.outcome


def run_config_update(
    config: ObserveAgentConfig,
    host: TargetHost,
    clock: Callable[[], date] | None = None,
) -> RunOutcome:
    """Replace the configuration files of an installed agent and restart it."""
    run = DeploymentRun("update", config, host, clock)
    try:
        run.probe()
        run.select_sources()
        run.step(Stage.validate_configuration, stages.validate_configuration, run.ctx)
        run.step(Stage.directories, stages.provision_directories, config)
        run.step(Stage.stop_service, stages.stop_service, config, host)
        run.backup(stages.backup_configuration(run.ctx, config))
        run.step(Stage.deploy_configuration, stages.deploy_configuration, run.ctx)
        run.step(Stage.service, stages.ensure_service, config, host, True)
        run.verify()
    except StageFailedError as failure:
        return run.fail(failure)
    log.info("Observe agent configuration update completed successfully")
    return run.outcome
