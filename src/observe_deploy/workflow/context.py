"""Run state threaded through the deployment stages.

Stages never mutate shared state. Each one receives the current `RunContext` and
returns a `StageResult`; the runner derives the next context from that result with
`RunContext.model_copy`.
"""

from collections.abc import Callable
from datetime import date, datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from observe_deploy.components.observe_agent.models import (
    ConfigArtifact,
    DeploymentVariables,
    HostFacts,
)


class Stage(str, Enum):
    fact_probe = "fact_probe"
    variable_validation = "variable_validation"
    preflight = "preflight"
    repository = "repository"
    package = "package"
    directories = "directories"
    backup = "backup"
    stop_service = "stop_service"
    validate_configuration = "validate_configuration"
    deploy_configuration = "deploy_configuration"
    initialize_agent = "initialize_agent"
    log_exclusions = "log_exclusions"
    service = "service"
    verify_service = "verify_service"
    pin_version = "pin_version"


# A failure in any of these stages restores the configuration from backup.
ROLLBACK_STAGES = frozenset(
    {
        Stage.deploy_configuration,
        Stage.initialize_agent,
        Stage.log_exclusions,
        Stage.service,
        Stage.verify_service,
    }
)


class StageStatus(str, Enum):
    unchanged = "unchanged"
    changed = "changed"
    skipped = "skipped"
    failed = "failed"


class BestEffortStatus(str, Enum):
    success = "success"
    skipped = "skipped"
    failed_non_fatal = "failed_non_fatal"


class RollbackState(str, Enum):
    restored = "restored"
    restore_failed = "restore_failed"


class StageResult(BaseModel):
    stage: Stage
    status: StageStatus
    detail: str = ""

    @property
    def changed(self) -> bool:
        return self.status == StageStatus.changed

    @classmethod
    def from_changed(
        cls, stage: Stage, changed: bool, detail: str = ""  # noqa: FBT001
    ) -> "StageResult":
        status = StageStatus.changed if changed else StageStatus.unchanged
        return cls(stage=stage, status=status, detail=detail)


class BackupRecord(BaseModel):
    original_path: Path
    backup_path: Path
    created_at: datetime


class BackupOutcome(BaseModel):
    status: BestEffortStatus
    records: list[BackupRecord] = Field(default_factory=list)
    failures: list[str] = Field(default_factory=list)


class RestoreResult(BaseModel):
    original_path: Path
    backup_path: Path | None = None
    restored: bool
    error: str | None = None


class RollbackOutcome(BaseModel):
    state: RollbackState
    files: list[RestoreResult] = Field(default_factory=list)


class ServiceState(BaseModel):
    name: str
    enabled: bool
    active: bool


def _today() -> date:
    return datetime.now().astimezone().date()


class RunContext(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    facts: HostFacts | None = None
    variables: DeploymentVariables | None = None
    artifacts: tuple[ConfigArtifact, ...] = ()
    package_changed: bool = False
    backups: tuple[BackupRecord, ...] = ()
    clock: Callable[[], date] = _today

    @property
    def backup_date(self) -> date:
        return self.clock()


class RunOutcome(BaseModel):
    flow: str
    results: list[StageResult] = Field(default_factory=list)
    failed_stage: Stage | None = None
    error_type: str | None = None
    error: str | None = None
    backup: BackupOutcome | None = None
    rollback_attempted: bool = False
    rollback: RollbackOutcome | None = None
    service_state: ServiceState | None = None

    @property
    def succeeded(self) -> bool:
        return self.failed_stage is None and self.error is None

    @property
    def changed(self) -> bool:
        return any(result.changed for result in self.results)

    @property
    def rollback_state(self) -> RollbackState | None:
        return self.rollback.state if self.rollback else None

    def result_for(self, stage: Stage) -> StageResult | None:
        for result in self.results:
            if result.stage == stage:
                return result
        return None

    def summary(self) -> str:
        lines = [
            f"{result.stage.value}: {result.status.value}"
            + (f" ({result.detail})" if result.detail else "")
            for result in self.results
        ]
        if self.succeeded:
            state = self.service_state.active if self.service_state else None
            lines.append(
                f"Observe agent {self.flow} completed successfully."
                + (" Service status: active" if state else "")
            )
            return "\n".join(lines)
        failed = self.failed_stage.value if self.failed_stage else "unknown"
        lines.append(f"Observe agent {self.flow} failed at {failed}: {self.error_type}")
        lines.append(f"  {self.error}")
        if not self.rollback_attempted:
            lines.append("Rollback: not attempted")
        elif self.rollback_state == RollbackState.restored:
            lines.append("Rollback: succeeded, configuration restored from backup")
        else:
            lines.append("Rollback: incomplete, operator intervention required")
        return "\n".join(lines)
