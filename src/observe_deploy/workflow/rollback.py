import logging
from pathlib import Path

from observe_deploy.components.observe_agent.models import ObserveAgentConfig
from observe_deploy.errors import RestoreError, TransientToolError
from observe_deploy.lib.file_helpers import atomic_write
from observe_deploy.workflow.context import (
    RestoreResult,
    RollbackOutcome,
    RollbackState,
    RunContext,
)

log = logging.getLogger(__name__)


def _most_recent_backup(ctx: RunContext, path: Path) -> Path | None:
    records = [record for record in ctx.backups if record.original_path == path]
    if not records:
        return None
    return max(records, key=lambda record: record.created_at).backup_path


def _restore_file(ctx: RunContext, config: ObserveAgentConfig, path: Path) -> Path:
    backup = _most_recent_backup(ctx, path)
    if backup is None:
        msg = f"No backup of {path} was taken during this run"
        raise RestoreError(msg)
    try:
        atomic_write(
            path,
            backup.read_bytes(),
            owner=config.file_owner,
            group=config.file_group,
            mode=config.file_mode,
        )
    except OSError as exc:
        msg = f"Unable to restore {path} from {backup}: {exc.strerror or exc}"
        raise RestoreError(msg) from exc
    except TransientToolError as exc:
        msg = f"Unable to restore {path} from {backup}: {exc}"
        raise RestoreError(msg) from exc
    return backup


def restore_configuration(
    ctx: RunContext, config: ObserveAgentConfig
) -> RollbackOutcome:
    """Put every tracked configuration file back to its most recent backup.

    Restoration is best effort: failures are logged and reported through the
    returned outcome, never raised. The service is not restarted.
    """
    results = []
    for path in config.tracked_files.values():
        try:
            backup = _restore_file(ctx, config, path)
        except RestoreError as exc:
            log.error("Rollback of %s failed: %s", path, exc)  # noqa: TRY400
            results.append(
                RestoreResult(original_path=path, restored=False, error=str(exc))
            )
            continue
        log.info("Restored %s from backup", path)
        results.append(
            RestoreResult(
                original_path=path,
                backup_path=backup,
                restored=True,
            )
        )
    state = (
        RollbackState.restored
        if all(result.restored for result in results)
        else RollbackState.restore_failed
    )
    return RollbackOutcome(state=state, files=results)
