"""Failure taxonomy for Observe agent deployments.

Each error carries the name of the stage that raised it so that a run outcome can
report where it stopped. Preflight and content validation errors are raised before
the host is mutated; the remaining errors can happen mid-run.
"""


class ObserveDeployError(Exception):
    """Base class for every deployment failure."""

    def __init__(self, message: str, stage: str | None = None):
        super().__init__(message)
        self.stage = stage


class PreflightError(ObserveDeployError):
    """A required variable or source file is missing. Nothing has been changed."""


class FactProbeError(PreflightError):
    """The host facts could not be determined."""


class TransientToolError(ObserveDeployError):
    """A package or service manager call failed or could not be executed."""


class CommandTimeoutError(TransientToolError):
    """An external command did not finish within its timeout."""


class ContentValidationError(ObserveDeployError):
    """A configuration file did not parse as YAML. The destination is untouched."""


class InitializationError(ObserveDeployError):
    """The agent's init-config command exited with a non-zero status."""


class ServiceVerificationError(ObserveDeployError):
    """The service did not report an active state after being started."""


class BackupError(ObserveDeployError):
    """A configuration file could not be copied aside. Never fatal."""


class RestoreError(ObserveDeployError):
    """A configuration file could not be restored from its backup. Never fatal."""
