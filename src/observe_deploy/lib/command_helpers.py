import logging
import os
import subprocess
from collections.abc import Iterable, Sequence

from pydantic import BaseModel

from observe_deploy.errors import CommandTimeoutError, TransientToolError

log = logging.getLogger(__name__)

MASK = "********"


class CommandResult(BaseModel):
    args: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def lines(self) -> list[str]:
        return self.stdout.splitlines()


def mask_secrets(text: str, secrets: Iterable[str]) -> str:
    """Replace every occurrence of the given secret values in text with a mask.

    :param text: The text to scrub, e.g. a command line or captured output.
    :type text: str

    :param secrets: Secret values that must never reach a log sink. Empty values are
        ignored.
    :type secrets: Iterable[str]

    :returns: The text with all secret values replaced.

    :rtype: str
    """
    for secret in secrets:
        if secret:
            text = text.replace(secret, MASK)
    return text


def run_command(
    args: Sequence[str],
    timeout: float,
    secrets: Sequence[str] = (),
    env: dict[str, str] | None = None,
) -> CommandResult:
    """Run an external command and capture its output.

    The returned result, the debug log line and any raised error only ever contain
    the masked form of the arguments and output.

    :raises CommandTimeoutError: When the command runs longer than `timeout` seconds.
    :raises TransientToolError: When the executable cannot be found or started.
    """
    display = mask_secrets(" ".join(args), secrets)
    log.debug("Running command: %s", display)
    try:
        completed = subprocess.run(  # noqa: S603
            list(args),
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
            env={**os.environ, **env} if env else None,
        )
    except subprocess.TimeoutExpired as exc:
        msg = f"Command timed out after {timeout}s: {display}"
        raise CommandTimeoutError(msg) from exc
    except OSError as exc:
        msg = f"Unable to execute {display}: {exc.strerror}"
        raise TransientToolError(msg) from exc
    return CommandResult(
        args=[mask_secrets(arg, secrets) for arg in args],
        returncode=completed.returncode,
        stdout=mask_secrets(completed.stdout or "", secrets),
        stderr=mask_secrets(completed.stderr or "", secrets),
    )
