import logging
import time
from collections.abc import Callable, Sequence
from typing import Any

from pyinfra.api import FactBase

from observe_deploy.errors import TransientToolError
from observe_deploy.lib.command_helpers import CommandResult, run_command

log = logging.getLogger(__name__)

CommandRunner = Callable[..., CommandResult]

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}


class TargetHost:
    """The host a run executes against, reached through an external command runner.

    Mutating commands are executed exactly once. Fact queries are read only and are
    retried with a linear backoff before the failure is surfaced.
    """

    def __init__(  # noqa: PLR0913
        self,
        runner: CommandRunner = run_command,
        command_timeout: float = 300.0,
        query_timeout: float = 30.0,
        query_retries: int = 3,
        retry_delay: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.runner = runner
        self.command_timeout = command_timeout
        self.query_timeout = query_timeout
        self.query_retries = query_retries
        self.retry_delay = retry_delay
        self.sleep = sleep

    @classmethod
    def from_config(cls, config, runner: CommandRunner = run_command, **kwargs):
        return cls(
            runner=runner,
            command_timeout=config.command_timeout,
            query_timeout=config.query_timeout,
            query_retries=config.query_retries,
            retry_delay=config.retry_delay,
            **kwargs,
        )

    def run(
        self,
        args: Sequence[str],
        secrets: Sequence[str] = (),
        env: dict[str, str] | None = None,
        check: bool = True,  # noqa: FBT001, FBT002
    ) -> CommandResult:
        """Run a command once.

        :raises TransientToolError: When check is set and the command exits non-zero,
            or when it can not be executed or times out.
        """
        result = self.runner(
            args, timeout=self.command_timeout, secrets=secrets, env=env
        )
        if check and not result.ok:
            msg = (
                f"Command {' '.join(result.args)} exited with status"
                f" {result.returncode}: {result.stderr.strip()}"
            )
            raise TransientToolError(msg)
        return result

    def get_fact(self, fact_cls: type[FactBase], *args: Any) -> Any:
        """Evaluate a pyinfra fact on this host.

        The fact's shell command is executed and its output handed to the fact's
        `process` method, mirroring how pyinfra gathers facts on remote hosts.
        """
        fact = fact_cls()
        command = fact.command
        if callable(command):
            command = command(*args)
        attempts = max(self.query_retries, 0) + 1
        for attempt in range(1, attempts + 1):
            try:
                result = self.runner(
                    ["/bin/sh", "-c", str(command)], timeout=self.query_timeout
                )
                if not result.ok:
                    msg = (
                        f"Fact {fact_cls.__name__} failed with status"
                        f" {result.returncode}: {result.stderr.strip()}"
                    )
                    raise TransientToolError(msg)
            except TransientToolError:
                if attempt == attempts:
                    raise
                log.warning(
                    "Fact %s failed (attempt %s/%s), retrying",
                    fact_cls.__name__,
                    attempt,
                    attempts,
                )
                self.sleep(self.retry_delay * attempt)
                continue
            lines = result.lines
            return fact.process(lines) if lines else fact.default()
        return None
