"""Install or reconfigure the Observe agent on the local host.

Usage:
  observe-deploy install --vars-file observe_vars.yaml [--files-dir DIR] [--verbose]
  observe-deploy update [--files-dir DIR] [--verbose]

The vars file must define `observe_token` and `observe_url`; both can also be
provided with the OBSERVE_TOKEN and OBSERVE_URL environment variables. Every path
and default of `ObserveAgentConfig` can be overridden with an OBSERVE_ prefixed
environment variable.

Exit status is 0 on success, 1 when the run failed and 2 when it was rejected
before any change was made.
"""

import argparse
import logging
import sys
from pathlib import Path

from pydantic import ValidationError

from observe_deploy.components.observe_agent.models import ObserveAgentConfig
from observe_deploy.workflow.context import Stage
from observe_deploy.workflow.host import TargetHost
from observe_deploy.workflow.runner import run_config_update, run_install

PREFLIGHT_STAGES = frozenset(
    {Stage.fact_probe, Stage.variable_validation, Stage.preflight}
)
EXIT_FAILED = 1
EXIT_PREFLIGHT = 2

log = logging.getLogger(__name__)


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="observe-deploy",
        description="Install and configure the Observe agent on this host.",
    )
    flows = parser.add_subparsers(dest="flow", required=True)
    install = flows.add_parser(
        "install", help="Install, configure, start and pin the Observe agent."
    )
    install.add_argument(
        "--vars-file",
        type=Path,
        help="YAML file defining observe_token and observe_url.",
    )
    update = flows.add_parser(
        "update", help="Replace the agent configuration files and restart it."
    )
    for flow in (install, update):
        flow.add_argument(
            "--files-dir",
            type=Path,
            help="Directory holding the otel-collector.yaml and logs.yaml variants.",
        )
        flow.add_argument("--verbose", "-v", action="store_true")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )
    overrides = {"source_directory": args.files_dir} if args.files_dir else {}
    try:
        config = ObserveAgentConfig(**overrides)
    except ValidationError as exc:
        log.error("Invalid configuration: %s", exc)  # noqa: TRY400
        return EXIT_PREFLIGHT
    host = TargetHost.from_config(config)
    if args.flow == "install":
        outcome = run_install(config, host, vars_file=args.vars_file)
    else:
        outcome = run_config_update(config, host)
    print(outcome.summary())  # noqa: T201
    if outcome.succeeded:
        return 0
    return EXIT_PREFLIGHT if outcome.failed_stage in PREFLIGHT_STAGES else EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
