"""pyinfra deploy: install and configure the Observe agent across an inventory.

  pyinfra inventory.py src/observe_deploy/deployments/observe_agent/install.py \
      --limit <hostname_or_group>

The token and url are read from the `observe_token` / `observe_url` host data, the
vars file named by `observe_vars_file` (or OBSERVE_VARS_FILE) or the OBSERVE_TOKEN
and OBSERVE_URL environment variables, in that order of precedence.
"""

import os
from pathlib import Path

from pyinfra import host

from observe_deploy.components.observe_agent.models import (
    ObserveAgentConfig,
    load_deployment_variables,
)
from observe_deploy.components.observe_agent.steps import (
    install_and_configure_observe_agent,
)

vars_file = host.data.get("observe_vars_file") or os.environ.get("OBSERVE_VARS_FILE")
host_overrides = {
    key: host.data.get(f"observe_{key}")
    for key in ("token", "url", "feature_flags")
    if host.data.get(f"observe_{key}") is not None
}
observe_variables = load_deployment_variables(
    Path(vars_file) if vars_file else None, **host_overrides
)
observe_config = ObserveAgentConfig()
install_and_configure_observe_agent(observe_config, observe_variables)
