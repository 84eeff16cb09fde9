"""pyinfra deploy: stop the Observe agent, replace its configuration and restart it.

  pyinfra inventory.py src/observe_deploy/deployments/observe_agent/config_update.py \
      --limit <hostname_or_group>
"""

from observe_deploy.components.observe_agent.models import ObserveAgentConfig
from observe_deploy.components.observe_agent.steps import (
    update_observe_agent_configuration,
)

observe_config = ObserveAgentConfig()
update_observe_agent_configuration(observe_config)
