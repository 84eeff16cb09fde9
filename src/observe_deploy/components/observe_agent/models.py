from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import SettingsConfigDict

from observe_deploy.errors import FactProbeError, PreflightError
from observe_deploy.lib.block_helpers import DEFAULT_MARKER
from observe_deploy.lib.linux_helpers import (
    DEBIAN,
    DEFAULT_DIRECTORY_MODE,
    DEFAULT_FILE_MODE,
    linux_family,
)
from observe_deploy.lib.model_helpers import ObserveBaseSettings

FILES_DIRECTORY = Path(__file__).resolve().parent.joinpath("files")
VARS_PREFIX = "observe_"


class AgentFeature(str, Enum):
    self_monitoring = "self_monitoring"
    host_monitoring = "host_monitoring"
    host_monitoring_logs = "host_monitoring_logs"
    host_monitoring_metrics_host = "host_monitoring_metrics_host"
    host_monitoring_metrics_process = "host_monitoring_metrics_process"


class ConfigName(str, Enum):
    otel_collector = "otel-collector.yaml"
    logs = "logs.yaml"


def _all_features_enabled() -> dict[AgentFeature, bool]:
    return dict.fromkeys(AgentFeature, True)


class HostFacts(BaseModel):
    model_config = ConfigDict(frozen=True)

    os_family: str
    os_version: str
    distribution: str | None = None

    @classmethod
    def from_os_release(cls, release: dict[str, str]) -> "HostFacts":
        """Build host facts from the parsed contents of /etc/os-release.

        :raises FactProbeError: When the distribution or its version can not be
            determined.
        """
        version = release.get("VERSION_ID")
        if not version:
            msg = "Unable to determine the OS version from /etc/os-release"
            raise FactProbeError(msg)
        candidates = [release.get("ID", ""), *release.get("ID_LIKE", "").split()]
        for candidate in filter(None, candidates):
            try:
                family = linux_family(candidate)
            except KeyError:
                continue
            return cls(
                os_family=family, os_version=version, distribution=release.get("ID")
            )
        msg = f"Unsupported linux distribution: {release.get('ID') or 'unknown'}"
        raise FactProbeError(msg)


class VariantRule(BaseModel):
    """Select an OS specific configuration variant.

    A rule without an os_version matches every version of its family. Source files
    for a variant are named `<prefix><file name>`, the default variant has no prefix.
    """

    model_config = ConfigDict(frozen=True)

    os_family: str = DEBIAN
    os_version: str | None = None
    prefix: str = ""

    @property
    def variant(self) -> str:
        return self.prefix.rstrip("-") or "default"

    def matches(self, facts: HostFacts) -> bool:
        return self.os_family == facts.os_family and self.os_version in {
            None,
            facts.os_version,
        }


DEFAULT_VARIANT_RULES = (
    VariantRule(os_version="24.04", prefix="24.04-"),
    VariantRule(),
)


def select_variant(rules: list[VariantRule], facts: HostFacts) -> VariantRule:
    """Return the first rule that matches the host facts.

    :raises PreflightError: When no rule covers the host, e.g. a non Debian family.
    """
    for rule in rules:
        if rule.matches(facts):
            return rule
    msg = f"No configuration variant for {facts.os_family} {facts.os_version}"
    raise PreflightError(msg)


class ConfigArtifact(BaseModel):
    logical_name: ConfigName
    variant: str
    source_path: Path
    dest_path: Path
    owner: str | None
    group: str | None
    mode: str


class DeploymentVariables(ObserveBaseSettings):
    """Secrets and endpoint for the agent, read from a vars file or the environment."""

    model_config = SettingsConfigDict(env_prefix=VARS_PREFIX)

    token: SecretStr
    url: str
    feature_flags: dict[AgentFeature, bool] = Field(
        default_factory=_all_features_enabled
    )

    @field_validator("token")
    @classmethod
    def token_not_blank(cls, value: SecretStr) -> SecretStr:
        if not value.get_secret_value().strip():
            msg = "must not be empty"
            raise ValueError(msg)
        return value

    @field_validator("url")
    @classmethod
    def url_not_blank(cls, value: str) -> str:
        if not value.strip():
            msg = "must not be empty"
            raise ValueError(msg)
        return value.strip()

    @field_validator("feature_flags")
    @classmethod
    def merge_feature_defaults(
        cls, value: dict[AgentFeature, bool]
    ) -> dict[AgentFeature, bool]:
        return {**_all_features_enabled(), **value}


def read_vars_file(vars_file: Path) -> dict[str, Any]:
    """Read a YAML vars file and strip the `observe_` prefix from its keys."""
    try:
        data = yaml.safe_load(vars_file.read_text()) or {}
    except OSError as exc:
        msg = f"Unable to read vars file {vars_file}: {exc.strerror}"
        raise PreflightError(msg) from exc
    except yaml.YAMLError as exc:
        msg = f"Vars file {vars_file} is not valid YAML"
        raise PreflightError(msg) from exc
    if not isinstance(data, dict):
        msg = f"Vars file {vars_file} must contain a mapping"
        raise PreflightError(msg)
    return {
        key.removeprefix(VARS_PREFIX): value
        for key, value in data.items()
        if isinstance(key, str) and key.startswith(VARS_PREFIX)
    }


def load_deployment_variables(
    vars_file: Path | None = None, **overrides: Any
) -> DeploymentVariables:
    """Load and validate deployment variables.

    Values from the vars file and keyword overrides take precedence over
    OBSERVE_* environment variables.

    :raises PreflightError: Naming every required variable that is missing or empty.
    """
    values = read_vars_file(vars_file) if vars_file else {}
    values.update(overrides)
    known = {
        key: value
        for key, value in values.items()
        if key in DeploymentVariables.model_fields
    }
    try:
        return DeploymentVariables(**known)
    except PydanticValidationError as exc:
        invalid = sorted(
            {
                f"{VARS_PREFIX}{error['loc'][0]}"
                for error in exc.errors()
                if error["loc"]
            }
        )
        msg = (
            "Required variables are missing, empty or invalid: "
            f"{', '.join(invalid) or 'unknown'}"
        )
        raise PreflightError(msg) from None


class ObserveAgentConfig(ObserveBaseSettings):
    model_config = SettingsConfigDict(env_prefix=VARS_PREFIX)

    package_name: str = "observe-agent"
    service_name: str = "observe-agent"
    agent_binary: str = "observe-agent"
    repo_url: str = "https://repo.observeinc.com/apt/"
    repo_filename: str = "observeinc"
    sources_list_directory: Path = Path("/etc/apt/sources.list.d")
    configuration_directory: Path = Path("/etc/observe-agent")
    logs_subdirectory: Path = Path("connections/host_monitoring")
    agent_configuration_name: str = "observe-agent.yaml"
    source_directory: Path = FILES_DIRECTORY
    file_owner: str | None = "root"
    file_group: str | None = "root"
    file_mode: str = DEFAULT_FILE_MODE
    directory_mode: str = DEFAULT_DIRECTORY_MODE
    variant_rules: list[VariantRule] = list(DEFAULT_VARIANT_RULES)  # noqa: RUF012
    log_exclusion_patterns: list[str] = [  # noqa: RUF012
        r"/var/log/.*/.*\.log",
        "/var/log/syslog",
    ]
    log_exclusion_marker: str = f"{DEFAULT_MARKER} - LOG EXCLUSIONS"
    install_latest: bool = False
    daemon_reload: bool = True
    command_timeout: float = 300.0
    query_timeout: float = 30.0
    query_retries: int = 3
    retry_delay: float = 2.0

    @field_validator("variant_rules")
    @classmethod
    def default_rule_last(cls, rules: list[VariantRule]) -> list[VariantRule]:
        if not rules or rules[-1].os_version is not None:
            msg = "The last variant rule must be a default rule without an os_version"
            raise ValueError(msg)
        return rules

    @property
    def logs_configuration_directory(self) -> Path:
        return self.configuration_directory.joinpath(self.logs_subdirectory)

    @property
    def agent_configuration_file(self) -> Path:
        return self.configuration_directory.joinpath(self.agent_configuration_name)

    @property
    def sources_list_path(self) -> Path:
        return self.sources_list_directory.joinpath(f"{self.repo_filename}.list")

    @property
    def repo_line(self) -> str:
        return f"deb [trusted=yes] {self.repo_url} /"

    @property
    def tracked_files(self) -> dict[ConfigName, Path]:
        return {
            ConfigName.otel_collector: self.configuration_directory.joinpath(
                ConfigName.otel_collector.value
            ),
            ConfigName.logs: self.logs_configuration_directory.joinpath(
                ConfigName.logs.value
            ),
        }

    def artifacts(self, facts: HostFacts) -> list[ConfigArtifact]:
        """Choose exactly one source file per tracked configuration for the host."""
        rule = select_variant(self.variant_rules, facts)
        return [
            ConfigArtifact(
                logical_name=name,
                variant=rule.variant,
                source_path=self.source_directory.joinpath(
                    f"{rule.prefix}{name.value}"
                ),
                dest_path=dest,
                owner=self.file_owner,
                group=self.file_group,
                mode=self.file_mode,
            )
            for name, dest in self.tracked_files.items()
        ]

    def log_exclusion_block(self) -> str:
        patterns = "\n".join(
            f"  - pattern: '{pattern}'" for pattern in self.log_exclusion_patterns
        )
        return f"# Excluding specific log patterns\nlog_exclusions:\n{patterns}\n"


def init_config_command(
    config: ObserveAgentConfig, variables: DeploymentVariables
) -> list[str]:
    """Build the `observe-agent init-config` invocation.

    The returned list contains the plain text token, callers must mask it before the
    command is logged.
    """
    command = [
        config.agent_binary,
        "init-config",
        "--token",
        variables.token.get_secret_value(),
        "--observe_url",
        variables.url,
    ]
    for feature in AgentFeature:
        enabled = str(variables.feature_flags[feature]).lower()
        command.extend([f"--{feature.value}", f"enabled={enabled}"])
    return command
