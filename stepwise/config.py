"""Configuration loading for stepwise.

Settings live in a YAML file (``stepwise.yaml`` by default, or the path in
``STEPWISE_CONFIG_FILE``) and are validated with Pydantic. Provider
credentials resolve with the priority:

    command line > environment (<PROVIDER>_API_KEY, <PROVIDER>_BASE_URL) > file

Every problem surfaces as ConfigurationError before a run starts.
"""

import logging
import os
from pathlib import Path
from typing import Any, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from stepwise.cache import CacheConfig
from stepwise.exceptions import ConfigurationError
from stepwise.retry import DEFAULT_CALL_TIMEOUT, RetryConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "stepwise.yaml"
CONFIG_FILE_ENV = "STEPWISE_CONFIG_FILE"
DEFAULT_AGENT = "stepwise"
DEFAULT_TOOLS = ["bash", "edit_file", "sequential_thinking", "task_done"]

# Providers that run locally and need no API key
KEYLESS_PROVIDERS = frozenset({"ollama"})


class ModelProvider(BaseModel):
    provider: str
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    api_version: Optional[str] = None


class ModelEntry(BaseModel):
    """One entry under ``models:`` in the config file."""

    model_config = ConfigDict(protected_namespaces=())

    model: str = ""
    model_provider: str = ""
    max_tokens: int = Field(4096, ge=1)
    temperature: float = Field(0.5, ge=0.0, le=2.0)
    top_p: float = Field(1.0, ge=0.0, le=1.0)
    top_k: int = Field(0, ge=0)
    parallel_tool_calls: bool = False
    max_retries: int = Field(3, ge=0)
    supports_tool_calling: bool = True
    stop_sequences: list[str] = Field(default_factory=list)


class ModelSettings(BaseModel):
    """Resolved, read-only settings handed to model adaptors."""

    model_config = ConfigDict(frozen=True)

    model: str
    provider: str
    max_tokens: int = 4096
    temperature: float = 0.5
    top_p: float = 1.0
    top_k: int = 0
    parallel_tool_calls: bool = False
    max_retries: int = 3
    supports_tool_calling: bool = True
    stop_sequences: tuple[str, ...] = ()
    api_key: Optional[str] = Field(default=None, repr=False)
    base_url: Optional[str] = None
    api_version: Optional[str] = None


class AgentSettings(BaseModel):
    model: str = ""
    max_steps: int = Field(20, ge=1)
    tools: list[str] = Field(default_factory=lambda: list(DEFAULT_TOOLS))
    instructions: Optional[str] = None


class RetrySettings(BaseModel):
    # None defers to the model's own max_retries
    max_retries: Optional[int] = Field(None, ge=0)
    base_delay: float = Field(1.0, ge=0.0)
    max_delay: float = Field(30.0, ge=0.0)
    backoff_multiplier: float = Field(2.0, ge=1.0)
    jitter: float = Field(0.1, ge=0.0, lt=1.0)
    timeout: Optional[float] = Field(DEFAULT_CALL_TIMEOUT, gt=0.0)

    def to_retry_config(self, default_max_retries: int = 3) -> RetryConfig:
        """RetryConfig from these settings; an explicit ``max_retries`` wins."""
        return RetryConfig(
            max_retries=default_max_retries if self.max_retries is None else self.max_retries,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            backoff_multiplier=self.backoff_multiplier,
            jitter=self.jitter,
        )


class CacheSettings(BaseModel):
    enabled: bool = True
    max_size: int = Field(1000, ge=1)
    ttl: float = Field(3600.0, gt=0.0)
    cleanup_interval: float = Field(600.0, ge=0.0)
    enable_stats: bool = True

    def to_cache_config(self) -> CacheConfig:
        return CacheConfig(
            max_size=self.max_size,
            ttl=self.ttl,
            cleanup_interval=self.cleanup_interval,
            enable_stats=self.enable_stats,
        )


class MCPServerConfig(BaseModel):
    """An MCP server, launched over stdio (``command``) or reached by ``url``."""

    command: Optional[str] = None
    args: list[str] = Field(default_factory=list)
    env: Optional[dict[str, str]] = None
    url: Optional[str] = None


class Config(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    agents: dict[str, AgentSettings] = Field(default_factory=dict)
    model_providers: dict[str, ModelProvider] = Field(default_factory=dict)
    models: dict[str, ModelEntry] = Field(default_factory=dict)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    mcp_servers: dict[str, MCPServerConfig] = Field(default_factory=dict)
    allow_mcp_servers: list[str] = Field(default_factory=list)

    def check(self, require_credentials: bool = True) -> None:
        """Cross-reference validation.

        With ``require_credentials=False`` missing API keys are tolerated,
        for when the key comes from the command line.

        Raises:
            ConfigurationError: On the first missing or dangling reference,
                or a model whose provider has no API key anywhere.
        """
        if not self.agents:
            raise ConfigurationError("at least one agent must be configured")
        if not self.model_providers:
            raise ConfigurationError("at least one model provider must be configured")
        if not self.models:
            raise ConfigurationError("at least one model must be configured")

        for agent_name, agent in self.agents.items():
            if not agent.model:
                raise ConfigurationError(f"agent '{agent_name}' must specify a model")
            if agent.model not in self.models:
                raise ConfigurationError(
                    f"agent '{agent_name}' references undefined model '{agent.model}'"
                )

        for model_name, entry in self.models.items():
            if not entry.model:
                raise ConfigurationError(f"model '{model_name}' must specify a model name")
            if not entry.model_provider:
                raise ConfigurationError(f"model '{model_name}' must specify a provider")
            provider = self.model_providers.get(entry.model_provider)
            if provider is None:
                raise ConfigurationError(
                    f"model '{model_name}' references undefined provider '{entry.model_provider}'"
                )
            if not require_credentials or provider.api_key:
                continue
            if provider.provider.lower() in KEYLESS_PROVIDERS:
                continue
            env_var = _env_name(provider.provider, "API_KEY")
            if not os.environ.get(env_var):
                raise ConfigurationError(
                    f"model '{model_name}' has no API key configured and no "
                    f"environment variable '{env_var}' found"
                )

        for server in self.allow_mcp_servers:
            if server not in self.mcp_servers:
                raise ConfigurationError(f"allowed MCP server '{server}' is not configured")

    def agent_settings(self, name: str = DEFAULT_AGENT) -> AgentSettings:
        agent = self.agents.get(name)
        if agent is None:
            raise ConfigurationError(f"agent configuration '{name}' not found")
        return agent

    def model_entry(self, name: str) -> ModelEntry:
        entry = self.models.get(name)
        if entry is None:
            raise ConfigurationError(f"model configuration '{name}' not found")
        return entry

    def model_provider(self, name: str) -> ModelProvider:
        provider = self.model_providers.get(name)
        if provider is None:
            raise ConfigurationError(f"model provider '{name}' not found")
        return provider

    def model_settings(self, name: str) -> ModelSettings:
        """Settings for a named model entry, with environment overrides."""
        entry = self.model_entry(name)
        return self._resolve(entry)

    def resolve_model(
        self,
        agent_name: str = DEFAULT_AGENT,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
    ) -> ModelSettings:
        """Settings for an agent's model, applying command-line overrides.

        ``provider`` may name an entry in ``model_providers`` or, when no
        such entry exists, a provider type to create on the fly.
        """
        agent = self.agent_settings(agent_name)
        entry = self.models.get(agent.model) or ModelEntry()
        overrides: dict[str, Any] = {}
        if model:
            overrides["model"] = model
        if provider:
            overrides["model_provider"] = provider
        if overrides:
            entry = entry.model_copy(update=overrides)
        return self._resolve(entry, base_url=base_url, api_key=api_key)

    def _resolve(
        self,
        entry: ModelEntry,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
    ) -> ModelSettings:
        if not entry.model:
            raise ConfigurationError("no model name configured")
        if not entry.model_provider:
            raise ConfigurationError(f"model '{entry.model}' has no provider")

        provider = self.model_providers.get(entry.model_provider)
        if provider is None:
            provider = ModelProvider(provider=entry.model_provider)

        return ModelSettings(
            model=entry.model,
            provider=provider.provider.lower(),
            max_tokens=entry.max_tokens,
            temperature=entry.temperature,
            top_p=entry.top_p,
            top_k=entry.top_k,
            parallel_tool_calls=entry.parallel_tool_calls,
            max_retries=entry.max_retries,
            supports_tool_calling=entry.supports_tool_calling,
            stop_sequences=tuple(entry.stop_sequences),
            api_key=resolve_value(api_key, provider.api_key, _env_name(provider.provider, "API_KEY")),
            base_url=resolve_value(base_url, provider.base_url, _env_name(provider.provider, "BASE_URL")),
            api_version=provider.api_version,
        )

    def to_yaml(self) -> str:
        """YAML rendering with API keys masked."""
        data = self.model_dump(exclude_none=True)
        for provider in data.get("model_providers", {}).values():
            if provider.get("api_key"):
                provider["api_key"] = mask_secret(provider["api_key"])
        return yaml.safe_dump(data, sort_keys=False)


def resolve_value(cli_value: Optional[str], file_value: Optional[str], env_var: str) -> Optional[str]:
    """Pick a setting by priority: command line, environment, file."""
    if cli_value:
        return cli_value
    env_value = os.environ.get(env_var)
    if env_value:
        return env_value
    return file_value


def mask_secret(value: Optional[str]) -> str:
    if not value:
        return ""
    if len(value) <= 8:
        return "****"
    return f"{value[:4]}...{value[-4:]}"


def default_config_path() -> Path:
    return Path(os.environ.get(CONFIG_FILE_ENV) or DEFAULT_CONFIG_FILE)


def load_config(path: Union[str, Path, None] = None) -> Config:
    """Read and parse a YAML config file.

    Only structure and field types are checked here; call ``Config.check()``
    for cross-references and credentials.
    """
    path = Path(path) if path is not None else default_config_path()
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"failed to read config file '{path}': {e}") from e

    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"failed to parse config file '{path}': {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"config file '{path}' must contain a mapping")

    try:
        config = Config.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"invalid config file '{path}': {e}") from e

    logger.debug(f"Loaded config from {path}")
    return config


def save_config(config: Config, path: Union[str, Path]) -> None:
    """Write a config back to YAML, API keys included."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        yaml.safe_dump(config.model_dump(exclude_none=True), sort_keys=False),
        encoding="utf-8",
    )


def _env_name(provider: str, suffix: str) -> str:
    return f"{provider.upper()}_{suffix}"
