"""Construction of model adaptors and agents from configuration."""

import logging
from typing import TYPE_CHECKING, Iterable, Optional

from stepwise.agent import Agent
from stepwise.cache import CachingModel, ResponseCache
from stepwise.config import CacheSettings, ModelSettings, RetrySettings
from stepwise.exceptions import ConfigurationError
from stepwise.model import ModelAdaptor
from stepwise.registry import ToolRegistry
from stepwise.retry import RetryCallback, RetryingModel
from stepwise.tools import Tool

if TYPE_CHECKING:
    from stepwise.hooks import Middleware
    from stepwise.metrics import MetricsCollector

logger = logging.getLogger(__name__)

# Providers speaking the OpenAI chat completions protocol
OPENAI_COMPATIBLE = frozenset({"openai", "doubao", "deepseek", "openrouter", "azure"})


def create_model(settings: ModelSettings) -> ModelAdaptor:
    """Instantiate the adaptor for ``settings.provider``.

    Raises:
        ConfigurationError: For unknown providers, missing credentials, or
            an adaptor whose SDK is not installed.
    """
    provider = settings.provider.lower()

    if provider in OPENAI_COMPATIBLE:
        from stepwise.adaptors.openai import OpenAIAdaptor

        return OpenAIAdaptor(
            api_key=settings.api_key,
            model=settings.model,
            base_url=settings.base_url,
            provider=provider,
        )

    if provider == "anthropic":
        try:
            from stepwise.adaptors.anthropic import AnthropicAdaptor
        except ImportError as e:
            raise ConfigurationError(
                "provider 'anthropic' requires the anthropic package"
            ) from e
        return AnthropicAdaptor(
            api_key=settings.api_key,
            model=settings.model,
            max_tokens=settings.max_tokens,
            base_url=settings.base_url,
        )

    if provider == "ollama":
        try:
            from stepwise.adaptors.ollama import OllamaAdaptor
        except ImportError as e:
            raise ConfigurationError("provider 'ollama' requires the ollama package") from e
        return OllamaAdaptor(model=settings.model, host=settings.base_url)

    raise ConfigurationError(f"unsupported model provider '{settings.provider}'")


def build_model(
    settings: ModelSettings,
    retry: Optional[RetrySettings] = None,
    cache: Optional[CacheSettings] = None,
    shared_cache: Optional[ResponseCache] = None,
    adaptor: Optional[ModelAdaptor] = None,
    before_retry: Optional[RetryCallback] = None,
) -> ModelAdaptor:
    """Adaptor wrapped as CachingModel(RetryingModel(adaptor)).

    Retries sit inside the cache so a hit never pays for them and a
    failure is never stored. The retry budget is ``retry.max_retries`` when
    set, otherwise ``settings.max_retries``.
    Caching is skipped when ``cache.enabled`` is false.
    """
    retry = retry or RetrySettings()
    cache = cache or CacheSettings()

    model = adaptor or create_model(settings)
    model = RetryingModel(
        model,
        config=retry.to_retry_config(default_max_retries=settings.max_retries),
        before_retry=before_retry,
        timeout=retry.timeout,
    )
    if cache.enabled:
        model = CachingModel(model, shared_cache or ResponseCache(cache.to_cache_config()))
    return model


def build_registry(
    names: Iterable[str],
    extra_tools: Iterable[Tool] = (),
    working_dir: Optional[str] = None,
) -> ToolRegistry:
    """Registry of the named built-in tools plus ``extra_tools``.

    Raises:
        ConfigurationError: If a name does not match a built-in tool.
    """
    from stepwise.builtin_tools import builtin_tools

    available = {tool.name: tool for tool in builtin_tools(working_dir)}
    registry = ToolRegistry()
    for name in names:
        tool = available.get(name)
        if tool is None:
            raise ConfigurationError(
                f"unknown tool '{name}'. Available tools: {sorted(available)}"
            )
        registry.register(tool)
    for tool in extra_tools:
        registry.register(tool)
    return registry


def build_agent(
    settings: ModelSettings,
    tools: ToolRegistry,
    max_steps: int = 20,
    retry: Optional[RetrySettings] = None,
    cache: Optional[CacheSettings] = None,
    middlewares: Optional[list["Middleware"]] = None,
    instructions: Optional[str] = None,
    adaptor: Optional[ModelAdaptor] = None,
    name: str = "stepwise",
    metrics: Optional["MetricsCollector"] = None,
) -> Agent:
    """Agent over ``build_model(...)``.

    ``metrics`` is registered as middleware, receives every retry through
    ``before_retry`` and reports the response cache unless it already has one.
    """
    model = build_model(
        settings,
        retry=retry,
        cache=cache,
        adaptor=adaptor,
        before_retry=metrics.record_retry if metrics is not None else None,
    )
    middlewares = list(middlewares or [])
    if metrics is not None:
        if metrics.cache is None and isinstance(model, CachingModel):
            metrics.cache = model.cache
        middlewares.append(metrics)

    logger.debug(f"Built {settings.provider}/{settings.model} agent with tools {tools.names()}")
    return Agent(
        model=model,
        tools=tools,
        max_steps=max_steps,
        name=name,
        middlewares=middlewares,
        settings=settings,
        instructions=instructions,
    )
