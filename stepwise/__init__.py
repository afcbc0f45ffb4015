__version__ = "0.1.0"

from stepwise.adaptors.openai import OpenAIAdaptor

# Conditional imports for optional SDK-based adaptors
try:
    from stepwise.adaptors.anthropic import AnthropicAdaptor
except ImportError:
    pass

try:
    from stepwise.adaptors.ollama import OllamaAdaptor
except ImportError:
    pass

from stepwise.agent import Agent
from stepwise.cache import CacheConfig, CacheStats, CachingModel, ResponseCache, cache_key
from stepwise.config import Config, ModelSettings, load_config
from stepwise.exceptions import (
    AgentLoopError,
    ConfigurationError,
    ModelError,
    NonRetryableError,
    RetryCancelled,
    RetryError,
    RetryExhaustedError,
    RunCancelled,
    StepLimitError,
    ToolError,
    ToolExecutionError,
    ToolNotFound,
    ToolTimeoutError,
    ToolValidationError,
)
from stepwise.execution import (
    AgentState,
    Execution,
    ExecutionStep,
    Message,
    ToolCall,
    ToolResult,
)
from stepwise.hooks import (
    AfterModelCallEventData,
    AfterRunEventData,
    AfterStepEventData,
    AfterToolCallEventData,
    BeforeModelCallEventData,
    BeforeRunEventData,
    BeforeStepEventData,
    BeforeToolCallEventData,
    HookEvent,
    HookRegistry,
    Middleware,
    OnToolErrorEventData,
)
from stepwise.invoker import ToolInvoker
from stepwise.metrics import MetricsCollector
from stepwise.model import ModelAdaptor
from stepwise.registry import ToolRegistry
from stepwise.retry import RetryConfig, RetryingModel, is_retryable_error
from stepwise.tools import Tool, ToolInput
from stepwise.tracker import ExecutionTracker
from stepwise.trajectory import TrajectoryRecorder

__all__ = [
    # Core
    "Agent",
    "AgentState",
    "Execution",
    "ExecutionStep",
    "Message",
    "ModelAdaptor",
    "OpenAIAdaptor",
    "AnthropicAdaptor",
    "OllamaAdaptor",
    "Tool",
    "ToolCall",
    "ToolInput",
    "ToolInvoker",
    "ToolRegistry",
    "ToolResult",
    "ExecutionTracker",
    # Resilience
    "RetryConfig",
    "RetryingModel",
    "is_retryable_error",
    "CacheConfig",
    "CacheStats",
    "CachingModel",
    "ResponseCache",
    "cache_key",
    # Configuration and recording
    "Config",
    "ModelSettings",
    "load_config",
    "TrajectoryRecorder",
    "MetricsCollector",
    # Hooks
    "HookRegistry",
    "HookEvent",
    "Middleware",
    # Hook Event Data
    "BeforeRunEventData",
    "AfterRunEventData",
    "BeforeStepEventData",
    "AfterStepEventData",
    "BeforeModelCallEventData",
    "AfterModelCallEventData",
    "BeforeToolCallEventData",
    "AfterToolCallEventData",
    "OnToolErrorEventData",
    # Exceptions
    "AgentLoopError",
    "ConfigurationError",
    "ModelError",
    "RetryError",
    "RetryExhaustedError",
    "NonRetryableError",
    "RetryCancelled",
    "RunCancelled",
    "StepLimitError",
    "ToolError",
    "ToolExecutionError",
    "ToolNotFound",
    "ToolTimeoutError",
    "ToolValidationError",
]
