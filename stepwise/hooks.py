"""Hook system for stepwise.

Lets collaborators (trajectory recording, console output, metrics) observe
an agent run without modifying core Agent code.
Follows Flask's before_request/after_request pattern.

Architecture:
- HookRegistry is the CORE implementation
- Decorator (@hooks.on, @agent.hook) and Middleware are convenience wrappers
- Everything goes through HookRegistry

Hooks are observers only: return values are ignored and exceptions are
logged, so a failing observer never changes how a run proceeds.
"""

import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)


class HookEvent(str, Enum):
    """Available hook points in agent execution."""

    BEFORE_RUN = "before_run"
    AFTER_RUN = "after_run"

    BEFORE_STEP = "before_step"
    AFTER_STEP = "after_step"

    BEFORE_MODEL_CALL = "before_model_call"
    AFTER_MODEL_CALL = "after_model_call"

    BEFORE_TOOL_CALL = "before_tool_call"
    AFTER_TOOL_CALL = "after_tool_call"
    ON_TOOL_ERROR = "on_tool_error"


# ============================================================================
# Hook Event Data Classes
# ============================================================================


@dataclass
class BeforeRunEventData:
    """Called once the conversation is seeded, before the first step."""

    agent: Any  # Agent instance
    execution: Any  # Execution instance
    input: str
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class AfterRunEventData:
    """Called after the run reached a terminal state."""

    execution: Any
    total_time_ms: float
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class BeforeStepEventData:
    """Called before each model call + tool round."""

    execution: Any
    step_number: int


@dataclass
class AfterStepEventData:
    """Called after each step that finished without an error."""

    execution: Any
    step_number: int
    elapsed_time_ms: float


@dataclass
class BeforeModelCallEventData:
    """Called before calling the model."""

    execution: Any
    messages: List[Any]  # List of Message objects
    tools: List[Any]  # List of Tool objects


@dataclass
class AfterModelCallEventData:
    """Called after the model returned an assistant message."""

    execution: Any
    message: Any  # Message object
    response_time_ms: float


@dataclass
class BeforeToolCallEventData:
    """Called before executing a tool."""

    execution: Any
    tool_call: Any  # ToolCall object
    tool_name: str
    arguments: Dict[str, Any]
    tool_index: int
    step_number: int


@dataclass
class AfterToolCallEventData:
    """Called after every tool execution, successful or not."""

    execution: Any
    tool_call: Any
    tool_name: str
    result: Any  # ToolResult object
    execution_time_ms: float


@dataclass
class OnToolErrorEventData:
    """Called when a tool execution produced a failed ToolResult."""

    execution: Any
    tool_call: Any
    tool_name: str
    error_message: str
    code: Optional[int]


# ============================================================================
# Hook Registry
# ============================================================================

_HOOK_NAMES = frozenset(event.value for event in HookEvent)

HookName = Union[HookEvent, str]
Handler = Callable[[Any], Awaitable[None]]


def _hook_key(hook_name: HookName) -> str:
    key = hook_name.value if isinstance(hook_name, HookEvent) else hook_name
    if key not in _HOOK_NAMES:
        raise ValueError(f"Invalid hook name '{key}'. Valid hooks: {sorted(_HOOK_NAMES)}")
    return key


class HookRegistry:
    """Ordered handlers per hook point.

    One registry may be shared by several agents; handlers receive the
    event's ``execution`` to tell runs apart.

    Usage:
        hooks = HookRegistry()

        @hooks.on(HookEvent.AFTER_TOOL_CALL)
        async def log_tool(event):
            print(f"{event.tool_name}: {event.result.success}")

        hooks.add_middleware(TrajectoryRecorder())
    """

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = {name: [] for name in _HOOK_NAMES}

    def on(self, hook_name: HookName):
        """Decorator form of ``register_handler``."""

        def decorator(func: Handler) -> Handler:
            self.register_handler(hook_name, func)
            return func

        return decorator

    def register_handler(self, hook_name: HookName, handler: Handler) -> None:
        """Append ``handler`` to a hook point. Raises ValueError for unknown names."""
        self._handlers[_hook_key(hook_name)].append(handler)

    def add_middleware(self, middleware: "Middleware") -> None:
        """Subscribe every hook method ``middleware`` overrides."""
        for name in _HOOK_NAMES:
            method = getattr(type(middleware), name, None)
            if method is None or method is getattr(Middleware, name, None):
                continue
            handler = getattr(middleware, name)
            if not inspect.iscoroutinefunction(handler):
                raise TypeError(f"{type(middleware).__name__}.{name} must be a coroutine function")
            self.register_handler(name, handler)

    async def trigger(self, hook_name: HookName, event_data: Any) -> None:
        key = _hook_key(hook_name)
        for handler in list(self._handlers[key]):
            try:
                await handler(event_data)
            except Exception as e:
                logger.warning(f"Hook '{key}' raised exception: {e}")

    def has_handlers(self, hook_name: HookName) -> bool:
        return bool(self._handlers[_hook_key(hook_name)])

    def clear(self) -> None:
        for handlers in self._handlers.values():
            handlers.clear()


# ============================================================================
# Middleware Base Class
# ============================================================================


class Middleware:
    """Stateful observer. Override the hook methods you need.

    Usage:
        class StepCounter(Middleware):
            def __init__(self):
                self.steps = 0

            async def after_step(self, event):
                self.steps += 1

        agent = Agent(model=model, tools=tools, middlewares=[StepCounter()])
    """

    async def before_run(self, event: BeforeRunEventData) -> None:
        pass

    async def after_run(self, event: AfterRunEventData) -> None:
        pass

    async def before_step(self, event: BeforeStepEventData) -> None:
        pass

    async def after_step(self, event: AfterStepEventData) -> None:
        pass

    async def before_model_call(self, event: BeforeModelCallEventData) -> None:
        pass

    async def after_model_call(self, event: AfterModelCallEventData) -> None:
        pass

    async def before_tool_call(self, event: BeforeToolCallEventData) -> None:
        pass

    async def after_tool_call(self, event: AfterToolCallEventData) -> None:
        pass

    async def on_tool_error(self, event: OnToolErrorEventData) -> None:
        pass
