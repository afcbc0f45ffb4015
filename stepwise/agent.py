import asyncio
import json
import logging
import time
from typing import TYPE_CHECKING, Iterable, Optional, Union

from stepwise.exceptions import AgentLoopError, RunCancelled, StepLimitError
from stepwise.execution import (
    AgentState,
    Execution,
    ExecutionStep,
    Message,
    ToolCall,
    ToolResult,
)
from stepwise.invoker import ToolInvoker
from stepwise.model import ModelAdaptor
from stepwise.prompts import COMPLETION_KEYWORDS, build_system_prompt, is_task_complete
from stepwise.registry import ToolRegistry
from stepwise.tools import Tool
from stepwise.tracker import ExecutionTracker

if TYPE_CHECKING:
    from stepwise.config import ModelSettings
    from stepwise.hooks import HookRegistry, Middleware


class Agent:
    """Step-bounded conversation loop between a model and a set of tools.

    Each step is one model call followed by every tool call that response
    asked for, in order. The run ends when the model or a tool signals
    completion, when ``max_steps`` model calls have been made, or on the
    first unrecoverable error. Tool failures are never fatal: they are fed
    back to the model as failed tool results.

    Args:
        model: The (possibly retrying/caching) model adaptor.
        tools: Tools as a list or a prepared ToolRegistry.
        max_steps: Maximum number of model calls per run.
        name: Display name, recorded in execution metadata.
        hooks: Registry to trigger observation events on.
        middlewares: Middleware instances registered on ``hooks``.
        settings: Model settings passed to every model call.
        invoker: ToolInvoker used for tool calls (default: ToolInvoker()).
        completion_keywords: Phrases that mark a response as final.
        instructions: Extra text appended to the system prompt.
        logger: Logger for run progress (default: this module's logger).
    """

    def __init__(
        self,
        model: ModelAdaptor,
        tools: Union[Iterable[Tool], ToolRegistry, None] = None,
        max_steps: int = 20,
        name: str = "Agent",
        hooks: Optional["HookRegistry"] = None,
        middlewares: Optional[list["Middleware"]] = None,
        settings: Optional["ModelSettings"] = None,
        invoker: Optional[ToolInvoker] = None,
        completion_keywords: Iterable[str] = COMPLETION_KEYWORDS,
        instructions: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ):
        if max_steps < 1:
            raise ValueError("max_steps must be >= 1")

        self.model = model
        self.registry = tools if isinstance(tools, ToolRegistry) else ToolRegistry(tools)
        self.max_steps = max_steps
        self.name = name
        self.settings = settings
        self.invoker = invoker or ToolInvoker()
        self.completion_keywords = tuple(completion_keywords)
        self.instructions = instructions
        self.logger = logger or logging.getLogger(__name__)
        self.tracker = ExecutionTracker()

        # ALWAYS use HookRegistry as the foundation
        # User can pass one, or we create an internal one
        if hooks is None:
            from stepwise.hooks import HookRegistry

            hooks = HookRegistry()
        self.hooks = hooks

        # Middleware is syntactic sugar over HookRegistry
        for middleware in middlewares or ():
            self.hooks.add_middleware(middleware)

    @property
    def tools(self) -> list[Tool]:
        return self.registry.tools()

    def hook(self, hook_name: str):
        """Decorator for registering hooks directly on agent.

        Usage:
            agent = Agent(model=model, tools=tools)

            @agent.hook('after_tool_call')
            async def log_tool(event):
                print(f"Tool: {event.tool_name}")
        """
        return self.hooks.on(hook_name)

    def run(
        self,
        input: str,
        messages: Optional[list[Message]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Execution:
        """Run agent synchronously."""
        return asyncio.run(self.run_async(input, messages, cancel_event))

    async def run_async(
        self,
        input: str,
        messages: Optional[list[Message]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Execution:
        """Run one task to a terminal state.

        ``messages`` is prior conversation history placed between the system
        prompt and the task. Setting ``cancel_event`` stops the run at the
        next step boundary, tool call or retry wait. Failures are reported through the
        returned Execution, not raised; only ``asyncio.CancelledError``
        propagates.
        """
        from stepwise.hooks import AfterRunEventData, BeforeRunEventData

        start_time = time.perf_counter()
        self.tracker = ExecutionTracker()

        execution = Execution(input=input)
        execution.metadata.update(
            {
                "agent": self.name,
                "max_steps": self.max_steps,
                "provider": self.model.provider,
                "model": self._model_name(),
            }
        )
        execution.messages.append(
            Message(role="system", content=build_system_prompt(self.registry, self.instructions))
        )
        if messages:
            execution.messages.extend(messages)
        execution.messages.append(Message(role="user", content=input))
        execution.state = AgentState.RUNNING

        await self.hooks.trigger(
            "before_run",
            BeforeRunEventData(agent=self, execution=execution, input=input),
        )

        try:
            await self._loop(execution, cancel_event)
        except asyncio.CancelledError:
            self._fail(execution, RunCancelled("Run was cancelled"))
            execution.duration = time.perf_counter() - start_time
            await self.hooks.trigger(
                "after_run",
                AfterRunEventData(execution=execution, total_time_ms=execution.duration * 1000),
            )
            raise
        except AgentLoopError as e:
            self._fail(execution, e)
        except Exception as e:
            # Adaptors are expected to raise ModelError; anything else is
            # still terminal for the run
            self.logger.exception(f"Unexpected error during run: {e}")
            self._fail(execution, e)

        execution.duration = time.perf_counter() - start_time
        self.logger.info(
            f"{self.name} finished in state {execution.state.value} after "
            f"{execution.iterations} steps ({execution.duration:.2f}s)"
        )

        await self.hooks.trigger(
            "after_run",
            AfterRunEventData(execution=execution, total_time_ms=execution.duration * 1000),
        )

        return execution

    async def _loop(self, execution: Execution, cancel_event: Optional[asyncio.Event]) -> None:
        from stepwise.hooks import (
            AfterModelCallEventData,
            AfterStepEventData,
            BeforeModelCallEventData,
            BeforeStepEventData,
        )

        while True:
            if execution.iterations >= self.max_steps:
                raise StepLimitError(
                    f"Step limit of {self.max_steps} reached without completing the task"
                )
            self._check_cancelled(cancel_event, f"before step {execution.iterations + 1}")

            step_start = time.perf_counter()
            step_number = execution.iterations + 1
            tools = self.registry.tools()

            await self.hooks.trigger(
                "before_step",
                BeforeStepEventData(execution=execution, step_number=step_number),
            )
            await self.hooks.trigger(
                "before_model_call",
                BeforeModelCallEventData(
                    execution=execution, messages=execution.messages, tools=tools
                ),
            )

            call_kwargs = {"cancel_event": cancel_event} if cancel_event is not None else {}
            model_start = time.perf_counter()
            response = await self.model.call(
                messages=execution.messages,
                tools=tools,
                settings=self.settings,
                **call_kwargs,
            )
            model_time = (time.perf_counter() - model_start) * 1000
            execution.iterations = step_number

            tool_calls = response.tool_calls or []
            self._check_tool_call_ids(tool_calls)

            assistant_msg = Message(
                role="assistant",
                content=response.content or "",
                tool_calls=list(tool_calls) or None,
                metadata=response.metadata,
            )
            execution.messages.append(assistant_msg)
            execution.steps.append(
                ExecutionStep(
                    step_number=step_number,
                    action="model_call",
                    input=f"{len(execution.messages) - 1} messages, {len(tools)} tools",
                    output=assistant_msg.content,
                )
            )

            await self.hooks.trigger(
                "after_model_call",
                AfterModelCallEventData(
                    execution=execution,
                    message=assistant_msg,
                    response_time_ms=model_time,
                ),
            )
            self._check_cancelled(cancel_event, f"after the model call of step {step_number}")

            if tool_calls:
                last_tool, last_result = await self._run_tools(
                    execution, tool_calls, step_number, cancel_event
                )
                if last_result.success and (
                    last_tool.terminal
                    or is_task_complete(last_result.output, self.completion_keywords)
                ):
                    execution.output = last_result.output
                    execution.state = AgentState.SUCCEEDED
            elif is_task_complete(assistant_msg.content, self.completion_keywords):
                execution.output = assistant_msg.content
                execution.state = AgentState.SUCCEEDED

            await self.hooks.trigger(
                "after_step",
                AfterStepEventData(
                    execution=execution,
                    step_number=step_number,
                    elapsed_time_ms=(time.perf_counter() - step_start) * 1000,
                ),
            )

            if execution.state == AgentState.SUCCEEDED:
                return

    async def _run_tools(
        self,
        execution: Execution,
        tool_calls: list[ToolCall],
        step_number: int,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> tuple[Tool, ToolResult]:
        """Execute one response's tool calls in order; return the last pair.

        A set ``cancel_event`` stops the loop before the next tool starts.
        """
        from stepwise.hooks import (
            AfterToolCallEventData,
            BeforeToolCallEventData,
            OnToolErrorEventData,
        )

        tool = None
        result = None
        for tool_call in tool_calls:
            self._check_cancelled(cancel_event, f"before tool '{tool_call.tool_name}'")
            tool = self._find_tool(tool_call.tool_name)

            await self.hooks.trigger(
                "before_tool_call",
                BeforeToolCallEventData(
                    execution=execution,
                    tool_call=tool_call,
                    tool_name=tool_call.tool_name,
                    arguments=tool_call.arguments,
                    tool_index=len(execution.tool_calls),
                    step_number=step_number,
                ),
            )

            started_at = time.perf_counter()
            result = await self.invoker.invoke(tool, tool_call)
            self.tracker.track(tool_call.tool_name, started_at, result.success, result.error)

            execution.tool_calls.append(tool_call)
            execution.tool_results.append(result)
            execution.messages.append(result.to_message())
            execution.steps.append(
                ExecutionStep(
                    step_number=step_number,
                    action="tool_execution",
                    input=f"{tool_call.tool_name}({json.dumps(tool_call.arguments, default=str)})",
                    output=result.output if result.success else (result.error or ""),
                    tool_call=tool_call,
                    tool_result=result,
                )
            )

            if not result.success:
                self.logger.info(f"Tool '{tool_call.tool_name}' failed ({result.code}): {result.error}")
                await self.hooks.trigger(
                    "on_tool_error",
                    OnToolErrorEventData(
                        execution=execution,
                        tool_call=tool_call,
                        tool_name=tool_call.tool_name,
                        error_message=result.error or "",
                        code=result.code,
                    ),
                )

            await self.hooks.trigger(
                "after_tool_call",
                AfterToolCallEventData(
                    execution=execution,
                    tool_call=tool_call,
                    tool_name=tool_call.tool_name,
                    result=result,
                    execution_time_ms=result.duration_ms,
                ),
            )

        return tool, result

    def _check_cancelled(self, cancel_event: Optional[asyncio.Event], where: str) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise RunCancelled(f"Run cancelled {where}")

    def _find_tool(self, name: str) -> Tool:
        return self.registry.get(name)

    def _check_tool_call_ids(self, tool_calls: list[ToolCall]) -> None:
        seen = set()
        for tool_call in tool_calls:
            if tool_call.id in seen:
                raise AgentLoopError(
                    f"Model returned duplicate tool call id '{tool_call.id}' in one response"
                )
            seen.add(tool_call.id)

    def _fail(self, execution: Execution, error: BaseException) -> None:
        if isinstance(error, StepLimitError):
            execution.state = AgentState.STEP_LIMIT_EXCEEDED
        else:
            execution.state = AgentState.FAILED
        execution.error = str(error)
        execution.exception = error
        self.logger.warning(f"{self.name} run ended with {type(error).__name__}: {error}")

    def _model_name(self) -> str:
        if self.settings is not None and getattr(self.settings, "model", None):
            return self.settings.model
        return self.model.model
