import asyncio
import dataclasses
import logging
import time
from typing import Optional

from pydantic import ValidationError

from stepwise.exceptions import ToolError, ToolTimeoutError, ToolValidationError
from stepwise.execution import ToolCall, ToolResult
from stepwise.tools import Tool

logger = logging.getLogger(__name__)

DEFAULT_TOOL_TIMEOUT = 120.0


class ToolInvoker:
    """Runs a single tool call and turns every outcome into a ToolResult.

    Arguments are validated against the tool's input model before the tool
    runs; with ``strict=True`` (the default) values are not coerced, so
    ``"5"`` for an integer parameter is a 400, not a 5.

    Args:
        timeout: Seconds a tool may run before it is reported as timed out.
            None disables the limit.
        strict: Use Pydantic strict-mode validation.
    """

    def __init__(self, timeout: Optional[float] = DEFAULT_TOOL_TIMEOUT, strict: bool = True):
        self.timeout = timeout
        self.strict = strict

    async def invoke(self, tool: Tool, call: ToolCall) -> ToolResult:
        start = time.perf_counter()

        try:
            validated = tool.input_model.model_validate(call.arguments, strict=self.strict)
        except ValidationError as e:
            err = ToolValidationError(f"Invalid arguments for '{tool.name}': {e}")
            return self._failure(call, err, start)

        try:
            outcome = await asyncio.wait_for(
                tool.execute(**validated.model_dump()),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            err = ToolTimeoutError(f"Tool '{tool.name}' timed out after {self.timeout}s")
            return self._failure(call, err, start)
        except ToolError as e:
            return self._failure(call, e, start)
        except Exception as e:
            logger.warning(f"Tool '{tool.name}' raised {type(e).__name__}: {e}")
            return self._failure(call, ToolError(str(e) or type(e).__name__, code=500), start)

        duration_ms = (time.perf_counter() - start) * 1000
        if isinstance(outcome, ToolResult):
            return dataclasses.replace(
                outcome,
                call_id=call.id,
                tool_name=call.tool_name,
                duration_ms=duration_ms,
            )
        return ToolResult(
            call_id=call.id,
            tool_name=call.tool_name,
            success=True,
            output="" if outcome is None else str(outcome),
            duration_ms=duration_ms,
        )

    def _failure(self, call: ToolCall, error: ToolError, start: float) -> ToolResult:
        return ToolResult(
            call_id=call.id,
            tool_name=call.tool_name,
            success=False,
            error=error.message,
            code=error.code,
            duration_ms=(time.perf_counter() - start) * 1000,
        )
