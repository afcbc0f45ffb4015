import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Literal, Optional


class AgentState(str, Enum):
    """Lifecycle of one agent run. The last three are terminal."""

    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    STEP_LIMIT_EXCEEDED = "step_limit_exceeded"

    @property
    def is_terminal(self) -> bool:
        return self in (
            AgentState.SUCCEEDED,
            AgentState.FAILED,
            AgentState.STEP_LIMIT_EXCEEDED,
        )


@dataclass
class ToolCall:
    id: str
    tool_name: str
    arguments: dict
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        # timestamp is bookkeeping, not part of the request
        return {"id": self.id, "tool_name": self.tool_name, "arguments": self.arguments}


@dataclass
class Message:
    role: str  # "system" | "user" | "assistant" | "tool"
    content: str
    name: Optional[str] = None
    tool_call_id: Optional[str] = None
    tool_calls: Optional[list[ToolCall]] = None  # For assistant messages with tool calls
    metadata: Optional[dict] = None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.name:
            data["name"] = self.name
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            data["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.metadata:
            data["metadata"] = self.metadata
        return data


@dataclass(frozen=True)
class ToolResult:
    call_id: str
    tool_name: str
    success: bool
    output: str = ""
    error: Optional[str] = None
    code: Optional[int] = None
    duration_ms: float = 0.0

    def to_message(self) -> Message:
        """Tool-role message fed back to the model."""
        content = self.output
        if not self.success and self.error:
            content = f"{self.output}\nError: {self.error}" if self.output else f"Error: {self.error}"
        return Message(
            role="tool",
            content=content,
            name=self.tool_name,
            tool_call_id=self.call_id,
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ExecutionStep:
    step_number: int
    action: Literal["model_call", "tool_execution"]
    input: str = ""
    output: str = ""
    tool_call: Optional[ToolCall] = None
    tool_result: Optional[ToolResult] = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "step_number": self.step_number,
            "action": self.action,
            "input": self.input,
            "output": self.output,
            "tool_call": self.tool_call.to_dict() if self.tool_call else None,
            "tool_result": self.tool_result.to_dict() if self.tool_result else None,
            "timestamp": self.timestamp,
        }


@dataclass
class Execution:
    input: str
    output: str = ""
    state: AgentState = AgentState.IDLE
    error: Optional[str] = None
    exception: Optional[BaseException] = None
    messages: list[Message] = field(default_factory=list)
    steps: list[ExecutionStep] = field(default_factory=list)
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)
    iterations: int = 0
    duration: float = 0.0  # seconds
    metadata: dict = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.state == AgentState.SUCCEEDED

    @property
    def finished(self) -> bool:
        return self.state.is_terminal
