"""Trajectory recording.

A trajectory is the persisted record of one run: every message, tool call
and tool result, plus free-form metadata, written as a single JSON file.

File layout:

    {
      "metadata": {"start_time", "end_time", "duration", "total_messages",
                   "total_tool_calls", "total_tool_results"},
      "messages": [...],
      "tool_calls": [...],
      "tool_results": [...],
      "custom_metadata": {...}
    }
"""

import json
import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Union

from stepwise.execution import Message, ToolCall, ToolResult
from stepwise.hooks import (
    AfterModelCallEventData,
    AfterRunEventData,
    AfterToolCallEventData,
    BeforeRunEventData,
    Middleware,
)

logger = logging.getLogger(__name__)

DEFAULT_TRAJECTORY_DIR = "trajectories"


def default_trajectory_path(now: Optional[datetime] = None) -> Path:
    stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    return Path(DEFAULT_TRAJECTORY_DIR) / f"trajectory_{stamp}.json"


def numbered_path(path: Union[str, Path], number: int) -> Path:
    """``path`` for the first file of a series, ``<stem>_<number><suffix>`` after that."""
    path = Path(path)
    if number <= 1:
        return path
    return path.with_name(f"{path.stem}_{number}{path.suffix}")


def unused_path(path: Union[str, Path]) -> Path:
    """First of ``path``, ``<stem>_2<suffix>``, ``<stem>_3<suffix>``... not on disk."""
    number = 1
    candidate = Path(path)
    while candidate.exists():
        number += 1
        candidate = numbered_path(path, number)
    return candidate


class TrajectoryRecorder(Middleware):
    """Records a run's conversation and tool activity from hook events.

    Register it as middleware on an Agent; each run starts a fresh
    trajectory, and with ``save_on_finish`` the file is written when the
    run ends. A failed save is logged and never affects the run.

    Args:
        path: Output file, rewritten by every run. Without it each run is
            saved to a new trajectories/trajectory_<timestamp>.json.
        save_on_finish: Write the file from the ``after_run`` hook.
    """

    def __init__(self, path: Union[str, Path, None] = None, save_on_finish: bool = True):
        self.fixed_path = path is not None
        self.path = Path(path) if path is not None else unused_path(default_trajectory_path())
        self.save_on_finish = save_on_finish
        self.messages: list[dict] = []
        self.tool_calls: list[dict] = []
        self.tool_results: list[dict] = []
        self.metadata: dict[str, Any] = {}
        self.start_time = datetime.now()
        self._started = time.perf_counter()

    # -- recording ---------------------------------------------------------

    def record_message(self, message: Union[Message, dict]) -> None:
        self.messages.append(message.to_dict() if isinstance(message, Message) else dict(message))

    def record_tool_call(self, tool_call: Union[ToolCall, dict]) -> None:
        self.tool_calls.append(
            tool_call.to_dict() if isinstance(tool_call, ToolCall) else dict(tool_call)
        )

    def record_tool_result(self, result: Union[ToolResult, dict]) -> None:
        self.tool_results.append(
            result.to_dict() if isinstance(result, ToolResult) else dict(result)
        )

    def add_metadata(self, key: str, value: Any) -> None:
        self.metadata[key] = value

    def get_metadata(self, key: str, default: Any = None) -> Any:
        return self.metadata.get(key, default)

    @property
    def duration(self) -> float:
        """Seconds since the trajectory started."""
        return time.perf_counter() - self._started

    def reset(self) -> None:
        """Start a new trajectory.

        An explicit path is kept; a default path that a previous run already
        wrote is replaced by a new one.
        """
        if not self.fixed_path and self.path.exists():
            self.path = unused_path(default_trajectory_path())
        self.messages = []
        self.tool_calls = []
        self.tool_results = []
        self.metadata = {}
        self.start_time = datetime.now()
        self._started = time.perf_counter()

    def summary(self) -> dict:
        return {
            "file_path": str(self.path),
            "message_count": len(self.messages),
            "tool_call_count": len(self.tool_calls),
            "tool_result_count": len(self.tool_results),
            "duration": round(self.duration, 3),
            "start_time": self.start_time.isoformat(timespec="seconds"),
        }

    def to_dict(self) -> dict:
        return {
            "metadata": {
                "start_time": self.start_time.isoformat(timespec="seconds"),
                "end_time": datetime.now().isoformat(timespec="seconds"),
                "duration": round(self.duration, 3),
                "total_messages": len(self.messages),
                "total_tool_calls": len(self.tool_calls),
                "total_tool_results": len(self.tool_results),
            },
            "messages": self.messages,
            "tool_calls": self.tool_calls,
            "tool_results": self.tool_results,
            "custom_metadata": self.metadata,
        }

    def save(self, path: Union[str, Path, None] = None) -> Path:
        """Write the trajectory as JSON, creating parent directories.

        Raises:
            OSError: If the file cannot be written.
        """
        target = Path(path) if path is not None else self.path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(
            json.dumps(self.to_dict(), indent=2, ensure_ascii=False, default=str),
            encoding="utf-8",
        )
        logger.debug(f"Trajectory saved to {target}")
        return target

    @classmethod
    def load(cls, path: Union[str, Path]) -> "TrajectoryRecorder":
        """Rebuild a recorder from a saved trajectory file."""
        path = Path(path)
        data = json.loads(path.read_text(encoding="utf-8"))

        recorder = cls(path=path, save_on_finish=False)
        recorder.messages = list(data.get("messages") or [])
        recorder.tool_calls = list(data.get("tool_calls") or [])
        recorder.tool_results = list(data.get("tool_results") or [])
        recorder.metadata = dict(data.get("custom_metadata") or {})
        start_time = (data.get("metadata") or {}).get("start_time")
        if start_time:
            recorder.start_time = datetime.fromisoformat(start_time)
        return recorder

    # -- hooks -------------------------------------------------------------

    async def before_run(self, event: BeforeRunEventData) -> None:
        self.reset()
        self.add_metadata("task", event.input)
        for key, value in event.execution.metadata.items():
            self.add_metadata(key, value)
        for message in event.execution.messages:
            self.record_message(message)

    async def after_model_call(self, event: AfterModelCallEventData) -> None:
        self.record_message(event.message)
        for tool_call in event.message.tool_calls or []:
            self.record_tool_call(tool_call)

    async def after_tool_call(self, event: AfterToolCallEventData) -> None:
        self.record_tool_result(event.result)
        self.record_message(event.result.to_message())

    async def after_run(self, event: AfterRunEventData) -> None:
        execution = event.execution
        self.add_metadata("state", execution.state.value)
        self.add_metadata("success", execution.success)
        self.add_metadata("steps", execution.iterations)
        if execution.error:
            self.add_metadata("error", execution.error)
        if execution.output:
            self.add_metadata("final_output", execution.output)

        if not self.save_on_finish:
            return
        try:
            self.save()
        except OSError as e:
            logger.error(f"Failed to save trajectory to {self.path}: {e}")
