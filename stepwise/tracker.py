import time
from dataclasses import dataclass, field
from typing import Optional, Union


@dataclass(frozen=True)
class ToolExecutionStats:
    tool_name: str
    duration: float  # seconds
    success: bool
    error: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


class ExecutionTracker:
    """Per-tool latency and success record for one agent run."""

    def __init__(self):
        self._stats: list[ToolExecutionStats] = []

    def track(
        self,
        tool_name: str,
        started_at: float,
        success: bool,
        error: Union[str, BaseException, None] = None,
    ) -> ToolExecutionStats:
        """Record a finished tool call.

        ``started_at`` is a ``time.perf_counter()`` reading taken when the
        call began.
        """
        stat = ToolExecutionStats(
            tool_name=tool_name,
            duration=max(0.0, time.perf_counter() - started_at),
            success=success,
            error=str(error) if error is not None else None,
        )
        self._stats.append(stat)
        return stat

    @property
    def stats(self) -> list[ToolExecutionStats]:
        return list(self._stats)

    def success_rate(self) -> float:
        if not self._stats:
            return 0.0
        return sum(1 for s in self._stats if s.success) / len(self._stats)

    def average_duration(self) -> float:
        if not self._stats:
            return 0.0
        return sum(s.duration for s in self._stats) / len(self._stats)

    def __len__(self) -> int:
        return len(self._stats)
