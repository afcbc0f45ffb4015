"""Run metrics.

MetricsCollector is a Middleware: registered on an Agent it counts model
calls, tool calls and their latencies from hook events. Retries never reach
the hooks, so ``record_retry`` doubles as a RetryingModel ``before_retry``
callback. Cache hits and misses are read from an attached ResponseCache
when exporting.

    metrics = MetricsCollector()
    agent = build_agent(settings, registry, metrics=metrics)
    await agent.run_async("...")
    print(metrics.export_text())
"""

import logging
from dataclasses import dataclass
from typing import Optional

from stepwise.cache import ResponseCache
from stepwise.exceptions import ModelError, RetryCancelled, RetryError
from stepwise.hooks import (
    AfterModelCallEventData,
    AfterRunEventData,
    AfterToolCallEventData,
    Middleware,
)

logger = logging.getLogger(__name__)

METRIC_PREFIX = "stepwise"


@dataclass
class LatencySummary:
    """Count, total and range of observed durations in milliseconds."""

    count: int = 0
    total_ms: float = 0.0
    min_ms: Optional[float] = None
    max_ms: Optional[float] = None

    def observe(self, value_ms: float) -> None:
        self.count += 1
        self.total_ms += value_ms
        self.min_ms = value_ms if self.min_ms is None else min(self.min_ms, value_ms)
        self.max_ms = value_ms if self.max_ms is None else max(self.max_ms, value_ms)

    @property
    def mean_ms(self) -> float:
        return self.total_ms / self.count if self.count else 0.0

    def to_dict(self) -> dict:
        return {
            "count": self.count,
            "total_ms": round(self.total_ms, 3),
            "min_ms": None if self.min_ms is None else round(self.min_ms, 3),
            "max_ms": None if self.max_ms is None else round(self.max_ms, 3),
            "mean_ms": round(self.mean_ms, 3),
        }


def error_label(error: BaseException) -> str:
    """ModelError type, or the exception class name for anything else."""
    if isinstance(error, ModelError):
        return error.type
    return type(error).__name__


class MetricsCollector(Middleware):
    """Counters and latency summaries for model calls, tools and retries.

    Totals accumulate across runs until ``reset()``.

    Args:
        cache: ResponseCache whose hit and miss counts are exported.
    """

    def __init__(self, cache: Optional[ResponseCache] = None):
        self.cache = cache
        self.reset()

    def reset(self) -> None:
        self.runs = 0
        self.model_calls = 0
        self.model_failures = 0
        self.model_latency = LatencySummary()
        self.tool_calls = 0
        self.tool_failures = 0
        self.tool_latency: dict[str, LatencySummary] = {}
        self.retries = 0
        self.retry_wait_s = 0.0
        self.errors: dict[str, int] = {}

    # -- recording ---------------------------------------------------------

    def record_model_call(self, latency_ms: Optional[float], success: bool = True) -> None:
        self.model_calls += 1
        if latency_ms is not None:
            self.model_latency.observe(latency_ms)
        if not success:
            self.model_failures += 1

    def record_tool_call(self, tool_name: str, latency_ms: float, success: bool = True) -> None:
        self.tool_calls += 1
        self.tool_latency.setdefault(tool_name, LatencySummary()).observe(latency_ms)
        if not success:
            self.tool_failures += 1

    def record_retry(self, attempt: int, error: BaseException, delay: float) -> None:
        """Count one retry. Signature matches RetryingModel's ``before_retry``."""
        self.retries += 1
        self.retry_wait_s += delay
        self.record_error(error)

    def record_error(self, error: BaseException) -> None:
        label = error_label(error)
        self.errors[label] = self.errors.get(label, 0) + 1

    # -- hooks -------------------------------------------------------------

    async def after_model_call(self, event: AfterModelCallEventData) -> None:
        self.record_model_call(event.response_time_ms, success=True)

    async def after_tool_call(self, event: AfterToolCallEventData) -> None:
        self.record_tool_call(event.tool_name, event.execution_time_ms, event.result.success)

    async def after_run(self, event: AfterRunEventData) -> None:
        self.runs += 1
        error = event.execution.exception
        # A model call that failed for good never reaches after_model_call
        if isinstance(error, RetryError) and not isinstance(error, RetryCancelled):
            self.record_model_call(None, success=False)
            self.record_error(error.last_error)
        elif isinstance(error, ModelError):
            self.record_model_call(None, success=False)
            self.record_error(error)
        logger.debug(
            f"Metrics after run {self.runs}: {self.model_calls} model calls, "
            f"{self.tool_calls} tool calls, {self.retries} retries"
        )

    # -- export ------------------------------------------------------------

    def export(self) -> dict:
        """Every metric as a JSON-serialisable dict."""
        data = {
            "runs": self.runs,
            "model_calls": {
                "total": self.model_calls,
                "failed": self.model_failures,
                "latency_ms": self.model_latency.to_dict(),
            },
            "tool_calls": {
                "total": self.tool_calls,
                "failed": self.tool_failures,
                "by_tool": {name: s.to_dict() for name, s in sorted(self.tool_latency.items())},
            },
            "retries": {
                "total": self.retries,
                "wait_s": round(self.retry_wait_s, 3),
            },
            "errors": dict(sorted(self.errors.items())),
            "cache": None,
        }
        if self.cache is not None:
            stats = self.cache.stats()
            data["cache"] = {
                "hits": stats.hits,
                "misses": stats.misses,
                "evictions": stats.evictions,
                "size": stats.size,
                "hit_rate": round(stats.hit_rate, 4),
            }
        return data

    def export_text(self) -> str:
        """The same numbers in Prometheus text exposition format."""
        lines: list[str] = []

        def metric(name: str, kind: str, help_text: str, samples: list[tuple[str, float]]) -> None:
            full = f"{METRIC_PREFIX}_{name}"
            lines.append(f"# HELP {full} {help_text}")
            lines.append(f"# TYPE {full} {kind}")
            for labels, value in samples:
                lines.append(f"{full}{labels} {value:g}")

        metric("runs_total", "counter", "Completed agent runs", [("", self.runs)])
        metric("model_calls_total", "counter", "Model calls", [("", self.model_calls)])
        metric("model_call_failures_total", "counter", "Model calls that failed", [("", self.model_failures)])
        metric(
            "model_latency_ms",
            "summary",
            "Model call latency in milliseconds",
            [("_sum", self.model_latency.total_ms), ("_count", self.model_latency.count)],
        )
        metric(
            "tool_calls_total",
            "counter",
            "Tool calls by tool",
            [(f'{{tool="{name}"}}', s.count) for name, s in sorted(self.tool_latency.items())],
        )
        metric("tool_call_failures_total", "counter", "Tool calls that failed", [("", self.tool_failures)])
        metric("retries_total", "counter", "Model call retries", [("", self.retries)])
        metric(
            "errors_total",
            "counter",
            "Model errors by type",
            [(f'{{type="{label}"}}', count) for label, count in sorted(self.errors.items())],
        )
        if self.cache is not None:
            stats = self.cache.stats()
            metric("cache_hits_total", "counter", "Response cache hits", [("", stats.hits)])
            metric("cache_misses_total", "counter", "Response cache misses", [("", stats.misses)])
            metric("cache_hit_rate", "gauge", "Response cache hit rate", [("", stats.hit_rate)])
        return "\n".join(lines) + "\n"
