"""Human-readable run output with rich."""

from typing import Any, Optional

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from stepwise.execution import AgentState, Execution
from stepwise.hooks import (
    AfterModelCallEventData,
    AfterToolCallEventData,
    BeforeStepEventData,
    Middleware,
)

MAX_PREVIEW_CHARS = 300

_STATE_STYLES = {
    AgentState.SUCCEEDED: "green",
    AgentState.FAILED: "red",
    AgentState.STEP_LIMIT_EXCEEDED: "yellow",
}


def _preview(text: str, limit: int = MAX_PREVIEW_CHARS) -> str:
    text = text.strip()
    if len(text) <= limit:
        return escape(text)
    return escape(text[:limit]) + "…"


class ConsoleReporter(Middleware):
    """Prints step and tool progress as a run proceeds."""

    def __init__(self, console: Optional[Console] = None, show_progress: bool = True):
        self.console = console or Console()
        self.show_progress = show_progress

    def print_task_details(self, details: dict[str, Any]) -> None:
        table = Table(show_header=False, box=None, padding=(0, 1))
        table.add_column(style="cyan", no_wrap=True)
        table.add_column()
        for key, value in details.items():
            table.add_row(str(key), escape(str(value)))
        self.console.print(Panel(table, title="[bold]Task Details[/bold]", border_style="cyan"))

    def print_execution(self, execution: Execution) -> None:
        """Final report: outcome, output or error, duration and step count."""
        style = _STATE_STYLES.get(execution.state, "white")
        status = "Success" if execution.success else "Failure"

        table = Table(show_header=False, box=None, padding=(0, 1))
        table.add_column(style="cyan", no_wrap=True)
        table.add_column()
        table.add_row("Status", f"[{style}]{status} ({execution.state.value})[/{style}]")
        table.add_row("Steps", str(execution.iterations))
        table.add_row("Tool calls", str(len(execution.tool_calls)))
        table.add_row("Duration", f"{execution.duration:.2f}s")
        if execution.error:
            table.add_row("Error", f"[red]{escape(execution.error)}[/red]")
        if execution.output:
            table.add_row("Output", escape(execution.output))

        self.console.print(Panel(table, title="[bold]Execution Result[/bold]", border_style=style))

    def print_metrics(self, metrics: dict[str, Any]) -> None:
        """Summary of a MetricsCollector export."""
        model = metrics["model_calls"]
        tools = metrics["tool_calls"]
        retries = metrics["retries"]

        table = Table(show_header=False, box=None, padding=(0, 1))
        table.add_column(style="cyan", no_wrap=True)
        table.add_column()
        table.add_row(
            "Model calls",
            f"{model['total']} ({model['failed']} failed), mean {model['latency_ms']['mean_ms']:.0f}ms",
        )
        table.add_row("Tool calls", f"{tools['total']} ({tools['failed']} failed)")
        table.add_row("Retries", f"{retries['total']} (waited {retries['wait_s']:.1f}s)")
        if metrics["errors"]:
            errors = ", ".join(f"{label}: {count}" for label, count in metrics["errors"].items())
            table.add_row("Errors", escape(errors))
        cache = metrics.get("cache")
        if cache is not None:
            table.add_row(
                "Cache",
                f"{cache['hits']} hits, {cache['misses']} misses ({cache['hit_rate']:.0%} hit rate)",
            )
        self.console.print(Panel(table, title="[bold]Metrics[/bold]", border_style="dim"))

    async def before_step(self, event: BeforeStepEventData) -> None:
        if self.show_progress:
            self.console.print(f"[dim]── step {event.step_number} ──[/dim]")

    async def after_model_call(self, event: AfterModelCallEventData) -> None:
        if not self.show_progress:
            return
        if event.message.content:
            self.console.print(f"[bold blue]model[/bold blue] {_preview(event.message.content)}")
        for tool_call in event.message.tool_calls or []:
            self.console.print(f"[magenta]→ {tool_call.tool_name}[/magenta] {escape(str(tool_call.arguments))}")

    async def after_tool_call(self, event: AfterToolCallEventData) -> None:
        if not self.show_progress:
            return
        result = event.result
        if result.success:
            self.console.print(
                f"[green]✓ {event.tool_name}[/green] "
                f"[dim]({event.execution_time_ms:.0f}ms)[/dim] {_preview(result.output)}"
            )
        else:
            self.console.print(
                f"[red]✗ {event.tool_name} ({result.code})[/red] {_preview(result.error or '')}"
            )
