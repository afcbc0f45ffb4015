"""stepwise command-line interface."""

import asyncio
import logging
import os
import sys
from contextlib import AsyncExitStack
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.syntax import Syntax

from stepwise import __version__
from stepwise.agent import Agent
from stepwise.cache import CachingModel
from stepwise.config import (
    DEFAULT_AGENT,
    KEYLESS_PROVIDERS,
    AgentSettings,
    Config,
    ModelEntry,
    ModelSettings,
    default_config_path,
    load_config,
    mask_secret,
)
from stepwise.console import ConsoleReporter
from stepwise.exceptions import ConfigurationError
from stepwise.execution import Execution, Message
from stepwise.factory import build_agent, build_registry
from stepwise.metrics import MetricsCollector
from stepwise.trajectory import TrajectoryRecorder, numbered_path

console = Console()

INTERACTIVE_HELP = """[bold]Commands[/bold]
  help         Show this help
  status       Show model, working directory and last run
  metrics      Show model, tool, retry and cache metrics for this session
  clear        Forget the conversation so far
  exit, quit   Leave interactive mode
Anything else is run as a task."""


@dataclass
class CLIOptions:
    config_file: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    model_base_url: Optional[str] = None
    api_key: Optional[str] = None
    max_steps: Optional[int] = None
    working_dir: Optional[str] = None
    trajectory_file: Optional[str] = None
    no_cache: bool = False


@dataclass
class Session:
    """Everything resolved from config and flags before a run."""

    config: Config
    agent_settings: AgentSettings
    model_settings: ModelSettings
    working_dir: str
    max_steps: int


def resolve_session(opts: CLIOptions) -> Session:
    """Load config and apply command-line overrides.

    Without a config file, ``--provider`` and ``--model`` are enough to run.

    Raises:
        ConfigurationError: If the config is missing, invalid, or has no
            credentials for the selected provider.
    """
    path = Path(opts.config_file) if opts.config_file else default_config_path()
    if path.exists():
        config = load_config(path)
        config.check(require_credentials=not opts.api_key)
    elif opts.provider and opts.model:
        config = Config(
            agents={DEFAULT_AGENT: AgentSettings(model=DEFAULT_AGENT)},
            models={DEFAULT_AGENT: ModelEntry(model=opts.model, model_provider=opts.provider)},
        )
    else:
        raise ConfigurationError(
            f"config file '{path}' not found; create it or pass --provider and --model"
        )

    agent_settings = config.agent_settings(DEFAULT_AGENT)
    model_settings = config.resolve_model(
        DEFAULT_AGENT,
        provider=opts.provider,
        model=opts.model,
        base_url=opts.model_base_url,
        api_key=opts.api_key,
    )
    if not model_settings.api_key and model_settings.provider not in KEYLESS_PROVIDERS:
        raise ConfigurationError(
            f"no API key for provider '{model_settings.provider}'; set it in the config, "
            f"export {model_settings.provider.upper()}_API_KEY or pass --api-key"
        )

    working_dir = str(Path(opts.working_dir or os.getcwd()).resolve())
    if not Path(working_dir).is_dir():
        raise ConfigurationError(f"working directory '{working_dir}' does not exist")

    max_steps = opts.max_steps or agent_settings.max_steps
    if max_steps < 1:
        raise ConfigurationError("--max-steps must be >= 1")

    return Session(
        config=config,
        agent_settings=agent_settings,
        model_settings=model_settings,
        working_dir=working_dir,
        max_steps=max_steps,
    )


async def open_agent(
    stack: AsyncExitStack,
    session: Session,
    opts: CLIOptions,
    reporter: ConsoleReporter,
    metrics: Optional[MetricsCollector] = None,
) -> tuple[Agent, TrajectoryRecorder]:
    """Build the agent; MCP connections and the cache close with ``stack``."""
    mcp_tools = []
    if session.config.allow_mcp_servers:
        from stepwise.mcp import connect_servers

        mcp_tools = await connect_servers(
            stack, session.config.mcp_servers, session.config.allow_mcp_servers
        )

    registry = build_registry(session.agent_settings.tools, mcp_tools, session.working_dir)
    cache_settings = session.config.cache
    if opts.no_cache:
        cache_settings = cache_settings.model_copy(update={"enabled": False})

    recorder = TrajectoryRecorder(opts.trajectory_file)
    agent = build_agent(
        session.model_settings,
        registry,
        max_steps=session.max_steps,
        retry=session.config.retry,
        cache=cache_settings,
        middlewares=[reporter, recorder],
        instructions=_instructions(session),
        metrics=metrics,
    )
    if isinstance(agent.model, CachingModel):
        stack.callback(agent.model.cache.close)
    return agent, recorder


def _instructions(session: Session) -> str:
    lines = [f"The working directory is {session.working_dir}."]
    if session.agent_settings.instructions:
        lines.append(session.agent_settings.instructions)
    return "\n".join(lines)


def _task_details(session: Session, task: str, agent: Agent, recorder: TrajectoryRecorder) -> dict:
    return {
        "Task": task,
        "Provider": session.model_settings.provider,
        "Model": session.model_settings.model,
        "Base URL": session.model_settings.base_url or "(default)",
        "Max steps": session.max_steps,
        "Working dir": session.working_dir,
        "Tools": ", ".join(agent.registry.names()) or "(none)",
        "Trajectory": recorder.path,
    }


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/red] {escape(message)}")
    sys.exit(1)


# ── Commands ─────────────────────────────────────────────────────────────────


@click.group()
@click.option("--config-file", "-c", type=click.Path(dir_okay=False), help="Config file (default: stepwise.yaml or $STEPWISE_CONFIG_FILE)")
@click.option("--provider", "-p", help="Model provider (openai, anthropic, ollama, doubao, ...)")
@click.option("--model", "-m", help="Model name")
@click.option("--model-base-url", help="Base URL of the model API")
@click.option("--api-key", "-k", help="API key for the provider")
@click.option("--max-steps", type=int, help="Maximum number of agent steps")
@click.option("--working-dir", "-w", type=click.Path(file_okay=False), help="Directory the tools operate in")
@click.option("--trajectory-file", "-t", type=click.Path(dir_okay=False), help="Where to save the run trajectory")
@click.option("--no-cache", is_flag=True, help="Disable the model response cache")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.version_option(__version__, prog_name="stepwise")
@click.pass_context
def cli(
    ctx: click.Context,
    config_file: Optional[str],
    provider: Optional[str],
    model: Optional[str],
    model_base_url: Optional[str],
    api_key: Optional[str],
    max_steps: Optional[int],
    working_dir: Optional[str],
    trajectory_file: Optional[str],
    no_cache: bool,
    verbose: bool,
) -> None:
    """stepwise - an autonomous agent for software engineering tasks."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = CLIOptions(
        config_file=config_file,
        provider=provider,
        model=model,
        model_base_url=model_base_url,
        api_key=api_key,
        max_steps=max_steps,
        working_dir=working_dir,
        trajectory_file=trajectory_file,
        no_cache=no_cache,
    )


@cli.command()
@click.argument("task", required=False)
@click.option("--file", "-f", "task_file", type=click.Path(exists=True, dir_okay=False), help="Read the task from a file")
@click.pass_obj
def run(opts: CLIOptions, task: Optional[str], task_file: Optional[str]) -> None:
    """Run a single TASK and exit (status 1 on failure).

    Examples:

        stepwise run "Create hello.py that prints hello world"

        stepwise -p anthropic -m claude-sonnet-4-5-20250929 run --file task.md
    """
    if task_file:
        task = Path(task_file).read_text(encoding="utf-8")
    if not task or not task.strip():
        _fail("no task given; pass TASK or --file")

    try:
        session = resolve_session(opts)
    except ConfigurationError as e:
        _fail(str(e))

    reporter = ConsoleReporter(console)
    metrics = MetricsCollector()

    async def _run() -> Execution:
        async with AsyncExitStack() as stack:
            agent, recorder = await open_agent(stack, session, opts, reporter, metrics)
            reporter.print_task_details(_task_details(session, task, agent, recorder))
            return await agent.run_async(task)

    try:
        execution = asyncio.run(_run())
    except ConfigurationError as e:
        _fail(str(e))

    reporter.print_execution(execution)
    reporter.print_metrics(metrics.export())
    if not execution.success:
        sys.exit(1)


@cli.command("show-config")
@click.pass_obj
def show_config(opts: CLIOptions) -> None:
    """Show the resolved configuration."""
    path = Path(opts.config_file) if opts.config_file else default_config_path()
    try:
        session = resolve_session(opts)
    except ConfigurationError as e:
        _fail(str(e))

    settings = session.model_settings
    console.print(Panel("[bold]stepwise configuration[/bold]", border_style="cyan"))
    console.print(f"\n[dim]Config file:[/dim] {path if path.exists() else '(none)'}")

    console.print("\n[cyan]Model[/cyan]")
    console.print(f"  Provider: {settings.provider}")
    console.print(f"  Model: {settings.model}")
    console.print(f"  Base URL: {settings.base_url or '(default)'}")
    console.print(f"  API key: {mask_secret(settings.api_key) or '(not set)'}")
    console.print(f"  Max tokens: {settings.max_tokens}")
    console.print(f"  Temperature: {settings.temperature}")
    console.print(f"  Top p: {settings.top_p}")
    console.print(f"  Top k: {settings.top_k}")
    console.print(f"  Max retries: {settings.max_retries}")
    console.print(f"  Tool calling: {settings.supports_tool_calling}")

    console.print("\n[cyan]Agent[/cyan]")
    console.print(f"  Max steps: {session.max_steps}")
    console.print(f"  Tools: {', '.join(session.agent_settings.tools)}")
    console.print(f"  Working dir: {session.working_dir}")

    console.print("\n[cyan]Cache[/cyan]")
    cache = session.config.cache
    console.print(f"  Enabled: {cache.enabled and not opts.no_cache}")
    console.print(f"  Max size: {cache.max_size}")
    console.print(f"  TTL: {cache.ttl}s")

    if session.config.mcp_servers:
        console.print("\n[cyan]MCP servers[/cyan]")
        for name in session.config.mcp_servers:
            allowed = "allowed" if name in session.config.allow_mcp_servers else "not allowed"
            console.print(f"  {name} ({allowed})")

    console.print("\n[dim]Full file (API keys masked):[/dim]")
    console.print(Syntax(session.config.to_yaml(), "yaml", theme="ansi_dark"))


@cli.command()
@click.pass_obj
def interactive(opts: CLIOptions) -> None:
    """Run tasks one after another in a shared conversation."""
    try:
        session = resolve_session(opts)
    except ConfigurationError as e:
        _fail(str(e))

    reporter = ConsoleReporter(console)
    metrics = MetricsCollector()

    async def _loop() -> None:
        async with AsyncExitStack() as stack:
            agent, recorder = await open_agent(stack, session, opts, reporter, metrics)
            history: list[Message] = []
            last: Optional[Execution] = None
            tasks_run = 0

            console.print(
                Panel(
                    f"[bold]stepwise interactive[/bold] - {escape(session.model_settings.provider)}/"
                    f"{escape(session.model_settings.model)}\nType 'help' for commands.",
                    border_style="cyan",
                )
            )

            while True:
                try:
                    line = click.prompt("stepwise", prompt_suffix="> ", default="", show_default=False)
                except (click.Abort, EOFError):
                    break

                command = line.strip()
                if not command:
                    continue
                if command.lower() in ("exit", "quit"):
                    break
                if command.lower() == "help":
                    console.print(INTERACTIVE_HELP)
                    continue
                if command.lower() == "clear":
                    history = []
                    console.print("[dim]Conversation cleared.[/dim]")
                    continue
                if command.lower() == "status":
                    _print_status(agent, session, history, last)
                    continue
                if command.lower() == "metrics":
                    reporter.print_metrics(metrics.export())
                    continue

                tasks_run += 1
                if opts.trajectory_file:
                    # One file per task; without -t the recorder picks a new default path itself
                    recorder.path = numbered_path(opts.trajectory_file, tasks_run)
                last = await agent.run_async(command, messages=history)
                reporter.print_execution(last)
                history = [m for m in last.messages if m.role != "system"]

            console.print("[dim]Goodbye.[/dim]")

    try:
        asyncio.run(_loop())
    except ConfigurationError as e:
        _fail(str(e))


def _print_status(agent: Agent, session: Session, history: list[Message], last: Optional[Execution]) -> None:
    console.print(f"  Model: {session.model_settings.provider}/{session.model_settings.model}")
    console.print(f"  Working dir: {session.working_dir}")
    console.print(f"  Tools: {', '.join(agent.registry.names())}")
    console.print(f"  History: {len(history)} messages")
    if last is not None:
        console.print(
            f"  Last run: {last.state.value}, {last.iterations} steps, "
            f"{last.duration:.2f}s, tool success rate {agent.tracker.success_rate():.0%}"
        )
    if isinstance(agent.model, CachingModel):
        stats = agent.model.cache.stats()
        console.print(f"  Cache: {stats.size} entries, hit rate {stats.hit_rate:.0%}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
