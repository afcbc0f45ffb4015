"""Tools the CLI registers by name: bash, edit_file, sequential_thinking and task_done."""

import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field

from stepwise.exceptions import ToolExecutionError, ToolTimeoutError, ToolValidationError
from stepwise.execution import ToolResult
from stepwise.tools import Tool, ToolInput

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 120.0
MAX_OUTPUT_CHARS = 30_000


def _truncate(text: str, limit: int = MAX_OUTPUT_CHARS) -> str:
    if len(text) <= limit:
        return text
    return f"{text[:limit]}\n... [truncated {len(text) - limit} characters]"


async def _kill_process_group(process: asyncio.subprocess.Process) -> None:
    """Kill the shell and everything it started, then reap it."""
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    await process.wait()


# ── Bash ─────────────────────────────────────────────────────────────────────


class BashInput(ToolInput):
    command: str = Field(..., description="The bash command to execute")
    timeout: Optional[float] = Field(
        None,
        description=f"Timeout in seconds (default {int(DEFAULT_COMMAND_TIMEOUT)})",
        gt=0,
    )


class BashTool(Tool):
    """Runs a shell command in the working directory.

    Exit status is part of the output; a non-zero status is a failed
    ToolResult so the model sees both the output and the failure.
    """

    name = "bash"
    description = (
        "Execute a bash command in the working directory and return its "
        "combined stdout and stderr."
    )
    input_model = BashInput

    def __init__(self, working_dir: Optional[str] = None, timeout: float = DEFAULT_COMMAND_TIMEOUT):
        self.working_dir = working_dir
        self.timeout = timeout

    async def execute(self, command: str, timeout: Optional[float] = None) -> ToolResult:
        limit = timeout or self.timeout
        logger.debug(f"Running command in {self.working_dir or '.'}: {command}")
        process = await asyncio.create_subprocess_exec(
            "/bin/bash",
            "-c",
            command,
            cwd=self.working_dir,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )
        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=limit)
        except asyncio.TimeoutError:
            raise ToolTimeoutError(f"command timed out after {limit}s")
        finally:
            # Also reached when the caller cancels us (invoker timeout, task.cancel)
            if process.returncode is None:
                await _kill_process_group(process)

        output = _truncate(stdout.decode("utf-8", errors="replace"))
        if process.returncode != 0:
            return ToolResult(
                call_id="",
                tool_name=self.name,
                success=False,
                output=output,
                error=f"command exited with status {process.returncode}",
                code=500,
            )
        return ToolResult(call_id="", tool_name=self.name, success=True, output=output)


# ── File editing ─────────────────────────────────────────────────────────────


class EditFileInput(ToolInput):
    command: Literal["view", "create", "str_replace"] = Field(
        ..., description="Operation: view a file, create/overwrite it, or replace a unique string"
    )
    path: str = Field(..., description="File path, absolute or relative to the working directory")
    file_text: Optional[str] = Field(None, description="Full content for `create`")
    old_str: Optional[str] = Field(None, description="Exact text to replace for `str_replace`")
    new_str: Optional[str] = Field(None, description="Replacement text for `str_replace`")


class EditFileTool(Tool):
    name = "edit_file"
    description = (
        "View, create, or edit files. `view` shows a file with line numbers, "
        "`create` writes file_text to path, `str_replace` replaces one exact, "
        "unique occurrence of old_str with new_str."
    )
    input_model = EditFileInput

    def __init__(self, working_dir: Optional[str] = None):
        self.working_dir = working_dir

    async def execute(
        self,
        command: str,
        path: str,
        file_text: Optional[str] = None,
        old_str: Optional[str] = None,
        new_str: Optional[str] = None,
    ) -> str:
        target = self._resolve(path)
        if command == "view":
            return self._view(target)
        if command == "create":
            if file_text is None:
                raise ToolValidationError("`file_text` is required for create")
            return self._create(target, file_text)
        if old_str is None:
            raise ToolValidationError("`old_str` is required for str_replace")
        return self._replace(target, old_str, new_str or "")

    def _resolve(self, path: str) -> Path:
        candidate = Path(path).expanduser()
        if not candidate.is_absolute() and self.working_dir:
            candidate = Path(self.working_dir) / candidate
        return candidate

    def _view(self, target: Path) -> str:
        if target.is_dir():
            entries = sorted(p.name + ("/" if p.is_dir() else "") for p in target.iterdir())
            return "\n".join(entries)
        text = self._read(target)
        numbered = [f"{i:6}\t{line}" for i, line in enumerate(text.splitlines(), start=1)]
        return _truncate("\n".join(numbered))

    def _create(self, target: Path, file_text: str) -> str:
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(file_text, encoding="utf-8")
        except OSError as e:
            raise ToolExecutionError(f"cannot write {target}: {e}") from e
        return f"File created successfully at: {target}"

    def _replace(self, target: Path, old_str: str, new_str: str) -> str:
        text = self._read(target)
        count = text.count(old_str)
        if count == 0:
            raise ToolExecutionError(f"old_str not found in {target}")
        if count > 1:
            raise ToolExecutionError(
                f"old_str occurs {count} times in {target}; include more context to make it unique"
            )
        try:
            target.write_text(text.replace(old_str, new_str, 1), encoding="utf-8")
        except OSError as e:
            raise ToolExecutionError(f"cannot write {target}: {e}") from e
        return f"The file {target} has been edited."

    def _read(self, target: Path) -> str:
        if not target.exists():
            raise ToolExecutionError(f"{target} does not exist", code=404)
        try:
            return target.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ToolExecutionError(f"cannot read {target}: {e}") from e


# ── Structured thinking ──────────────────────────────────────────────────────


class SequentialThinkingInput(ToolInput):
    thought: str = Field(..., description="The reasoning for the current step")
    step_number: int = Field(..., description="Number of the current step, starting at 1", ge=1)
    total_steps: Optional[int] = Field(None, description="Expected number of steps, if known", ge=1)


class SequentialThinkingTool(Tool):
    """Records one step of the model's reasoning.

    The thought is logged, not echoed back: tool output is matched against
    completion keywords, and a thought such as "once this is done" must not
    end the run.
    """

    name = "sequential_thinking"
    description = (
        "Record one step of structured reasoning before acting. Use it to break "
        "a problem into numbered steps and keep track of where you are."
    )
    input_model = SequentialThinkingInput

    async def execute(self, thought: str, step_number: int, total_steps: Optional[int] = None) -> str:
        position = f"{step_number}/{total_steps}" if total_steps else str(step_number)
        logger.info(f"Thought {position}: {thought}")
        return f"Recorded thought {position}."


# ── Completion ───────────────────────────────────────────────────────────────


class TaskDoneInput(ToolInput):
    summary: str = Field(..., description="Summary of the work done and its result")
    success: bool = Field(True, description="Whether the task was completed successfully")
    output: Optional[str] = Field(None, description="Final output or result of the task")


class TaskDoneTool(Tool):
    """Signals completion. A successful call ends the run."""

    name = "task_done"
    description = (
        "Report that the task is finished, with a summary of the work and "
        "the final result. Call this once the task is complete."
    )
    input_model = TaskDoneInput
    terminal = True

    async def execute(self, summary: str, success: bool = True, output: Optional[str] = None) -> ToolResult:
        lines = [f"Task {'completed' if success else 'failed'}: {summary}"]
        if output:
            lines.append(output)
        text = "\n".join(lines)
        if not success:
            # A failed report is fed back to the model instead of ending the run
            return ToolResult(call_id="", tool_name=self.name, success=False, output=text, error=summary, code=500)
        return ToolResult(call_id="", tool_name=self.name, success=True, output=text)


def builtin_tools(working_dir: Optional[str] = None) -> list[Tool]:
    """Fresh instances of every built-in tool."""
    working_dir = working_dir or os.getcwd()
    return [
        BashTool(working_dir=working_dir),
        EditFileTool(working_dir=working_dir),
        SequentialThinkingTool(),
        TaskDoneTool(),
    ]
