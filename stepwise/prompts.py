from typing import Iterable, Optional

from stepwise.registry import ToolRegistry

COMPLETION_KEYWORDS: tuple[str, ...] = (
    "task completed",
    "done",
    "finished",
    "complete",
    "success",
)

SYSTEM_PROMPT_HEADER = """You are a software engineering agent. You solve tasks by working in the
local environment through the tools below, not by describing what you would do.

Your capabilities include:
- Analysing and understanding code
- Editing and refactoring code
- Running shell commands
- Judging when a task is complete

Available tools:
"""

SYSTEM_PROMPT_FOOTER = """
Work in this order:
1. Analyse what the task requires
2. Carry it out with the appropriate tools
3. Verify the result
4. Report completion

Important:
- When asked to create a file, create it with a tool instead of printing its contents
- When asked to run a command, run it with a tool
- Never assume or guess the outcome of an action; check it
- When the task is finished, say so clearly (or call task_done if it is available)"""


def build_system_prompt(registry: ToolRegistry, extra: Optional[str] = None) -> str:
    """System prompt listing every registered tool with its description."""
    lines = [SYSTEM_PROMPT_HEADER]
    if len(registry) == 0:
        lines.append("- (no tools available)\n")
    for tool in registry:
        lines.append(f"- {tool.name}: {tool.description}\n")
    lines.append(SYSTEM_PROMPT_FOOTER)
    if extra:
        lines.append(f"\n\n{extra}")
    return "".join(lines)


def is_task_complete(text: Optional[str], keywords: Iterable[str] = COMPLETION_KEYWORDS) -> bool:
    """Case-insensitive substring match of ``text`` against ``keywords``."""
    if not text:
        return False
    lowered = text.lower()
    return any(keyword.lower() in lowered for keyword in keywords)
