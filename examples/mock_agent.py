#!/usr/bin/env python3
"""Offline walkthrough of the stepwise loop with a scripted model.

No API key is needed. The scripted model writes a file with ``edit_file``,
checks it with ``bash`` and finishes with ``task_done``, while the console
reporter prints each step as it happens.

Run:
    python examples/mock_agent.py
"""

import sys
import tempfile

from stepwise import Agent, Message, ModelAdaptor, ToolCall
from stepwise.builtin_tools import builtin_tools
from stepwise.console import ConsoleReporter


class ScriptedModel(ModelAdaptor):
    """Plays back a fixed list of assistant messages, one per call."""

    provider = "scripted"
    model = "scripted-demo"

    def __init__(self):
        self.call_count = 0
        self.responses = [
            Message(
                role="assistant",
                content="I'll write the greeting file first.",
                tool_calls=[
                    ToolCall(
                        id="call-001",
                        tool_name="edit_file",
                        arguments={"command": "create", "path": "hello.txt", "file_text": "hello, world\n"},
                    )
                ],
            ),
            Message(
                role="assistant",
                content="Checking the file contents.",
                tool_calls=[ToolCall(id="call-002", tool_name="bash", arguments={"command": "cat hello.txt"})],
            ),
            Message(
                role="assistant",
                content="The file looks right.",
                tool_calls=[
                    ToolCall(
                        id="call-003",
                        tool_name="task_done",
                        arguments={"summary": "Wrote hello.txt", "output": "hello, world"},
                    )
                ],
            ),
        ]

    async def call(self, messages, tools, settings=None, **kwargs) -> Message:
        if self.call_count >= len(self.responses):
            return Message(role="assistant", content="(Scripted model ran out of responses)")
        response = self.responses[self.call_count]
        self.call_count += 1
        return response


def main() -> int:
    reporter = ConsoleReporter()
    with tempfile.TemporaryDirectory() as workdir:
        agent = Agent(
            model=ScriptedModel(),
            tools=builtin_tools(workdir),
            max_steps=10,
            middlewares=[reporter],
        )
        task = "Create hello.txt containing a greeting"
        reporter.print_task_details({"Task": task, "Working directory": workdir})
        execution = agent.run(task)

    reporter.print_execution(execution)
    return 0 if execution.success else 1


if __name__ == "__main__":
    sys.exit(main())
