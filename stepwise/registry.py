from typing import Iterable, Iterator, Optional

from stepwise.exceptions import ToolNotFound
from stepwise.tools import Tool


class ToolRegistry:
    """Name -> Tool map used by the agent to resolve model tool calls.

    Registering a name twice replaces the earlier tool (last write wins)
    and keeps its position in ``export_schemas()``.

    The registry is not guarded for concurrent mutation: populate it before
    handing it to an Agent and treat it as read-only while a run is active.
    """

    def __init__(self, tools: Optional[Iterable[Tool]] = None):
        self._tools: dict[str, Tool] = {}
        for tool in tools or ():
            self.register(tool)

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def lookup(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def get(self, name: str) -> Tool:
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFound(f"Tool '{name}' not found")
        return tool

    def names(self) -> list[str]:
        return list(self._tools)

    def tools(self) -> list[Tool]:
        return list(self._tools.values())

    def export_schemas(self) -> list[dict]:
        """Schemas for inclusion in model prompts, in registration order."""
        return [tool.export_schema() for tool in self._tools.values()]

    def filter(self, names: Iterable[str]) -> "ToolRegistry":
        """New registry holding only the named tools, in registration order."""
        wanted = set(names)
        return ToolRegistry(t for n, t in self._tools.items() if n in wanted)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def __iter__(self) -> Iterator[Tool]:
        return iter(list(self._tools.values()))
