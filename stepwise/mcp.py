"""MCP (Model Context Protocol) integration for stepwise.

Wraps MCP server tools as native stepwise Tool instances so configured
servers contribute tools to the same registry as the built-in ones.

Requires: pip install stepwise[mcp]
"""

import asyncio
import json
import logging
from contextlib import AsyncExitStack
from typing import TYPE_CHECKING, Any, Iterable, Literal, Optional, Union

from pydantic import BaseModel, Field, create_model

from stepwise.exceptions import ConfigurationError, ToolExecutionError, ToolTimeoutError
from stepwise.tools import Tool

from mcp import ClientSession
from mcp.client.stdio import StdioServerParameters, stdio_client
from mcp.client.streamable_http import streamablehttp_client

if TYPE_CHECKING:
    from stepwise.config import MCPServerConfig

logger = logging.getLogger(__name__)

_JSON_TYPE_MAP: dict[str, type] = {
    "string": str,
    "number": float,
    "integer": int,
    "boolean": bool,
}

DEFAULT_TIMEOUT = 30.0


def _json_schema_to_python_type(prop_schema: dict, prop_name: str, parent_name: str) -> Any:
    """Convert a single JSON Schema property to a Python type annotation.

    Handles: primitive types, typed arrays, nested objects, enums, and
    falls back to Any for unrecognized schemas ($ref, anyOf, oneOf, etc.).
    """
    if "enum" in prop_schema:
        return Literal[tuple(prop_schema["enum"])]  # type: ignore[valid-type]

    schema_type = prop_schema.get("type")
    if schema_type is None:
        return Any

    if schema_type in _JSON_TYPE_MAP:
        return _JSON_TYPE_MAP[schema_type]

    if schema_type == "array":
        items = prop_schema.get("items")
        if items and items.get("type") in _JSON_TYPE_MAP:
            return list[_JSON_TYPE_MAP[items["type"]]]
        return list

    if schema_type == "object":
        if "properties" in prop_schema:
            return _schema_to_pydantic(f"{parent_name}_{prop_name}", prop_schema)
        return dict

    return Any


def _schema_to_pydantic(tool_name: str, schema: dict) -> type[BaseModel]:
    """Convert a JSON Schema dict (from MCP inputSchema) to a Pydantic model.

    Non-required fields without a default become Optional. Descriptions and
    defaults are preserved.
    """
    properties = schema.get("properties", {})
    required = set(schema.get("required", []))
    fields: dict[str, Any] = {}

    for prop_name, prop_schema in properties.items():
        python_type = _json_schema_to_python_type(prop_schema, prop_name, tool_name)
        is_required = prop_name in required
        default = ... if is_required else prop_schema.get("default", None)

        if not is_required and default is None:
            python_type = Optional[python_type]

        fields[prop_name] = (
            python_type,
            Field(default=default, description=prop_schema.get("description", "")),
        )

    return create_model(f"{tool_name}_Input", **fields)


class MCPTool(Tool):
    """Wraps a single MCP server tool as a native stepwise Tool."""

    def __init__(
        self,
        name: str,
        description: str,
        input_schema: dict,
        session: ClientSession,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.name = name
        self.description = description
        self.input_model = _schema_to_pydantic(name, input_schema)
        self._session = session
        self._timeout = timeout

    async def execute(self, **kwargs) -> str:
        """Call the MCP tool via the session and return the result as a string."""
        # Optional fields the model left out are not forwarded
        arguments = {k: v for k, v in kwargs.items() if v is not None}
        try:
            result = await asyncio.wait_for(
                self._session.call_tool(self.name, arguments=arguments),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            raise ToolTimeoutError(f"MCP tool '{self.name}' timed out after {self._timeout}s")
        except Exception as e:
            raise ToolExecutionError(f"MCP tool '{self.name}' call failed: {e}") from e

        if result.isError:
            texts = [c.text for c in result.content if hasattr(c, "text")]
            raise ToolExecutionError(f"MCP tool '{self.name}' returned error: {' '.join(texts)}")

        text_parts = [c.text for c in result.content if hasattr(c, "text")]
        non_text_count = sum(1 for c in result.content if not hasattr(c, "text"))
        if non_text_count > 0:
            text_parts.append(f"[{non_text_count} non-text content block(s) omitted]")

        if len(text_parts) == 1:
            return text_parts[0]
        if text_parts:
            return json.dumps(text_parts)
        return ""


class MCPConnection:
    """Manages the lifecycle of one MCP server connection.

    Supports two transports:
    - stdio: MCPConnection(StdioServerParameters(command="python", args=["server.py"]))
    - streamable HTTP: MCPConnection("http://localhost:8000/mcp")

    Args:
        server_params: StdioServerParameters for stdio, or a URL string for HTTP.
        timeout: Timeout in seconds for MCP operations (initialize, list_tools,
            and individual tool calls).
    """

    def __init__(
        self,
        server_params: Union[StdioServerParameters, str],
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self._server_params = server_params
        self._timeout = timeout
        self._exit_stack: Optional[AsyncExitStack] = None
        self._session: Optional[ClientSession] = None

    @classmethod
    def from_config(cls, config: "MCPServerConfig", timeout: float = DEFAULT_TIMEOUT) -> "MCPConnection":
        if config.url:
            return cls(config.url, timeout=timeout)
        if not config.command:
            raise ConfigurationError("MCP server needs either a command or a url")
        return cls(
            StdioServerParameters(command=config.command, args=list(config.args), env=config.env),
            timeout=timeout,
        )

    async def connect(self) -> list[Tool]:
        """Open transport, initialize session, and return wrapped tools."""
        if self._exit_stack is not None:
            await self.disconnect()

        self._exit_stack = AsyncExitStack()
        try:
            if isinstance(self._server_params, str):
                transport = await self._exit_stack.enter_async_context(
                    streamablehttp_client(self._server_params)
                )
            else:
                transport = await self._exit_stack.enter_async_context(
                    stdio_client(self._server_params)
                )

            read_stream, write_stream, *_ = transport
            self._session = await self._exit_stack.enter_async_context(
                ClientSession(read_stream, write_stream)
            )

            await asyncio.wait_for(self._session.initialize(), timeout=self._timeout)
            tools_result = await asyncio.wait_for(self._session.list_tools(), timeout=self._timeout)
            return [
                MCPTool(
                    name=t.name,
                    description=t.description or "",
                    input_schema=t.inputSchema,
                    session=self._session,
                    timeout=self._timeout,
                )
                for t in tools_result.tools
            ]
        except BaseException:
            await self.disconnect()
            raise

    async def disconnect(self) -> None:
        """Clean up transport and session resources."""
        if self._exit_stack:
            await self._exit_stack.aclose()
            self._exit_stack = None
            self._session = None

    async def __aenter__(self) -> list[Tool]:
        return await self.connect()

    async def __aexit__(self, *exc: Any) -> None:
        await self.disconnect()


async def connect_servers(
    stack: AsyncExitStack,
    servers: dict[str, "MCPServerConfig"],
    allowed: Iterable[str],
    timeout: float = DEFAULT_TIMEOUT,
) -> list[Tool]:
    """Connect every allowed server and collect its tools.

    Connections are registered on ``stack`` and close with it.
    """
    tools: list[Tool] = []
    for name in allowed:
        config = servers.get(name)
        if config is None:
            raise ConfigurationError(f"allowed MCP server '{name}' is not configured")
        connection = MCPConnection.from_config(config, timeout=timeout)
        server_tools = await stack.enter_async_context(connection)
        logger.info(f"MCP server '{name}' provided {len(server_tools)} tools")
        tools.extend(server_tools)
    return tools
