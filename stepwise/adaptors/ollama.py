"""Ollama adaptor for stepwise."""

from typing import TYPE_CHECKING, Optional

import httpx
import ollama
from ollama import AsyncClient

from stepwise.exceptions import ModelError
from stepwise.execution import Message, ToolCall
from stepwise.model import ModelAdaptor
from stepwise.tools import Tool, decode_arguments

if TYPE_CHECKING:
    from stepwise.config import ModelSettings


class OllamaAdaptor(ModelAdaptor):
    """Ollama model adaptor using the official SDK.

    Ollama does not assign tool call ids, so ids are derived from the call's
    position and tool name, which keeps them unique within one response.

    Args:
        model: Model name (default: llama3.1).
        host: Ollama server URL (default: None, SDK defaults to localhost:11434).
    """

    provider = "ollama"

    def __init__(
        self,
        model: str = "llama3.1",
        host: Optional[str] = None,
    ):
        self.model = model
        self.client = AsyncClient(host=host)

    async def call(
        self,
        messages: list[Message],
        tools: list[Tool],
        settings: Optional["ModelSettings"] = None,
        **kwargs,
    ) -> Message:
        chat_kwargs = {
            "model": self.model,
            "messages": self._convert_messages(messages),
        }

        use_tools = bool(tools)
        if settings is not None:
            chat_kwargs["model"] = settings.model or self.model
            chat_kwargs["options"] = self._options(settings)
            use_tools = use_tools and settings.supports_tool_calling
        if use_tools:
            chat_kwargs["tools"] = [self._convert_tool(tool) for tool in tools]

        try:
            response = await self.client.chat(**chat_kwargs)
        except ollama.ResponseError as e:
            raise self._map_error(e) from e
        except ollama.RequestError as e:
            raise ModelError("invalid_request", f"ollama request error: {e}") from e
        except (ConnectionError, httpx.TransportError) as e:
            raise ModelError("transient_network", f"ollama connection failed: {e}") from e
        return self._parse_response(response, tools)

    def _options(self, settings: "ModelSettings") -> dict:
        options = {
            "num_predict": settings.max_tokens,
            "temperature": settings.temperature,
            "top_p": settings.top_p,
        }
        if settings.top_k:
            options["top_k"] = settings.top_k
        if settings.stop_sequences:
            options["stop"] = list(settings.stop_sequences)
        return options

    def _convert_messages(self, messages: list[Message]) -> list[dict]:
        ollama_messages = []
        for msg in messages:
            if msg.role in ("system", "user"):
                ollama_messages.append({"role": msg.role, "content": msg.content})
            elif msg.role == "assistant":
                ollama_msg = {"role": "assistant", "content": msg.content or ""}
                if msg.tool_calls:
                    ollama_msg["tool_calls"] = [
                        {
                            "function": {
                                "name": tc.tool_name,
                                "arguments": tc.arguments,
                            },
                        }
                        for tc in msg.tool_calls
                    ]
                ollama_messages.append(ollama_msg)
            elif msg.role == "tool":
                # Ollama identifies results by tool name, not call id
                tool_name = msg.name or self._find_tool_name(messages, msg.tool_call_id)
                ollama_messages.append({
                    "role": "tool",
                    "content": msg.content,
                    "tool_name": tool_name,
                })
        return ollama_messages

    def _find_tool_name(self, messages: list[Message], tool_call_id: Optional[str]) -> str:
        for msg in messages:
            for tc in msg.tool_calls or []:
                if tc.id == tool_call_id:
                    return tc.tool_name
        return "unknown"

    def _convert_tool(self, tool: Tool) -> dict:
        return {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.schema(),
            },
        }

    def _parse_response(self, response, tools: list[Tool]) -> Message:
        message = response.message
        declared = {tool.name: list(tool.input_model.model_fields) for tool in tools}

        tool_calls = []
        for index, tc in enumerate(message.tool_calls or []):
            name = tc.function.name
            arguments = tc.function.arguments
            if arguments is None or isinstance(arguments, str):
                arguments = decode_arguments(arguments, declared.get(name))
            tool_calls.append(
                ToolCall(
                    id=f"call_{index}_{name}",
                    tool_name=name,
                    arguments=dict(arguments),
                )
            )

        return Message(
            role="assistant",
            content=message.content or "",
            tool_calls=tool_calls or None,
        )

    def _map_error(self, error: "ollama.ResponseError") -> ModelError:
        status = getattr(error, "status_code", -1)
        message = f"ollama error ({status}): {error.error}"
        if status == 401:
            return ModelError("authentication_error", message)
        if status == 403:
            return ModelError("permission_error", message)
        if status == 429:
            return ModelError("rate_limited", message)
        if status in (400, 404):
            return ModelError("invalid_request", message)
        if status >= 500:
            return ModelError("transient_network", message)
        return ModelError("unknown", message)
