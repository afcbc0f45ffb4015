"""Anthropic API adaptor for stepwise."""

import os
from typing import TYPE_CHECKING, Optional

import anthropic
from anthropic import AsyncAnthropic

from stepwise.exceptions import ConfigurationError, ModelError
from stepwise.execution import Message, ToolCall
from stepwise.model import ModelAdaptor
from stepwise.tools import Tool

if TYPE_CHECKING:
    from stepwise.config import ModelSettings


class AnthropicAdaptor(ModelAdaptor):
    """Anthropic model adaptor using the official SDK.

    Args:
        api_key: Anthropic API key. Falls back to ANTHROPIC_API_KEY environment variable.
        model: Model name (default: claude-sonnet-4-5-20250929).
        max_tokens: Maximum tokens in the response when no settings are given.
        base_url: Optional API base URL.
    """

    provider = "anthropic"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "claude-sonnet-4-5-20250929",
        max_tokens: int = 4096,
        base_url: Optional[str] = None,
    ):
        self.api_key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        if not self.api_key:
            raise ConfigurationError(
                "Anthropic API key not provided. "
                "Pass api_key argument or set ANTHROPIC_API_KEY environment variable."
            )

        self.model = model
        self.max_tokens = max_tokens
        self.client = AsyncAnthropic(api_key=self.api_key, base_url=base_url)

    async def call(
        self,
        messages: list[Message],
        tools: list[Tool],
        settings: Optional["ModelSettings"] = None,
        **kwargs,
    ) -> Message:
        system, anthropic_messages = self._convert_messages(messages)

        create_kwargs = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": anthropic_messages,
        }
        if system:
            create_kwargs["system"] = system

        use_tools = bool(tools)
        if settings is not None:
            create_kwargs["model"] = settings.model or self.model
            create_kwargs["max_tokens"] = settings.max_tokens
            create_kwargs["temperature"] = settings.temperature
            create_kwargs["top_p"] = settings.top_p
            if settings.top_k:
                create_kwargs["top_k"] = settings.top_k
            if settings.stop_sequences:
                create_kwargs["stop_sequences"] = list(settings.stop_sequences)
            use_tools = use_tools and settings.supports_tool_calling
        if use_tools:
            create_kwargs["tools"] = [self._convert_tool(tool) for tool in tools]

        try:
            response = await self.client.messages.create(**create_kwargs)
        except anthropic.APIError as e:
            raise self._map_error(e) from e
        return self._parse_response(response)

    def _convert_messages(self, messages: list[Message]) -> tuple[str, list[dict]]:
        """Split out the system prompt and convert the rest.

        Consecutive tool results are merged into one user turn, since every
        result for an assistant turn must arrive together.
        """
        system_parts = []
        anthropic_messages: list[dict] = []
        for msg in messages:
            if msg.role == "system":
                system_parts.append(msg.content)
            elif msg.role == "user":
                anthropic_messages.append({"role": "user", "content": msg.content})
            elif msg.role == "assistant":
                content_blocks = []
                if msg.content:
                    content_blocks.append({"type": "text", "text": msg.content})
                for tc in msg.tool_calls or []:
                    content_blocks.append({
                        "type": "tool_use",
                        "id": tc.id,
                        "name": tc.tool_name,
                        "input": tc.arguments,
                    })
                anthropic_messages.append({
                    "role": "assistant",
                    "content": content_blocks or msg.content,
                })
            elif msg.role == "tool":
                block = {
                    "type": "tool_result",
                    "tool_use_id": msg.tool_call_id,
                    "content": msg.content,
                }
                previous = anthropic_messages[-1] if anthropic_messages else None
                if (
                    previous is not None
                    and previous["role"] == "user"
                    and isinstance(previous["content"], list)
                    and all(b.get("type") == "tool_result" for b in previous["content"])
                ):
                    previous["content"].append(block)
                else:
                    anthropic_messages.append({"role": "user", "content": [block]})
        return "\n\n".join(system_parts), anthropic_messages

    def _convert_tool(self, tool: Tool) -> dict:
        return {
            "name": tool.name,
            "description": tool.description,
            "input_schema": tool.schema(),
        }

    def _parse_response(self, response) -> Message:
        texts = []
        tool_calls = []
        for block in response.content:
            if block.type == "text":
                texts.append(block.text)
            elif block.type == "tool_use":
                tool_calls.append(
                    ToolCall(
                        id=block.id,
                        tool_name=block.name,
                        arguments=dict(block.input or {}),
                    )
                )

        return Message(
            role="assistant",
            content="\n".join(texts),
            tool_calls=tool_calls or None,
            metadata={"stop_reason": response.stop_reason},
        )

    def _map_error(self, error: anthropic.APIError) -> ModelError:
        message = f"anthropic API error: {error}"
        if isinstance(error, anthropic.AuthenticationError):
            return ModelError("authentication_error", message)
        if isinstance(error, anthropic.PermissionDeniedError):
            return ModelError("permission_error", message)
        if isinstance(error, anthropic.RateLimitError):
            return ModelError("rate_limited", message)
        if isinstance(error, (anthropic.BadRequestError, anthropic.NotFoundError, anthropic.UnprocessableEntityError)):
            return ModelError("invalid_request", message)
        if isinstance(error, (anthropic.APIConnectionError, anthropic.InternalServerError)):
            return ModelError("transient_network", message)
        return ModelError("unknown", message)
