"""OpenAI API adaptor for stepwise."""

import json
import os
from typing import TYPE_CHECKING, Optional

import httpx

from stepwise.exceptions import ConfigurationError, ModelError
from stepwise.execution import Message, ToolCall
from stepwise.model import ModelAdaptor
from stepwise.tools import Tool, decode_arguments

if TYPE_CHECKING:
    from stepwise.config import ModelSettings

DEFAULT_BASE_URL = "https://api.openai.com/v1"


class OpenAIAdaptor(ModelAdaptor):
    """OpenAI-compatible model adaptor.

    Supports the OpenAI API and compatible endpoints (doubao, local models,
    proxies, etc.) through ``base_url``.

    Args:
        api_key: API key. Falls back to the <PROVIDER>_API_KEY environment variable.
        model: Model name (default: gpt-4o).
        base_url: Base URL for the API (default: https://api.openai.com/v1).
        provider: Provider name reported to caches and logs (default: openai).
        timeout: HTTP timeout in seconds.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gpt-4o",
        base_url: Optional[str] = None,
        provider: str = "openai",
        timeout: float = 120.0,
    ):
        self.provider = provider
        env_var = f"{provider.upper()}_API_KEY"
        self.api_key = api_key or os.environ.get(env_var)
        if not self.api_key:
            raise ConfigurationError(
                f"{provider} API key not provided. "
                f"Pass api_key argument or set {env_var} environment variable."
            )

        self.model = model
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.timeout = timeout

    async def call(
        self,
        messages: list[Message],
        tools: list[Tool],
        settings: Optional["ModelSettings"] = None,
        **kwargs,
    ) -> Message:
        """Call the chat completions endpoint.

        Returns:
            Assistant Message, with every requested tool call attached.

        Raises:
            ModelError: For HTTP failures, transport faults and malformed
                responses, typed by status code.
        """
        payload = self._build_payload(messages, tools, settings, kwargs.get("tool_choice"))

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    json=payload,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    timeout=self.timeout,
                )
        except httpx.TimeoutException as e:
            raise ModelError("transient_network", f"{self.provider} request timed out: {e}") from e
        except httpx.TransportError as e:
            raise ModelError("transient_network", f"{self.provider} connection failed: {e}") from e

        if response.status_code != 200:
            raise self._http_error(response)

        try:
            data = response.json()
        except ValueError as e:
            raise ModelError("unknown", f"{self.provider} returned invalid JSON: {e}") from e
        return self._parse_response(data, tools)

    def _build_payload(
        self,
        messages: list[Message],
        tools: list[Tool],
        settings: Optional["ModelSettings"],
        tool_choice: Optional[str] = None,
    ) -> dict:
        payload = {
            "model": self.model,
            "messages": self._convert_messages(messages),
        }

        use_tools = bool(tools)
        if settings is not None:
            payload["model"] = settings.model or self.model
            payload["max_tokens"] = settings.max_tokens
            payload["temperature"] = settings.temperature
            payload["top_p"] = settings.top_p
            if settings.stop_sequences:
                payload["stop"] = list(settings.stop_sequences)
            use_tools = use_tools and settings.supports_tool_calling

        if use_tools:
            payload["tools"] = [self._convert_tool(tool) for tool in tools]
            payload["tool_choice"] = tool_choice or "auto"
            if settings is not None:
                payload["parallel_tool_calls"] = settings.parallel_tool_calls

        return payload

    def _convert_messages(self, messages: list[Message]) -> list[dict]:
        openai_messages = []
        for msg in messages:
            openai_msg = {"role": msg.role, "content": msg.content}

            # Handle tool messages - include tool_call_id
            if msg.tool_call_id:
                openai_msg["tool_call_id"] = msg.tool_call_id

            # Handle assistant messages with tool calls
            if msg.role == "assistant" and msg.tool_calls:
                openai_msg["tool_calls"] = self._format_tool_calls(msg.tool_calls)

            openai_messages.append(openai_msg)
        return openai_messages

    def _format_tool_calls(self, tool_calls: list[ToolCall]) -> list[dict]:
        return [
            {
                "id": tool_call.id,
                "type": "function",
                "function": {
                    "name": tool_call.tool_name,
                    "arguments": json.dumps(tool_call.arguments),
                },
            }
            for tool_call in tool_calls
        ]

    def _convert_tool(self, tool: Tool) -> dict:
        return {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.schema(),
            },
        }

    def _parse_response(self, data: dict, tools: list[Tool]) -> Message:
        if not data.get("choices"):
            raise ModelError("unknown", f"{self.provider} response missing 'choices' field")

        message = data["choices"][0].get("message") or {}
        content = message.get("content") or ""

        declared = {tool.name: list(tool.input_model.model_fields) for tool in tools}
        tool_calls = []
        for index, raw in enumerate(message.get("tool_calls") or []):
            function = raw.get("function") or {}
            name = function.get("name", "")
            tool_calls.append(
                ToolCall(
                    id=raw.get("id") or f"call_{index}_{name}",
                    tool_name=name,
                    arguments=decode_arguments(function.get("arguments"), declared.get(name)),
                )
            )

        metadata = {"usage": data["usage"]} if data.get("usage") else None
        return Message(
            role="assistant",
            content=content,
            tool_calls=tool_calls or None,
            metadata=metadata,
        )

    def _http_error(self, response: httpx.Response) -> ModelError:
        try:
            error = response.json().get("error") or {}
        except ValueError:
            error = {}
        if not isinstance(error, dict):
            error = {"message": str(error)}
        detail = error.get("message") or response.text or "Unknown error"
        message = f"{self.provider} API error ({response.status_code}): {detail}"

        status = response.status_code
        if status == 401:
            return ModelError("authentication_error", message)
        if status == 403:
            return ModelError("permission_error", message)
        if status == 429:
            if error.get("code") == "insufficient_quota" or error.get("type") == "insufficient_quota":
                return ModelError("quota_exceeded", message)
            return ModelError("rate_limited", message)
        if status in (400, 404, 413, 422):
            return ModelError("invalid_request", message)
        if status >= 500 or status == 408:
            return ModelError("transient_network", message)
        return ModelError("unknown", message)
