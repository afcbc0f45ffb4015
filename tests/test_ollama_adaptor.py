"""Tests for the Ollama adaptor."""

import httpx
import ollama
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from stepwise.config import ModelSettings
from stepwise.exceptions import ModelError
from stepwise.execution import Message, ToolCall
from stepwise.tools import Tool

from pydantic import BaseModel


# --- Test fixtures ---


class SearchInput(BaseModel):
    query: str
    limit: int = 5


class SearchTool(Tool):
    name = "search"
    description = "Search the web"
    input_model = SearchInput

    async def execute(self, query: str, limit: int = 5) -> str:
        return f"Results for: {query}"


def make_tool_call(name, arguments):
    tc = MagicMock()
    tc.function = MagicMock()
    tc.function.name = name
    tc.function.arguments = arguments
    return tc


def make_response(content="", tool_calls=None):
    response = MagicMock()
    response.message = MagicMock()
    response.message.content = content
    response.message.tool_calls = tool_calls
    return response


@pytest.fixture
def adaptor():
    with patch("stepwise.adaptors.ollama.AsyncClient") as mock_cls:
        mock_client = MagicMock()
        mock_client.chat = AsyncMock()
        mock_cls.return_value = mock_client

        from stepwise.adaptors.ollama import OllamaAdaptor

        a = OllamaAdaptor(model="llama3.1")
        yield a, mock_client


# --- Constructor tests ---


class TestOllamaAdaptorInit:
    def test_defaults(self):
        with patch("stepwise.adaptors.ollama.AsyncClient") as mock_cls:
            from stepwise.adaptors.ollama import OllamaAdaptor

            a = OllamaAdaptor()
            assert a.model == "llama3.1"
            assert a.provider == "ollama"
            mock_cls.assert_called_once_with(host=None)

    def test_custom_host(self):
        with patch("stepwise.adaptors.ollama.AsyncClient") as mock_cls:
            from stepwise.adaptors.ollama import OllamaAdaptor

            a = OllamaAdaptor(model="qwen2.5", host="http://gpu-box:11434")
            assert a.model == "qwen2.5"
            mock_cls.assert_called_once_with(host="http://gpu-box:11434")


# --- Message conversion tests ---


class TestOllamaMessageConversion:
    def test_system_and_user(self, adaptor):
        a, _ = adaptor
        result = a._convert_messages([
            Message(role="system", content="Be brief"),
            Message(role="user", content="Hello"),
        ])
        assert result == [
            {"role": "system", "content": "Be brief"},
            {"role": "user", "content": "Hello"},
        ]

    def test_assistant_with_tool_calls(self, adaptor):
        a, _ = adaptor
        tc = ToolCall(id="call_0_search", tool_name="search", arguments={"query": "test"})
        result = a._convert_messages([Message(role="assistant", content="", tool_calls=[tc])])
        assert result == [{
            "role": "assistant",
            "content": "",
            "tool_calls": [{"function": {"name": "search", "arguments": {"query": "test"}}}],
        }]

    def test_tool_message_uses_name(self, adaptor):
        a, _ = adaptor
        result = a._convert_messages([
            Message(role="tool", content="results", name="search", tool_call_id="x"),
        ])
        assert result == [{"role": "tool", "content": "results", "tool_name": "search"}]

    def test_tool_name_found_from_call_id(self, adaptor):
        a, _ = adaptor
        tc = ToolCall(id="call_0_lookup", tool_name="lookup", arguments={})
        result = a._convert_messages([
            Message(role="assistant", content="", tool_calls=[tc]),
            Message(role="tool", content="found", tool_call_id="call_0_lookup"),
        ])
        assert result[1]["tool_name"] == "lookup"

    def test_tool_name_unknown(self, adaptor):
        a, _ = adaptor
        result = a._convert_messages([
            Message(role="tool", content="orphan", tool_call_id="missing"),
        ])
        assert result[0]["tool_name"] == "unknown"


# --- Tool conversion tests ---


class TestOllamaToolConversion:
    def test_convert_tool(self, adaptor):
        a, _ = adaptor
        result = a._convert_tool(SearchTool())
        assert result["type"] == "function"
        assert result["function"]["name"] == "search"
        assert result["function"]["description"] == "Search the web"
        assert result["function"]["parameters"]["properties"]["query"]["type"] == "string"


# --- Response parsing tests ---


class TestOllamaResponseParsing:
    def test_final_response(self, adaptor):
        a, _ = adaptor
        result = a._parse_response(make_response(content="The answer is 42."), [])
        assert result.role == "assistant"
        assert result.content == "The answer is 42."
        assert result.tool_calls is None

    def test_none_content(self, adaptor):
        a, _ = adaptor
        assert a._parse_response(make_response(content=None), []).content == ""

    def test_tool_call_ids_from_position(self, adaptor):
        a, _ = adaptor
        response = make_response(tool_calls=[
            make_tool_call("search", {"query": "a"}),
            make_tool_call("search", {"query": "b"}),
        ])
        result = a._parse_response(response, [SearchTool()])
        assert [tc.id for tc in result.tool_calls] == ["call_0_search", "call_1_search"]
        assert result.tool_calls[1].arguments == {"query": "b"}

    def test_string_arguments_decoded(self, adaptor):
        a, _ = adaptor
        response = make_response(tool_calls=[make_tool_call("search", '{"query": "x"}')])
        result = a._parse_response(response, [SearchTool()])
        assert result.tool_calls[0].arguments == {"query": "x"}

    def test_truncated_arguments_recovered(self, adaptor):
        a, _ = adaptor
        response = make_response(
            tool_calls=[make_tool_call("search", '{"query": "x", "limit": 3, "other": 1')]
        )
        result = a._parse_response(response, [SearchTool()])
        assert result.tool_calls[0].arguments == {"query": "x", "limit": 3}

    def test_missing_arguments(self, adaptor):
        a, _ = adaptor
        response = make_response(tool_calls=[make_tool_call("search", None)])
        result = a._parse_response(response, [SearchTool()])
        assert result.tool_calls[0].arguments == {}


# --- Full call tests ---


class TestOllamaCall:
    @pytest.mark.asyncio
    async def test_call_without_settings(self, adaptor):
        a, mock_client = adaptor
        mock_client.chat.return_value = make_response(content="Hello!")

        result = await a.call([Message(role="user", content="Hi")], [])

        assert result.content == "Hello!"
        call_kwargs = mock_client.chat.call_args[1]
        assert call_kwargs["model"] == "llama3.1"
        assert "options" not in call_kwargs
        assert "tools" not in call_kwargs

    @pytest.mark.asyncio
    async def test_call_applies_settings(self, adaptor):
        a, mock_client = adaptor
        mock_client.chat.return_value = make_response(content="ok")
        settings = ModelSettings(
            model="qwen2.5",
            provider="ollama",
            max_tokens=256,
            temperature=0.3,
            top_p=0.8,
            top_k=20,
            stop_sequences=("END",),
        )
        await a.call([Message(role="user", content="test")], [SearchTool()], settings)

        call_kwargs = mock_client.chat.call_args[1]
        assert call_kwargs["model"] == "qwen2.5"
        assert call_kwargs["options"] == {
            "num_predict": 256,
            "temperature": 0.3,
            "top_p": 0.8,
            "top_k": 20,
            "stop": ["END"],
        }
        assert call_kwargs["tools"][0]["function"]["name"] == "search"

    @pytest.mark.asyncio
    async def test_tools_omitted_without_tool_calling(self, adaptor):
        a, mock_client = adaptor
        mock_client.chat.return_value = make_response(content="ok")
        settings = ModelSettings(model="m", provider="ollama", supports_tool_calling=False)
        await a.call([Message(role="user", content="test")], [SearchTool()], settings)

        call_kwargs = mock_client.chat.call_args[1]
        assert "tools" not in call_kwargs
        assert "top_k" not in call_kwargs["options"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status, expected",
        [
            (401, "authentication_error"),
            (403, "permission_error"),
            (404, "invalid_request"),
            (400, "invalid_request"),
            (429, "rate_limited"),
            (503, "transient_network"),
            (418, "unknown"),
        ],
    )
    async def test_response_errors_mapped(self, adaptor, status, expected):
        a, mock_client = adaptor
        mock_client.chat.side_effect = ollama.ResponseError("model failed", status)

        with pytest.raises(ModelError) as exc_info:
            await a.call([Message(role="user", content="test")], [])
        assert exc_info.value.type == expected
        assert f"({status})" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_connection_refused(self, adaptor):
        a, mock_client = adaptor
        mock_client.chat.side_effect = ConnectionError("refused")

        with pytest.raises(ModelError) as exc_info:
            await a.call([Message(role="user", content="test")], [])
        assert exc_info.value.type == "transient_network"

    @pytest.mark.asyncio
    async def test_transport_error(self, adaptor):
        a, mock_client = adaptor
        mock_client.chat.side_effect = httpx.ReadTimeout("slow")

        with pytest.raises(ModelError) as exc_info:
            await a.call([Message(role="user", content="test")], [])
        assert exc_info.value.type == "transient_network"
