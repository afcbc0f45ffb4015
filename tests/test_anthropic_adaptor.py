"""Tests for the Anthropic adaptor."""

import anthropic
import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from stepwise.config import ModelSettings
from stepwise.exceptions import ConfigurationError, ModelError
from stepwise.execution import Message, ToolCall
from stepwise.tools import Tool

from pydantic import BaseModel


# --- Test fixtures ---


class SearchInput(BaseModel):
    query: str


class SearchTool(Tool):
    name = "search"
    description = "Search the web"
    input_model = SearchInput

    async def execute(self, query: str) -> str:
        return f"Results for: {query}"


def make_text_block(text):
    block = MagicMock()
    block.type = "text"
    block.text = text
    return block


def make_tool_use_block(id, name, input_data):
    block = MagicMock()
    block.type = "tool_use"
    block.id = id
    block.name = name
    block.input = input_data
    return block


def make_response(stop_reason, content_blocks):
    response = MagicMock()
    response.stop_reason = stop_reason
    response.content = content_blocks
    return response


def status_error(cls, status):
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    response = httpx.Response(status, request=request)
    return cls("boom", response=response, body=None)


@pytest.fixture
def adaptor():
    with patch("stepwise.adaptors.anthropic.AsyncAnthropic") as mock_cls:
        mock_client = MagicMock()
        mock_client.messages = MagicMock()
        mock_client.messages.create = AsyncMock()
        mock_cls.return_value = mock_client

        from stepwise.adaptors.anthropic import AnthropicAdaptor

        a = AnthropicAdaptor(api_key="test-key")
        yield a, mock_client


# --- Constructor tests ---


class TestAnthropicAdaptorInit:
    def test_missing_api_key_raises(self):
        with patch.dict("os.environ", {}, clear=True):
            with patch("stepwise.adaptors.anthropic.AsyncAnthropic"):
                from stepwise.adaptors.anthropic import AnthropicAdaptor

                with pytest.raises(ConfigurationError, match="Anthropic API key"):
                    AnthropicAdaptor()

    def test_defaults(self):
        with patch("stepwise.adaptors.anthropic.AsyncAnthropic"):
            from stepwise.adaptors.anthropic import AnthropicAdaptor

            a = AnthropicAdaptor(api_key="key")
            assert a.model == "claude-sonnet-4-5-20250929"
            assert a.max_tokens == 4096
            assert a.provider == "anthropic"

    def test_custom_params(self):
        with patch("stepwise.adaptors.anthropic.AsyncAnthropic") as mock_cls:
            from stepwise.adaptors.anthropic import AnthropicAdaptor

            a = AnthropicAdaptor(
                api_key="key",
                model="claude-haiku-3",
                max_tokens=2048,
                base_url="https://proxy.example",
            )
            assert a.model == "claude-haiku-3"
            assert a.max_tokens == 2048
            mock_cls.assert_called_once_with(api_key="key", base_url="https://proxy.example")

    def test_env_var_fallback(self):
        with patch.dict("os.environ", {"ANTHROPIC_API_KEY": "env-key"}):
            with patch("stepwise.adaptors.anthropic.AsyncAnthropic"):
                from stepwise.adaptors.anthropic import AnthropicAdaptor

                a = AnthropicAdaptor()
                assert a.api_key == "env-key"


# --- Message conversion tests ---


class TestAnthropicMessageConversion:
    def test_system_prompt_split_out(self, adaptor):
        a, _ = adaptor
        messages = [
            Message(role="system", content="Be brief"),
            Message(role="user", content="Hello"),
        ]
        system, result = a._convert_messages(messages)
        assert system == "Be brief"
        assert result == [{"role": "user", "content": "Hello"}]

    def test_no_system_prompt(self, adaptor):
        a, _ = adaptor
        system, _ = a._convert_messages([Message(role="user", content="Hello")])
        assert system == ""

    def test_assistant_message_text_only(self, adaptor):
        a, _ = adaptor
        _, result = a._convert_messages([Message(role="assistant", content="Hi there")])
        assert result == [{
            "role": "assistant",
            "content": [{"type": "text", "text": "Hi there"}],
        }]

    def test_assistant_message_with_tool_calls(self, adaptor):
        a, _ = adaptor
        calls = [
            ToolCall(id="tc_1", tool_name="search", arguments={"query": "test"}),
            ToolCall(id="tc_2", tool_name="search", arguments={"query": "more"}),
        ]
        _, result = a._convert_messages(
            [Message(role="assistant", content="Let me search", tool_calls=calls)]
        )
        blocks = result[0]["content"]
        assert len(blocks) == 3
        assert blocks[0] == {"type": "text", "text": "Let me search"}
        assert blocks[1] == {
            "type": "tool_use",
            "id": "tc_1",
            "name": "search",
            "input": {"query": "test"},
        }
        assert blocks[2]["id"] == "tc_2"

    def test_assistant_tool_calls_without_text(self, adaptor):
        a, _ = adaptor
        call = ToolCall(id="tc_1", tool_name="search", arguments={})
        _, result = a._convert_messages([Message(role="assistant", content="", tool_calls=[call])])
        assert [b["type"] for b in result[0]["content"]] == ["tool_use"]

    def test_tool_message(self, adaptor):
        a, _ = adaptor
        _, result = a._convert_messages(
            [Message(role="tool", content="search results", tool_call_id="tc_1")]
        )
        assert result == [{
            "role": "user",
            "content": [{
                "type": "tool_result",
                "tool_use_id": "tc_1",
                "content": "search results",
            }],
        }]

    def test_consecutive_tool_results_merged(self, adaptor):
        a, _ = adaptor
        calls = [
            ToolCall(id="tc_1", tool_name="search", arguments={}),
            ToolCall(id="tc_2", tool_name="search", arguments={}),
        ]
        _, result = a._convert_messages([
            Message(role="user", content="Look it up"),
            Message(role="assistant", content="", tool_calls=calls),
            Message(role="tool", content="first", tool_call_id="tc_1"),
            Message(role="tool", content="second", tool_call_id="tc_2"),
        ])
        assert [m["role"] for m in result] == ["user", "assistant", "user"]
        assert [b["tool_use_id"] for b in result[2]["content"]] == ["tc_1", "tc_2"]

    def test_tool_result_not_merged_into_plain_user_turn(self, adaptor):
        a, _ = adaptor
        _, result = a._convert_messages([
            Message(role="user", content="Hello"),
            Message(role="tool", content="out", tool_call_id="tc_1"),
        ])
        assert len(result) == 2
        assert result[0] == {"role": "user", "content": "Hello"}


# --- Tool conversion tests ---


class TestAnthropicToolConversion:
    def test_convert_tool(self, adaptor):
        a, _ = adaptor
        result = a._convert_tool(SearchTool())
        assert result["name"] == "search"
        assert result["description"] == "Search the web"
        assert result["input_schema"]["properties"]["query"]["type"] == "string"


# --- Response parsing tests ---


class TestAnthropicResponseParsing:
    def test_final_response(self, adaptor):
        a, _ = adaptor
        response = make_response("end_turn", [make_text_block("The answer is 42.")])
        result = a._parse_response(response)
        assert result.role == "assistant"
        assert result.content == "The answer is 42."
        assert result.tool_calls is None
        assert result.metadata == {"stop_reason": "end_turn"}

    def test_text_blocks_joined(self, adaptor):
        a, _ = adaptor
        response = make_response("end_turn", [make_text_block("one"), make_text_block("two")])
        assert a._parse_response(response).content == "one\ntwo"

    def test_tool_call_response(self, adaptor):
        a, _ = adaptor
        response = make_response("tool_use", [
            make_text_block("Let me search"),
            make_tool_use_block("tc_1", "search", {"query": "test"}),
            make_tool_use_block("tc_2", "search", {"query": "other"}),
        ])
        result = a._parse_response(response)
        assert result.content == "Let me search"
        assert [tc.id for tc in result.tool_calls] == ["tc_1", "tc_2"]
        assert result.tool_calls[0].tool_name == "search"
        assert result.tool_calls[0].arguments == {"query": "test"}

    def test_tool_call_without_text(self, adaptor):
        a, _ = adaptor
        response = make_response("tool_use", [
            make_tool_use_block("tc_1", "search", None),
        ])
        result = a._parse_response(response)
        assert result.content == ""
        assert result.tool_calls[0].arguments == {}


# --- Full call tests ---


class TestAnthropicCall:
    @pytest.mark.asyncio
    async def test_call_final_response(self, adaptor):
        a, mock_client = adaptor
        mock_client.messages.create.return_value = make_response(
            "end_turn", [make_text_block("Hello!")]
        )
        result = await a.call(
            [Message(role="system", content="sys"), Message(role="user", content="Hi")],
            [],
        )
        assert result.content == "Hello!"

        call_kwargs = mock_client.messages.create.call_args[1]
        assert call_kwargs["model"] == "claude-sonnet-4-5-20250929"
        assert call_kwargs["max_tokens"] == 4096
        assert call_kwargs["system"] == "sys"
        assert "tools" not in call_kwargs

    @pytest.mark.asyncio
    async def test_call_passes_tools(self, adaptor):
        a, mock_client = adaptor
        mock_client.messages.create.return_value = make_response(
            "tool_use", [make_tool_use_block("tc_1", "search", {"query": "python"})]
        )
        result = await a.call([Message(role="user", content="Search for python")], [SearchTool()])

        assert result.tool_calls[0].tool_name == "search"
        call_kwargs = mock_client.messages.create.call_args[1]
        assert call_kwargs["tools"][0]["name"] == "search"

    @pytest.mark.asyncio
    async def test_call_applies_settings(self, adaptor):
        a, mock_client = adaptor
        mock_client.messages.create.return_value = make_response("end_turn", [make_text_block("ok")])
        settings = ModelSettings(
            model="claude-haiku-3",
            provider="anthropic",
            max_tokens=512,
            temperature=0.1,
            top_p=0.9,
            top_k=40,
            stop_sequences=("STOP",),
        )
        await a.call([Message(role="user", content="test")], [SearchTool()], settings)

        call_kwargs = mock_client.messages.create.call_args[1]
        assert call_kwargs["model"] == "claude-haiku-3"
        assert call_kwargs["max_tokens"] == 512
        assert call_kwargs["temperature"] == 0.1
        assert call_kwargs["top_p"] == 0.9
        assert call_kwargs["top_k"] == 40
        assert call_kwargs["stop_sequences"] == ["STOP"]
        assert "tools" in call_kwargs

    @pytest.mark.asyncio
    async def test_tools_omitted_without_tool_calling(self, adaptor):
        a, mock_client = adaptor
        mock_client.messages.create.return_value = make_response("end_turn", [make_text_block("ok")])
        settings = ModelSettings(model="m", provider="anthropic", supports_tool_calling=False)
        await a.call([Message(role="user", content="test")], [SearchTool()], settings)

        call_kwargs = mock_client.messages.create.call_args[1]
        assert "tools" not in call_kwargs
        assert "top_k" not in call_kwargs

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "cls, status, expected",
        [
            (anthropic.AuthenticationError, 401, "authentication_error"),
            (anthropic.PermissionDeniedError, 403, "permission_error"),
            (anthropic.NotFoundError, 404, "invalid_request"),
            (anthropic.BadRequestError, 400, "invalid_request"),
            (anthropic.RateLimitError, 429, "rate_limited"),
            (anthropic.InternalServerError, 500, "transient_network"),
        ],
    )
    async def test_status_errors_mapped(self, adaptor, cls, status, expected):
        a, mock_client = adaptor
        mock_client.messages.create.side_effect = status_error(cls, status)

        with pytest.raises(ModelError) as exc_info:
            await a.call([Message(role="user", content="test")], [])
        assert exc_info.value.type == expected
        assert isinstance(exc_info.value.__cause__, cls)

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self, adaptor):
        a, mock_client = adaptor
        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        mock_client.messages.create.side_effect = anthropic.APIConnectionError(request=request)

        with pytest.raises(ModelError) as exc_info:
            await a.call([Message(role="user", content="test")], [])
        assert exc_info.value.type == "transient_network"
