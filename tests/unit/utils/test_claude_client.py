"""
Unit Tests for ClaudeClient

The Anthropic SDK client is replaced with mocks; no network calls are made.
"""
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from anthropic import APIConnectionError, RateLimitError

from buildloop.core.exceptions import GenerationError, GenerationRateLimitError
from buildloop.schemas.session import ChatMessage, MessageRole
from buildloop.utils.claude_client import ClaudeClient, to_provider_messages


REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


def rate_limit_error():
    return RateLimitError(message="rate limited", response=httpx.Response(429, request=REQUEST), body=None)


def text_block(text):
    return SimpleNamespace(type="text", text=text)


def tool_block(name, tool_input, block_id):
    return SimpleNamespace(type="tool_use", name=name, input=tool_input, id=block_id)


def response(content, stop_reason="end_turn"):
    return SimpleNamespace(
        content=content,
        stop_reason=stop_reason,
        usage=SimpleNamespace(input_tokens=5, output_tokens=7),
    )


def make_client():
    client = ClaudeClient(api_key="test-api-key", model="claude-test")
    client.async_client = MagicMock()
    client.backoff = 0
    return client


class FakeMessageStream:
    """Async context manager standing in for messages.stream()"""

    def __init__(self, chunks):
        self.chunks = chunks

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    @property
    def text_stream(self):
        async def gen():
            for chunk in self.chunks:
                yield chunk
        return gen()

    async def get_final_message(self):
        return response([], "end_turn")


class TestProviderMessages:
    """Test history conversion"""

    def test_system_messages_fold_into_system_prompt(self):
        history = [
            ChatMessage(role=MessageRole.SYSTEM, content="Be brief."),
            ChatMessage(role=MessageRole.USER, content="hi"),
        ]

        system, messages = to_provider_messages(history, "Base prompt")

        assert system == "Base prompt\n\nBe brief."
        assert messages == [{"role": "user", "content": "hi"}]

    def test_consecutive_roles_merge(self):
        history = [
            {"role": "user", "content": "one"},
            {"role": "user", "content": "two"},
            {"role": "assistant", "content": "ok"},
        ]

        _, messages = to_provider_messages(history)

        assert messages == [
            {"role": "user", "content": "one\n\ntwo"},
            {"role": "assistant", "content": "ok"},
        ]


class TestGenerate:
    """Test non-streaming generation"""

    @pytest.mark.asyncio
    async def test_plain_generation(self):
        client = make_client()
        client.async_client.messages.create = AsyncMock(return_value=response([text_block("Hello")]))

        result = await client.generate([{"role": "user", "content": "hi"}], "system")

        assert result.text == "Hello"
        assert result.total_tokens == 12
        kwargs = client.async_client.messages.create.call_args.kwargs
        assert kwargs["model"] == "claude-test"
        assert "tools" not in kwargs

    @pytest.mark.asyncio
    async def test_tool_loop(self):
        client = make_client()
        client.async_client.messages.create = AsyncMock(side_effect=[
            response([text_block("Reading"), tool_block("read_file", {"filePath": "a.ts"}, "t1")], "tool_use"),
            response([text_block("Done")]),
        ])
        toolset = MagicMock()
        toolset.schemas = [{"name": "read_file"}]
        toolset.execute = AsyncMock(return_value={"type": "tool_result", "tool_use_id": "t1", "content": "x"})

        result = await client.generate([{"role": "user", "content": "fix"}], "system", tools=toolset)

        assert result.text == "Reading\nDone"
        assert [c.name for c in result.tool_calls] == ["read_file"]
        toolset.execute.assert_awaited_once_with("read_file", {"filePath": "a.ts"}, "t1")
        messages = client.async_client.messages.create.call_args.kwargs["messages"]
        assert messages[-1] == {
            "role": "user",
            "content": [{"type": "tool_result", "tool_use_id": "t1", "content": "x"}],
        }

    @pytest.mark.asyncio
    async def test_rate_limit_retried(self):
        client = make_client()
        client.async_client.messages.create = AsyncMock(side_effect=[
            rate_limit_error(),
            rate_limit_error(),
            response([text_block("Finally")]),
        ])

        result = await client.generate([{"role": "user", "content": "hi"}], "system")

        assert result.text == "Finally"
        assert client.async_client.messages.create.await_count == 3

    @pytest.mark.asyncio
    async def test_rate_limit_gives_up(self):
        client = make_client()
        client.async_client.messages.create = AsyncMock(side_effect=[rate_limit_error()] * 3)

        with pytest.raises(GenerationRateLimitError):
            await client.generate([{"role": "user", "content": "hi"}], "system")

    def test_linear_backoff(self):
        client = ClaudeClient(api_key="test-api-key")
        client.backoff = 2.0

        assert [client._retry_delay(a) for a in (1, 2, 3)] == [2.0, 4.0, 6.0]

    @pytest.mark.asyncio
    async def test_api_error_wrapped(self):
        client = make_client()
        client.async_client.messages.create = AsyncMock(side_effect=APIConnectionError(request=REQUEST))

        with pytest.raises(GenerationError) as exc_info:
            await client.generate([{"role": "user", "content": "hi"}], "system")
        assert exc_info.value.details["provider_error"] == "APIConnectionError"


class TestStream:
    """Test streaming generation"""

    @pytest.mark.asyncio
    async def test_stream_chunks(self):
        client = make_client()
        client.async_client.messages.stream = MagicMock(return_value=FakeMessageStream(["Hel", "lo"]))

        chunks = [c async for c in client.stream([{"role": "user", "content": "hi"}], "system")]

        assert chunks == ["Hel", "lo"]

    @pytest.mark.asyncio
    async def test_rate_limit_before_first_chunk_is_retried(self):
        client = make_client()
        client.async_client.messages.stream = MagicMock(side_effect=[
            rate_limit_error(),
            FakeMessageStream(["ok"]),
        ])

        chunks = [c async for c in client.stream([{"role": "user", "content": "hi"}], "system")]

        assert chunks == ["ok"]
