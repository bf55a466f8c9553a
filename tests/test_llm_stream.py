"""
Tests for the chat-completions client (no network).
"""

import json
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from barber_voice.realtime.llm_stream import (
    AsyncLLMStream,
    GenerationConfig,
    GenerationState,
    LLMError,
    LLMResponse,
    ToolCall,
    ToolCallAccumulator,
    parse_arguments,
)


class FakeContent:
    """Async iterable over SSE lines."""

    def __init__(self, lines):
        self._lines = lines

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for line in self._lines:
            yield line


def sse(payload) -> bytes:
    return f"data: {json.dumps(payload)}\n".encode("utf-8")


def fake_http(lines):
    response = MagicMock()
    response.raise_for_status = MagicMock()
    response.content = FakeContent(lines)
    http = MagicMock()
    http.closed = False
    http.post.return_value.__aenter__.return_value = response
    return http


@pytest.fixture
def generation_config():
    return GenerationConfig(url="https://llm.test/v1/chat/completions", api_key="key", retry_delay_s=0)


class TestArguments:
    def test_valid(self):
        assert parse_arguments('{"date": "2024-06-04"}') == {"date": "2024-06-04"}

    @pytest.mark.parametrize("raw", ["", "{not json", "[1, 2]", "null"])
    def test_malformed_is_empty(self, raw):
        assert parse_arguments(raw) == {}


class TestAccumulator:
    """Streamed tool-call fragments merge by index."""

    def test_merges_fragments(self):
        acc = ToolCallAccumulator()
        acc.add({"index": 0, "id": "call_a", "function": {"name": "get_available_slots", "arguments": ""}})
        acc.add({"index": 0, "function": {"arguments": '{"barberId": "iv'}})
        acc.add({"index": 0, "function": {"arguments": 'an", "date": "2024-06-04"}'}})

        calls = acc.build()
        assert len(calls) == 1
        assert calls[0].id == "call_a"
        assert calls[0].arguments == {"barberId": "ivan", "date": "2024-06-04"}

    def test_multiple_calls_ordered(self):
        acc = ToolCallAccumulator()
        acc.add({"index": 1, "id": "call_b", "function": {"name": "get_barbers"}})
        acc.add({"index": 0, "id": "call_a", "function": {"name": "get_services"}})
        assert [c.name for c in acc.build()] == ["get_services", "get_barbers"]

    def test_nameless_dropped_and_id_defaulted(self):
        acc = ToolCallAccumulator()
        acc.add({"index": 0, "function": {"arguments": "{}"}})
        acc.add({"index": 2, "function": {"name": "get_services"}})
        calls = acc.build()
        assert [c.id for c in calls] == ["call_2"]


class TestResponse:
    def test_assistant_message_with_tools(self):
        response = LLMResponse(
            tool_calls=[ToolCall(id="call_1", name="get_services", raw_arguments="{}")]
        )
        message = response.assistant_message()
        assert message["role"] == "assistant"
        assert message["content"] is None
        assert message["tool_calls"][0]["function"] == {"name": "get_services", "arguments": "{}"}

    def test_assistant_message_text(self):
        message = LLMResponse(text="Здравейте").assistant_message()
        assert message == {"role": "assistant", "content": "Здравейте"}

    def test_arguments_serialized_when_raw_missing(self):
        call = ToolCall(id="c", name="x", arguments={"a": 1})
        assert json.loads(call.to_message()["function"]["arguments"]) == {"a": 1}


class TestCompletion:
    """Streaming parse and retry policy."""

    @pytest.mark.asyncio
    async def test_streamed_text(self, generation_config):
        http = fake_http([
            sse({"choices": [{"delta": {"content": "Здравейте"}}]}),
            b"\n",
            b": keep-alive\n",
            sse({"choices": [{"delta": {"content": ", с какво да помогна?"}, "finish_reason": "stop"}]}),
            b"data: [DONE]\n",
        ])
        llm = AsyncLLMStream(generation_config, http_session=http)

        response = await llm.complete_turn([{"role": "user", "content": "здрасти"}])

        assert response.text == "Здравейте, с какво да помогна?"
        assert response.finish_reason == "stop"
        assert response.has_tool_calls is False
        assert llm.state == GenerationState.COMPLETED

        body = http.post.call_args.kwargs["json"]
        assert body["stream"] is True
        assert "tools" not in body

    @pytest.mark.asyncio
    async def test_streamed_tool_call(self, generation_config):
        http = fake_http([
            sse({"choices": [{"delta": {"tool_calls": [
                {"index": 0, "id": "call_1", "function": {"name": "get_barbers", "arguments": ""}}
            ]}}]}),
            sse({"choices": [{"delta": {"tool_calls": [
                {"index": 0, "function": {"arguments": "{}"}}
            ]}, "finish_reason": "tool_calls"}]}),
            b"data: [DONE]\n",
        ])
        llm = AsyncLLMStream(generation_config, http_session=http)
        tools = [{"type": "function", "function": {"name": "get_barbers"}}]

        response = await llm.complete_turn([], tools=tools)

        assert response.tool_calls[0].name == "get_barbers"
        assert response.tool_calls[0].arguments == {}
        assert http.post.call_args.kwargs["json"]["tool_choice"] == "auto"
        assert llm.stats == {"generation_count": 1, "tool_call_count": 1}

    @pytest.mark.asyncio
    async def test_retries_once(self, generation_config):
        llm = AsyncLLMStream(generation_config, http_session=MagicMock())
        expected = LLMResponse(text="ok")
        llm._complete_impl = AsyncMock(side_effect=[aiohttp.ClientError("reset"), expected])

        assert await llm.complete_turn([]) is expected
        assert llm._complete_impl.await_count == 2

    @pytest.mark.asyncio
    async def test_second_failure_raises(self, generation_config):
        llm = AsyncLLMStream(generation_config, http_session=MagicMock())
        llm._complete_impl = AsyncMock(side_effect=TimeoutError("slow"))

        with pytest.raises(LLMError):
            await llm.complete_turn([])
        assert llm._complete_impl.await_count == 2
        assert llm.state == GenerationState.ERROR

    @pytest.mark.asyncio
    async def test_unexpected_error_not_retried(self, generation_config):
        llm = AsyncLLMStream(generation_config, http_session=MagicMock())
        llm._complete_impl = AsyncMock(side_effect=KeyError("x"))

        with pytest.raises(KeyError):
            await llm.complete_turn([])
        assert llm._complete_impl.await_count == 1

    @pytest.mark.asyncio
    async def test_close_keeps_shared_session(self, generation_config):
        http = MagicMock()
        http.closed = False
        http.close = AsyncMock()
        llm = AsyncLLMStream(generation_config, http_session=http)
        await llm.close()
        http.close.assert_not_awaited()
