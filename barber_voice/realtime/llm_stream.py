"""
Async LLM Turn Module

Chat-completions client for one conversational turn:
- OpenAI-compatible streaming API over aiohttp
- Text deltas accumulated into the reply
- Tool-call deltas merged by index into complete calls
- Clean error handling with single retry
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Dict, List, Optional

import aiohttp

from barber_voice.config import Settings, settings as default_settings
from barber_voice.logger import get_logger

logger = get_logger(__name__)


class LLMError(Exception):
    """The completion request failed twice in a row."""


class GenerationState(Enum):
    """State of LLM generation."""
    IDLE = auto()
    GENERATING = auto()
    COMPLETED = auto()
    ERROR = auto()


@dataclass
class ToolCall:
    """One function call requested by the model."""
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    raw_arguments: str = ""

    def to_message(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.raw_arguments or json.dumps(self.arguments)},
        }


@dataclass
class LLMResponse:
    """Result of one completion: text, tool calls, or both."""
    text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    finish_reason: str = ""
    generation_time_ms: float = 0.0

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    def assistant_message(self) -> Dict[str, Any]:
        """The assistant message to append before the tool results."""
        message: Dict[str, Any] = {"role": "assistant", "content": self.text or None}
        if self.tool_calls:
            message["tool_calls"] = [call.to_message() for call in self.tool_calls]
        return message


@dataclass
class GenerationConfig:
    """Configuration for LLM generation."""
    url: str = "https://api.openai.com/v1/chat/completions"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    max_tokens: int = 300
    connect_timeout_s: float = 10.0
    read_timeout_s: float = 30.0
    retry_delay_s: float = 0.3

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "GenerationConfig":
        openai = (config or default_settings).openai
        return cls(
            url=openai.chat_url,
            api_key=openai.api_key,
            model=openai.model,
            temperature=openai.temperature,
            max_tokens=openai.max_tokens,
            connect_timeout_s=openai.connect_timeout_s,
            read_timeout_s=openai.read_timeout_s,
        )


def parse_arguments(raw: str) -> Dict[str, Any]:
    """Decode tool arguments; malformed JSON yields an empty dict."""
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Malformed tool arguments: {raw[:80]}")
        return {}
    return value if isinstance(value, dict) else {}


class ToolCallAccumulator:
    """Merges streamed ``tool_calls`` deltas, keyed by their index."""

    def __init__(self):
        self._calls: Dict[int, Dict[str, str]] = {}

    def add(self, delta: Dict[str, Any]) -> None:
        index = delta.get("index", 0)
        entry = self._calls.setdefault(index, {"id": "", "name": "", "arguments": ""})
        if delta.get("id"):
            entry["id"] = delta["id"]
        function = delta.get("function") or {}
        if function.get("name"):
            entry["name"] += function["name"]
        if function.get("arguments"):
            entry["arguments"] += function["arguments"]

    def build(self) -> List[ToolCall]:
        calls = []
        for index in sorted(self._calls):
            entry = self._calls[index]
            if not entry["name"]:
                continue
            calls.append(ToolCall(
                id=entry["id"] or f"call_{index}",
                name=entry["name"],
                arguments=parse_arguments(entry["arguments"]),
                raw_arguments=entry["arguments"],
            ))
        return calls


class AsyncLLMStream:
    """
    Async chat-completions client with tool calling.

    Usage:
        llm = AsyncLLMStream()
        response = await llm.complete_turn(messages, tools=TOOL_DEFINITIONS)
        if response.has_tool_calls:
            ...
    """

    def __init__(
        self,
        config: Optional[GenerationConfig] = None,
        http_session: Optional[aiohttp.ClientSession] = None,
    ):
        self._config = config or GenerationConfig.from_settings()
        self._http = http_session
        self._owns_http = http_session is None

        self._state = GenerationState.IDLE

        # Metrics
        self._generation_count = 0
        self._tool_call_count = 0

    @property
    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._config.api_key}",
            "Content-Type": "application/json",
        }

    async def complete_turn(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> LLMResponse:
        """
        Run one completion over ``messages``.

        Raises:
            LLMError: both attempts failed
        """
        last_error: Optional[Exception] = None
        for attempt in range(2):
            try:
                return await self._complete_impl(messages, tools)
            except asyncio.CancelledError:
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                last_error = e
                if attempt == 0:
                    logger.warning(f"LLM error (attempt 1/2): {e}, retrying...")
                    await asyncio.sleep(self._config.retry_delay_s)
                else:
                    logger.error(f"LLM error (attempt 2/2): {e}")

        self._state = GenerationState.ERROR
        raise LLMError(str(last_error)) from last_error

    async def _complete_impl(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]],
    ) -> LLMResponse:
        self._state = GenerationState.GENERATING

        body: Dict[str, Any] = {
            "model": self._config.model,
            "messages": messages,
            "temperature": self._config.temperature,
            "max_tokens": self._config.max_tokens,
            "stream": True,
        }
        if tools:
            body["tools"] = tools
            body["tool_choice"] = "auto"

        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
            self._owns_http = True

        timeout = aiohttp.ClientTimeout(
            total=self._config.read_timeout_s,
            connect=self._config.connect_timeout_s,
        )

        start_time = time.time()
        text_parts: List[str] = []
        accumulator = ToolCallAccumulator()
        finish_reason = ""

        async with self._http.post(
            self._config.url,
            headers=self._headers,
            json=body,
            timeout=timeout,
        ) as response:
            response.raise_for_status()

            async for line in response.content:
                line = line.decode("utf-8").strip()
                if not line or not line.startswith("data: "):
                    continue

                data_str = line[6:]
                if data_str == "[DONE]":
                    break

                try:
                    data = json.loads(data_str)
                except json.JSONDecodeError:
                    continue

                choices = data.get("choices", [])
                if not choices:
                    continue
                delta = choices[0].get("delta") or {}
                if delta.get("content"):
                    text_parts.append(delta["content"])
                for tool_delta in delta.get("tool_calls") or []:
                    accumulator.add(tool_delta)
                if choices[0].get("finish_reason"):
                    finish_reason = choices[0]["finish_reason"]

        result = LLMResponse(
            text="".join(text_parts).strip(),
            tool_calls=accumulator.build(),
            finish_reason=finish_reason,
            generation_time_ms=(time.time() - start_time) * 1000,
        )

        self._state = GenerationState.COMPLETED
        self._generation_count += 1
        self._tool_call_count += len(result.tool_calls)
        logger.debug(
            f"LLM turn in {result.generation_time_ms:.0f}ms: "
            f"{len(result.text)} chars, {len(result.tool_calls)} tool calls"
        )
        return result

    async def close(self) -> None:
        """Cleanup resources."""
        if self._owns_http and self._http is not None and not self._http.closed:
            await self._http.close()
        self._http = None
        self._state = GenerationState.IDLE

    @property
    def state(self) -> GenerationState:
        return self._state

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "generation_count": self._generation_count,
            "tool_call_count": self._tool_call_count,
        }
