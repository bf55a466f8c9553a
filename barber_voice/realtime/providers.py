"""
Vendor strategies for the voice pipeline.

The session only talks to three capabilities:
- stream_transcribe: a duplex transcription stream (connect / send_audio / disconnect)
- synthesize_speech: cancellable speech playback (speak / stop)
- complete_turn: one LLM turn with tool calls

Each vendor integration implements one of them and is picked by name from
settings, so swapping vendors never touches the session logic.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol

from barber_voice.config import Settings, settings as default_settings
from barber_voice.logger import get_logger
from .events import EventBus
from .llm_stream import AsyncLLMStream, GenerationConfig, LLMResponse
from .stt_stream import SonioxSTTStream, STTConfig
from .tts_stream import ElevenLabsTTSStream, TTSConfig

logger = get_logger(__name__)


class TranscriptionProvider(Protocol):
    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    async def send_audio(self, frame: bytes) -> bool: ...

    def pause(self) -> None: ...

    def resume(self) -> None: ...


class SpeechProvider(Protocol):
    async def speak(self, text: str) -> bool: ...

    async def stop(self) -> None: ...

    async def close(self) -> None: ...


class TurnCompletionProvider(Protocol):
    async def complete_turn(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> LLMResponse: ...

    async def close(self) -> None: ...


@dataclass
class VoiceProviders:
    """The three capabilities a session needs."""
    stream_transcribe: TranscriptionProvider
    synthesize_speech: SpeechProvider
    complete_turn: TurnCompletionProvider

    async def close(self) -> None:
        await self.stream_transcribe.disconnect()
        await self.synthesize_speech.close()
        await self.complete_turn.close()


# ============================================================================
# Registries
# ============================================================================

def _soniox(event_bus: EventBus, config: Settings) -> TranscriptionProvider:
    return SonioxSTTStream(event_bus, STTConfig.from_settings(config))


def _elevenlabs(event_bus: EventBus, config: Settings) -> SpeechProvider:
    return ElevenLabsTTSStream(event_bus, TTSConfig.from_settings(config))


def _openai(event_bus: EventBus, config: Settings) -> TurnCompletionProvider:
    return AsyncLLMStream(GenerationConfig.from_settings(config))


STT_PROVIDERS: Dict[str, Callable[[EventBus, Settings], TranscriptionProvider]] = {
    "soniox": _soniox,
}
TTS_PROVIDERS: Dict[str, Callable[[EventBus, Settings], SpeechProvider]] = {
    "elevenlabs": _elevenlabs,
}
LLM_PROVIDERS: Dict[str, Callable[[EventBus, Settings], TurnCompletionProvider]] = {
    "openai": _openai,
}


def _lookup(registry: Dict[str, Callable], name: str, kind: str) -> Callable:
    try:
        return registry[name.lower()]
    except KeyError:
        raise ValueError(f"Unknown {kind} provider '{name}' (available: {', '.join(sorted(registry))})")


def build_providers(event_bus: EventBus, config: Optional[Settings] = None) -> VoiceProviders:
    """
    Instantiate the providers named in ``config.session``.

    Raises:
        ValueError: a provider name is not registered
    """
    config = config or default_settings
    session = config.session
    stt = _lookup(STT_PROVIDERS, session.stt_provider, "STT")
    tts = _lookup(TTS_PROVIDERS, session.tts_provider, "TTS")
    llm = _lookup(LLM_PROVIDERS, session.llm_provider, "LLM")

    logger.info(f"Voice providers: STT={session.stt_provider}, TTS={session.tts_provider}, LLM={session.llm_provider}")
    return VoiceProviders(
        stream_transcribe=stt(event_bus, config),
        synthesize_speech=tts(event_bus, config),
        complete_turn=llm(event_bus, config),
    )
