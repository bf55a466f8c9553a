"""
Text-to-Speech Module

ElevenLabs synthesis with cancellable playback:
- One HTTP request per utterance, raw PCM back, played immediately
- At most one utterance at a time; ``speak()`` cancels the previous one
- ``stop()`` aborts the request or playback and releases the buffer
- TTSStartedEvent when playback begins, TTSEndedEvent exactly once when
  an utterance plays to the end, TTSErrorEvent on failure (no retry)
"""

import asyncio
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Dict, Optional, Protocol

import aiohttp
import numpy as np

from barber_voice.config import Settings, settings as default_settings
from barber_voice.logger import get_logger
from .events import EventBus, TTSEndedEvent, TTSErrorEvent, TTSStartedEvent

logger = get_logger(__name__)


class SynthesisError(Exception):
    """The synthesis request failed or returned a non-2xx status."""


class TTSState(Enum):
    """State of the TTS stream."""
    IDLE = auto()
    SYNTHESIZING = auto()
    PLAYING = auto()


@dataclass
class TTSConfig:
    """Synthesis request configuration."""
    api_key: str = ""
    url: str = ""
    model_id: str = "eleven_multilingual_v2"
    stability: float = 0.5
    similarity_boost: float = 0.75
    style: float = 0.3
    use_speaker_boost: bool = True
    optimize_streaming_latency: int = 3
    output_format: str = "pcm_24000"
    sample_rate: int = 24000
    request_timeout_s: float = 20.0
    output_device: Optional[Any] = None

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "TTSConfig":
        config = config or default_settings
        eleven = config.elevenlabs
        return cls(
            api_key=eleven.api_key,
            url=eleven.stream_url,
            model_id=eleven.model_id,
            stability=eleven.stability,
            similarity_boost=eleven.similarity_boost,
            style=eleven.style,
            use_speaker_boost=eleven.use_speaker_boost,
            optimize_streaming_latency=eleven.optimize_streaming_latency,
            output_format=eleven.output_format,
            sample_rate=config.audio.output_sample_rate,
            request_timeout_s=eleven.request_timeout_s,
            output_device=config.audio.output_device,
        )

    def request_body(self, text: str) -> Dict[str, Any]:
        return {
            "text": text,
            "model_id": self.model_id,
            "voice_settings": {
                "stability": self.stability,
                "similarity_boost": self.similarity_boost,
                "style": self.style,
                "use_speaker_boost": self.use_speaker_boost,
            },
            "optimize_streaming_latency": self.optimize_streaming_latency,
        }


# ============================================================================
# Playback
# ============================================================================

class AudioPlayer(Protocol):
    async def play(self, pcm: bytes) -> None: ...

    def stop(self) -> None: ...


class PcmPlayer:
    """
    Plays mono PCM16 through sounddevice.

    ``play`` returns when the buffer has been played out; ``stop`` (or
    cancelling ``play``) aborts the output stream immediately.
    """

    def __init__(self, sample_rate: int = 24000, device: Optional[Any] = None, block_size: int = 1024):
        self._sample_rate = sample_rate
        self._device = device
        self._block_size = block_size
        self._stream: Optional[Any] = None

    async def play(self, pcm: bytes) -> None:
        import sounddevice as sd  # PortAudio is loaded on first use

        samples = np.frombuffer(pcm, dtype=np.int16)
        if samples.size == 0:
            return

        loop = asyncio.get_running_loop()
        finished = asyncio.Event()
        position = 0

        def callback(outdata: np.ndarray, frames: int, time_info: Any, status: Any) -> None:
            nonlocal position
            chunk = samples[position:position + frames]
            outdata[:len(chunk), 0] = chunk
            if len(chunk) < frames:
                outdata[len(chunk):, 0] = 0
                raise sd.CallbackStop
            position += frames

        def on_finished() -> None:
            if not loop.is_closed():
                loop.call_soon_threadsafe(finished.set)

        self.stop()
        stream = sd.OutputStream(
            samplerate=self._sample_rate,
            channels=1,
            dtype="int16",
            blocksize=self._block_size,
            device=self._device,
            callback=callback,
            finished_callback=on_finished,
        )
        self._stream = stream
        stream.start()
        try:
            await finished.wait()
        finally:
            if self._stream is stream:
                self.stop()

    def stop(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.abort()
        finally:
            stream.close()


# ============================================================================
# TTS stream
# ============================================================================

class ElevenLabsTTSStream:
    """
    Text-to-speech with barge-in support.

    Usage:
        tts = ElevenLabsTTSStream(event_bus)
        await tts.speak("Здравейте!")
        await tts.stop()  # On barge-in
    """

    def __init__(
        self,
        event_bus: EventBus,
        config: Optional[TTSConfig] = None,
        player: Optional[AudioPlayer] = None,
        http_session: Optional[aiohttp.ClientSession] = None,
    ):
        self._event_bus = event_bus
        self._config = config or TTSConfig.from_settings()
        self._player = player or PcmPlayer(
            sample_rate=self._config.sample_rate,
            device=self._config.output_device,
        )
        self._http = http_session
        self._owns_http = http_session is None
        self._state = TTSState.IDLE

        self._current_task: Optional[asyncio.Task] = None
        self._current_text = ""
        self._utterance_count = 0

    @property
    def state(self) -> TTSState:
        return self._state

    @property
    def is_speaking(self) -> bool:
        return self._current_task is not None and not self._current_task.done()

    @property
    def current_text(self) -> str:
        """Text of the utterance in flight, empty when idle."""
        return self._current_text if self.is_speaking else ""

    @property
    def _headers(self) -> Dict[str, str]:
        return {
            "xi-api-key": self._config.api_key,
            "Content-Type": "application/json",
            "Accept": "audio/*",
        }

    # ========================================================================
    # Public API
    # ========================================================================

    async def speak(self, text: str) -> bool:
        """
        Synthesize and play ``text``.

        Returns:
            True when the utterance played to the end, False when it was
            stopped or failed
        """
        if not text or not text.strip():
            return True

        await self.stop()

        self._utterance_count += 1
        utterance_id = f"utt_{self._utterance_count}"
        self._current_text = text
        task = asyncio.create_task(self._speak_impl(text, utterance_id))
        self._current_task = task

        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise

        if task.cancelled():
            return False
        return task.result()

    async def stop(self) -> None:
        """Cancel the request in flight and halt playback immediately."""
        task, self._current_task = self._current_task, None
        self._player.stop()
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.wait({task})
            logger.debug("TTS stopped")
        self._state = TTSState.IDLE

    async def close(self) -> None:
        await self.stop()
        if self._owns_http and self._http is not None and not self._http.closed:
            await self._http.close()
        self._http = None

    # ========================================================================
    # Internals
    # ========================================================================

    async def _speak_impl(self, text: str, utterance_id: str) -> bool:
        self._state = TTSState.SYNTHESIZING
        try:
            pcm = await self._synthesize(text)
        except SynthesisError as e:
            self._state = TTSState.IDLE
            logger.error(f"TTS failed: {e}")
            await self._event_bus.publish_immediate(
                TTSErrorEvent(message=str(e), text=text, utterance_id=utterance_id)
            )
            return False

        self._state = TTSState.PLAYING
        await self._event_bus.publish_immediate(TTSStartedEvent(text=text, utterance_id=utterance_id))
        try:
            await self._player.play(pcm)
        except Exception as e:
            self._state = TTSState.IDLE
            logger.error(f"Playback failed: {e}")
            await self._event_bus.publish_immediate(
                TTSErrorEvent(message=f"Playback failed: {e}", text=text, utterance_id=utterance_id)
            )
            return False
        self._state = TTSState.IDLE
        await self._event_bus.publish_immediate(TTSEndedEvent(text=text, utterance_id=utterance_id))
        return True

    async def _synthesize(self, text: str) -> bytes:
        """POST the utterance and return raw PCM16."""
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
            self._owns_http = True

        timeout = aiohttp.ClientTimeout(total=self._config.request_timeout_s)
        try:
            async with self._http.post(
                self._config.url,
                params={"output_format": self._config.output_format},
                headers=self._headers,
                json=self._config.request_body(text),
                timeout=timeout,
            ) as response:
                if response.status >= 300:
                    detail = await response.text()
                    raise SynthesisError(f"HTTP {response.status}: {detail[:200]}")
                audio = await response.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SynthesisError(f"TTS request failed: {e}") from e

        logger.debug(f"Synthesized {len(audio)} bytes for: {text[:40]}")
        return audio
