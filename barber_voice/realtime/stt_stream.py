"""
Streaming Speech-to-Text Module

Duplex websocket client for Soniox-style streaming transcription:
- One JSON config frame on connect (sample rate, language, punctuation)
- Audio frames as base64 PCM16 inside ``{"type": "audio"}`` messages
- Transcript messages published as TranscriptEvent in arrival order
- ``{"type": "end_stream"}`` before an intentional close
- Abnormal close codes published as ConnectionLostEvent so the session can
  reconnect instead of going quietly idle
"""

import asyncio
import base64
import json
import re
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Dict, Optional

import aiohttp

from barber_voice.config import Settings, settings as default_settings
from barber_voice.logger import get_logger
from .events import ConnectionLostEvent, EventBus, TranscriptEvent, TranscriptionErrorEvent

logger = get_logger(__name__)

NORMAL_CLOSE_CODES = (1000, 1001)
ABNORMAL_CLOSE = 1006
CONTROL_TOKEN = re.compile(r"<ctrl\d+>")


class TranscriptionError(Exception):
    """The transcription connection could not be opened."""


class STTState(Enum):
    """State of the STT stream."""
    IDLE = auto()
    CONNECTING = auto()
    LISTENING = auto()
    PAUSED = auto()


@dataclass
class STTConfig:
    """Streaming transcription configuration."""
    url: str = "wss://api.soniox.com/transcribe-websocket"
    api_key: str = ""
    sample_rate: int = 16000
    language: str = "bg"
    enable_punctuation: bool = True
    model: str = "precision"
    connect_timeout_s: float = 10.0

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "STTConfig":
        config = config or default_settings
        return cls(
            url=config.soniox.url,
            api_key=config.soniox.api_key,
            sample_rate=config.audio.input_sample_rate,
            language=config.soniox.language,
            enable_punctuation=config.soniox.enable_punctuation,
            model=config.soniox.model,
        )

    def config_frame(self) -> Dict[str, Any]:
        return {
            "type": "config",
            "config": {
                "sample_rate": self.sample_rate,
                "language": self.language,
                "enable_punctuation": self.enable_punctuation,
                "enable_speaker_diarization": False,
                "model": self.model,
            },
        }


class SonioxSTTStream:
    """
    Streaming speech-to-text over a websocket.

    Usage:
        stt = SonioxSTTStream(event_bus)
        await stt.connect()
        await stt.send_audio(pcm16_frame)
        await stt.disconnect()
    """

    def __init__(
        self,
        event_bus: EventBus,
        config: Optional[STTConfig] = None,
        http_session: Optional[aiohttp.ClientSession] = None,
    ):
        self._event_bus = event_bus
        self._config = config or STTConfig.from_settings()
        self._http = http_session
        self._owns_http = http_session is None
        self._state = STTState.IDLE

        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._receive_task: Optional[asyncio.Task] = None
        self._closing = False
        self._stream_sid = ""

        # Metrics
        self._frames_sent = 0
        self._transcripts_received = 0

    @property
    def state(self) -> STTState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    @property
    def _url(self) -> str:
        separator = "&" if "?" in self._config.url else "?"
        return f"{self._config.url}{separator}api_key={self._config.api_key}"

    # ========================================================================
    # Connection
    # ========================================================================

    async def connect(self) -> None:
        """
        Open the websocket and send the config frame.

        Raises:
            TranscriptionError: the connection could not be established
        """
        if self.is_connected:
            return

        self._state = STTState.CONNECTING
        self._closing = False

        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
            self._owns_http = True

        try:
            self._ws = await asyncio.wait_for(
                self._http.ws_connect(self._url, heartbeat=15.0),
                timeout=self._config.connect_timeout_s,
            )
            await self._ws.send_str(json.dumps(self._config.config_frame()))
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            self._state = STTState.IDLE
            self._ws = None
            await self._close_http()
            raise TranscriptionError(f"STT connection failed: {e}") from e

        self._state = STTState.LISTENING
        self._receive_task = asyncio.create_task(self._receive_loop(self._ws))
        logger.info(f"STT connected ({self._config.language}, {self._config.sample_rate} Hz)")

    async def disconnect(self) -> None:
        """Send the end-of-stream marker and close the websocket."""
        self._closing = True
        ws, self._ws = self._ws, None

        if ws is not None and not ws.closed:
            try:
                await ws.send_str(json.dumps({"type": "end_stream"}))
            except (aiohttp.ClientError, ConnectionError) as e:
                logger.debug(f"end_stream not delivered: {e}")
            await ws.close()

        task, self._receive_task = self._receive_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        await self._close_http()
        self._state = STTState.IDLE
        logger.debug(f"STT disconnected (frames sent: {self._frames_sent})")

    async def _close_http(self) -> None:
        if self._owns_http and self._http is not None and not self._http.closed:
            await self._http.close()
        if self._owns_http:
            self._http = None

    # ========================================================================
    # Audio
    # ========================================================================

    def pause(self) -> None:
        """Stop forwarding audio (frames are dropped) until resume()."""
        if self._state == STTState.LISTENING:
            self._state = STTState.PAUSED

    def resume(self) -> None:
        if self._state == STTState.PAUSED:
            self._state = STTState.LISTENING

    async def send_audio(self, frame: bytes) -> bool:
        """Send one PCM16 frame. Returns False when the frame was dropped."""
        if self._state != STTState.LISTENING or not self.is_connected:
            return False
        payload = {"type": "audio", "data": base64.b64encode(frame).decode("ascii")}
        try:
            await self._ws.send_str(json.dumps(payload))
        except (aiohttp.ClientError, ConnectionError) as e:
            logger.debug(f"Audio frame not sent: {e}")
            return False
        self._frames_sent += 1
        return True

    # ========================================================================
    # Receiving
    # ========================================================================

    async def _receive_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        close_code: Optional[int] = None
        reason = ""
        try:
            while True:
                message = await ws.receive()
                if message.type == aiohttp.WSMsgType.TEXT:
                    await self._handle_message(message.data)
                elif message.type == aiohttp.WSMsgType.CLOSE:
                    close_code, reason = message.data, message.extra or ""
                    break
                elif message.type in (aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
                    break
                elif message.type == aiohttp.WSMsgType.ERROR:
                    close_code, reason = ABNORMAL_CLOSE, str(ws.exception() or "websocket error")
                    break
        except asyncio.CancelledError:
            raise
        except (aiohttp.ClientError, ConnectionError) as e:
            close_code, reason = ABNORMAL_CLOSE, str(e)

        if close_code is None:
            close_code = ws.close_code if ws.close_code is not None else ABNORMAL_CLOSE
        await self._on_closed(close_code, reason)

    async def _handle_message(self, raw: str) -> None:
        """Parse one service message and publish the matching event."""
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Unparseable STT message: {raw[:80]}")
            return

        kind = message.get("type")
        if kind == "connected":
            self._stream_sid = message.get("stream_sid", "")
            logger.debug(f"STT stream started: {self._stream_sid}")
        elif kind == "transcript":
            text = CONTROL_TOKEN.sub("", message.get("text") or "").strip()
            if not text:
                return
            is_final = bool(message.get("is_final") or message.get("speech_final"))
            self._transcripts_received += 1
            await self._event_bus.publish_immediate(TranscriptEvent(text=text, is_final=is_final))
        elif kind == "error":
            error_message = message.get("message") or "Unknown transcription error"
            logger.error(f"STT service error: {error_message}")
            await self._event_bus.publish_immediate(TranscriptionErrorEvent(message=error_message))
        else:
            logger.debug(f"Unknown STT message type: {kind}")

    async def _on_closed(self, code: int, reason: str) -> None:
        was_closing = self._closing
        self._state = STTState.IDLE
        self._ws = None
        logger.info(f"STT websocket closed: {code} {reason}".strip())

        if was_closing or code in NORMAL_CLOSE_CODES:
            return

        await self._event_bus.publish_immediate(
            ConnectionLostEvent(code=code, reason=reason or f"Connection closed unexpectedly: {code}")
        )

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "state": self._state.name,
            "frames_sent": self._frames_sent,
            "transcripts_received": self._transcripts_received,
        }
