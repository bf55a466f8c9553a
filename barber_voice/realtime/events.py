"""
Event System for the Voice Booking Session

Every signal that crosses component boundaries is one of a closed set of
event dataclasses (``VoiceEvent``). Consumers dispatch over them with
``match`` and ``assert_never``, so an unhandled event kind is a type error
rather than a silent drop.

Event Types:
- TranscriptEvent: STT hypothesis or committed segment
- TurnEndEvent: The user finished speaking (final transcript or silence)
- BargeInEvent: The user interrupted agent speech
- TurnStateEvent: Turn controller state change
- TTSStartedEvent / TTSEndedEvent / TTSErrorEvent: Playback lifecycle
- TranscriptionErrorEvent: The STT service reported an error message
- ConnectionLostEvent: A streaming connection closed abnormally
- ToolCallEvent: A tool call finished (result attached)
- SessionStateEvent: Session state change
"""

import asyncio
import time
import uuid
from abc import ABC
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Awaitable, Callable, Dict, List, TypeVar, Union

from barber_voice.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T", bound="Event")
EventHandler = Callable[[T], Awaitable[None]]


class EventPriority(Enum):
    """Priority levels for event processing."""
    CRITICAL = 0  # Barge-in, connection loss
    HIGH = 1      # Turn boundaries, playback lifecycle
    NORMAL = 2    # Transcripts, tool results
    LOW = 3       # State notifications


@dataclass
class Event(ABC):
    """Base event class for all session events."""
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    timestamp: float = field(default_factory=time.time)
    priority: EventPriority = EventPriority.NORMAL
    cancelled: bool = False
    source: str = ""

    def cancel(self) -> None:
        """Mark this event as cancelled."""
        self.cancelled = True

    @property
    def age_ms(self) -> float:
        """Get event age in milliseconds."""
        return (time.time() - self.timestamp) * 1000


# ============================================================================
# States
# ============================================================================

class TurnState(Enum):
    """Turn controller state."""
    IDLE = auto()
    LISTENING = auto()
    PROCESSING = auto()
    SPEAKING = auto()


class SessionState(Enum):
    """Session-level state, supervising the turn controller."""
    IDLE = auto()
    CONNECTING = auto()
    LISTENING = auto()
    SPEAKING = auto()


class TurnTrigger(Enum):
    """What ended the user's turn."""
    FINAL_TRANSCRIPT = auto()
    SILENCE = auto()


# ============================================================================
# Speech-to-Text Events
# ============================================================================

@dataclass
class TranscriptEvent(Event):
    """STT result; ``is_final`` marks a segment the service committed."""
    text: str = ""
    is_final: bool = False
    source: str = "stt"


@dataclass
class TranscriptionErrorEvent(Event):
    """Error message sent by the transcription service."""
    message: str = ""
    priority: EventPriority = EventPriority.HIGH
    source: str = "stt"


@dataclass
class ConnectionLostEvent(Event):
    """A streaming connection closed with a non-normal close code or failed."""
    code: int = 0
    reason: str = ""
    priority: EventPriority = EventPriority.CRITICAL
    source: str = "stt"


# ============================================================================
# Turn Events
# ============================================================================

@dataclass
class TurnEndEvent(Event):
    """The user's turn is over; ``text`` is the accumulated utterance."""
    text: str = ""
    trigger: TurnTrigger = TurnTrigger.FINAL_TRANSCRIPT
    priority: EventPriority = EventPriority.HIGH
    source: str = "turn_controller"


@dataclass
class BargeInEvent(Event):
    """User interruption detected; playback was already stopped."""
    energy: float = 0.0
    partial_response: str = ""
    priority: EventPriority = EventPriority.CRITICAL
    source: str = "turn_controller"


@dataclass
class TurnStateEvent(Event):
    """Turn controller state change notification."""
    state: TurnState = TurnState.IDLE
    previous_state: TurnState = TurnState.IDLE
    priority: EventPriority = EventPriority.LOW
    source: str = "turn_controller"


# ============================================================================
# TTS Events
# ============================================================================

@dataclass
class TTSStartedEvent(Event):
    """Playback of an utterance began."""
    text: str = ""
    utterance_id: str = ""
    priority: EventPriority = EventPriority.HIGH
    source: str = "tts"


@dataclass
class TTSEndedEvent(Event):
    """Playback of an utterance completed (not fired for stopped utterances)."""
    text: str = ""
    utterance_id: str = ""
    priority: EventPriority = EventPriority.HIGH
    source: str = "tts"


@dataclass
class TTSErrorEvent(Event):
    """Synthesis or playback failed; nothing is retried automatically."""
    message: str = ""
    text: str = ""
    utterance_id: str = ""
    priority: EventPriority = EventPriority.HIGH
    source: str = "tts"


# ============================================================================
# Tool and Session Events
# ============================================================================

@dataclass
class ToolCallEvent(Event):
    """A tool call finished."""
    call_id: str = ""
    name: str = ""
    arguments: Dict[str, Any] = field(default_factory=dict)
    result: Dict[str, Any] = field(default_factory=dict)
    source: str = "tools"

    @property
    def succeeded(self) -> bool:
        return "error" not in self.result and self.result.get("success", True) is not False


@dataclass
class SessionStateEvent(Event):
    """Session state change notification."""
    state: SessionState = SessionState.IDLE
    previous_state: SessionState = SessionState.IDLE
    error: str = ""
    priority: EventPriority = EventPriority.LOW
    source: str = "session"


VoiceEvent = Union[
    TranscriptEvent,
    TranscriptionErrorEvent,
    ConnectionLostEvent,
    TurnEndEvent,
    BargeInEvent,
    TurnStateEvent,
    TTSStartedEvent,
    TTSEndedEvent,
    TTSErrorEvent,
    ToolCallEvent,
    SessionStateEvent,
]


# ============================================================================
# Event Bus
# ============================================================================

class EventBus:
    """
    Async event bus for session event coordination.

    Features:
    - Async publish/subscribe by event type (subclasses match)
    - Priority-based queued processing
    - Direct dispatch for events that must be handled in order right away
    """

    def __init__(self, max_queue_size: int = 500):
        self._handlers: Dict[type, List[EventHandler]] = {}
        self._queue: asyncio.PriorityQueue = asyncio.PriorityQueue(maxsize=max_queue_size)
        self._running: bool = False
        self._event_count: int = 0

    def subscribe(self, event_type: type, handler: EventHandler) -> None:
        """Subscribe to events of a specific type."""
        handlers = self._handlers.setdefault(event_type, [])
        if handler not in handlers:
            handlers.append(handler)

    def unsubscribe(self, event_type: type, handler: EventHandler) -> None:
        """Unsubscribe a handler from an event type."""
        if event_type in self._handlers:
            self._handlers[event_type] = [
                h for h in self._handlers[event_type] if h != handler
            ]

    async def publish(self, event: Event) -> None:
        """Queue an event for processing by :meth:`run`."""
        if event.cancelled:
            return

        self._event_count += 1
        queue_item = (event.priority.value, self._event_count, event)

        try:
            self._queue.put_nowait(queue_item)
        except asyncio.QueueFull:
            logger.warning(f"Event queue full, dropping {type(event).__name__}")

    async def publish_immediate(self, event: Event) -> None:
        """Dispatch an event now, bypassing the queue."""
        await self._dispatch(event)

    async def _dispatch(self, event: Event) -> None:
        if event.cancelled:
            return

        handlers: List[EventHandler] = []
        for registered_type, type_handlers in self._handlers.items():
            if isinstance(event, registered_type):
                handlers.extend(type_handlers)

        for handler in handlers:
            try:
                await handler(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Handler error for {type(event).__name__}: {e}", exc_info=True)

    async def run(self) -> None:
        """Process queued events until :meth:`stop` is called."""
        self._running = True
        logger.debug("Event bus started")

        while self._running:
            try:
                _, _, event = await asyncio.wait_for(self._queue.get(), timeout=0.1)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            try:
                await self._dispatch(event)
            finally:
                self._queue.task_done()

        logger.debug("Event bus stopped")

    def stop(self) -> None:
        """Stop the event processing loop."""
        self._running = False

    @property
    def queue_size(self) -> int:
        return self._queue.qsize()

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait for queue to empty."""
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Event queue drain timed out")
