"""
Conversation Log Writer

Buffers transcript fragments and writes them to the log store as whole
utterances: user speech when the user turn ends, agent text when the reply
has played (or was cut off by barge-in).
Tool calls and system notes are written as they happen. Store failures are
logged and never interrupt the session.
"""

import re
from typing import Any, Callable, Dict, List, Optional

from barber_voice.core.backend import ConversationLogStore
from barber_voice.core.models import LogEvent, LogEventType, LogOutcome
from barber_voice.logger import get_logger
from barber_voice.messages import msg

logger = get_logger(__name__)

CONTROL_TOKEN = re.compile(r"<ctrl\d+>")


def clean_fragment(text: str) -> str:
    return CONTROL_TOKEN.sub("", text or "").strip()


class ConversationLogger:
    """
    Incremental writer for one conversation log.

    Usage:
        log = ConversationLogger(store, clock=shop_clock.timestamp)
        await log.start()
        log.buffer_user("Искам час")
        await log.flush_user()
        log.buffer_agent("За кой ден?")
        await log.flush_turn()
        await log.finish(LogOutcome.COMPLETED, booking_created=True)
    """

    def __init__(self, store: ConversationLogStore, clock: Callable[[], float], lang: str = "bg"):
        self._store = store
        self._clock = clock
        self._lang = lang

        self._log_id: Optional[str] = None
        self._user_parts: List[str] = []
        self._agent_parts: List[str] = []
        self._last_timestamp = 0.0
        self._finished = False
        self._event_count = 0

    @property
    def log_id(self) -> Optional[str]:
        return self._log_id

    @property
    def is_open(self) -> bool:
        return self._log_id is not None and not self._finished

    @property
    def event_count(self) -> int:
        return self._event_count

    async def start(self) -> Optional[str]:
        """Open the log record; returns its id, or None if the store failed."""
        try:
            self._log_id = await self._store.start_log()
        except Exception as e:
            logger.error(f"Could not start conversation log: {e}")
            self._log_id = None
            return None
        self._finished = False
        logger.info(f"Conversation log started: {self._log_id}")
        return self._log_id

    # ========================================================================
    # Buffering
    # ========================================================================

    def buffer_user(self, text: str) -> None:
        fragment = clean_fragment(text)
        if fragment:
            self._user_parts.append(fragment)

    def buffer_agent(self, text: str) -> None:
        fragment = clean_fragment(text)
        if fragment:
            self._agent_parts.append(fragment)

    async def flush_user(self) -> None:
        """Write buffered user speech as soon as the turn has ended."""
        user_text = " ".join(self._user_parts)
        self._user_parts.clear()
        if user_text:
            await self._append(LogEventType.USER_SPEECH, user_text)

    async def flush_turn(self) -> None:
        """Write buffered user speech, then the agent response."""
        user_text = " ".join(self._user_parts)
        agent_text = " ".join(self._agent_parts)
        self._user_parts.clear()
        self._agent_parts.clear()
        if user_text:
            await self._append(LogEventType.USER_SPEECH, user_text)
        if agent_text:
            await self._append(LogEventType.AGENT_RESPONSE, agent_text)

    async def flush_interrupted(self) -> None:
        """Write the buffered turn with the agent text marked as interrupted."""
        if self._agent_parts:
            self._agent_parts[-1] += msg("log.interrupted_marker", self._lang)
        await self.flush_turn()

    # ========================================================================
    # Direct events
    # ========================================================================

    async def record_tool_call(self, name: str, arguments: Dict[str, Any], result: Dict[str, Any]) -> None:
        await self._append(LogEventType.TOOL_CALL, name, {"args": arguments, "result": result})

    async def record_system(self, content: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        await self._append(LogEventType.SYSTEM, content, metadata)

    async def _append(self, event_type: LogEventType, content: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        if not self.is_open:
            return
        # Timestamps never go backwards within one log.
        timestamp = max(self._clock(), self._last_timestamp)
        self._last_timestamp = timestamp
        event = LogEvent(type=event_type, content=content, timestamp=timestamp, metadata=metadata)
        try:
            await self._store.append_event(self._log_id, event)
        except Exception as e:
            logger.warning(f"Conversation log event dropped ({event_type.value}): {e}")
            return
        self._event_count += 1

    # ========================================================================
    # Finalization
    # ========================================================================

    async def finish(
        self,
        outcome: LogOutcome,
        booking_created: bool = False,
        appointment_id: Optional[str] = None,
    ) -> bool:
        """
        Flush pending text and close the log with ``outcome``.

        Returns:
            False when the log was already finished (or never started)
        """
        if not self.is_open:
            return False
        await self.flush_turn()
        self._finished = True
        try:
            await self._store.end_log(self._log_id, outcome, booking_created, appointment_id)
        except Exception as e:
            logger.error(f"Could not finalize conversation log {self._log_id}: {e}")
            return False
        logger.info(f"Conversation log {self._log_id} finished: {outcome.value}")
        return True
