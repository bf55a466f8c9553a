"""
Voice Session Module

One live booking conversation, from microphone to playback.

The session owns every timer, task, cache and flag of the conversation and
is the unit of cancellation: ``start()`` brings it to life, ``stop()`` (or
an exhausted reconnect budget) disposes of it.

State machine (session level, supervising the turn controller):
    IDLE -> CONNECTING -> LISTENING <-> SPEAKING
    CONNECTING again while a dropped STT connection is being re-established
    IDLE on stop() or when reconnects are exhausted
"""

import asyncio
import json
from dataclasses import asdict
from typing import Callable, List, Optional, Set, assert_never

from barber_voice.config import Settings, settings as default_settings
from barber_voice.core.backend import BookingBackend, ConversationLogStore, LiveCatalog
from barber_voice.core.booking_state import BookingConversation
from barber_voice.core.clock import ShopClock
from barber_voice.core.models import DEFAULT_SERVICES, Appointment, ConversationTurn, LogOutcome, Role
from barber_voice.logger import clear_session_id, get_logger, set_session_id
from barber_voice.messages import msg
from barber_voice.prompts import build_messages, build_system_prompt
from .audio_capture import AudioCapture, AudioCaptureConfig
from .conversation_log import ConversationLogger
from .events import (
    BargeInEvent,
    ConnectionLostEvent,
    Event,
    EventBus,
    SessionState,
    SessionStateEvent,
    ToolCallEvent,
    TranscriptEvent,
    TranscriptionErrorEvent,
    TTSEndedEvent,
    TTSErrorEvent,
    TTSStartedEvent,
    TurnEndEvent,
    TurnState,
    TurnStateEvent,
    VoiceEvent,
)
from .llm_stream import LLMError
from .providers import VoiceProviders, build_providers
from .stt_stream import TranscriptionError
from .tools import TOOL_DEFINITIONS, ToolOrchestrator
from .turn_controller import TurnController

logger = get_logger(__name__)

StateCallback = Callable[[SessionState, SessionState], None]


class VoiceSession:
    """
    Session/reconnection manager for one voice booking conversation.

    Usage:
        session = VoiceSession(backend, log_store)
        await session.start()      # raises MicrophoneUnavailable
        ...
        await session.stop()       # log finalized: completed / abandoned
        await session.close()
    """

    def __init__(
        self,
        backend: BookingBackend,
        log_store: ConversationLogStore,
        providers: Optional[VoiceProviders] = None,
        capture: Optional[AudioCapture] = None,
        event_bus: Optional[EventBus] = None,
        clock: Optional[ShopClock] = None,
        config: Optional[Settings] = None,
        on_state_change: Optional[StateCallback] = None,
        on_booked: Optional[Callable[[Appointment], None]] = None,
    ):
        self._config = config or default_settings
        self._lang = self._config.shop.language
        self._event_bus = event_bus or EventBus()
        self._backend = backend
        self._clock = clock or ShopClock(self._config.shop.timezone)
        self._providers = providers or build_providers(self._event_bus, self._config)
        self._capture = capture or AudioCapture(AudioCaptureConfig.from_settings(self._config))
        self._on_state_change = on_state_change
        self._on_booked = on_booked

        self.catalog = LiveCatalog(backend)
        self.conversation = BookingConversation(lang=self._lang)
        self.log = ConversationLogger(log_store, clock=self._clock.timestamp, lang=self._lang)
        self.tools = self._make_tools()
        self.turns = TurnController(
            self._event_bus,
            tts=self._providers.synthesize_speech,
            stt=self._providers.stream_transcribe,
            energy_source=lambda: self._capture.level,
            config=self._config.turn,
        )

        self._state = SessionState.IDLE
        self.error = ""
        self._user_disconnecting = False
        self._greeted = False
        self._reconnect_attempts = 0
        self._confirmed_appointment: Optional[str] = None

        self._bus_task: Optional[asyncio.Task] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._turn_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

        self._event_bus.subscribe(Event, self._handle_event)

    def _make_tools(self) -> ToolOrchestrator:
        return ToolOrchestrator(
            self._backend,
            self.catalog,
            self._clock,
            event_bus=self._event_bus,
            config=self._config.tools,
            grid=self._config.shop.time_slots,
            on_booked=self._on_booked,
            lang=self._lang,
        )

    # ========================================================================
    # Properties
    # ========================================================================

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state != SessionState.IDLE

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def _stt(self):
        return self._providers.stream_transcribe

    @property
    def _tts(self):
        return self._providers.synthesize_speech

    @property
    def _llm(self):
        return self._providers.complete_turn

    async def _set_state(self, new_state: SessionState) -> None:
        previous = self._state
        if previous == new_state:
            return
        self._state = new_state
        logger.info(f"Session state: {previous.name} -> {new_state.name}")
        await self._event_bus.publish(SessionStateEvent(state=new_state, previous_state=previous, error=self.error))
        if self._on_state_change is not None:
            try:
                self._on_state_change(new_state, previous)
            except Exception as e:
                logger.error(f"State callback failed: {e}")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self) -> None:
        """
        Open the microphone, the log and the STT connection, then greet.

        Raises:
            MicrophoneUnavailable: the session does not start
        """
        if self.is_active:
            return

        self.error = ""
        self._user_disconnecting = False
        self._greeted = False
        self._reconnect_attempts = 0
        self._confirmed_appointment = None
        self.conversation.reset_conversation()
        self.tools = self._make_tools()

        await self._capture.start()

        self._bus_task = asyncio.create_task(self._event_bus.run())
        try:
            await self.catalog.start()
        except Exception:
            await self._teardown(None)
            raise

        log_id = await self.log.start()
        if log_id:
            set_session_id(log_id)

        await self._set_state(SessionState.CONNECTING)
        try:
            await self._stt.connect()
        except TranscriptionError as e:
            logger.warning(f"Initial STT connection failed: {e}")
            await self._schedule_reconnect(str(e))
            return
        await self._on_connected()

    async def _on_connected(self) -> None:
        self._reconnect_attempts = 0
        self.error = ""

        if self._pump_task is None or self._pump_task.done():
            self._pump_task = asyncio.create_task(self._pump_audio())
        self.turns.start_polling()

        if not self._greeted:
            self._greeted = True
            await self._set_state(SessionState.LISTENING)
            self._turn_task = self._spawn(self._greet())
            return

        if self.turns.state in (TurnState.PROCESSING, TurnState.SPEAKING):
            if self._config.turn.pause_stt_while_processing:
                self._stt.pause()
        else:
            await self.turns.start_listening()
        await self._set_state(
            SessionState.SPEAKING if self.turns.state == TurnState.SPEAKING else SessionState.LISTENING
        )

    async def stop(self) -> None:
        """User-initiated end of the session."""
        if not self.is_active:
            return
        self._user_disconnecting = True
        outcome = LogOutcome.COMPLETED if self.tools.booking_created else LogOutcome.ABANDONED
        logger.info(f"Session stopping ({outcome.value})")
        await self._teardown(outcome)
        self.conversation.reset_conversation()

    async def close(self) -> None:
        """Stop if needed and release provider resources."""
        await self.stop()
        await self._providers.close()

    async def _teardown(self, outcome: Optional[LogOutcome]) -> None:
        self._user_disconnecting = True
        current = asyncio.current_task()

        cancelled = []
        for task in {self._reconnect_task, self._turn_task, *self._tasks}:
            if task is not None and task is not current and not task.done():
                task.cancel()
                cancelled.append(task)
        self._reconnect_task = None
        self._turn_task = None
        if cancelled:
            await asyncio.gather(*cancelled, return_exceptions=True)

        await self.turns.stop()

        if self._pump_task is not None and self._pump_task is not current:
            self._pump_task.cancel()
        self._pump_task = None

        await self._tts.stop()
        await self._stt.disconnect()
        self._capture.stop()
        self.catalog.stop()
        await self.tools.aclose()

        if outcome is not None:
            await self.log.finish(
                outcome,
                booking_created=self.tools.booking_created,
                appointment_id=self.tools.appointment_id,
            )

        await self._set_state(SessionState.IDLE)

        self._event_bus.stop()
        if self._bus_task is not None and self._bus_task is not current:
            self._bus_task.cancel()
            try:
                await self._bus_task
            except asyncio.CancelledError:
                pass
        self._bus_task = None
        clear_session_id()

    # ========================================================================
    # Reconnection
    # ========================================================================

    async def _schedule_reconnect(self, reason: str) -> None:
        if self._user_disconnecting:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return

        if self._reconnect_attempts >= self._config.session.max_reconnects:
            await self._fail_terminal(reason)
            return

        self._reconnect_attempts += 1
        logger.warning(
            f"Reconnect scheduled ({self._reconnect_attempts}/{self._config.session.max_reconnects}): {reason}"
        )
        await self._set_state(SessionState.CONNECTING)
        self._reconnect_task = asyncio.create_task(self._reconnect_after_delay())

    async def _reconnect_after_delay(self) -> None:
        await asyncio.sleep(self._config.session.reconnect_delay_s)
        if self._user_disconnecting:
            return
        try:
            await self._stt.disconnect()
            await self._stt.connect()
        except TranscriptionError as e:
            self._reconnect_task = None
            await self._schedule_reconnect(f"connect_failed: {e}")
            return
        self._reconnect_task = None
        logger.info("Reconnected")
        await self._on_connected()

    async def _fail_terminal(self, reason: str) -> None:
        self.error = msg("session.connection_unstable", self._lang)
        logger.error(f"Giving up after {self._reconnect_attempts} reconnect attempts: {reason}")
        await self.log.record_system("connection_unstable", {"reason": reason})
        await self._teardown(LogOutcome.ERROR)

    # ========================================================================
    # Event handling
    # ========================================================================

    async def _handle_event(self, event: VoiceEvent) -> None:
        match event:
            case TranscriptEvent():
                await self.turns.on_transcript(event)
            case TurnEndEvent():
                self._start_turn(event.text)
            case TTSStartedEvent():
                await self.turns.mark_speaking(event.text)
                await self._set_state(SessionState.SPEAKING)
            case TTSEndedEvent():
                await self.turns.on_playback_end()
                if self._state == SessionState.SPEAKING:
                    await self._set_state(SessionState.LISTENING)
            case TTSErrorEvent():
                logger.warning(f"Agent reply not played: {event.message}")
            case BargeInEvent():
                await self.log.flush_interrupted()
                if self._state == SessionState.SPEAKING:
                    await self._set_state(SessionState.LISTENING)
            case TranscriptionErrorEvent():
                await self.log.record_system("stt_error", {"message": event.message})
            case ConnectionLostEvent():
                if not self.is_active or self._user_disconnecting:
                    return
                await self.log.record_system("connection_lost", {"code": event.code, "reason": event.reason})
                await self._schedule_reconnect(f"{event.code} {event.reason}".strip())
            case ToolCallEvent():
                await self.log.record_tool_call(event.name, event.arguments, event.result)
            case TurnStateEvent() | SessionStateEvent():
                pass
            case _:
                assert_never(event)

    # ========================================================================
    # Turn processing
    # ========================================================================

    async def _pump_audio(self) -> None:
        async for frame in self._capture.frames():
            await self._stt.send_audio(frame)

    def _start_turn(self, text: str) -> None:
        previous = self._turn_task
        self._turn_task = self._spawn(self._run_turn(text, previous))

    async def _run_turn(self, text: str, previous: Optional[asyncio.Task]) -> None:
        # Turns are processed one at a time, in order.
        if previous is not None and not previous.done():
            await asyncio.wait({previous})
        await self._process_turn(text)

    async def _greet(self) -> None:
        await self._respond([], self._config.session.greeting_trigger)

    async def _process_turn(self, user_text: str) -> None:
        self.log.buffer_user(user_text)
        await self.log.flush_user()
        self.conversation.prefill_from_utterance(user_text, self.catalog.services or DEFAULT_SERVICES)
        history = self.conversation.recent_history(self._config.openai.history_window)
        self.conversation.add_message(Role.USER, user_text)
        await self._respond(history, user_text)

    def _system_prompt(self) -> str:
        return build_system_prompt(
            self._config.shop,
            self._clock,
            self.conversation,
            self.catalog.services,
            self.catalog.barbers,
        )

    async def _complete(self, history: List[ConversationTurn], user_text: str) -> str:
        """Run the LLM, answering tool calls until it produces text."""
        messages = build_messages(self._system_prompt(), history, user_text)
        max_rounds = self._config.openai.max_tool_rounds

        for round_index in range(max_rounds + 1):
            tools = TOOL_DEFINITIONS if round_index < max_rounds else None
            response = await self._llm.complete_turn(messages, tools=tools)
            if not response.has_tool_calls:
                return response.text

            results = await self.tools.execute_batch(response.tool_calls)
            self._apply_booking()

            messages.append(response.assistant_message())
            for call in response.tool_calls:
                messages.append({
                    "role": "tool",
                    "tool_call_id": call.id,
                    "content": json.dumps(results[call.id], ensure_ascii=False),
                })
            messages[0] = {"role": "system", "content": self._system_prompt()}

        return ""

    def _apply_booking(self) -> None:
        """The arguments of a successful booking overwrite the heuristic draft."""
        booking = self.tools.last_booking
        if booking is None or self.tools.appointment_id == self._confirmed_appointment:
            return
        self.conversation.update_booking_data(authoritative=True, **asdict(booking))
        self.conversation.mark_confirmed()
        self._confirmed_appointment = self.tools.appointment_id

    async def _respond(self, history: List[ConversationTurn], user_text: str) -> None:
        try:
            reply = await self._complete(history, user_text)
        except LLMError as e:
            logger.error(f"LLM turn failed: {e}")
            reply = msg("session.please_repeat", self._lang)

        if not reply:
            await self.log.flush_turn()
            await self._back_to_listening()
            return

        logger.info(f"Agent: {reply}")
        self.conversation.add_message(Role.AGENT, reply)
        self.log.buffer_agent(reply)
        played = await self._tts.speak(reply)
        await self.log.flush_turn()

        if not played and self.turns.state != TurnState.LISTENING:
            await self._back_to_listening()

    async def _back_to_listening(self) -> None:
        if self.turns.state == TurnState.SPEAKING:
            await self.turns.on_playback_end()
        else:
            await self.turns.finish_processing()
        if self._state == SessionState.SPEAKING:
            await self._set_state(SessionState.LISTENING)

    async def wait_for_turn(self) -> None:
        """Wait until the turn in progress (if any) has been answered."""
        while self._turn_task is not None and not self._turn_task.done():
            await asyncio.wait({self._turn_task})
