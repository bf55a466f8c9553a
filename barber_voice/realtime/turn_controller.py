"""
Turn Controller Module

Decides when the user's turn is over and when the agent is interrupted.

State machine:
    IDLE -> LISTENING        session start / greeting finished
    LISTENING -> PROCESSING  final transcript, or silence with enough text
    PROCESSING -> SPEAKING   agent playback started
    SPEAKING -> LISTENING    playback ended, or barge-in
    any -> IDLE              stop()

The controller never gates audio capture. It only pauses forwarding to STT
while processing (when configured) and always resumes on return to LISTENING.
"""

import asyncio
from typing import Callable, List, Optional

from barber_voice.config import TurnConfig, settings
from barber_voice.logger import get_logger
from .events import (
    BargeInEvent,
    EventBus,
    TranscriptEvent,
    TurnEndEvent,
    TurnState,
    TurnStateEvent,
    TurnTrigger,
)
from .providers import SpeechProvider, TranscriptionProvider

logger = get_logger(__name__)


class TurnController:
    """
    Turn-taking and barge-in for one session.

    Usage:
        controller = TurnController(event_bus, tts, stt, energy_source=capture_level)
        await controller.start_listening()
        await controller.on_transcript(event)   # from the STT stream
        controller.start_polling()              # barge-in detection
    """

    def __init__(
        self,
        event_bus: EventBus,
        tts: SpeechProvider,
        stt: TranscriptionProvider,
        energy_source: Callable[[], float],
        config: Optional[TurnConfig] = None,
    ):
        self._event_bus = event_bus
        self._tts = tts
        self._stt = stt
        self._energy_source = energy_source
        self._config = config or settings.turn

        self._state = TurnState.IDLE
        self._committed: List[str] = []
        self._partial = ""
        self._speaking_text = ""

        self._silence_task: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None

        # Metrics
        self._turn_count = 0
        self._barge_in_count = 0

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def utterance(self) -> str:
        """Text accumulated for the current user turn."""
        parts = self._committed + ([self._partial] if self._partial else [])
        return " ".join(part.strip() for part in parts if part.strip())

    async def _set_state(self, new_state: TurnState) -> None:
        previous = self._state
        if previous == new_state:
            return
        self._state = new_state
        logger.debug(f"Turn state: {previous.name} -> {new_state.name}")
        await self._event_bus.publish(TurnStateEvent(state=new_state, previous_state=previous))

    def _clear_utterance(self) -> None:
        self._committed.clear()
        self._partial = ""

    # ========================================================================
    # Listening
    # ========================================================================

    async def start_listening(self) -> None:
        """Enter LISTENING with an empty utterance and STT forwarding on."""
        self._cancel_silence_timer()
        self._clear_utterance()
        self._speaking_text = ""
        await self._set_state(TurnState.LISTENING)
        self._stt.resume()

    async def on_transcript(self, event: TranscriptEvent) -> None:
        """Feed one STT result; ends the turn on a final segment."""
        if self._state != TurnState.LISTENING or not event.text:
            return

        if event.is_final:
            self._committed.append(event.text)
            self._partial = ""
            await self._end_turn(TurnTrigger.FINAL_TRANSCRIPT)
        else:
            self._partial = event.text
            self._arm_silence_timer()

    def _arm_silence_timer(self) -> None:
        self._cancel_silence_timer()
        self._silence_task = asyncio.create_task(self._silence_wait())

    def _cancel_silence_timer(self) -> None:
        task, self._silence_task = self._silence_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _silence_wait(self) -> None:
        await asyncio.sleep(self._config.silence_timeout_s)
        self._silence_task = None
        if len(self.utterance) > self._config.min_turn_chars:
            await self._end_turn(TurnTrigger.SILENCE)

    async def _end_turn(self, trigger: TurnTrigger) -> bool:
        """Close the current utterance; runs at most once per utterance."""
        if self._state != TurnState.LISTENING:
            return False
        text = self.utterance
        if not text:
            return False

        self._cancel_silence_timer()
        self._clear_utterance()
        await self._set_state(TurnState.PROCESSING)
        if self._config.pause_stt_while_processing:
            self._stt.pause()

        self._turn_count += 1
        logger.info(f"User turn ended ({trigger.name.lower()}): {text}")
        await self._event_bus.publish_immediate(TurnEndEvent(text=text, trigger=trigger))
        return True

    # ========================================================================
    # Speaking
    # ========================================================================

    async def mark_speaking(self, text: str = "") -> None:
        """Agent playback started."""
        if self._state == TurnState.SPEAKING:
            self._speaking_text = text or self._speaking_text
            return
        self._cancel_silence_timer()
        self._speaking_text = text
        await self._set_state(TurnState.SPEAKING)

    async def on_playback_end(self) -> None:
        """Agent playback finished normally."""
        if self._state != TurnState.SPEAKING:
            return
        self._speaking_text = ""
        self._clear_utterance()
        await self._set_state(TurnState.LISTENING)
        self._stt.resume()

    async def finish_processing(self) -> None:
        """Return to LISTENING when a turn produced nothing to play."""
        if self._state not in (TurnState.PROCESSING, TurnState.IDLE):
            return
        await self.start_listening()

    # ========================================================================
    # Barge-in
    # ========================================================================

    async def check_energy(self, level: Optional[float] = None) -> bool:
        """
        Interrupt agent speech when the microphone level crosses the threshold.

        Returns:
            True when a barge-in happened
        """
        if self._state != TurnState.SPEAKING:
            return False
        if level is None:
            level = self._energy_source()
        if level <= self._config.barge_in_threshold:
            return False

        partial_response = self._speaking_text
        self._speaking_text = ""
        self._clear_utterance()
        await self._set_state(TurnState.LISTENING)

        await self._tts.stop()
        self._stt.resume()

        self._barge_in_count += 1
        logger.info(f"Barge-in (level {level:.2f})")
        await self._event_bus.publish_immediate(
            BargeInEvent(energy=level, partial_response=partial_response)
        )
        return True

    def start_polling(self) -> None:
        """Start the analyser polling loop used for barge-in."""
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.create_task(self._poll_loop())

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.check_energy()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Barge-in check failed: {e}")
            await asyncio.sleep(self._config.poll_interval_s)

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def stop(self) -> None:
        """Cancel timers and the polling loop, then go IDLE."""
        self._cancel_silence_timer()
        task, self._poll_task = self._poll_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._clear_utterance()
        self._speaking_text = ""
        await self._set_state(TurnState.IDLE)

    @property
    def stats(self) -> dict:
        return {
            "state": self._state.name,
            "turns": self._turn_count,
            "barge_ins": self._barge_in_count,
        }
