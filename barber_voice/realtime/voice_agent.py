"""
Voice Agent Module

Application-shell entry point for the booking voice agent: builds a
session around a backend and a log store, runs it until Ctrl+C or a
terminal connection failure, and shuts it down cleanly.
"""

import asyncio
import signal
from typing import Any, Callable, Dict, Optional

from barber_voice.config import settings
from barber_voice.core.backend import BookingBackend, ConversationLogStore, InMemoryBookingBackend
from barber_voice.core.models import DEFAULT_SERVICES, Barber
from barber_voice.logger import get_logger

from .events import SessionState
from .session import VoiceSession

logger = get_logger(__name__)


class BookingVoiceAgent:
    """
    Runs one voice booking session in the foreground.

    Usage:
        agent = BookingVoiceAgent(backend, log_store)
        await agent.run()

    Or with a state callback:
        agent = BookingVoiceAgent(
            backend,
            log_store,
            on_state_change=lambda state: print(state),
        )
        await agent.run()
    """

    def __init__(
        self,
        backend: BookingBackend,
        log_store: ConversationLogStore,
        session: Optional[VoiceSession] = None,
        on_state_change: Optional[Callable[[str], None]] = None,
    ):
        self._on_state_change = on_state_change
        self._session = session or VoiceSession(
            backend,
            log_store,
            on_state_change=self._state_changed,
        )
        self._running = False
        self._shutdown_event = asyncio.Event()

    def _state_changed(self, state: SessionState, previous: SessionState) -> None:
        if self._on_state_change:
            self._on_state_change(state.name)
        if state == SessionState.IDLE and previous != SessionState.IDLE:
            self._shutdown_event.set()

    async def run(self) -> None:
        """
        Run the agent.

        Returns when the user presses Ctrl+C or the session gives up
        reconnecting.
        """
        self._running = True
        self._shutdown_event.clear()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._signal_handler)
            except NotImplementedError:
                # Windows doesn't support add_signal_handler
                pass

        try:
            await self._session.start()
            logger.info("Voice agent running - speak to book, Ctrl+C to exit")

            if self._session.is_active:
                await self._shutdown_event.wait()

            if self._session.error:
                logger.error(f"Session ended: {self._session.error}")

        except asyncio.CancelledError:
            logger.info("Voice agent cancelled")
        except Exception as e:
            logger.error(f"Voice agent error: {e}")
            raise
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop the session and release providers."""
        if not self._running:
            return

        logger.debug("Stopping voice agent...")
        self._running = False

        try:
            await self._session.close()
        except Exception as e:
            logger.error(f"Error stopping session: {e}")

        logger.info("Voice agent stopped")

    def _signal_handler(self) -> None:
        logger.info("Shutdown signal received")
        self._shutdown_event.set()

    @property
    def session(self) -> VoiceSession:
        return self._session

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def state(self) -> str:
        return self._session.state.name

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "state": self._session.state.name,
            "reconnect_attempts": self._session.reconnect_attempts,
            "log_id": self._session.log.log_id,
            "log_events": self._session.log.event_count,
            "booking_created": self._session.tools.booking_created,
            "turns": self._session.turns.stats,
            "error": self._session.error,
        }


def demo_backend() -> InMemoryBookingBackend:
    """In-memory backend with the default catalog and a single chair."""
    shop = settings.shop
    return InMemoryBookingBackend(
        services=DEFAULT_SERVICES,
        barbers=[Barber(id="main", name=shop.name, name_bg=shop.name)],
        shop_id=shop.shop_id,
    )


async def run_voice_agent(
    backend: Optional[BookingBackend] = None,
    log_store: Optional[ConversationLogStore] = None,
) -> None:
    """
    Convenience function to run the voice agent.

    Args:
        backend: Booking backend, in-memory demo data by default
        log_store: Conversation log store, the SQL store by default
    """
    if log_store is None:
        from barber_voice.db import SqlConversationLogStore
        log_store = SqlConversationLogStore(shop_id=settings.shop.shop_id)

    agent = BookingVoiceAgent(backend or demo_backend(), log_store)
    await agent.run()


def print_banner() -> None:
    """Print agent startup banner."""
    shop = settings.shop
    print("\n" + "=" * 60)
    print(f"  {shop.assistant_name} - voice booking for {shop.name}")
    print("=" * 60)
    print("Features:")
    print("  * Book, reschedule or cancel by voice")
    print("  * Barge-in support (interrupt anytime)")
    print("  * Every call logged with its outcome")
    print("-" * 60)
    print("Controls:")
    print("  * Speak naturally to interact")
    print("  * Press Ctrl+C to end the call")
    print("-" * 60)
