"""
Tests for the event model and the async event bus.
"""

import asyncio
from typing import List

import pytest

from barber_voice.realtime.events import (
    BargeInEvent,
    ConnectionLostEvent,
    Event,
    EventBus,
    EventPriority,
    SessionState,
    SessionStateEvent,
    ToolCallEvent,
    TranscriptEvent,
    TurnEndEvent,
    TurnTrigger,
)


class TestEventPriority:
    """Tests for event priority system."""

    def test_priority_ordering(self):
        assert EventPriority.CRITICAL.value < EventPriority.HIGH.value
        assert EventPriority.HIGH.value < EventPriority.NORMAL.value
        assert EventPriority.NORMAL.value < EventPriority.LOW.value

    def test_defaults(self):
        assert BargeInEvent().priority == EventPriority.CRITICAL
        assert ConnectionLostEvent().priority == EventPriority.CRITICAL
        assert SessionStateEvent().priority == EventPriority.LOW


class TestEvents:
    def test_transcript(self):
        event = TranscriptEvent(text="утре в 10", is_final=True)
        assert event.is_final is True
        assert event.source == "stt"

    def test_turn_end(self):
        event = TurnEndEvent(text="здравейте", trigger=TurnTrigger.SILENCE)
        assert event.trigger == TurnTrigger.SILENCE

    def test_tool_call_succeeded(self):
        assert ToolCallEvent(result={"success": True}).succeeded is True
        assert ToolCallEvent(result={"success": False, "error": "x"}).succeeded is False
        assert ToolCallEvent(result={"error": "x"}).succeeded is False

    def test_cancel(self):
        event = TranscriptEvent(text="x")
        event.cancel()
        assert event.cancelled is True


class TestEventBus:
    """Tests for EventBus."""

    @pytest.mark.asyncio
    async def test_publish_immediate(self):
        bus = EventBus()
        received: List[Event] = []

        async def handler(event):
            received.append(event)

        bus.subscribe(TranscriptEvent, handler)
        await bus.publish_immediate(TranscriptEvent(text="hello"))
        assert len(received) == 1
        assert received[0].text == "hello"

    @pytest.mark.asyncio
    async def test_base_class_subscription(self):
        """A handler on Event sees every event kind."""
        bus = EventBus()
        received: List[Event] = []

        async def handler(event):
            received.append(event)

        bus.subscribe(Event, handler)
        await bus.publish_immediate(TranscriptEvent(text="a"))
        await bus.publish_immediate(SessionStateEvent(state=SessionState.LISTENING))
        assert [type(e) for e in received] == [TranscriptEvent, SessionStateEvent]

    @pytest.mark.asyncio
    async def test_cancelled_not_dispatched(self):
        bus = EventBus()
        received: List[Event] = []

        async def handler(event):
            received.append(event)

        bus.subscribe(TranscriptEvent, handler)
        event = TranscriptEvent(text="x")
        event.cancel()
        await bus.publish_immediate(event)
        assert received == []

    @pytest.mark.asyncio
    async def test_handler_error_isolated(self):
        bus = EventBus()
        received: List[Event] = []

        async def broken(event):
            raise RuntimeError("boom")

        async def handler(event):
            received.append(event)

        bus.subscribe(TranscriptEvent, broken)
        bus.subscribe(TranscriptEvent, handler)
        await bus.publish_immediate(TranscriptEvent(text="x"))
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_queued_priority_order(self):
        bus = EventBus()
        received: List[Event] = []

        async def handler(event):
            received.append(event)

        bus.subscribe(Event, handler)
        await bus.publish(SessionStateEvent(state=SessionState.LISTENING))
        await bus.publish(BargeInEvent(energy=0.5))

        task = asyncio.create_task(bus.run())
        await bus.drain(timeout=1.0)
        bus.stop()
        await task

        assert isinstance(received[0], BargeInEvent)
        assert isinstance(received[1], SessionStateEvent)

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        received: List[Event] = []

        async def handler(event):
            received.append(event)

        bus.subscribe(TranscriptEvent, handler)
        bus.unsubscribe(TranscriptEvent, handler)
        await bus.publish_immediate(TranscriptEvent(text="x"))
        assert received == []
