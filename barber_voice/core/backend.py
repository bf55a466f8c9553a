"""
Booking Backend and Log Store Boundaries

The voice core talks to two external collaborators:

- a booking backend exposing services, barbers and appointments for one
  shop, with change notifications for live catalog state;
- a conversation log store receiving one append-only record per session.

Both are expressed as ``typing.Protocol`` classes. In-memory
implementations serve tests and local runs; ``LiveCatalog`` keeps the
catalog the tool orchestrator reads from in sync with the backend.
"""

import asyncio
import time
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from barber_voice.logger import get_logger

from .models import (
    Appointment,
    AppointmentStatus,
    Barber,
    ConversationLog,
    LogEvent,
    LogEventType,
    LogOutcome,
    Service,
)

logger = get_logger(__name__)

CatalogListener = Callable[[str], None]


class BackendError(Exception):
    """A booking backend call failed."""


class BookingBackend(Protocol):
    """Operations the voice core needs from the shop's booking backend."""

    shop_id: str

    async def list_services(self) -> List[Service]: ...

    async def list_barbers(self) -> List[Barber]: ...

    async def list_appointments(
        self,
        barber_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Appointment]: ...

    async def create_appointment(self, appointment: Appointment) -> Appointment: ...

    async def update_appointment(self, appointment_id: str, **changes: Any) -> Appointment: ...

    def subscribe(self, listener: CatalogListener) -> Callable[[], None]: ...


class ConversationLogStore(Protocol):
    """Append-only store of conversation logs."""

    async def start_log(self) -> str: ...

    async def append_event(self, log_id: str, event: LogEvent) -> None: ...

    async def end_log(
        self,
        log_id: str,
        outcome: LogOutcome,
        booking_created: bool,
        appointment_id: Optional[str] = None,
    ) -> None: ...


# ============================================================================
# In-memory implementations
# ============================================================================

class InMemoryBookingBackend:
    """
    Booking backend held in process memory.

    Listeners registered with :meth:`subscribe` are called with the name of
    the collection that changed ("services", "barbers", "appointments").
    """

    def __init__(
        self,
        services: Optional[Sequence[Service]] = None,
        barbers: Optional[Sequence[Barber]] = None,
        appointments: Optional[Sequence[Appointment]] = None,
        shop_id: str = "default",
    ):
        self.shop_id = shop_id
        self._services: List[Service] = list(services or [])
        self._barbers: List[Barber] = list(barbers or [])
        self._appointments: Dict[str, Appointment] = {a.id: a for a in appointments or []}
        self._listeners: List[CatalogListener] = []
        self.read_count = 0

    def subscribe(self, listener: CatalogListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, collection: str) -> None:
        for listener in list(self._listeners):
            listener(collection)

    async def list_services(self) -> List[Service]:
        return list(self._services)

    async def list_barbers(self) -> List[Barber]:
        return [b for b in self._barbers if b.active]

    async def list_appointments(
        self,
        barber_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Appointment]:
        self.read_count += 1
        result = []
        for appointment in self._appointments.values():
            if barber_id and appointment.barber_id != barber_id:
                continue
            starts_at = appointment.starts_at.replace(tzinfo=None)
            if start and starts_at < start.replace(tzinfo=None):
                continue
            if end and starts_at > end.replace(tzinfo=None):
                continue
            result.append(appointment)
        return sorted(result, key=lambda a: a.date)

    async def create_appointment(self, appointment: Appointment) -> Appointment:
        created = replace(appointment, id=appointment.id or f"apt_{uuid.uuid4().hex[:10]}")
        self._appointments[created.id] = created
        self._notify("appointments")
        return created

    async def update_appointment(self, appointment_id: str, **changes: Any) -> Appointment:
        if appointment_id not in self._appointments:
            raise BackendError(f"Appointment {appointment_id} not found")
        updated = replace(self._appointments[appointment_id], **changes)
        self._appointments[appointment_id] = updated
        self._notify("appointments")
        return updated

    def set_services(self, services: Sequence[Service]) -> None:
        self._services = list(services)
        self._notify("services")

    def set_barbers(self, barbers: Sequence[Barber]) -> None:
        self._barbers = list(barbers)
        self._notify("barbers")

    @property
    def appointments(self) -> List[Appointment]:
        return list(self._appointments.values())


class InMemoryLogStore:
    """Conversation log store held in process memory."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._logs: Dict[str, ConversationLog] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    async def start_log(self) -> str:
        started = self._clock()
        log_id = f"conv_{int(started * 1000)}"
        while log_id in self._logs:
            log_id = f"{log_id}_{uuid.uuid4().hex[:4]}"
        self._logs[log_id] = ConversationLog(id=log_id, start_time=started)
        return log_id

    async def append_event(self, log_id: str, event: LogEvent) -> None:
        async with self._lock:
            log = self._logs[log_id]
            log.events.append(event)
            if event.type == LogEventType.TOOL_CALL:
                log.tool_call_count += 1

    async def end_log(
        self,
        log_id: str,
        outcome: LogOutcome,
        booking_created: bool,
        appointment_id: Optional[str] = None,
    ) -> None:
        async with self._lock:
            log = self._logs[log_id]
            log.end_time = self._clock()
            log.duration = int(round(log.end_time - log.start_time))
            log.outcome = outcome
            log.booking_created = booking_created
            log.appointment_id = appointment_id

    def get(self, log_id: str) -> ConversationLog:
        return self._logs[log_id]

    @property
    def logs(self) -> List[ConversationLog]:
        return list(self._logs.values())


# ============================================================================
# Live catalog
# ============================================================================

class LiveCatalog:
    """
    In-memory services/barbers kept fresh from backend change notifications.

    Usage:
        catalog = LiveCatalog(backend)
        await catalog.start()
        catalog.barbers
    """

    def __init__(self, backend: BookingBackend):
        self._backend = backend
        self._services: List[Service] = []
        self._barbers: List[Barber] = []
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._pending: Optional[asyncio.Task] = None

    @property
    def services(self) -> List[Service]:
        return list(self._services)

    @property
    def barbers(self) -> List[Barber]:
        return list(self._barbers)

    def find_service(self, service_id: str) -> Optional[Service]:
        return next((s for s in self._services if s.id == service_id), None)

    def find_barber(self, barber_id: str) -> Optional[Barber]:
        return next((b for b in self._barbers if b.id == barber_id), None)

    async def start(self) -> None:
        await self.refresh()
        if self._unsubscribe is None:
            self._unsubscribe = self._backend.subscribe(self._on_change)

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._pending and not self._pending.done():
            self._pending.cancel()

    async def refresh(self) -> None:
        self._services = await self._backend.list_services()
        self._barbers = await self._backend.list_barbers()
        logger.debug(f"Catalog loaded: {len(self._services)} services, {len(self._barbers)} barbers")

    def _on_change(self, collection: str) -> None:
        if collection not in ("services", "barbers"):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("Catalog change outside event loop ignored")
            return
        self._pending = loop.create_task(self.refresh())
