"""
Tool-Calling Orchestrator

Executes the function calls the LLM requests during a turn against the
shop's booking backend.

- All calls of one turn run concurrently; one result per call id comes back
- Every call is bounded by a timeout and answers "slow connection" on expiry
- Arguments are validated with pydantic; errors become structured results,
  never exceptions
- Appointment reads are cached briefly (per barber/day and one range read)
- Bookings re-check the slot against a fresh read, deduplicate repeated
  identical requests, and invalidate the affected caches
"""

import asyncio
import re
import time
from datetime import date as date_cls, datetime, timedelta
from typing import Annotated, Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, ValidationError

from barber_voice.config import ToolConfig, settings
from barber_voice.core.backend import BookingBackend, LiveCatalog
from barber_voice.core.cache import TTLCache
from barber_voice.core.clock import ShopClock
from barber_voice.core.extraction import normalize_phone, spell_digits
from barber_voice.core.models import Appointment, AppointmentStatus, BookingDraft
from barber_voice.core.slots import filter_lead_time, find_next_available_slot, free_slots, is_slot_available
from barber_voice.logger import get_logger
from barber_voice.messages import msg
from .events import EventBus, ToolCallEvent
from .llm_stream import ToolCall

logger = get_logger(__name__)

ToolResult = Dict[str, Any]

PHONE_SEARCH_MIN_DIGITS = 9


# ============================================================================
# Tool schemas
# ============================================================================

def _function(name: str, description: str, properties: Dict[str, Any], required: Sequence[str] = ()) -> Dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {"type": "object", "properties": properties, "required": list(required)},
        },
    }


_DATE = {"type": "string", "description": "Дата във формат YYYY-MM-DD (пример: 2026-01-20)"}
_TIME = {"type": "string", "description": "Час във формат HH:MM (пример: 10:00)"}
_BARBER = {"type": "string", "description": "Кодът на фризьора"}

TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    _function("get_barbers", "Връща списък с всички фризьори.", {}),
    _function("get_services", "Връща списък с услугите, цените и продължителността им.", {}),
    _function(
        "get_available_slots",
        "Проверява свободните часове за дадена дата и фризьор.",
        {"date": _DATE, "barberId": _BARBER},
        ["date", "barberId"],
    ),
    _function(
        "find_earliest_slot",
        "Намира първия свободен час в следващите 30 дни. Ако не е указан фризьор, проверява всички.",
        {"barberId": {"type": "string", "description": "Код на фризьор (по избор)"}},
    ),
    _function(
        "book_appointment",
        "Записва час. Телефонът може да е в произволен формат.",
        {
            "barberId": _BARBER,
            "serviceId": {"type": "string", "description": "Код на услуга"},
            "date": _DATE,
            "time": _TIME,
            "customerName": {"type": "string", "description": "Име на клиента"},
            "customerPhone": {"type": "string", "description": "Телефон на клиента"},
        },
        ["barberId", "serviceId", "date", "time", "customerName", "customerPhone"],
    ),
    _function(
        "get_customer_appointments",
        "Търси резервации по телефон или име.",
        {"customerPhone": {"type": "string", "description": "Телефон или име за търсене"}},
        ["customerPhone"],
    ),
    _function(
        "reschedule_appointment",
        "Премества съществуваща резервация на нова дата и час.",
        {
            "appointmentId": {"type": "string", "description": "Вътрешен код на резервацията"},
            "newDate": _DATE,
            "newTime": _TIME,
        },
        ["appointmentId", "newDate", "newTime"],
    ),
    _function(
        "cancel_appointment",
        "Отказва съществуваща резервация.",
        {"appointmentId": {"type": "string", "description": "Вътрешен код на резервацията"}},
        ["appointmentId"],
    ),
]


# ============================================================================
# Argument models
# ============================================================================

_TIME_RE = re.compile(r"^(\d{1,2})[:.](\d{2})$")


def _check_date(value: str) -> str:
    try:
        return date_cls.fromisoformat(value).isoformat()
    except ValueError:
        raise ValueError(f"invalid date '{value}'")


def _check_time(value: str) -> str:
    match = _TIME_RE.match(value)
    if not match or int(match.group(1)) > 23 or int(match.group(2)) > 59:
        raise ValueError(f"invalid time '{value}'")
    return f"{int(match.group(1)):02d}:{match.group(2)}"


IsoDate = Annotated[str, Field(min_length=1), AfterValidator(_check_date)]
ClockTime = Annotated[str, Field(min_length=1), AfterValidator(_check_time)]


class ToolArgs(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True, extra="ignore")


class AvailableSlotsArgs(ToolArgs):
    date: IsoDate
    barber_id: str = Field(alias="barberId", min_length=1)


class EarliestSlotArgs(ToolArgs):
    barber_id: Optional[str] = Field(default=None, alias="barberId")


class BookAppointmentArgs(ToolArgs):
    barber_id: str = Field(alias="barberId", min_length=1)
    service_id: str = Field(alias="serviceId", min_length=1)
    date: IsoDate
    time: ClockTime
    customer_name: str = Field(alias="customerName", min_length=1)
    customer_phone: str = Field(alias="customerPhone", min_length=1)


class CustomerLookupArgs(ToolArgs):
    search_term: str = Field(alias="customerPhone", min_length=1)


class RescheduleArgs(ToolArgs):
    appointment_id: str = Field(alias="appointmentId", min_length=1)
    new_date: IsoDate = Field(alias="newDate")
    new_time: ClockTime = Field(alias="newTime")


class CancelArgs(ToolArgs):
    appointment_id: str = Field(alias="appointmentId", min_length=1)


_MISSING_ERRORS = {"missing", "string_too_short"}


def local_phone(phone: str) -> str:
    """'359888123456' -> '0888123456' for reading back to the caller."""
    return "0" + phone[3:] if phone.startswith("359") else phone


# ============================================================================
# Orchestrator
# ============================================================================

class ToolOrchestrator:
    """
    Runs LLM tool calls for one session.

    Usage:
        tools = ToolOrchestrator(backend, catalog, clock)
        results = await tools.execute_batch(response.tool_calls)
        tools.booking_created  # True after a successful book_appointment
    """

    def __init__(
        self,
        backend: BookingBackend,
        catalog: LiveCatalog,
        clock: ShopClock,
        event_bus: Optional[EventBus] = None,
        config: Optional[ToolConfig] = None,
        grid: Optional[Sequence[str]] = None,
        on_booked: Optional[Callable[[Appointment], None]] = None,
        lang: str = "bg",
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self._backend = backend
        self._catalog = catalog
        self._clock = clock
        self._event_bus = event_bus
        self._config = config or settings.tools
        self._grid = list(grid or settings.shop.time_slots)
        self._on_booked = on_booked
        self._lang = lang
        self._monotonic = monotonic

        self._day_cache = TTLCache(self._config.appointments_cache_ttl_s, clock=monotonic)
        self._range_cache = TTLCache(self._config.range_cache_ttl_s, clock=monotonic)
        # dedup key -> (monotonic time, appointment id)
        self._recent_bookings: Dict[str, Tuple[float, str]] = {}
        self._slot_locks: Dict[str, asyncio.Lock] = {}
        self._background: Set[asyncio.Task] = set()

        self._handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[ToolResult]]] = {
            "get_barbers": self._get_barbers,
            "get_services": self._get_services,
            "get_available_slots": self._get_available_slots,
            "find_earliest_slot": self._find_earliest_slot,
            "book_appointment": self._book_appointment,
            "get_customer_appointments": self._get_customer_appointments,
            "reschedule_appointment": self._reschedule_appointment,
            "cancel_appointment": self._cancel_appointment,
        }

        # Session outcome
        self.booking_created = False
        self.appointment_id: Optional[str] = None
        self.last_booking: Optional[BookingDraft] = None

    @property
    def definitions(self) -> List[Dict[str, Any]]:
        return TOOL_DEFINITIONS

    # ========================================================================
    # Execution
    # ========================================================================

    async def execute_batch(self, calls: Sequence[ToolCall]) -> Dict[str, ToolResult]:
        """Run all calls of one turn concurrently; results keyed by call id."""
        if not calls:
            return {}
        started = time.time()
        results = await asyncio.gather(*(self.execute(call) for call in calls))
        logger.info(f"{len(calls)} tool call(s) processed in {(time.time() - started) * 1000:.0f}ms")
        return {call.id: result for call, result in zip(calls, results)}

    async def execute(self, call: ToolCall) -> ToolResult:
        """Run one call; never raises."""
        handler = self._handlers.get(call.name)
        if handler is None:
            logger.warning(f"Unknown tool requested: {call.name}")
            result: ToolResult = {"error": msg("tool.unknown", self._lang, name=call.name)}
        else:
            result = await self._run_bounded(call, handler)

        if self._event_bus is not None:
            await self._event_bus.publish_immediate(ToolCallEvent(
                call_id=call.id,
                name=call.name,
                arguments=call.arguments,
                result=result,
            ))
        return result

    async def _run_bounded(self, call: ToolCall, handler: Callable[[Dict[str, Any]], Awaitable[ToolResult]]) -> ToolResult:
        # The handler keeps running after a timeout; only the wait is bounded.
        task = asyncio.create_task(handler(call.arguments))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=self._config.timeout_s)
        except asyncio.TimeoutError:
            logger.warning(f"Tool {call.name} timed out after {self._config.timeout_s}s")
            return {"error": msg("tool.slow_connection", self._lang)}
        except ValidationError as e:
            return self._validation_result(call.name, e)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Tool {call.name} failed: {e}", exc_info=True)
            return {"error": msg("tool.backend_error", self._lang)}

    def _validation_result(self, name: str, error: ValidationError) -> ToolResult:
        missing = [
            str(item["loc"][0]) for item in error.errors()
            if item["type"] in _MISSING_ERRORS and item.get("loc")
        ]
        if missing:
            return {"success": False, "error": msg("tool.missing_args", self._lang, fields=", ".join(missing))}
        logger.debug(f"Invalid arguments for {name}: {error}")
        return {"success": False, "error": msg("tool.invalid_args", self._lang, name=name)}

    async def aclose(self) -> None:
        """Cancel calls still running after their timeout."""
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self._background.clear()

    # ========================================================================
    # Cached reads
    # ========================================================================

    def _day_bounds(self, day: str) -> Tuple[datetime, datetime]:
        start = datetime.fromisoformat(day)
        return start, start + timedelta(days=1) - timedelta(microseconds=1)

    async def _appointments_for(self, barber_id: str, day: str, fresh: bool = False) -> List[Appointment]:
        key = f"{barber_id}|{day}"
        if not fresh:
            cached = self._day_cache.get(key)
            if cached is not None:
                return cached
        start, end = self._day_bounds(day)
        data = await self._backend.list_appointments(barber_id=barber_id, start=start, end=end)
        self._day_cache.set(key, data)
        return data

    async def _appointments_range(self) -> List[Appointment]:
        cached = self._range_cache.get("range")
        if cached is not None:
            return cached
        start = datetime.fromisoformat(self._clock.today_str())
        end = start + timedelta(days=self._config.scan_window_days)
        data = await self._backend.list_appointments(start=start, end=end)
        self._range_cache.set("range", data)
        return data

    def _invalidate(self, barber_id: str, *days: str) -> None:
        for day in days:
            self._day_cache.invalidate(f"{barber_id}|{day}")
        self._range_cache.invalidate()

    # ========================================================================
    # Catalog tools
    # ========================================================================

    async def _get_barbers(self, arguments: Dict[str, Any]) -> ToolResult:
        barbers = self._catalog.barbers
        if not barbers:
            return {"success": True, "empty": True, "message": msg("tool.no_barbers", self._lang)}
        return {
            "success": True,
            "barbers": [{"id": b.id, "name": b.display_name(self._lang)} for b in barbers],
        }

    async def _get_services(self, arguments: Dict[str, Any]) -> ToolResult:
        services = self._catalog.services
        if not services:
            return {"success": True, "empty": True, "message": msg("tool.no_services", self._lang)}
        return {
            "success": True,
            "services": [
                {
                    "id": s.id,
                    "name": s.display_name(self._lang),
                    "price": s.price,
                    "duration": s.duration,
                }
                for s in services
            ],
        }

    # ========================================================================
    # Slot tools
    # ========================================================================

    async def _get_available_slots(self, arguments: Dict[str, Any]) -> ToolResult:
        args = AvailableSlotsArgs.model_validate(arguments)
        if self._catalog.find_barber(args.barber_id) is None:
            return {"success": False, "error": msg("tool.barber_not_found", self._lang)}

        appointments = await self._appointments_for(args.barber_id, args.date)
        slots = free_slots(args.date, args.barber_id, appointments, self._grid)
        slots = filter_lead_time(args.date, slots, self._clock, self._config.lead_time_minutes)
        logger.debug(f"{len(slots)} free slots for {args.barber_id} on {args.date}")

        if not slots:
            return {"success": True, "slots": [], "message": msg("tool.no_slots", self._lang, date=args.date)}
        return {"success": True, "date": args.date, "barberId": args.barber_id, "slots": slots}

    async def _find_earliest_slot(self, arguments: Dict[str, Any]) -> ToolResult:
        args = EarliestSlotArgs.model_validate(arguments)
        barbers = self._catalog.barbers
        if not barbers:
            return {"success": True, "empty": True, "message": msg("tool.no_barbers", self._lang)}
        if args.barber_id and self._catalog.find_barber(args.barber_id) is None:
            return {"success": False, "error": msg("tool.barber_not_found", self._lang)}

        appointments = await self._appointments_range()
        slot = find_next_available_slot(
            appointments,
            [b.id for b in barbers],
            self._grid,
            self._clock,
            window_days=self._config.scan_window_days,
            barber_id=args.barber_id or None,
        )
        if slot is None:
            return {
                "success": True,
                "message": msg("tool.no_earliest", self._lang, days=self._config.scan_window_days),
            }

        barber = self._catalog.find_barber(slot.barber_id)
        barber_name = barber.display_name(self._lang) if barber else slot.barber_id
        return {
            "success": True,
            "date": slot.date,
            "time": slot.time,
            "barberId": slot.barber_id,
            "message": msg("tool.earliest", self._lang, date=slot.date, time=slot.time, barber=barber_name),
        }

    # ========================================================================
    # Booking tools
    # ========================================================================

    def _slot_lock(self, barber_id: str, day: str, hhmm: str) -> asyncio.Lock:
        """One lock per barber slot, held from the availability re-check to the write."""
        return self._slot_locks.setdefault(f"{barber_id}|{day}|{hhmm}", asyncio.Lock())

    def _dedup_hit(self, key: str) -> Optional[str]:
        """Appointment id of an identical booking made within the window."""
        now = self._monotonic()
        for stale in [k for k, (ts, _) in self._recent_bookings.items() if now - ts >= self._config.dedup_window_s]:
            del self._recent_bookings[stale]
        entry = self._recent_bookings.get(key)
        return entry[1] if entry else None

    def _forget_booking(self, appointment_id: str) -> None:
        """A cancelled or moved appointment no longer answers for its old request."""
        for key in [k for k, (_, apt_id) in self._recent_bookings.items() if apt_id == appointment_id]:
            del self._recent_bookings[key]

    async def _book_appointment(self, arguments: Dict[str, Any]) -> ToolResult:
        args = BookAppointmentArgs.model_validate(arguments)
        barber = self._catalog.find_barber(args.barber_id)
        if barber is None:
            return {"success": False, "error": msg("tool.barber_not_found", self._lang)}
        service = self._catalog.find_service(args.service_id)
        if service is None:
            return {"success": False, "error": msg("tool.service_not_found", self._lang)}

        phone = normalize_phone(args.customer_phone)
        spoken_phone = spell_digits(local_phone(phone))
        key = "|".join((barber.id, service.id, args.date, args.time, phone))

        # Identical calls of one batch run concurrently; the second one waits
        # here and then finds the first in the dedup table.
        async with self._slot_lock(barber.id, args.date, args.time):
            if self._dedup_hit(key) is not None:
                logger.warning(f"Duplicate booking prevented: {key}")
                return {
                    "success": True,
                    "appointmentId": "duplicate",
                    "message": msg("tool.duplicate", self._lang, phone=spoken_phone),
                }

            appointments = await self._appointments_for(barber.id, args.date, fresh=True)
            if not is_slot_available(args.time, args.date, barber.id, appointments):
                logger.info(f"Slot taken: {barber.id} {args.date} {args.time}")
                return {"success": False, "error": msg("tool.slot_taken", self._lang)}

            created = await self._backend.create_appointment(Appointment(
                id="",
                service_id=service.id,
                barber_id=barber.id,
                date=f"{args.date}T{args.time}:00",
                customer_name=args.customer_name,
                customer_phone=f"+{phone}",
                status=AppointmentStatus.PENDING,
            ))
            self._recent_bookings[key] = (self._monotonic(), created.id)
            self._invalidate(barber.id, args.date)

        result: ToolResult = {
            "success": True,
            "appointmentId": created.id,
            "message": msg(
                "tool.booked", self._lang,
                service=service.display_name(self._lang),
                barber=barber.display_name(self._lang),
                date=args.date,
                time=args.time,
                phone=spoken_phone,
            ),
        }
        self.booking_created = True
        self.appointment_id = created.id
        self.last_booking = BookingDraft(
            service=service.display_name(self._lang),
            service_id=service.id,
            date_time=f"{args.date} {args.time}",
            customer_name=args.customer_name,
            phone=phone,
            price=service.price,
        )
        logger.info(f"Booked {created.id}: {service.id} with {barber.id} on {args.date} {args.time}")

        if self._on_booked is not None:
            try:
                self._on_booked(created)
            except Exception as e:
                logger.error(f"on_booked callback failed: {e}", exc_info=True)
        return result

    def _format_appointment(self, appointment: Appointment) -> Dict[str, str]:
        barber = self._catalog.find_barber(appointment.barber_id)
        service = self._catalog.find_service(appointment.service_id)
        return {
            "id": appointment.id,
            "customerName": appointment.customer_name,
            "date": appointment.starts_at.strftime("%d.%m.%Y"),
            "time": appointment.time,
            "barberName": barber.display_name(self._lang) if barber else appointment.barber_id,
            "serviceName": service.display_name(self._lang) if service else appointment.service_id,
            "status": appointment.status.value,
        }

    async def _get_customer_appointments(self, arguments: Dict[str, Any]) -> ToolResult:
        args = CustomerLookupArgs.model_validate(arguments)
        term = args.search_term
        digits = re.sub(r"\D", "", term)

        today = datetime.fromisoformat(self._clock.today_str())
        appointments = await self._backend.list_appointments(
            start=today - timedelta(days=self._config.lookup_past_days),
            end=today + timedelta(days=self._config.lookup_future_days + 1),
        )

        if len(digits) >= PHONE_SEARCH_MIN_DIGITS:
            wanted = normalize_phone(digits)
            matches = [a for a in appointments if normalize_phone(a.customer_phone) == wanted]
        else:
            needle = term.casefold()
            matches = [a for a in appointments if needle in a.customer_name.casefold()]
        matches = [a for a in matches if a.is_active]

        if not matches:
            return {"success": True, "appointments": [], "message": msg("tool.no_appointments", self._lang, term=term)}
        return {"success": True, "appointments": [self._format_appointment(a) for a in matches]}

    async def _find_appointment(self, appointment_id: str) -> Optional[Appointment]:
        today = datetime.fromisoformat(self._clock.today_str())
        appointments = await self._backend.list_appointments(
            start=today - timedelta(days=self._config.lookup_past_days),
            end=today + timedelta(days=self._config.lookup_future_days + 1),
        )
        return next((a for a in appointments if a.id == appointment_id), None)

    async def _reschedule_appointment(self, arguments: Dict[str, Any]) -> ToolResult:
        args = RescheduleArgs.model_validate(arguments)
        current = await self._find_appointment(args.appointment_id)
        if current is None:
            return {"success": False, "error": msg("tool.appointment_not_found", self._lang)}

        async with self._slot_lock(current.barber_id, args.new_date, args.new_time):
            appointments = await self._appointments_for(current.barber_id, args.new_date, fresh=True)
            others = [a for a in appointments if a.id != current.id]
            if not is_slot_available(args.new_time, args.new_date, current.barber_id, others):
                return {"success": False, "error": msg("tool.slot_taken", self._lang)}

            await self._backend.update_appointment(current.id, date=f"{args.new_date}T{args.new_time}:00")
            self._invalidate(current.barber_id, current.day, args.new_date)
        self._forget_booking(current.id)
        logger.info(f"Rescheduled {current.id} to {args.new_date} {args.new_time}")
        return {
            "success": True,
            "message": msg("tool.rescheduled", self._lang, date=args.new_date, time=args.new_time),
        }

    async def _cancel_appointment(self, arguments: Dict[str, Any]) -> ToolResult:
        args = CancelArgs.model_validate(arguments)
        current = await self._find_appointment(args.appointment_id)
        if current is None:
            return {"success": False, "error": msg("tool.appointment_not_found", self._lang)}

        await self._backend.update_appointment(current.id, status=AppointmentStatus.CANCELLED)
        self._invalidate(current.barber_id, current.day)
        self._forget_booking(current.id)
        logger.info(f"Cancelled {current.id}")
        return {"success": True, "message": msg("tool.cancelled", self._lang)}
