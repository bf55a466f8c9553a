"""
Tests for the tool-calling orchestrator.

Runs the orchestrator against the in-memory backend with the shop clock
pinned to Monday 2024-06-03 09:00.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from barber_voice.core.backend import BackendError, InMemoryBookingBackend, LiveCatalog
from barber_voice.core.models import DEFAULT_SERVICES, AppointmentStatus
from barber_voice.realtime.events import ToolCallEvent
from barber_voice.realtime.llm_stream import ToolCall
from barber_voice.realtime.tools import (
    TOOL_DEFINITIONS,
    BookAppointmentArgs,
    ToolOrchestrator,
    local_phone,
)

BOOKING_ARGS = {
    "barberId": "ivan",
    "serviceId": "haircut",
    "date": "2024-06-04",
    "time": "10:00",
    "customerName": "Иван Петров",
    "customerPhone": "0888 123 456",
}


def call(name, arguments=None, call_id=None):
    return ToolCall(id=call_id or f"call_{name}", name=name, arguments=arguments or {})


@pytest.fixture
def tools(backend, catalog, clock, tool_config):
    return ToolOrchestrator(backend, catalog, clock, config=tool_config)


class SlowBackend(InMemoryBookingBackend):
    """Yields to the loop on every read and write, like a network backend."""

    async def list_appointments(self, barber_id=None, start=None, end=None):
        await asyncio.sleep(0.01)
        return await super().list_appointments(barber_id, start, end)

    async def create_appointment(self, appointment):
        await asyncio.sleep(0.01)
        return await super().create_appointment(appointment)


@pytest_asyncio.fixture
async def slow_tools(barbers, clock, tool_config):
    backend = SlowBackend(services=DEFAULT_SERVICES, barbers=barbers, shop_id="test-shop")
    live = LiveCatalog(backend)
    await live.start()
    yield ToolOrchestrator(backend, live, clock, config=tool_config), backend
    live.stop()


class TestDefinitions:
    def test_eight_tools(self):
        names = [tool["function"]["name"] for tool in TOOL_DEFINITIONS]
        assert names == [
            "get_barbers",
            "get_services",
            "get_available_slots",
            "find_earliest_slot",
            "book_appointment",
            "get_customer_appointments",
            "reschedule_appointment",
            "cancel_appointment",
        ]

    def test_wire_names_are_camel_case(self):
        args = BookAppointmentArgs.model_validate(BOOKING_ARGS)
        assert args.barber_id == "ivan"
        assert args.customer_phone == "0888 123 456"

    def test_local_phone(self):
        assert local_phone("359888123456") == "0888123456"


class TestCatalogTools:
    """get_barbers / get_services."""

    @pytest.mark.asyncio
    async def test_barbers(self, tools):
        result = await tools.execute(call("get_barbers"))
        assert result["success"] is True
        assert {"id": "ivan", "name": "Иван"} in result["barbers"]

    @pytest.mark.asyncio
    async def test_services(self, tools):
        result = await tools.execute(call("get_services"))
        haircut = next(s for s in result["services"] if s["id"] == "haircut")
        assert haircut == {"id": "haircut", "name": "Подстригване", "price": 40, "duration": 30}

    @pytest.mark.asyncio
    async def test_empty_catalog(self, clock, tool_config):
        backend = InMemoryBookingBackend()
        catalog = LiveCatalog(backend)
        await catalog.start()
        tools = ToolOrchestrator(backend, catalog, clock, config=tool_config)

        result = await tools.execute(call("get_barbers"))
        assert result["success"] is True
        assert result["empty"] is True
        assert "error" not in result

        result = await tools.execute(call("find_earliest_slot"))
        assert result["empty"] is True


class TestSlotTools:
    """Availability and earliest-slot queries."""

    @pytest.mark.asyncio
    async def test_available_slots(self, tools, backend, make_appointment):
        await backend.create_appointment(make_appointment(day="2024-06-04", hhmm="11:00"))
        result = await tools.execute(call("get_available_slots", {"date": "2024-06-04", "barberId": "ivan"}))
        assert result["success"] is True
        assert "11:00" not in result["slots"]
        assert result["slots"][0] == "10:00"

    @pytest.mark.asyncio
    async def test_lead_time_today(self, backend, catalog, tool_config):
        from datetime import datetime
        from zoneinfo import ZoneInfo
        from barber_voice.core.clock import ShopClock

        clock = ShopClock("Europe/Sofia", now_fn=lambda: datetime(2024, 6, 3, 9, 30, tzinfo=ZoneInfo("Europe/Sofia")))
        tools = ToolOrchestrator(backend, catalog, clock, config=tool_config)
        result = await tools.execute(call("get_available_slots", {"date": "2024-06-03", "barberId": "ivan"}))
        assert result["slots"][0] == "11:00"

    @pytest.mark.asyncio
    async def test_reads_are_cached(self, tools, backend):
        arguments = {"date": "2024-06-04", "barberId": "ivan"}
        await tools.execute(call("get_available_slots", arguments))
        await tools.execute(call("get_available_slots", arguments))
        assert backend.read_count == 1

    @pytest.mark.asyncio
    async def test_unknown_barber(self, tools):
        result = await tools.execute(call("get_available_slots", {"date": "2024-06-04", "barberId": "nobody"}))
        assert result["success"] is False
        assert result["error"] == "Фризьорът не е намерен."

    @pytest.mark.asyncio
    async def test_earliest_slot(self, tools, backend, make_appointment):
        for hhmm in ("10:00", "11:00"):
            await backend.create_appointment(make_appointment(hhmm=hhmm, barber_id="ivan"))
        await backend.create_appointment(make_appointment(hhmm="10:00", barber_id="georgi"))

        result = await tools.execute(call("find_earliest_slot"))
        assert result["date"] == "2024-06-03"
        assert result["time"] == "11:00"
        assert result["barberId"] == "georgi"
        assert "Георги" in result["message"]

    @pytest.mark.asyncio
    async def test_earliest_for_one_barber(self, tools):
        result = await tools.execute(call("find_earliest_slot", {"barberId": "georgi"}))
        assert result["barberId"] == "georgi"
        assert result["time"] == "10:00"


class TestBookAppointment:
    """Booking path: validation, re-check, dedup and outcome flags."""

    @pytest.mark.asyncio
    async def test_books(self, tools, backend):
        result = await tools.execute(call("book_appointment", BOOKING_ARGS))

        assert result["success"] is True
        assert "0 8 8 8 1 2 3 4 5 6" in result["message"]
        created = backend.appointments[0]
        assert created.id == result["appointmentId"]
        assert created.customer_phone == "+359888123456"
        assert created.date == "2024-06-04T10:00:00"
        assert created.status == AppointmentStatus.PENDING

        assert tools.booking_created is True
        assert tools.appointment_id == created.id
        assert tools.last_booking.date_time == "2024-06-04 10:00"
        assert tools.last_booking.phone == "359888123456"

    @pytest.mark.asyncio
    async def test_duplicate_within_window(self, tools, backend):
        first = await tools.execute(call("book_appointment", BOOKING_ARGS, "call_1"))
        second = await tools.execute(call("book_appointment", BOOKING_ARGS, "call_2"))

        assert first["success"] is True
        assert second == {
            "success": True,
            "appointmentId": "duplicate",
            "message": "Часът вече е записан. Потвърждавам телефон: 0 8 8 8 1 2 3 4 5 6.",
        }
        assert len(backend.appointments) == 1

    @pytest.mark.asyncio
    async def test_dedup_expires(self, backend, catalog, clock, tool_config):
        now = {"t": 0.0}
        tools = ToolOrchestrator(backend, catalog, clock, config=tool_config, monotonic=lambda: now["t"])

        await tools.execute(call("book_appointment", BOOKING_ARGS))
        now["t"] = 11.0
        result = await tools.execute(call("book_appointment", BOOKING_ARGS))
        # Past the window the slot re-check answers instead
        assert result["success"] is False
        assert result["error"] == "Часът вече е зает. Моля изберете друг."

    @pytest.mark.asyncio
    async def test_concurrent_identical_calls_book_once(self, slow_tools):
        tools, backend = slow_tools
        results = await tools.execute_batch([
            call("book_appointment", BOOKING_ARGS, "call_a"),
            call("book_appointment", BOOKING_ARGS, "call_b"),
        ])

        ids = sorted(r["appointmentId"] for r in results.values())
        assert ids == sorted([backend.appointments[0].id, "duplicate"])
        assert len(backend.appointments) == 1

    @pytest.mark.asyncio
    async def test_concurrent_calls_for_one_slot(self, slow_tools):
        tools, backend = slow_tools
        other = dict(BOOKING_ARGS, customerName="Петър", customerPhone="0899 000 111")
        results = await tools.execute_batch([
            call("book_appointment", BOOKING_ARGS, "call_a"),
            call("book_appointment", other, "call_b"),
        ])

        outcomes = sorted(r["success"] for r in results.values())
        assert outcomes == [False, True]
        failed = next(r for r in results.values() if not r["success"])
        assert failed["error"] == "Часът вече е зает. Моля изберете друг."
        assert len(backend.appointments) == 1

    @pytest.mark.asyncio
    async def test_rebook_after_cancel(self, tools, backend):
        first = await tools.execute(call("book_appointment", BOOKING_ARGS, "call_1"))
        await tools.execute(call("cancel_appointment", {"appointmentId": first["appointmentId"]}))
        second = await tools.execute(call("book_appointment", BOOKING_ARGS, "call_2"))

        assert second["success"] is True
        assert second["appointmentId"] not in ("duplicate", first["appointmentId"])
        active = [a for a in backend.appointments if a.is_active]
        assert [a.id for a in active] == [second["appointmentId"]]

    @pytest.mark.asyncio
    async def test_rebook_after_reschedule(self, tools, backend):
        first = await tools.execute(call("book_appointment", BOOKING_ARGS, "call_1"))
        await tools.execute(call("reschedule_appointment", {
            "appointmentId": first["appointmentId"],
            "newDate": "2024-06-05",
            "newTime": "12:00",
        }))
        second = await tools.execute(call("book_appointment", BOOKING_ARGS, "call_2"))

        assert second["success"] is True
        assert second["appointmentId"] != "duplicate"
        assert len(backend.appointments) == 2

    @pytest.mark.asyncio
    async def test_recheck_ignores_cache(self, tools, backend, make_appointment):
        """A slot taken after it was listed is caught by the fresh read."""
        slots = await tools.execute(call("get_available_slots", {"date": "2024-06-04", "barberId": "ivan"}))
        assert "10:00" in slots["slots"]

        await backend.create_appointment(make_appointment(day="2024-06-04", hhmm="10:00"))

        result = await tools.execute(call("book_appointment", BOOKING_ARGS))
        assert result["success"] is False
        assert tools.booking_created is False
        assert len(backend.appointments) == 1

    @pytest.mark.asyncio
    async def test_booking_invalidates_cache(self, tools):
        arguments = {"date": "2024-06-04", "barberId": "ivan"}
        await tools.execute(call("get_available_slots", arguments))
        await tools.execute(call("book_appointment", BOOKING_ARGS))
        result = await tools.execute(call("get_available_slots", arguments))
        assert "10:00" not in result["slots"]

    @pytest.mark.asyncio
    async def test_missing_arguments(self, tools, backend):
        arguments = dict(BOOKING_ARGS, customerPhone="")
        result = await tools.execute(call("book_appointment", arguments))
        assert result["success"] is False
        assert result["error"].startswith("Липсват задължителни данни")
        assert "customerPhone" in result["error"]
        assert backend.appointments == []

    @pytest.mark.asyncio
    async def test_invalid_date(self, tools):
        result = await tools.execute(call("book_appointment", dict(BOOKING_ARGS, date="утре")))
        assert result == {"success": False, "error": "Невалидни данни за book_appointment."}

    @pytest.mark.asyncio
    async def test_time_normalized(self, tools, backend):
        result = await tools.execute(call("book_appointment", dict(BOOKING_ARGS, time="9.00")))
        assert result["success"] is True
        assert backend.appointments[0].date == "2024-06-04T09:00:00"

    @pytest.mark.asyncio
    async def test_unknown_service(self, tools):
        result = await tools.execute(call("book_appointment", dict(BOOKING_ARGS, serviceId="perm")))
        assert result["error"] == "Услугата не е намерена."

    @pytest.mark.asyncio
    async def test_on_booked_callback(self, backend, catalog, clock, tool_config):
        booked = MagicMock()
        tools = ToolOrchestrator(backend, catalog, clock, config=tool_config, on_booked=booked)
        await tools.execute(call("book_appointment", BOOKING_ARGS))
        booked.assert_called_once()
        assert booked.call_args.args[0].barber_id == "ivan"

    @pytest.mark.asyncio
    async def test_failing_callback_keeps_result(self, backend, catalog, clock, tool_config):
        tools = ToolOrchestrator(
            backend, catalog, clock, config=tool_config,
            on_booked=MagicMock(side_effect=RuntimeError("boom")),
        )
        result = await tools.execute(call("book_appointment", BOOKING_ARGS))
        assert result["success"] is True


class TestExecution:
    """Batching, timeouts and error mapping."""

    @pytest.mark.asyncio
    async def test_unknown_tool(self, tools):
        result = await tools.execute(call("make_coffee"))
        assert result == {"error": "Непознат инструмент: make_coffee"}

    @pytest.mark.asyncio
    async def test_batch_results_by_id(self, tools):
        results = await tools.execute_batch([
            call("get_barbers", call_id="a"),
            call("get_services", call_id="b"),
            call("make_coffee", call_id="c"),
        ])
        assert set(results) == {"a", "b", "c"}
        assert "barbers" in results["a"]
        assert "services" in results["b"]
        assert "error" in results["c"]

    @pytest.mark.asyncio
    async def test_batch_empty(self, tools):
        assert await tools.execute_batch([]) == {}

    @pytest.mark.asyncio
    async def test_timeout(self, tools, backend):
        async def slow(**kwargs):
            await asyncio.sleep(5)
            return []

        backend.list_appointments = slow
        result = await tools.execute(call("get_available_slots", {"date": "2024-06-04", "barberId": "ivan"}))
        assert result == {"error": "Връзката е бавна. Моля опитайте пак."}
        await tools.aclose()

    @pytest.mark.asyncio
    async def test_backend_error(self, tools, backend):
        backend.list_appointments = AsyncMock(side_effect=BackendError("down"))
        result = await tools.execute(call("get_available_slots", {"date": "2024-06-04", "barberId": "ivan"}))
        assert result == {"error": "Възникна грешка при достъпа до графика. Моля опитайте пак."}

    @pytest.mark.asyncio
    async def test_publishes_tool_event(self, backend, catalog, clock, tool_config):
        bus = MagicMock()
        bus.publish_immediate = AsyncMock()
        tools = ToolOrchestrator(backend, catalog, clock, event_bus=bus, config=tool_config)

        await tools.execute(call("get_barbers"))

        event = bus.publish_immediate.call_args.args[0]
        assert isinstance(event, ToolCallEvent)
        assert event.name == "get_barbers"
        assert event.succeeded is True


class TestCustomerAppointments:
    """Lookup, reschedule and cancel."""

    @pytest.mark.asyncio
    async def test_lookup_by_phone(self, tools, backend, make_appointment):
        await backend.create_appointment(make_appointment(day="2024-06-05", phone="+359888111222"))
        await backend.create_appointment(make_appointment(day="2024-06-06", phone="+359899000000"))

        result = await tools.execute(call("get_customer_appointments", {"customerPhone": "0888 111 222"}))
        assert len(result["appointments"]) == 1
        found = result["appointments"][0]
        assert found["date"] == "05.06.2024"
        assert found["barberName"] == "Иван"
        assert found["serviceName"] == "Подстригване"

    @pytest.mark.asyncio
    async def test_lookup_by_name(self, tools, backend, make_appointment):
        await backend.create_appointment(make_appointment(name="Петър Петров"))
        result = await tools.execute(call("get_customer_appointments", {"customerPhone": "петър"}))
        assert len(result["appointments"]) == 1

    @pytest.mark.asyncio
    async def test_cancelled_excluded(self, tools, backend, make_appointment):
        await backend.create_appointment(make_appointment(status=AppointmentStatus.CANCELLED))
        result = await tools.execute(call("get_customer_appointments", {"customerPhone": "Петър"}))
        assert result["appointments"] == []
        assert "message" in result

    @pytest.mark.asyncio
    async def test_reschedule(self, tools, backend, make_appointment):
        appointment = await backend.create_appointment(make_appointment(day="2024-06-05", hhmm="10:00"))
        result = await tools.execute(call("reschedule_appointment", {
            "appointmentId": appointment.id,
            "newDate": "2024-06-06",
            "newTime": "12:00",
        }))
        assert result["success"] is True
        assert backend.appointments[0].date == "2024-06-06T12:00:00"
        assert tools.booking_created is False

    @pytest.mark.asyncio
    async def test_reschedule_into_taken_slot(self, tools, backend, make_appointment):
        appointment = await backend.create_appointment(make_appointment(day="2024-06-05", hhmm="10:00"))
        await backend.create_appointment(make_appointment(day="2024-06-06", hhmm="12:00"))
        result = await tools.execute(call("reschedule_appointment", {
            "appointmentId": appointment.id,
            "newDate": "2024-06-06",
            "newTime": "12:00",
        }))
        assert result["success"] is False

    @pytest.mark.asyncio
    async def test_reschedule_missing(self, tools):
        result = await tools.execute(call("reschedule_appointment", {
            "appointmentId": "apt_nope",
            "newDate": "2024-06-06",
            "newTime": "12:00",
        }))
        assert result["error"] == "Записът не е намерен."

    @pytest.mark.asyncio
    async def test_cancel(self, tools, backend, make_appointment):
        appointment = await backend.create_appointment(make_appointment(day="2024-06-05"))
        result = await tools.execute(call("cancel_appointment", {"appointmentId": appointment.id}))
        assert result["success"] is True
        assert backend.appointments[0].status == AppointmentStatus.CANCELLED
        assert tools.booking_created is False
