"""
Tests for slot grid helpers and the shop clock.
"""

from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from barber_voice.core.clock import ShopClock
from barber_voice.core.models import AppointmentStatus
from barber_voice.core.slots import (
    SlotRef,
    filter_lead_time,
    find_next_available_slot,
    free_slots,
    is_slot_available,
)

SOFIA = ZoneInfo("Europe/Sofia")

GRID = ["10:00", "11:00", "12:00", "13:00", "14:00", "15:00", "16:00", "17:00", "18:00"]


class TestShopClock:
    def test_today(self, clock):
        assert clock.today_str() == "2024-06-03"

    def test_localize(self, clock):
        moment = clock.localize("2024-06-03", "10:30")
        assert moment.hour == 10 and moment.minute == 30
        assert moment.tzinfo is not None

    def test_days_ahead(self, clock):
        assert clock.days_ahead(3) == ["2024-06-03", "2024-06-04", "2024-06-05"]

    def test_describe_now(self, clock):
        assert clock.describe_now() == "понеделник, 3 юни 2024, 09:00"


class TestAvailability:
    """A slot is taken by any non-cancelled appointment of the same barber."""

    def test_taken(self, make_appointment):
        appointments = [make_appointment(hhmm="10:00")]
        assert is_slot_available("10:00", "2024-06-03", "ivan", appointments) is False

    def test_other_barber(self, make_appointment):
        appointments = [make_appointment(hhmm="10:00", barber_id="georgi")]
        assert is_slot_available("10:00", "2024-06-03", "ivan", appointments) is True

    def test_cancelled_frees_slot(self, make_appointment):
        appointments = [make_appointment(hhmm="10:00", status=AppointmentStatus.CANCELLED)]
        assert is_slot_available("10:00", "2024-06-03", "ivan", appointments) is True

    def test_free_slots(self, make_appointment):
        appointments = [make_appointment(hhmm="10:00"), make_appointment(hhmm="12:00")]
        slots = free_slots("2024-06-03", "ivan", appointments, GRID)
        assert "10:00" not in slots and "12:00" not in slots
        assert len(slots) == len(GRID) - 2


class TestLeadTime:
    def test_today_filtered(self):
        clock = ShopClock("Europe/Sofia", now_fn=lambda: datetime(2024, 6, 3, 9, 30, tzinfo=SOFIA))
        # 10:00 is within 45 minutes of 09:30
        assert filter_lead_time("2024-06-03", GRID, clock, 45)[0] == "11:00"

    def test_other_days_untouched(self, clock):
        assert filter_lead_time("2024-06-04", GRID, clock, 45) == GRID


class TestEarliestSlot:
    """Earliest free slot across the forward window."""

    def test_first_slot_today(self, clock):
        slot = find_next_available_slot([], ["ivan"], GRID, clock)
        assert slot == SlotRef(date="2024-06-03", time="10:00", barber_id="ivan")

    def test_past_slots_skipped(self):
        clock = ShopClock("Europe/Sofia", now_fn=lambda: datetime(2024, 6, 3, 17, 0, tzinfo=SOFIA))
        slot = find_next_available_slot([], ["ivan"], GRID, clock)
        assert slot.time == "18:00"

    def test_rolls_to_next_day(self, make_appointment):
        clock = ShopClock("Europe/Sofia", now_fn=lambda: datetime(2024, 6, 3, 18, 30, tzinfo=SOFIA))
        slot = find_next_available_slot([], ["ivan"], GRID, clock)
        assert slot == SlotRef(date="2024-06-04", time="10:00", barber_id="ivan")

    def test_globally_earliest_barber(self, clock, make_appointment):
        appointments = [make_appointment(hhmm=t, barber_id="ivan") for t in ("10:00", "11:00")]
        slot = find_next_available_slot(appointments, ["ivan", "georgi"], GRID, clock)
        assert slot.barber_id == "georgi"
        assert slot.time == "10:00"

    def test_tie_goes_to_first_barber(self, clock):
        slot = find_next_available_slot([], ["ivan", "georgi"], GRID, clock)
        assert slot.barber_id == "ivan"

    def test_single_barber(self, clock, make_appointment):
        appointments = [make_appointment(hhmm="10:00", barber_id="georgi")]
        slot = find_next_available_slot(appointments, ["ivan", "georgi"], GRID, clock, barber_id="georgi")
        assert slot == SlotRef(date="2024-06-03", time="11:00", barber_id="georgi")

    def test_fully_booked_window(self, clock, make_appointment):
        appointments = [
            make_appointment(day=day, hhmm=t)
            for day in clock.days_ahead(2)
            for t in GRID
        ]
        assert find_next_available_slot(appointments, ["ivan"], GRID, clock, window_days=2) is None
