"""
Slot Grid Helpers

Pure functions over the configured slot grid and a list of appointments.
A slot is occupied for a barber when a non-cancelled appointment of that
barber starts on the same day at the same HH:MM.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Iterable, List, Optional, Sequence

from .clock import ShopClock
from .models import Appointment


@dataclass(frozen=True)
class SlotRef:
    """A free slot returned by the earliest-slot scan."""
    date: str
    time: str
    barber_id: str


def is_slot_available(
    hhmm: str,
    day: str,
    barber_id: str,
    appointments: Iterable[Appointment],
) -> bool:
    for appointment in appointments:
        if appointment.barber_id != barber_id or not appointment.is_active:
            continue
        if appointment.day == day and appointment.time == hhmm:
            return False
    return True


def free_slots(
    day: str,
    barber_id: str,
    appointments: Sequence[Appointment],
    grid: Sequence[str],
) -> List[str]:
    """Grid slots of ``day`` not occupied for ``barber_id``."""
    return [slot for slot in grid if is_slot_available(slot, day, barber_id, appointments)]


def filter_lead_time(
    day: str,
    slots: Sequence[str],
    clock: ShopClock,
    lead_minutes: int,
) -> List[str]:
    """
    Drop today's slots starting within ``lead_minutes`` of now.

    Other days are returned unchanged.
    """
    if not clock.is_today(day):
        return list(slots)
    cutoff = clock.now() + timedelta(minutes=lead_minutes)
    return [slot for slot in slots if clock.localize(day, slot) > cutoff]


def _earliest_for_barber(
    barber_id: str,
    appointments: Sequence[Appointment],
    grid: Sequence[str],
    clock: ShopClock,
    window_days: int,
) -> Optional[SlotRef]:
    now = clock.now()
    for day in clock.days_ahead(window_days):
        for slot in grid:
            if clock.is_today(day) and clock.localize(day, slot) <= now:
                continue
            if is_slot_available(slot, day, barber_id, appointments):
                return SlotRef(date=day, time=slot, barber_id=barber_id)
    return None


def find_next_available_slot(
    appointments: Sequence[Appointment],
    barber_ids: Iterable[str],
    grid: Sequence[str],
    clock: ShopClock,
    window_days: int = 30,
    barber_id: Optional[str] = None,
) -> Optional[SlotRef]:
    """
    Earliest free slot in the forward window.

    With ``barber_id`` only that barber is scanned; otherwise each barber's
    earliest slot is compared and the globally earliest wins (first barber
    on ties).
    """
    if barber_id:
        return _earliest_for_barber(barber_id, appointments, grid, clock, window_days)

    earliest: Optional[SlotRef] = None
    for candidate_id in barber_ids:
        slot = _earliest_for_barber(candidate_id, appointments, grid, clock, window_days)
        if slot is None:
            continue
        if earliest is None or clock.localize(slot.date, slot.time) < clock.localize(earliest.date, earliest.time):
            earliest = slot
    return earliest
