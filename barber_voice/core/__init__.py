"""
Booking domain for the voice core.

Models, the shop clock, extraction heuristics, the booking state machine,
slot helpers and the backend / log-store boundaries.
"""

from .models import (
    Appointment,
    AppointmentStatus,
    Barber,
    BookingDraft,
    ConversationLog,
    ConversationTurn,
    DEFAULT_SERVICES,
    LogEvent,
    LogEventType,
    LogOutcome,
    Role,
    Service,
)
from .clock import ShopClock
from .extraction import detect_date_time, detect_phone, detect_service, normalize_phone, spell_digits
from .booking_state import BookingConversation, ConversationStep
from .slots import SlotRef, filter_lead_time, find_next_available_slot, free_slots, is_slot_available
from .cache import TTLCache
from .backend import (
    BackendError,
    BookingBackend,
    ConversationLogStore,
    InMemoryBookingBackend,
    InMemoryLogStore,
    LiveCatalog,
)

__all__ = [
    # Models
    "Appointment",
    "AppointmentStatus",
    "Barber",
    "BookingDraft",
    "ConversationLog",
    "ConversationTurn",
    "DEFAULT_SERVICES",
    "LogEvent",
    "LogEventType",
    "LogOutcome",
    "Role",
    "Service",
    # Clock
    "ShopClock",
    # Extraction
    "detect_date_time",
    "detect_phone",
    "detect_service",
    "normalize_phone",
    "spell_digits",
    # State machine
    "BookingConversation",
    "ConversationStep",
    # Slots
    "SlotRef",
    "filter_lead_time",
    "find_next_available_slot",
    "free_slots",
    "is_slot_available",
    "TTLCache",
    # Backend
    "BackendError",
    "BookingBackend",
    "ConversationLogStore",
    "InMemoryBookingBackend",
    "InMemoryLogStore",
    "LiveCatalog",
]
