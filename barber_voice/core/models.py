"""
Domain Models

Plain dataclasses shared by the booking state machine, the tool
orchestrator and the session manager. Backend records (services, barbers,
appointments) are owned by the external booking backend; the voice core
only reads them and writes appointments through the tool orchestrator.
"""

import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


# ============================================================================
# Catalog
# ============================================================================

@dataclass
class Service:
    """A bookable service from the shop catalog."""
    id: str
    name: str
    name_bg: str
    price: float
    duration: int  # minutes
    description: str = ""
    description_bg: str = ""

    def display_name(self, lang: str = "bg") -> str:
        return self.name_bg if lang == "bg" and self.name_bg else self.name


@dataclass
class Barber:
    """A barber whose calendar holds appointments."""
    id: str
    name: str
    name_bg: str = ""
    active: bool = True

    def display_name(self, lang: str = "bg") -> str:
        return self.name_bg if lang == "bg" and self.name_bg else self.name


DEFAULT_SERVICES: List[Service] = [
    Service("haircut", "Haircut", "Подстригване", 40, 30,
            "Classic haircut with wash", "Класическо подстригване с измиване"),
    Service("shave", "Classic Shave", "Класическо бръснене", 35, 25,
            "Hot towel straight razor shave", "Бръснене с прав бръснач и гореща кърпа"),
    Service("combo", "Combo", "Комбо", 65, 50,
            "Haircut + Classic shave", "Подстригване + Класическо бръснене"),
    Service("beard", "Beard Trim", "Оформяне на брада", 25, 20,
            "Beard shaping and trimming", "Оформяне и подстригване на брада"),
]


# ============================================================================
# Appointments
# ============================================================================

class AppointmentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass
class Appointment:
    """
    Appointment record as stored by the booking backend.

    ``date`` is an ISO-8601 timestamp in the shop's local time
    (``2024-06-01T10:00:00``); ``customer_phone`` holds the encoded
    international form (``+359888123456``).
    """
    id: str
    service_id: str
    barber_id: str
    date: str
    customer_name: str
    customer_phone: str
    status: AppointmentStatus = AppointmentStatus.PENDING

    @property
    def starts_at(self) -> datetime:
        return datetime.fromisoformat(self.date)

    @property
    def day(self) -> str:
        """Date part as YYYY-MM-DD."""
        return self.date[:10]

    @property
    def time(self) -> str:
        """Start time as HH:MM."""
        return self.starts_at.strftime("%H:%M")

    @property
    def is_active(self) -> bool:
        return self.status != AppointmentStatus.CANCELLED


# ============================================================================
# Conversation
# ============================================================================

@dataclass
class BookingDraft:
    """In-progress reservation assembled during the conversation."""
    service: Optional[str] = None
    service_id: Optional[str] = None
    date_time: Optional[str] = None
    customer_name: Optional[str] = None
    phone: Optional[str] = None
    price: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class Role(str, Enum):
    USER = "user"
    AGENT = "agent"
    SYSTEM = "system"


@dataclass
class ConversationTurn:
    """One exchange unit in the conversation history."""
    role: Role
    text: str
    timestamp: float = field(default_factory=time.time)

    def to_message(self) -> Dict[str, str]:
        """Convert to a chat completions message."""
        role = "assistant" if self.role == Role.AGENT else self.role.value
        return {"role": role, "content": self.text}


# ============================================================================
# Conversation log
# ============================================================================

class LogEventType(str, Enum):
    USER_SPEECH = "user_speech"
    AGENT_RESPONSE = "agent_response"
    TOOL_CALL = "tool_call"
    SYSTEM = "system"


class LogOutcome(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    ERROR = "error"


@dataclass
class LogEvent:
    type: LogEventType
    content: str
    timestamp: float = field(default_factory=time.time)
    metadata: Optional[Dict[str, Any]] = None


@dataclass
class ConversationLog:
    """Persisted record of one voice session."""
    id: str
    start_time: float
    end_time: Optional[float] = None
    duration: Optional[int] = None
    outcome: LogOutcome = LogOutcome.ACTIVE
    events: List[LogEvent] = field(default_factory=list)
    tool_call_count: int = 0
    booking_created: bool = False
    appointment_id: Optional[str] = None
