"""
Conversation / Booking State Machine

Tracks the booking draft collected during a call and the step the
conversation is on. The step is derived from which fields are filled, in
the canonical order service -> date/time -> name -> phone -> confirmation,
so it can never point at an earlier field than the first missing one.

Completion needs more than data: the draft is complete only once every
field is filled AND the booking has been confirmed (a successful
``book_appointment`` call).

Usage:
    conversation = BookingConversation()
    conversation.prefill_from_utterance("подстригване утре в 10")
    conversation.current_step      # ConversationStep.NAME
    conversation.get_next_question()
"""

import json
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from barber_voice.logger import get_logger
from barber_voice.messages import msg

from .extraction import (
    detect_date_time,
    detect_phone,
    detect_service,
    looks_like_name,
    normalize_phone,
    strip_phone,
)
from .models import BookingDraft, ConversationTurn, Role, Service

logger = get_logger(__name__)


class ConversationStep(str, Enum):
    SERVICE = "service"
    DATETIME = "datetime"
    NAME = "name"
    PHONE = "phone"
    CONFIRMATION = "confirmation"


# Canonical fill order: (draft attribute, step asked while it is missing, localized label)
FIELD_ORDER = (
    ("service", ConversationStep.SERVICE, "услуга"),
    ("date_time", ConversationStep.DATETIME, "дата и час"),
    ("customer_name", ConversationStep.NAME, "име"),
    ("phone", ConversationStep.PHONE, "телефон"),
)

DRAFT_FIELDS = ("service", "service_id", "date_time", "customer_name", "phone", "price")


class BookingConversation:
    """
    Booking draft, derived step and conversation history for one session.

    Single writer: only the turn-processing path of the session mutates it.
    """

    def __init__(self, lang: str = "bg"):
        self._lang = lang
        self._draft = BookingDraft()
        self._history: List[ConversationTurn] = []
        self._confirmed = False

    # ========================================================================
    # State
    # ========================================================================

    @property
    def booking_data(self) -> BookingDraft:
        return self._draft

    @property
    def history(self) -> List[ConversationTurn]:
        return list(self._history)

    @property
    def current_step(self) -> ConversationStep:
        for attribute, step, _ in FIELD_ORDER:
            if not getattr(self._draft, attribute):
                return step
        return ConversationStep.CONFIRMATION

    @property
    def is_confirmed(self) -> bool:
        return self._confirmed

    @property
    def is_complete(self) -> bool:
        return (
            not self.get_missing_fields()
            and self.current_step == ConversationStep.CONFIRMATION
            and self._confirmed
        )

    def get_missing_fields(self) -> List[str]:
        """Localized labels of the fields still missing, in ask order."""
        return [label for attribute, _, label in FIELD_ORDER if not getattr(self._draft, attribute)]

    # ========================================================================
    # Mutation
    # ========================================================================

    def update_booking_data(self, authoritative: bool = False, **partial: Any) -> ConversationStep:
        """
        Merge fields into the draft and return the recomputed step.

        Empty values are ignored, so a field once set is never cleared.
        Heuristic updates only fill unset fields; ``authoritative`` updates
        (the arguments of a successful booking) overwrite them.
        """
        for key, value in partial.items():
            if key not in DRAFT_FIELDS:
                raise KeyError(f"Unknown booking field: {key}")
            if value is None or value == "":
                continue
            current = getattr(self._draft, key)
            if current and not authoritative:
                continue
            if current != value:
                logger.debug(f"Booking field {key}: {current!r} -> {value!r}")
            setattr(self._draft, key, value)
        return self.current_step

    def select_service(self, service: Service, authoritative: bool = False) -> ConversationStep:
        return self.update_booking_data(
            authoritative=authoritative,
            service=service.display_name(self._lang),
            service_id=service.id,
            price=service.price,
        )

    def prefill_from_utterance(self, text: str, services: Optional[Iterable[Service]] = None) -> ConversationStep:
        """
        Run the extraction heuristics over one user utterance.

        The phone is detected first and cut out of the text so its digits
        are not mistaken for a date or time. A bare utterance is taken as
        the name only while the name is the field being asked for.
        """
        step_before = self.current_step
        remainder = text

        phone = detect_phone(text)
        if phone:
            self.update_booking_data(phone=normalize_phone(phone))
            remainder = strip_phone(text)

        service = detect_service(remainder, services)
        if service and not self._draft.service:
            self.select_service(service)

        date_time = detect_date_time(remainder)
        if date_time:
            self.update_booking_data(date_time=date_time)

        if (
            step_before == ConversationStep.NAME
            and not (phone or service or date_time)
            and looks_like_name(text)
        ):
            self.update_booking_data(customer_name=text.strip().strip(".!?,"))

        return self.current_step

    def mark_confirmed(self) -> None:
        """Record that the booking was written by the backend."""
        if self.get_missing_fields():
            logger.warning(f"Confirmed booking with missing fields: {self.get_missing_fields()}")
        self._confirmed = True

    def add_message(self, role: Role, text: str) -> ConversationTurn:
        turn = ConversationTurn(role=role, text=text)
        self._history.append(turn)
        return turn

    def recent_history(self, window: int) -> List[ConversationTurn]:
        if window <= 0:
            return []
        return self._history[-window:]

    def reset_conversation(self) -> None:
        """Clear the draft, confirmation and history for a new session."""
        self._draft = BookingDraft()
        self._history = []
        self._confirmed = False

    # ========================================================================
    # Prompts
    # ========================================================================

    def get_next_question(self) -> str:
        """Next question for the current step; a pure function of state."""
        if self._confirmed:
            return msg("question.complete", self._lang)
        step = self.current_step
        if step == ConversationStep.CONFIRMATION:
            return f"{self.summary()} {msg('question.confirmation', self._lang)}"
        return msg(f"question.{step.value}", self._lang)

    def summary(self) -> str:
        draft = self._draft
        return msg(
            "booking.summary",
            self._lang,
            service=draft.service or "-",
            date_time=draft.date_time or "-",
            name=draft.customer_name or "-",
            phone=draft.phone or "-",
        )

    def draft_json(self) -> str:
        """Draft serialized for the LLM system prompt."""
        data: Dict[str, Any] = self._draft.to_dict()
        data["step"] = self.current_step.value
        data["confirmed"] = self._confirmed
        return json.dumps(data, ensure_ascii=False)
