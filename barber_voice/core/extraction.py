"""
Field Extraction Heuristics

Best-effort pattern matching over free-text (Bulgarian) utterances. The
results pre-fill the booking draft so the agent's next question is already
the right one; they are never the source of truth for a booking, the LLM's
tool-call arguments are. A miss simply returns None.
"""

import re
from typing import Iterable, Optional

from .models import DEFAULT_SERVICES, Service

BG_MONTH_PATTERN = "януари|февруари|март|април|май|юни|юли|август|септември|октомври|ноември|декември"

RELATIVE_DAYS = (
    ("вдругиден", "вдругиден"),
    ("в други ден", "вдругиден"),
    ("днес", "днес"),
    ("утре", "утре"),
)

DATE_PATTERNS = (
    re.compile(r"(\d{1,2})[./](\d{1,2})(?:[./](\d{2,4}))?"),
    re.compile(rf"(\d{{1,2}})\s+({BG_MONTH_PATTERN})", re.IGNORECASE),
)
TIME_PATTERN = re.compile(r"(\d{1,2})[:\s](\d{2})\s*(?:часа?)?")
HOUR_PATTERN = re.compile(r"\b(?:в|във|от)\s+(\d{1,2})(?!\d)(?:\s*часа?)?", re.IGNORECASE)

PHONE_PATTERNS = (
    re.compile(r"(\+359)\s*(\d{3})\s*(\d{3})\s*(\d{3})"),
    re.compile(r"(0\d{2})\s*(\d{3})\s*(\d{4})"),
    re.compile(r"(0\d{2})(\d{7})"),
)

MIN_KEYWORD_LENGTH = 3
NAME_MIN_LENGTH = 3
NAME_MAX_LENGTH = 49


def _service_keywords(service: Service) -> list:
    name_bg = service.name_bg.lower()
    words = [word for word in name_bg.split() if len(word) >= MIN_KEYWORD_LENGTH]
    return [name_bg, service.name.lower(), *words]


def _find_service(services: Iterable[Service], service_id: str) -> Optional[Service]:
    return next((s for s in services if s.id == service_id), None)


def detect_service(text: str, services: Optional[Iterable[Service]] = None) -> Optional[Service]:
    """Match a catalog service by keyword.

    Combo is chosen for "комбо"/"двете", beard for "брада" when shaving is
    not also mentioned.
    """
    catalog = list(services or DEFAULT_SERVICES)
    lowered = text.lower()

    for service in catalog:
        if any(keyword and keyword in lowered for keyword in _service_keywords(service)):
            return service

    if "комбо" in lowered or "двете" in lowered:
        return _find_service(catalog, "combo")
    if "брада" in lowered and "бръснене" not in lowered:
        return _find_service(catalog, "beard")
    return None


def detect_time(text: str) -> Optional[str]:
    """Return a time as HH:MM, from '15:30', '15 30 часа' or 'в 10'."""
    match = TIME_PATTERN.search(text)
    if match:
        hours, minutes = int(match.group(1)), int(match.group(2))
    else:
        match = HOUR_PATTERN.search(text)
        if not match:
            return None
        hours, minutes = int(match.group(1)), 0
    if hours > 23 or minutes > 59:
        return None
    return f"{hours:02d}:{minutes:02d}"


def detect_date_time(text: str) -> Optional[str]:
    """Capture the day and/or time mentioned in an utterance.

    The day is kept raw ('утре', '20.02', '20 февруари'); a time found
    alongside it is appended as HH:MM. Returns None when neither is present.
    """
    lowered = text.lower()
    day: Optional[str] = None

    for keyword, value in RELATIVE_DAYS:
        if keyword in lowered:
            day = value
            break

    remainder = text
    if day is None:
        for pattern in DATE_PATTERNS:
            match = pattern.search(text)
            if match:
                day = match.group(0)
                remainder = text[:match.start()] + " " + text[match.end():]
                break

    hhmm = detect_time(remainder)
    if day and hhmm:
        return f"{day} {hhmm}"
    return day or hhmm


def detect_phone(text: str) -> Optional[str]:
    """Find a Bulgarian phone number; whitespace inside it is removed."""
    for pattern in PHONE_PATTERNS:
        match = pattern.search(text)
        if match:
            return re.sub(r"\s", "", match.group(0))
    return None


def strip_phone(text: str) -> str:
    """Remove the first phone number found so its digits are not read as a date."""
    for pattern in PHONE_PATTERNS:
        if pattern.search(text):
            return pattern.sub(" ", text, count=1)
    return text


def looks_like_name(text: str) -> bool:
    """Name heuristic used only while the draft is waiting for a name."""
    candidate = text.strip().strip(".!?,")
    if not (NAME_MIN_LENGTH <= len(candidate) <= NAME_MAX_LENGTH):
        return False
    if detect_phone(candidate) or detect_date_time(candidate):
        return False
    return not any(char.isdigit() for char in candidate)


def normalize_phone(raw: str) -> str:
    """Canonical international digits: '0888 123 456' -> '359888123456'."""
    digits = re.sub(r"\D", "", raw or "")
    if digits.startswith("0"):
        digits = "359" + digits[1:]
    elif digits and not digits.startswith("359"):
        digits = "359" + digits
    return digits


def spell_digits(phone: str) -> str:
    """Digits separated by spaces so TTS reads them one by one."""
    return " ".join(char for char in phone if char.isdigit())
