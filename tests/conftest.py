"""
Pytest Configuration and Fixtures

This module provides shared fixtures and configuration for all tests.
"""

import os
import sys
from datetime import datetime
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock
from zoneinfo import ZoneInfo

import pytest
import pytest_asyncio

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Set test environment
os.environ["APP_ENV"] = "test"
os.environ["SHOP_ID"] = "test-shop"
os.environ["SHOP_NAME"] = "Test Barbers"
os.environ["SHOP_TIMEZONE"] = "Europe/Sofia"
os.environ["SONIOX_API_KEY"] = "test-soniox-key"
os.environ["ELEVENLABS_API_KEY"] = "test-eleven-key"
os.environ["OPENAI_API_KEY"] = "test-openai-key"
os.environ["CONVERSATION_LOG_DB_URL"] = "sqlite://"

SOFIA = ZoneInfo("Europe/Sofia")

# Monday 3 June 2024, 09:00 shop time
FIXED_NOW = datetime(2024, 6, 3, 9, 0, tzinfo=SOFIA)


@pytest.fixture
def fixed_now():
    return FIXED_NOW


@pytest.fixture
def clock():
    """Shop clock pinned to FIXED_NOW."""
    from barber_voice.core.clock import ShopClock
    return ShopClock("Europe/Sofia", now_fn=lambda: FIXED_NOW)


@pytest.fixture
def barbers():
    from barber_voice.core.models import Barber
    return [
        Barber(id="ivan", name="Ivan", name_bg="Иван"),
        Barber(id="georgi", name="Georgi", name_bg="Георги"),
    ]


@pytest.fixture
def backend(barbers):
    """In-memory backend with the default catalog and two barbers."""
    from barber_voice.core.backend import InMemoryBookingBackend
    from barber_voice.core.models import DEFAULT_SERVICES
    return InMemoryBookingBackend(services=DEFAULT_SERVICES, barbers=barbers, shop_id="test-shop")


@pytest_asyncio.fixture
async def catalog(backend):
    """Live catalog loaded from the backend."""
    from barber_voice.core.backend import LiveCatalog
    live = LiveCatalog(backend)
    await live.start()
    yield live
    live.stop()


@pytest.fixture
def log_store(clock):
    from barber_voice.core.backend import InMemoryLogStore
    return InMemoryLogStore(clock=clock.timestamp)


@pytest.fixture
def tool_config():
    """Tool settings with a short timeout so slow-call tests stay fast."""
    from barber_voice.config import ToolConfig
    return ToolConfig(
        timeout_s=0.2,
        appointments_cache_ttl_s=15.0,
        range_cache_ttl_s=20.0,
        dedup_window_s=10.0,
        lead_time_minutes=45,
        scan_window_days=30,
        lookup_past_days=7,
        lookup_future_days=60,
    )


@pytest.fixture
def make_appointment():
    """Factory for appointments on the test calendar."""
    from barber_voice.core.models import Appointment, AppointmentStatus

    counter = {"n": 0}

    def factory(
        day="2024-06-03",
        hhmm="10:00",
        barber_id="ivan",
        service_id="haircut",
        name="Петър Петров",
        phone="+359888111222",
        status=AppointmentStatus.PENDING,
    ):
        counter["n"] += 1
        return Appointment(
            id=f"apt_{counter['n']}",
            service_id=service_id,
            barber_id=barber_id,
            date=f"{day}T{hhmm}:00",
            customer_name=name,
            customer_phone=phone,
            status=status,
        )

    return factory


@pytest.fixture
def mock_stt():
    """Transcription provider double."""
    stt = MagicMock()
    stt.connect = AsyncMock()
    stt.disconnect = AsyncMock()
    stt.send_audio = AsyncMock(return_value=True)
    stt.pause = MagicMock()
    stt.resume = MagicMock()
    return stt


@pytest.fixture
def mock_tts():
    """Speech provider double; ``speak`` reports the utterance as played."""
    tts = MagicMock()
    tts.speak = AsyncMock(return_value=True)
    tts.stop = AsyncMock()
    tts.close = AsyncMock()
    return tts


@pytest.fixture
def mock_llm():
    """Turn completion provider double answering with plain text."""
    from barber_voice.realtime.llm_stream import LLMResponse
    llm = MagicMock()
    llm.complete_turn = AsyncMock(return_value=LLMResponse(text="Здравейте! С какво да помогна?"))
    llm.close = AsyncMock()
    return llm


@pytest.fixture
def mock_capture():
    """Microphone double that yields no frames and reports silence."""
    capture = MagicMock()
    capture.start = AsyncMock(return_value=capture)
    capture.stop = MagicMock()
    capture.level = 0.0

    async def frames():
        return
        yield  # pragma: no cover

    capture.frames = frames
    return capture
