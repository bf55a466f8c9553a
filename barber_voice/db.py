"""
SQL-backed conversation log store.

Thin SQLAlchemy helpers plus a ``ConversationLogStore`` implementation that
writes one row per session and one row per log event. Any SQLAlchemy URL
works; the default is a local SQLite file.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine, Result
from sqlalchemy.exc import IntegrityError

from barber_voice.config import get_env
from barber_voice.core.models import ConversationLog, LogEvent, LogEventType, LogOutcome
from barber_voice.logger import get_logger

logger = get_logger(__name__)

START_LOG_ATTEMPTS = 5

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS conversation_logs (
        id VARCHAR(64) PRIMARY KEY,
        shop_id VARCHAR(64) NOT NULL,
        start_time DOUBLE PRECISION NOT NULL,
        end_time DOUBLE PRECISION,
        duration INTEGER,
        outcome VARCHAR(16) NOT NULL,
        tool_call_count INTEGER NOT NULL DEFAULT 0,
        booking_created BOOLEAN NOT NULL DEFAULT FALSE,
        appointment_id VARCHAR(64)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conversation_events (
        log_id VARCHAR(64) NOT NULL,
        seq INTEGER NOT NULL,
        type VARCHAR(32) NOT NULL,
        content TEXT NOT NULL,
        timestamp DOUBLE PRECISION NOT NULL,
        metadata TEXT,
        PRIMARY KEY (log_id, seq)
    )
    """,
)


class Database:
    """Thin wrapper around a SQLAlchemy engine for common operations."""

    def __init__(self, url: Optional[str] = None, engine: Optional[Engine] = None) -> None:
        self.engine = engine or create_engine(
            url or get_env("CONVERSATION_LOG_DB_URL", "sqlite:///conversation_logs.db"),
            pool_pre_ping=True,
        )

    def execute(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> Result:
        with self.engine.begin() as conn:
            return conn.execute(text(sql), params or {})

    def fetch_one(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> Optional[Dict[str, Any]]:
        with self.engine.begin() as conn:
            row = conn.execute(text(sql), params or {}).mappings().first()
            return dict(row) if row else None

    def fetch_all(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> Sequence[Dict[str, Any]]:
        with self.engine.begin() as conn:
            return [dict(r) for r in conn.execute(text(sql), params or {}).mappings().all()]

    def create_schema(self) -> None:
        for statement in SCHEMA:
            self.execute(statement)


class SqlConversationLogStore:
    """
    Conversation log store on top of :class:`Database`.

    Writes run in a worker thread and are serialized, so concurrent
    ``append_event`` calls keep their emission order.
    """

    def __init__(
        self,
        database: Optional[Database] = None,
        shop_id: str = "default",
        clock: Callable[[], float] = time.time,
    ):
        self._db = database or Database()
        self._shop_id = shop_id
        self._clock = clock
        self._lock = asyncio.Lock()
        self._sequences: Dict[str, int] = {}
        self._db.create_schema()

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        async with self._lock:
            return await asyncio.to_thread(fn, *args)

    async def start_log(self) -> str:
        started = self._clock()
        base_id = f"conv_{int(started * 1000)}"
        log_id = base_id
        for attempt in range(START_LOG_ATTEMPTS):
            try:
                await self._run(
                    self._db.execute,
                    "INSERT INTO conversation_logs (id, shop_id, start_time, outcome, tool_call_count, booking_created) "
                    "VALUES (:id, :shop_id, :start_time, :outcome, 0, :booking_created)",
                    {
                        "id": log_id,
                        "shop_id": self._shop_id,
                        "start_time": started,
                        "outcome": LogOutcome.ACTIVE.value,
                        "booking_created": False,
                    },
                )
                break
            except IntegrityError:
                if attempt == START_LOG_ATTEMPTS - 1:
                    raise
                # Two sessions started in the same millisecond
                log_id = f"{base_id}_{uuid.uuid4().hex[:4]}"
        self._sequences[log_id] = 0
        logger.debug(f"Conversation log {log_id} started")
        return log_id

    def _append(self, log_id: str, seq: int, event: LogEvent) -> None:
        with self._db.engine.begin() as conn:
            conn.execute(
                text(
                    "INSERT INTO conversation_events (log_id, seq, type, content, timestamp, metadata) "
                    "VALUES (:log_id, :seq, :type, :content, :timestamp, :metadata)"
                ),
                {
                    "log_id": log_id,
                    "seq": seq,
                    "type": event.type.value,
                    "content": event.content,
                    "timestamp": event.timestamp,
                    "metadata": json.dumps(event.metadata, ensure_ascii=False) if event.metadata else None,
                },
            )
            if event.type == LogEventType.TOOL_CALL:
                conn.execute(
                    text("UPDATE conversation_logs SET tool_call_count = tool_call_count + 1 WHERE id = :id"),
                    {"id": log_id},
                )

    async def append_event(self, log_id: str, event: LogEvent) -> None:
        seq = self._sequences.get(log_id, 0) + 1
        self._sequences[log_id] = seq
        await self._run(self._append, log_id, seq, event)

    async def end_log(
        self,
        log_id: str,
        outcome: LogOutcome,
        booking_created: bool,
        appointment_id: Optional[str] = None,
    ) -> None:
        ended = self._clock()
        row = await self._run(
            self._db.fetch_one,
            "SELECT start_time FROM conversation_logs WHERE id = :id",
            {"id": log_id},
        )
        if row is None:
            raise KeyError(f"Unknown conversation log {log_id}")
        await self._run(
            self._db.execute,
            "UPDATE conversation_logs SET end_time = :end_time, duration = :duration, outcome = :outcome, "
            "booking_created = :booking_created, appointment_id = :appointment_id WHERE id = :id",
            {
                "id": log_id,
                "end_time": ended,
                "duration": int(round(ended - row["start_time"])),
                "outcome": outcome.value,
                "booking_created": booking_created,
                "appointment_id": appointment_id,
            },
        )
        self._sequences.pop(log_id, None)

    async def load(self, log_id: str) -> Optional[ConversationLog]:
        """Read a full log back, events in emission order."""
        row = await self._run(
            self._db.fetch_one,
            "SELECT * FROM conversation_logs WHERE id = :id",
            {"id": log_id},
        )
        if row is None:
            return None
        event_rows: List[Dict[str, Any]] = await self._run(
            self._db.fetch_all,
            "SELECT * FROM conversation_events WHERE log_id = :id ORDER BY seq",
            {"id": log_id},
        )
        return ConversationLog(
            id=row["id"],
            start_time=row["start_time"],
            end_time=row["end_time"],
            duration=row["duration"],
            outcome=LogOutcome(row["outcome"]),
            events=[
                LogEvent(
                    type=LogEventType(r["type"]),
                    content=r["content"],
                    timestamp=r["timestamp"],
                    metadata=json.loads(r["metadata"]) if r["metadata"] else None,
                )
                for r in event_rows
            ],
            tool_call_count=row["tool_call_count"],
            booking_created=bool(row["booking_created"]),
            appointment_id=row["appointment_id"],
        )
