"""Session activity log — SQLite-backed history of sandbox session events.

Records lifecycle transitions (created, terminated, reaped) and command
executions per session so operators can see what happened to a sandbox
after the fact, including after a streaming client has disconnected.

Event Types:
- session_created, session_terminated, session_reaped
- command_started, command_completed, command_failed
"""

from __future__ import annotations

import enum
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

import aiosqlite
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


# ── Event Types ──────────────────────────────────────────────────────────────


class ActivityEventType(str, enum.Enum):
    SESSION_CREATED = "session_created"
    SESSION_TERMINATED = "session_terminated"
    SESSION_REAPED = "session_reaped"

    COMMAND_STARTED = "command_started"
    COMMAND_COMPLETED = "command_completed"
    COMMAND_FAILED = "command_failed"


class ActivityEvent(BaseModel):
    """A single activity event for one session."""

    id: int | None = None
    session_id: str
    event_type: ActivityEventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    content: str | None = None  # command text, error message
    exit_code: int | None = None
    duration_ms: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "sessionId": self.session_id,
            "eventType": self.event_type.value,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.content:
            content = self.content
            if len(content) > 2000:
                content = content[:2000] + "... (truncated)"
            data["content"] = content
        if self.exit_code is not None:
            data["exitCode"] = self.exit_code
        if self.duration_ms is not None:
            data["durationMs"] = self.duration_ms
        if self.metadata:
            data["metadata"] = self.metadata
        return data


# ── Database Schema ──────────────────────────────────────────────────────────


ACTIVITY_SCHEMA = """
CREATE TABLE IF NOT EXISTS session_activity (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    content TEXT,
    exit_code INTEGER,
    duration_ms INTEGER,
    metadata TEXT DEFAULT '{}'
);

CREATE INDEX IF NOT EXISTS idx_activity_session_time
    ON session_activity(session_id, timestamp DESC);
CREATE INDEX IF NOT EXISTS idx_activity_timestamp ON session_activity(timestamp DESC);
"""


# ── Activity Logger ──────────────────────────────────────────────────────────


class ActivityLogger:
    """SQLite-backed session activity log."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open database and create tables."""
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.executescript(ACTIVITY_SCHEMA)
        await self._db.commit()
        logger.info("Activity logger initialized: %s", self.db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("ActivityLogger not initialized")
        return self._db

    async def log(self, event: ActivityEvent) -> ActivityEvent:
        """Persist an activity event."""
        cursor = await self.db.execute(
            """INSERT INTO session_activity
               (session_id, event_type, timestamp, content, exit_code, duration_ms, metadata)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                event.session_id,
                event.event_type.value,
                event.timestamp.isoformat(),
                event.content,
                event.exit_code,
                event.duration_ms,
                json.dumps(event.metadata),
            ),
        )
        await self.db.commit()
        event.id = cursor.lastrowid
        return event

    async def record(
        self,
        session_id: str,
        event_type: ActivityEventType,
        *,
        content: str | None = None,
        exit_code: int | None = None,
        duration_ms: int | None = None,
        **metadata: Any,
    ) -> None:
        """Log an event, swallowing storage errors.

        Activity is diagnostic; a failed insert must never fail the session
        operation that produced it.
        """
        event = ActivityEvent(
            session_id=session_id,
            event_type=event_type,
            content=content,
            exit_code=exit_code,
            duration_ms=duration_ms,
            metadata=metadata,
        )
        try:
            await self.log(event)
        except Exception:
            logger.exception("Failed to record %s for session %s", event_type.value, session_id)

    # ── Queries ──────────────────────────────────────────────────────────────

    async def get_session_activity(
        self,
        session_id: str,
        limit: int = 100,
        offset: int = 0,
        event_types: list[ActivityEventType] | None = None,
    ) -> list[ActivityEvent]:
        """Get activity events for one session, newest first."""
        query = "SELECT * FROM session_activity WHERE session_id = ?"
        params: list[Any] = [session_id]

        if event_types:
            placeholders = ",".join("?" * len(event_types))
            query += f" AND event_type IN ({placeholders})"
            params.extend(et.value for et in event_types)

        query += " ORDER BY timestamp DESC, id DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        async with self.db.execute(query, params) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_event(row) for row in rows]

    async def prune_old_activity(self, hours: float = 72) -> int:
        """Delete activity events older than ``hours``."""
        cutoff = datetime.now(timezone.utc) - timedelta(hours=hours)
        cursor = await self.db.execute(
            "DELETE FROM session_activity WHERE timestamp < ?",
            (cutoff.isoformat(),),
        )
        await self.db.commit()
        return cursor.rowcount

    def _row_to_event(self, row: aiosqlite.Row) -> ActivityEvent:
        return ActivityEvent(
            id=row["id"],
            session_id=row["session_id"],
            event_type=ActivityEventType(row["event_type"]),
            timestamp=datetime.fromisoformat(row["timestamp"]),
            content=row["content"],
            exit_code=row["exit_code"],
            duration_ms=row["duration_ms"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        )
