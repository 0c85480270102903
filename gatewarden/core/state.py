"""SQLite event log for supervision and sync history.

Append-only. The `status` command reads it back; nothing else depends on
it, so recording failures are logged and never interrupt supervision.
"""

import json
import logging
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of events in the event log."""

    # Supervisor events
    GATEWAY_REUSED = "gateway_reused"
    GATEWAY_STARTED = "gateway_started"
    GATEWAY_KILLED = "gateway_killed"
    GATEWAY_FAILED = "gateway_failed"

    # Restore events
    RESTORE_COMPLETED = "restore_completed"
    RESTORE_SKIPPED = "restore_skipped"

    # Sync events
    STORE_SYNC_COMPLETED = "store_sync_completed"
    STORE_SYNC_FAILED = "store_sync_failed"
    REPO_SYNC_COMPLETED = "repo_sync_completed"
    REPO_SYNC_FAILED = "repo_sync_failed"


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class Event(BaseModel):
    """Immutable event in the event log."""

    id: int | None = None
    event_type: EventType
    pid: int | None = None
    message: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utc_now)


class Database:
    """SQLite-backed event log."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        event_type TEXT NOT NULL,
        pid INTEGER,
        message TEXT,
        payload JSON,
        timestamp TIMESTAMP NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_events_type ON events(event_type);
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections.

        Uses a busy timeout so a concurrent sync and supervision cycle wait
        for each other instead of failing with "database is locked".
        """
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def append_event(self, event: Event) -> int:
        """Append an event to the log and return its id."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO events (event_type, pid, message, payload, timestamp)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    event.event_type.value,
                    event.pid,
                    event.message,
                    json.dumps(event.payload, default=str),
                    event.timestamp.isoformat(),
                ),
            )
            return cursor.lastrowid or 0

    def get_events(
        self, event_types: list[EventType] | None = None, limit: int = 50
    ) -> list[Event]:
        """Get the most recent events (newest first), optionally filtered by type."""
        with self._connect() as conn:
            if event_types:
                placeholders = ",".join("?" * len(event_types))
                rows = conn.execute(
                    f"""
                    SELECT * FROM events
                    WHERE event_type IN ({placeholders})
                    ORDER BY id DESC LIMIT ?
                    """,
                    [et.value for et in event_types] + [limit],
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)
                ).fetchall()
            return [self._row_to_event(row) for row in rows]

    def _row_to_event(self, row: sqlite3.Row) -> Event:
        return Event(
            id=row["id"],
            event_type=EventType(row["event_type"]),
            pid=row["pid"],
            message=row["message"] or "",
            payload=json.loads(row["payload"]) if row["payload"] else {},
            timestamp=datetime.fromisoformat(row["timestamp"]),
        )


def record_event(db: Database | None, event_type: EventType, **kwargs: Any) -> None:
    """Append an event if a database is configured. Never raises."""
    if db is None:
        return
    try:
        db.append_event(Event(event_type=event_type, **kwargs))
    except Exception as e:
        logger.warning(f"Failed to record {event_type.value} event: {e}")
