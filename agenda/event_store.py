from __future__ import annotations

import sqlite3
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any

from agenda.models import (
    Clock,
    Event,
    EventCategory,
    SyncState,
    parse_iso_datetime,
    serialize_datetime,
    utc_now,
)


UPDATABLE_FIELDS = {
    "title",
    "description",
    "category",
    "start_at",
    "end_at",
    "remote_id",
    "sync_state",
}
_DATETIME_FIELDS = {"start_at", "end_at"}


def _event_from_row(row: sqlite3.Row) -> Event:
    return Event(
        id=row["id"],
        user_id=row["user_id"],
        title=row["title"],
        description=row["description"],
        category=EventCategory.parse(row["category"]),
        start_at=parse_iso_datetime(row["start_at"]),
        end_at=parse_iso_datetime(row["end_at"]),
        remote_id=row["remote_id"],
        sync_state=SyncState(row["sync_state"]),
        last_synced_at=parse_iso_datetime(row["last_synced_at"]),
        created_at=parse_iso_datetime(row["created_at"]),
        updated_at=parse_iso_datetime(row["updated_at"]),
    )


def _column_value(key: str, value: Any) -> Any:
    if key in _DATETIME_FIELDS:
        return serialize_datetime(value)
    if key == "category":
        return EventCategory.parse(value).value
    if key == "sync_state":
        return SyncState(value).value
    return value


class EventStore:
    """User-owned local events. Plain persistence; callers own the sync rules.

    Every write stamps ``updated_at``. Writes made with ``mark_synced=True``
    also stamp ``last_synced_at`` with the very same instant, so an event that
    has not been touched since its last sync compares equal on both columns.
    """

    def __init__(self, db_path: str, clock: Clock | None = None) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock or utc_now
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS events (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            title TEXT NOT NULL,
            description TEXT,
            category TEXT NOT NULL,
            start_at TEXT NOT NULL,
            end_at TEXT NOT NULL,
            remote_id TEXT,
            sync_state TEXT NOT NULL,
            last_synced_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_events_user ON events(user_id);
        CREATE INDEX IF NOT EXISTS idx_events_remote ON events(user_id, remote_id);
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    def create_event(
        self,
        *,
        user_id: str,
        title: str,
        start_at: datetime,
        end_at: datetime,
        description: str | None = None,
        category: EventCategory | str = EventCategory.OTHER,
        remote_id: str | None = None,
        sync_state: SyncState = SyncState.LOCAL,
        mark_synced: bool = False,
    ) -> Event:
        event_id = uuid.uuid4().hex
        now = serialize_datetime(self._clock())
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO events(
                        id, user_id, title, description, category, start_at, end_at,
                        remote_id, sync_state, last_synced_at, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        event_id,
                        str(user_id),
                        title,
                        description,
                        EventCategory.parse(category).value,
                        serialize_datetime(start_at),
                        serialize_datetime(end_at),
                        remote_id,
                        SyncState(sync_state).value,
                        now if mark_synced else None,
                        now,
                        now,
                    ),
                )
                conn.commit()
        event = self.get_event(event_id)
        if event is None:
            raise RuntimeError(f"Event {event_id} was not stored")
        return event

    def get_event(self, event_id: str) -> Event | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM events WHERE id = ?", (str(event_id),)).fetchone()
        return _event_from_row(row) if row else None

    def list_events(self, user_id: str, sync_state: SyncState | None = None) -> list[Event]:
        query = "SELECT * FROM events WHERE user_id = ?"
        params: list[Any] = [str(user_id)]
        if sync_state is not None:
            query += " AND sync_state = ?"
            params.append(SyncState(sync_state).value)
        query += " ORDER BY start_at ASC, id ASC"
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(query, params).fetchall()
        return [_event_from_row(row) for row in rows]

    def find_by_remote_id(self, user_id: str, remote_id: str) -> Event | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM events WHERE user_id = ? AND remote_id = ? ORDER BY created_at ASC LIMIT 1",
                    (str(user_id), str(remote_id)),
                ).fetchone()
        return _event_from_row(row) if row else None

    def update_event(self, event_id: str, *, mark_synced: bool = False, **fields: Any) -> Event | None:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown event fields: {sorted(unknown)}")
        now = serialize_datetime(self._clock())
        assignments = []
        values: list[Any] = []
        for key, value in fields.items():
            assignments.append(f"{key} = ?")
            values.append(_column_value(key, value))
        assignments.append("updated_at = ?")
        values.append(now)
        if mark_synced:
            assignments.append("last_synced_at = ?")
            values.append(now)
        values.append(str(event_id))
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    f"UPDATE events SET {', '.join(assignments)} WHERE id = ?",  # nosec B608
                    values,
                )
                conn.commit()
        return self.get_event(event_id)

    def delete_event(self, event_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM events WHERE id = ?", (str(event_id),))
                conn.commit()
                return cursor.rowcount > 0
