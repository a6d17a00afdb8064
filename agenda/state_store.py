from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

from agenda.models import (
    Clock,
    RemoteEvent,
    SyncCredential,
    parse_iso_datetime,
    serialize_datetime,
    utc_now,
)


CREDENTIAL_FIELDS = {"access_token", "refresh_token", "token_expiry", "calendar_id", "last_sync_at"}
_DATETIME_FIELDS = {"token_expiry", "last_sync_at"}


def _credential_from_row(row: sqlite3.Row) -> SyncCredential:
    return SyncCredential(
        user_id=row["user_id"],
        access_token=row["access_token"],
        refresh_token=row["refresh_token"],
        token_expiry=parse_iso_datetime(row["token_expiry"]),
        calendar_id=row["calendar_id"] or "primary",
        last_sync_at=parse_iso_datetime(row["last_sync_at"]),
        created_at=parse_iso_datetime(row["created_at"]),
        updated_at=parse_iso_datetime(row["updated_at"]),
    )


class StateStore:
    """Sync credentials, run history, audit trail and last-seen remote state."""

    def __init__(self, db_path: str, clock: Clock | None = None) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock or utc_now
        self._lock = threading.RLock()
        self._init_schema()

    def _now(self) -> str:
        return serialize_datetime(self._clock()) or ""

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS sync_credentials (
            user_id TEXT PRIMARY KEY,
            access_token TEXT,
            refresh_token TEXT,
            token_expiry TEXT,
            calendar_id TEXT NOT NULL DEFAULT 'primary',
            last_sync_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            imported INTEGER NOT NULL,
            updated INTEGER NOT NULL,
            deleted INTEGER NOT NULL,
            conflicts INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id INTEGER,
            created_at TEXT NOT NULL,
            user_id TEXT NOT NULL,
            event_id TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS remote_snapshots (
            event_id TEXT PRIMARY KEY,
            remote_id TEXT NOT NULL,
            payload_json TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    def get_credential(self, user_id: str) -> SyncCredential | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM sync_credentials WHERE user_id = ?",
                    (str(user_id),),
                ).fetchone()
        return _credential_from_row(row) if row else None

    def upsert_credential(
        self,
        *,
        user_id: str,
        access_token: str,
        refresh_token: str | None,
        token_expiry: datetime | None,
        calendar_id: str = "primary",
    ) -> SyncCredential:
        now = self._now()
        with self._lock:
            with self._connect() as conn:
                # An authorization without a new refresh token keeps the stored one.
                conn.execute(
                    """
                    INSERT INTO sync_credentials(
                        user_id, access_token, refresh_token, token_expiry, calendar_id,
                        last_sync_at, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, NULL, ?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET
                        access_token = excluded.access_token,
                        refresh_token = COALESCE(excluded.refresh_token, sync_credentials.refresh_token),
                        token_expiry = excluded.token_expiry,
                        updated_at = excluded.updated_at
                    """,
                    (
                        str(user_id),
                        access_token,
                        refresh_token,
                        serialize_datetime(token_expiry),
                        calendar_id,
                        now,
                        now,
                    ),
                )
                conn.commit()
        credential = self.get_credential(user_id)
        if credential is None:
            raise RuntimeError(f"Credential for {user_id} was not stored")
        return credential

    def update_credential(self, user_id: str, **fields: Any) -> SyncCredential | None:
        unknown = set(fields) - CREDENTIAL_FIELDS
        if unknown:
            raise ValueError(f"Unknown credential fields: {sorted(unknown)}")
        if fields:
            assignments = []
            values: list[Any] = []
            for key, value in fields.items():
                assignments.append(f"{key} = ?")
                values.append(serialize_datetime(value) if key in _DATETIME_FIELDS else value)
            assignments.append("updated_at = ?")
            values.append(self._now())
            values.append(str(user_id))
            with self._lock:
                with self._connect() as conn:
                    conn.execute(
                        f"UPDATE sync_credentials SET {', '.join(assignments)} WHERE user_id = ?",  # nosec B608
                        values,
                    )
                    conn.commit()
        return self.get_credential(user_id)

    def delete_credential(self, user_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM sync_credentials WHERE user_id = ?", (str(user_id),))
                conn.commit()
                return cursor.rowcount > 0

    def record_sync_run(
        self,
        *,
        user_id: str,
        trigger: str,
        status: str,
        message: str,
        duration_ms: int,
        imported: int = 0,
        updated: int = 0,
        deleted: int = 0,
        conflicts: int = 0,
    ) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(
                        user_id, run_at, trigger, status, message, duration_ms,
                        imported, updated, deleted, conflicts
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        str(user_id),
                        self._now(),
                        trigger,
                        status,
                        message,
                        int(duration_ms),
                        int(imported),
                        int(updated),
                        int(deleted),
                        int(conflicts),
                    ),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def start_sync_run(self, *, user_id: str, trigger: str, message: str = "running") -> int:
        return self.record_sync_run(
            user_id=user_id,
            trigger=trigger,
            status="running",
            message=message,
            duration_ms=0,
        )

    def finish_sync_run(
        self,
        *,
        run_id: int,
        status: str,
        message: str,
        duration_ms: int,
        imported: int = 0,
        updated: int = 0,
        deleted: int = 0,
        conflicts: int = 0,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE sync_runs
                    SET status = ?, message = ?, duration_ms = ?,
                        imported = ?, updated = ?, deleted = ?, conflicts = ?
                    WHERE id = ?
                    """,
                    (
                        str(status),
                        str(message),
                        int(duration_ms),
                        int(imported),
                        int(updated),
                        int(deleted),
                        int(conflicts),
                        int(run_id),
                    ),
                )
                conn.commit()

    def recent_sync_runs(self, limit: int = 20, user_id: str | None = None) -> list[dict[str, Any]]:
        query = """
            SELECT id, user_id, run_at, trigger, status, message, duration_ms,
                   imported, updated, deleted, conflicts
            FROM sync_runs
        """
        params: list[Any] = []
        if user_id is not None:
            query += " WHERE user_id = ?"
            params.append(str(user_id))
        query += " ORDER BY id DESC LIMIT ?"
        params.append(max(1, limit))
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    def record_audit_event(
        self,
        *,
        user_id: str,
        event_id: str,
        action: str,
        details: dict[str, Any],
        run_id: int | None = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_events(run_id, created_at, user_id, event_id, action, details_json)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        run_id,
                        self._now(),
                        str(user_id),
                        str(event_id),
                        action,
                        json.dumps(details, ensure_ascii=False, default=str),
                    ),
                )
                conn.commit()

    def recent_audit_events(self, limit: int = 100, run_id: int | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if run_id is None:
                    rows = conn.execute(
                        """
                        SELECT id, run_id, created_at, user_id, event_id, action, details_json
                        FROM audit_events
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT id, run_id, created_at, user_id, event_id, action, details_json
                        FROM audit_events
                        WHERE run_id = ?
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (int(run_id), max(1, limit)),
                    ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output

    def save_remote_snapshot(self, event_id: str, remote: RemoteEvent) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO remote_snapshots(event_id, remote_id, payload_json, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(event_id) DO UPDATE SET
                        remote_id = excluded.remote_id,
                        payload_json = excluded.payload_json,
                        updated_at = excluded.updated_at
                    """,
                    (str(event_id), remote.id, json.dumps(remote.raw, ensure_ascii=False), self._now()),
                )
                conn.commit()

    def get_remote_snapshot(self, event_id: str) -> RemoteEvent | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT payload_json FROM remote_snapshots WHERE event_id = ?",
                    (str(event_id),),
                ).fetchone()
        if row is None:
            return None
        return RemoteEvent.from_api(json.loads(row["payload_json"] or "{}"))

    def delete_remote_snapshot(self, event_id: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM remote_snapshots WHERE event_id = ?", (str(event_id),))
                conn.commit()
