from __future__ import annotations

import logging
import threading
import traceback
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterator

from agenda.config_manager import ConfigManager
from agenda.errors import AuthExpired, SyncError, SyncInProgress, as_sync_error
from agenda.event_store import EventStore
from agenda.google_client import build_event_payload
from agenda.models import (
    Clock,
    ConflictRecord,
    Event,
    RemoteEvent,
    SyncConfig,
    SyncResult,
    SyncState,
    SyncSummary,
    serialize_datetime,
    sync_window,
    utc_now,
)
from agenda.reconciler import PUSHABLE_STATES, Action, classify, remote_fields
from agenda.remote_session import RemoteSession, open_session
from agenda.state_store import StateStore


logger = logging.getLogger(__name__)


class UserLocks:
    """Non-blocking per-user run locks shared by sync and conflict resolution."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock_for(self, user_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[user_id] = lock
            return lock

    def is_busy(self, user_id: str) -> bool:
        return self._lock_for(str(user_id)).locked()

    @contextmanager
    def hold(self, user_id: str) -> Iterator[None]:
        lock = self._lock_for(str(user_id))
        if not lock.acquire(blocking=False):
            raise SyncInProgress(f"A sync is already running for user {user_id}")
        try:
            yield
        finally:
            lock.release()


@dataclass
class _RunState:
    run_id: int
    user_id: str
    trigger: str
    summary: SyncSummary = field(default_factory=SyncSummary)
    deleted_ids: set[str] = field(default_factory=set)
    imported_ids: list[str] = field(default_factory=list)
    pending_edits: list[Event] = field(default_factory=list)


class SyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        event_store: EventStore,
        locks: UserLocks | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.event_store = event_store
        self.locks = locks or UserLocks()
        self._clock = clock or utc_now

    def _elapsed_ms(self, started_at: datetime) -> int:
        return max(0, int((self._clock() - started_at).total_seconds() * 1000))

    def _audit(self, run: _RunState, event_id: str, action: str, **details: Any) -> None:
        self.state_store.record_audit_event(
            user_id=run.user_id,
            event_id=event_id,
            action=action,
            details={"trigger": run.trigger, **details},
            run_id=run.run_id,
        )

    def _window(
        self,
        sync_config: SyncConfig,
        window_start_override: datetime | None,
        window_end_override: datetime | None,
    ) -> tuple[datetime, datetime]:
        if (window_start_override is None) ^ (window_end_override is None):
            raise ValueError("window_start_override and window_end_override must both be provided")
        if window_start_override is not None and window_end_override is not None:
            window_start = window_start_override.astimezone(timezone.utc)
            window_end = window_end_override.astimezone(timezone.utc)
            if window_end < window_start:
                raise ValueError("window_end_override must be later than window_start_override")
            return window_start, window_end
        return sync_window(self._clock(), sync_config.window_months_back, sync_config.window_months_ahead)

    def run_once(
        self,
        user_id: str,
        trigger: str = "manual",
        window_start_override: datetime | None = None,
        window_end_override: datetime | None = None,
    ) -> SyncResult:
        started_at = self._clock()
        user_id = str(user_id)
        try:
            with self.locks.hold(user_id):
                return self._run_locked(user_id, trigger, started_at, window_start_override, window_end_override)
        except SyncInProgress as exc:
            duration_ms = self._elapsed_ms(started_at)
            self.state_store.record_sync_run(
                user_id=user_id,
                trigger=trigger,
                status="skipped",
                message=str(exc),
                duration_ms=duration_ms,
            )
            return SyncResult(
                status="skipped",
                message=str(exc),
                duration_ms=duration_ms,
                trigger=trigger,
                user_id=user_id,
                error=exc,
                run_at=started_at,
            )

    def _run_locked(
        self,
        user_id: str,
        trigger: str,
        started_at: datetime,
        window_start_override: datetime | None,
        window_end_override: datetime | None,
    ) -> SyncResult:
        run_id = self.state_store.start_sync_run(user_id=user_id, trigger=trigger)
        run = _RunState(run_id=run_id, user_id=user_id, trigger=trigger)
        try:
            self._sync(run, window_start_override, window_end_override)
        except Exception as exc:
            error = as_sync_error(exc)
            duration_ms = self._elapsed_ms(started_at)
            error_message = f"{type(exc).__name__}: {exc}"
            logger.warning("Sync for user %s failed: %s", user_id, error_message)
            self.state_store.finish_sync_run(
                run_id=run.run_id,
                status="error",
                message=error_message,
                duration_ms=duration_ms,
                imported=run.summary.imported,
                updated=run.summary.updated,
                deleted=run.summary.deleted,
                conflicts=len(run.summary.conflicts),
            )
            self.state_store.record_audit_event(
                user_id=user_id,
                event_id="sync",
                action="run_error",
                details={
                    "trigger": trigger,
                    "error": error_message,
                    "kind": error.kind,
                    "traceback": traceback.format_exc(limit=5),
                },
                run_id=run.run_id,
            )
            return SyncResult(
                status="error",
                message=error_message,
                duration_ms=duration_ms,
                trigger=trigger,
                user_id=user_id,
                error=error,
                run_at=started_at,
            )

        summary = run.summary
        duration_ms = self._elapsed_ms(started_at)
        message = (
            f"Imported {summary.imported}, updated {summary.updated}, deleted {summary.deleted}, "
            f"{len(summary.conflicts)} conflicts."
        )
        self.state_store.finish_sync_run(
            run_id=run.run_id,
            status="success",
            message=message,
            duration_ms=duration_ms,
            imported=summary.imported,
            updated=summary.updated,
            deleted=summary.deleted,
            conflicts=len(summary.conflicts),
        )
        logger.info("Sync for user %s finished: %s", user_id, message)
        return SyncResult(
            status="success",
            message=f"{message} run_id={run.run_id}",
            duration_ms=duration_ms,
            trigger=trigger,
            user_id=user_id,
            summary=summary,
            run_at=started_at,
        )

    def _sync(
        self,
        run: _RunState,
        window_start_override: datetime | None,
        window_end_override: datetime | None,
    ) -> None:
        config = self.config_manager.load()
        session = open_session(config, self.state_store, run.user_id, self._clock)
        session.access_token()
        window_start, window_end = self._window(config.sync, window_start_override, window_end_override)

        remote_events = session.service.list_events(session.calendar_id, window_start, window_end)
        snapshot = self.event_store.list_events(run.user_id)
        logger.debug(
            "User %s: %s remote events in [%s, %s], %s local events",
            run.user_id,
            len(remote_events),
            serialize_datetime(window_start),
            serialize_datetime(window_end),
            len(snapshot),
        )

        for remote in remote_events:
            self._reconcile_remote(run, remote, config.sync.push_local_edits)

        live_remote_ids = {remote.id for remote in remote_events if not remote.is_cancelled}
        self._sweep_deleted(run, snapshot, live_remote_ids)
        self._push_local(run, session, snapshot)

        for event_id in run.imported_ids:
            self.event_store.update_event(event_id, mark_synced=True, sync_state=SyncState.SYNCED)
        self.state_store.update_credential(run.user_id, last_sync_at=self._clock())

    def _reconcile_remote(self, run: _RunState, remote: RemoteEvent, push_local_edits: bool) -> None:
        local = self.event_store.find_by_remote_id(run.user_id, remote.id)
        outcome = classify(local, remote, push_local_edits)
        summary = run.summary

        if outcome.action == Action.DELETE and local is not None:
            if self.event_store.delete_event(local.id):
                run.deleted_ids.add(local.id)
                self.state_store.delete_remote_snapshot(local.id)
                summary.deleted += 1
                self._audit(run, local.id, "delete_local", reason=outcome.reason, remote_id=remote.id)
            return
        if outcome.action == Action.NONE:
            return

        if remote.start_at is None or remote.end_at is None:
            self._audit(run, local.id if local else remote.id, "skip_invalid_remote", remote_id=remote.id)
            return

        if outcome.action == Action.IMPORT:
            created = self.event_store.create_event(
                user_id=run.user_id,
                remote_id=remote.id,
                sync_state=SyncState.REMOTE_ONLY,
                mark_synced=True,
                **remote_fields(remote),
            )
            run.imported_ids.append(created.id)
            summary.imported += 1
            self._audit(run, created.id, "import", remote_id=remote.id, title=created.title)
            return

        if local is None:
            return
        if outcome.action == Action.KEEP_CONFLICT:
            self.state_store.save_remote_snapshot(local.id, remote)
            return
        if outcome.action == Action.CONFLICT:
            self.event_store.update_event(local.id, sync_state=SyncState.CONFLICT)
            self.state_store.save_remote_snapshot(local.id, remote)
            summary.conflicts.append(
                ConflictRecord(
                    event_id=local.id,
                    title=local.title,
                    local_updated=local.updated_at,
                    remote_updated=remote.updated,
                )
            )
            self._audit(
                run,
                local.id,
                "conflict",
                remote_id=remote.id,
                local_updated=serialize_datetime(local.updated_at),
                remote_updated=serialize_datetime(remote.updated),
            )
            return
        if outcome.action == Action.PULL:
            self.event_store.update_event(
                local.id,
                mark_synced=True,
                sync_state=SyncState.SYNCED,
                **remote_fields(remote),
            )
            summary.updated += 1
            self._audit(run, local.id, "pull", remote_id=remote.id)
            return
        if outcome.action == Action.PUSH_LOCAL_EDIT:
            run.pending_edits.append(local)

    def _sweep_deleted(self, run: _RunState, snapshot: list[Event], live_remote_ids: set[str]) -> None:
        for event in snapshot:
            if not event.remote_id or event.id in run.deleted_ids:
                continue
            if event.sync_state not in PUSHABLE_STATES or event.remote_id in live_remote_ids:
                continue
            if self.event_store.delete_event(event.id):
                run.deleted_ids.add(event.id)
                self.state_store.delete_remote_snapshot(event.id)
                run.summary.deleted += 1
                self._audit(run, event.id, "delete_local", reason="missing_remotely", remote_id=event.remote_id)

    def _push_local(self, run: _RunState, session: RemoteSession, snapshot: list[Event]) -> None:
        for event in snapshot:
            if event.sync_state != SyncState.LOCAL or event.remote_id:
                continue
            try:
                created = session.service.create_event(session.calendar_id, build_event_payload(event))
            except AuthExpired:
                raise
            except SyncError as exc:
                self._push_failed(run, event, "create", exc)
                continue
            self.event_store.update_event(
                event.id,
                mark_synced=True,
                remote_id=created.id,
                sync_state=SyncState.SYNCED,
            )
            self._audit(run, event.id, "push_create", remote_id=created.id)

        for event in run.pending_edits:
            try:
                session.service.update_event(session.calendar_id, str(event.remote_id), build_event_payload(event))
            except AuthExpired:
                raise
            except SyncError as exc:
                self._push_failed(run, event, "update", exc)
                continue
            self.event_store.update_event(event.id, mark_synced=True, sync_state=SyncState.SYNCED)
            self._audit(run, event.id, "push_update", remote_id=event.remote_id)

    def _push_failed(self, run: _RunState, event: Event, operation: str, exc: SyncError) -> None:
        logger.warning("Push %s failed for event %s: %s", operation, event.id, exc)
        self._audit(
            run,
            event.id,
            "push_failed",
            operation=operation,
            kind=exc.kind,
            error=f"{type(exc).__name__}: {exc}",
        )
