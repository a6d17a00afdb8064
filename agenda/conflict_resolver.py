from __future__ import annotations

import logging

from agenda.config_manager import ConfigManager
from agenda.errors import (
    ConflictNotFound,
    InvalidChoice,
    RemoteNotFound,
    ValidationFailed,
    as_sync_error,
)
from agenda.event_store import EventStore
from agenda.google_client import build_event_payload
from agenda.models import Clock, Event, RemoteEvent, ResolveResult, SyncState, utc_now
from agenda.reconciler import remote_fields
from agenda.remote_session import RemoteSession, open_session
from agenda.state_store import StateStore
from agenda.sync_engine import UserLocks


logger = logging.getLogger(__name__)

CHOICE_ALIASES = {"local": "local", "remote": "remote", "google": "remote"}


def normalize_choice(choice: str) -> str:
    normalized = CHOICE_ALIASES.get(str(choice or "").strip().lower())
    if normalized is None:
        raise InvalidChoice(f"Resolution must be 'local' or 'remote', got {choice!r}")
    return normalized


class ConflictResolver:
    """Applies a user's explicit choice to an event flagged as conflicting."""

    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        event_store: EventStore,
        locks: UserLocks,
        clock: Clock | None = None,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.event_store = event_store
        self.locks = locks
        self._clock = clock or utc_now

    def _session(self, user_id: str) -> RemoteSession:
        return open_session(self.config_manager.load(), self.state_store, user_id, self._clock)

    def resolve(self, event_id: str, choice: str) -> ResolveResult:
        try:
            normalized = normalize_choice(choice)
            event = self.event_store.get_event(event_id)
            if event is None:
                raise ConflictNotFound(f"Event {event_id} does not exist")
            with self.locks.hold(event.user_id):
                # Re-read under the lock; a sync may have finished in between.
                event = self.event_store.get_event(event_id)
                if event is None or event.sync_state != SyncState.CONFLICT:
                    raise ConflictNotFound(f"Event {event_id} is not in conflict")
                if normalized == "local":
                    result = self._keep_local(event)
                else:
                    result = self._take_remote(event)
        except Exception as exc:
            error = as_sync_error(exc)
            logger.warning("Resolving event %s with %r failed: %s", event_id, choice, error)
            return ResolveResult(event_id=str(event_id), choice=str(choice), error=error)

        self.state_store.delete_remote_snapshot(event.id)
        self.state_store.record_audit_event(
            user_id=event.user_id,
            event_id=event.id,
            action="resolve_conflict",
            details={"choice": normalized, "deleted": result.deleted},
        )
        return result

    def _keep_local(self, event: Event) -> ResolveResult:
        session = self._session(event.user_id)
        payload = build_event_payload(event)
        remote: RemoteEvent | None = None
        if event.remote_id:
            try:
                remote = session.service.update_event(session.calendar_id, event.remote_id, payload)
            except RemoteNotFound:
                logger.info("Remote copy of event %s is gone, recreating it", event.id)
        if remote is None:
            remote = session.service.create_event(session.calendar_id, payload)
        updated = self.event_store.update_event(
            event.id,
            mark_synced=True,
            remote_id=remote.id,
            sync_state=SyncState.SYNCED,
        )
        return ResolveResult(event_id=event.id, choice="local", event=updated)

    def _take_remote(self, event: Event) -> ResolveResult:
        remote = self.state_store.get_remote_snapshot(event.id)
        if remote is None and event.remote_id:
            session = self._session(event.user_id)
            try:
                remote = session.service.get_event(session.calendar_id, event.remote_id)
            except RemoteNotFound:
                remote = None

        if remote is None or remote.is_cancelled:
            self.event_store.delete_event(event.id)
            return ResolveResult(event_id=event.id, choice="remote", deleted=True)
        if remote.start_at is None or remote.end_at is None:
            raise ValidationFailed(f"Remote event {remote.id} has no start or end time")

        updated = self.event_store.update_event(
            event.id,
            mark_synced=True,
            remote_id=remote.id,
            sync_state=SyncState.SYNCED,
            **remote_fields(remote),
        )
        return ResolveResult(event_id=event.id, choice="remote", event=updated)
