from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from agenda.config_manager import ConfigManager
from agenda.errors import EventNotFound, NotConnected, SyncError, SyncInProgress, ValidationFailed
from agenda.event_store import EventStore
from agenda.google_client import build_event_payload
from agenda.models import Clock, Event, EventCategory, SyncState, parse_iso_datetime, utc_now
from agenda.remote_session import RemoteSession, open_session
from agenda.state_store import StateStore
from agenda.sync_engine import UserLocks


logger = logging.getLogger(__name__)

EDITABLE_FIELDS = {"title", "description", "category", "start_at", "end_at"}


def _coerce_datetime(value: Any, field_name: str) -> datetime:
    try:
        parsed = parse_iso_datetime(value)
    except (TypeError, ValueError) as exc:
        raise ValidationFailed(f"{field_name} is not a valid ISO-8601 datetime") from exc
    if parsed is None:
        raise ValidationFailed(f"{field_name} is required")
    return parsed


def _check_range(start_at: datetime, end_at: datetime) -> None:
    if end_at <= start_at:
        raise ValidationFailed("End date must be after start date")


class EventService:
    """User-facing event CRUD that pushes each change to Google right away when it can.

    Remote failures never fail the local operation. An event whose push did not
    go through keeps its pending state and is picked up by the next sync run.
    """

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

    def list_events(self, user_id: str) -> list[Event]:
        return self.event_store.list_events(user_id)

    def get_event(self, event_id: str) -> Event:
        event = self.event_store.get_event(event_id)
        if event is None:
            raise EventNotFound(f"Event {event_id} not found")
        return event

    def create_event(
        self,
        *,
        user_id: str,
        title: str,
        start_at: Any,
        end_at: Any,
        description: str | None = None,
        category: str | EventCategory | None = None,
    ) -> Event:
        title = str(title or "").strip()
        if not str(user_id or "").strip():
            raise ValidationFailed("userId is required")
        if not title:
            raise ValidationFailed("title is required")
        start = _coerce_datetime(start_at, "startDate")
        end = _coerce_datetime(end_at, "endDate")
        _check_range(start, end)
        event = self.event_store.create_event(
            user_id=user_id,
            title=title,
            description=description,
            category=EventCategory.parse(category),
            start_at=start,
            end_at=end,
        )

        def push(session: RemoteSession) -> Event | None:
            created = session.service.create_event(session.calendar_id, build_event_payload(event))
            return self.event_store.update_event(
                event.id, mark_synced=True, remote_id=created.id, sync_state=SyncState.SYNCED
            )

        return self._push(event, "create", push) or event

    def update_event(self, event_id: str, **changes: Any) -> Event:
        current = self.get_event(event_id)
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValidationFailed(f"Unknown event fields: {sorted(unknown)}")
        fields: dict[str, Any] = {}
        for key, value in changes.items():
            if value is None and key != "description":
                continue
            if key in {"start_at", "end_at"}:
                fields[key] = _coerce_datetime(value, "startDate" if key == "start_at" else "endDate")
            elif key == "category":
                fields[key] = EventCategory.parse(value)
            elif key == "title":
                title = str(value).strip()
                if not title:
                    raise ValidationFailed("title must not be empty")
                fields[key] = title
            else:
                fields[key] = value
        _check_range(fields.get("start_at", current.start_at), fields.get("end_at", current.end_at))
        updated = self.event_store.update_event(event_id, **fields)
        if updated is None:
            raise EventNotFound(f"Event {event_id} not found")
        if updated.sync_state == SyncState.CONFLICT:
            return updated

        def push(session: RemoteSession) -> Event | None:
            payload = build_event_payload(updated)
            if updated.remote_id:
                session.service.update_event(session.calendar_id, updated.remote_id, payload)
                return self.event_store.update_event(updated.id, mark_synced=True, sync_state=SyncState.SYNCED)
            created = session.service.create_event(session.calendar_id, payload)
            return self.event_store.update_event(
                updated.id, mark_synced=True, remote_id=created.id, sync_state=SyncState.SYNCED
            )

        return self._push(updated, "update", push) or updated

    def delete_event(self, event_id: str) -> None:
        event = self.get_event(event_id)
        if event.remote_id:

            def push(session: RemoteSession) -> None:
                session.service.delete_event(session.calendar_id, str(event.remote_id))

            self._push(event, "delete", push)
        self.event_store.delete_event(event.id)
        self.state_store.delete_remote_snapshot(event.id)

    def _push(self, event: Event, operation: str, push: Callable[[RemoteSession], Event | None]) -> Event | None:
        try:
            with self.locks.hold(event.user_id):
                session = open_session(self.config_manager.load(), self.state_store, event.user_id, self._clock)
                return push(session)
        except NotConnected:
            logger.debug("User %s is not connected; %s of event %s stays local", event.user_id, operation, event.id)
        except SyncInProgress:
            logger.info("Sync running for user %s; %s of event %s is left to it", event.user_id, operation, event.id)
        except SyncError as exc:
            logger.warning("Immediate %s of event %s failed: %s", operation, event.id, exc)
            self.state_store.record_audit_event(
                user_id=event.user_id,
                event_id=event.id,
                action="push_failed",
                details={"operation": operation, "kind": exc.kind, "error": f"{type(exc).__name__}: {exc}"},
            )
        return None
