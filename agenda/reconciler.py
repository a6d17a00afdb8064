from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any

from agenda.color_map import to_local_category
from agenda.models import EPOCH, UNTITLED, Event, RemoteEvent, SyncState


PUSHABLE_STATES = {SyncState.SYNCED, SyncState.REMOTE_ONLY}


class Action(str, enum.Enum):
    DELETE = "delete"
    IMPORT = "import"
    KEEP_CONFLICT = "keep_conflict"
    CONFLICT = "conflict"
    PULL = "pull"
    PUSH_LOCAL_EDIT = "push_local_edit"
    NONE = "none"


@dataclass
class ReconcileOutcome:
    action: Action
    reason: str


def remote_fields(remote: RemoteEvent) -> dict[str, Any]:
    """Local field values derived from a remote event."""
    return {
        "title": remote.summary or UNTITLED,
        "description": remote.description,
        "category": to_local_category(remote.color_id),
        "start_at": remote.start_at,
        "end_at": remote.end_at,
    }


def remote_is_newer(local: Event, remote: RemoteEvent) -> bool:
    if remote.updated is None:
        return False
    return remote.updated > (local.updated_at or EPOCH)


def remote_changed_since_sync(local: Event, remote: RemoteEvent) -> bool:
    if remote.updated is None:
        return False
    return remote.updated > (local.last_synced_at or EPOCH)


def classify(local: Event | None, remote: RemoteEvent, push_local_edits: bool = True) -> ReconcileOutcome:
    if remote.is_cancelled:
        if local is None:
            return ReconcileOutcome(Action.NONE, "cancelled_unknown")
        return ReconcileOutcome(Action.DELETE, "remote_cancelled")
    if local is None:
        return ReconcileOutcome(Action.IMPORT, "remote_only")
    if local.sync_state == SyncState.CONFLICT:
        return ReconcileOutcome(Action.KEEP_CONFLICT, "awaiting_resolution")
    if remote_is_newer(local, remote):
        if local.changed_since_sync:
            return ReconcileOutcome(Action.CONFLICT, "both_modified")
        return ReconcileOutcome(Action.PULL, "remote_newer")
    if local.sync_state in PUSHABLE_STATES and local.changed_since_sync and push_local_edits:
        # Remote edited after the last sync but before the local edit.
        if remote_changed_since_sync(local, remote):
            return ReconcileOutcome(Action.CONFLICT, "both_modified_since_sync")
        return ReconcileOutcome(Action.PUSH_LOCAL_EDIT, "local_modified")
    return ReconcileOutcome(Action.NONE, "up_to_date")
