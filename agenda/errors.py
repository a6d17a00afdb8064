"""Typed failures raised by the adapters and carried by sync/resolve results."""

from __future__ import annotations


class SyncError(Exception):
    """Base class for every failure the sync layer reports."""

    kind = "internal_error"


class AuthExpired(SyncError):
    """No usable access token; the user has to reconnect."""

    kind = "auth_expired"


class NotConnected(SyncError):
    """No credential stored for the user."""

    kind = "not_connected"


class RemoteUnavailable(SyncError):
    """Transport error, timeout or 5xx. Retrying the whole run is safe."""

    kind = "remote_unavailable"


class RemoteRejected(SyncError):
    """4xx from the remote service. Not retryable without a change."""

    kind = "remote_rejected"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RemoteNotFound(RemoteRejected):
    kind = "remote_not_found"


class ConflictNotFound(SyncError):
    kind = "conflict_not_found"


class SyncInProgress(SyncError):
    kind = "sync_in_progress"


class InvalidChoice(SyncError):
    kind = "invalid_choice"


class EventNotFound(SyncError):
    kind = "event_not_found"


class ValidationFailed(SyncError):
    kind = "validation_failed"


def as_sync_error(exc: Exception) -> SyncError:
    """Wrap unexpected exceptions so results always carry a SyncError."""
    if isinstance(exc, SyncError):
        return exc
    return SyncError(f"{type(exc).__name__}: {exc}")
