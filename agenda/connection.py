from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from agenda.config_manager import ConfigManager
from agenda.errors import NotConnected, ValidationFailed
from agenda.google_oauth import GoogleOAuthClient, TokenGrant
from agenda.models import Clock, SyncCredential, serialize_datetime, utc_now
from agenda.state_store import StateStore


logger = logging.getLogger(__name__)


@dataclass
class Authorization:
    credential: SyncCredential
    grant: TokenGrant


class ConnectionService:
    """Connect, disconnect and report on a user's Google Calendar link."""

    def __init__(self, config_manager: ConfigManager, state_store: StateStore, clock: Clock | None = None) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self._clock = clock or utc_now

    def _oauth_client(self) -> GoogleOAuthClient:
        config = self.config_manager.load()
        return GoogleOAuthClient(config.google, timeout_seconds=config.sync.request_timeout_seconds)

    def auth_url(self, state: str | None = None) -> str:
        google = self.config_manager.load().google
        if not google.client_id or not google.redirect_uri:
            raise ValidationFailed("Google OAuth client_id/redirect_uri are not configured")
        return self._oauth_client().build_auth_url(state=state)

    def complete_authorization(self, user_id: str, code: str) -> Authorization:
        if not str(code or "").strip():
            raise ValidationFailed("Authorization code is required")
        grant = self._oauth_client().exchange_code(code.strip())
        credential = self.state_store.upsert_credential(
            user_id=user_id,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            token_expiry=self._clock() + timedelta(seconds=grant.expires_in),
            calendar_id=self.config_manager.load().google.calendar_id,
        )
        if not credential.refresh_token:
            logger.warning("User %s connected without a refresh token; sync stops when the token expires", user_id)
        self.state_store.record_audit_event(
            user_id=user_id,
            event_id="connection",
            action="connect",
            details={"calendar_id": credential.calendar_id, "has_refresh_token": bool(credential.refresh_token)},
        )
        return Authorization(credential=credential, grant=grant)

    def disconnect(self, user_id: str) -> bool:
        """Forget the user's credential. Returns whether the provider confirmed revocation."""
        credential = self.state_store.get_credential(user_id)
        if credential is None:
            raise NotConnected(f"Google Calendar is not connected for user {user_id}")
        token = credential.refresh_token or credential.access_token
        revoked = bool(token) and self._oauth_client().revoke(str(token))
        self.state_store.delete_credential(user_id)
        self.state_store.record_audit_event(
            user_id=user_id,
            event_id="connection",
            action="disconnect",
            details={"revoked": revoked},
        )
        return revoked

    def status(self, user_id: str) -> dict[str, Any]:
        credential = self.state_store.get_credential(user_id)
        if credential is None:
            return {"connected": False}
        return {"connected": True, "lastSync": serialize_datetime(credential.last_sync_at)}
