from __future__ import annotations

import logging
from datetime import timedelta

from agenda.errors import AuthExpired, SyncError
from agenda.google_oauth import GoogleOAuthClient
from agenda.models import Clock, SyncCredential, utc_now
from agenda.state_store import StateStore


logger = logging.getLogger(__name__)


class TokenManager:
    """Keeps a user's access token usable, refreshing and persisting it when needed."""

    def __init__(self, state_store: StateStore, oauth_client: GoogleOAuthClient, clock: Clock | None = None) -> None:
        self.state_store = state_store
        self.oauth_client = oauth_client
        self._clock = clock or utc_now

    def ensure_access_token(self, credential: SyncCredential, force_refresh: bool = False) -> str:
        now = self._clock()
        if credential.access_token and not force_refresh and not credential.is_expired(now):
            return credential.access_token
        if not credential.refresh_token:
            raise AuthExpired("Access token expired and no refresh token is stored; reconnect Google Calendar.")

        try:
            grant = self.oauth_client.refresh(credential.refresh_token)
        except SyncError as exc:
            logger.warning("Token refresh failed for user %s: %s", credential.user_id, exc)
            raise AuthExpired(f"Token refresh failed: {exc}") from exc

        expiry = now + timedelta(seconds=grant.expires_in)
        fields = {"access_token": grant.access_token, "token_expiry": expiry}
        if grant.refresh_token:
            fields["refresh_token"] = grant.refresh_token
        self.state_store.update_credential(credential.user_id, **fields)

        credential.access_token = grant.access_token
        credential.token_expiry = expiry
        if grant.refresh_token:
            credential.refresh_token = grant.refresh_token
        logger.info("Refreshed access token for user %s (expires %s)", credential.user_id, expiry.isoformat())
        return grant.access_token
