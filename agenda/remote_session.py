from __future__ import annotations

from dataclasses import dataclass

from agenda.errors import AuthExpired, NotConnected
from agenda.google_client import GoogleCalendarService
from agenda.google_oauth import GoogleOAuthClient
from agenda.models import AppConfig, Clock, SyncCredential
from agenda.state_store import StateStore
from agenda.token_manager import TokenManager


@dataclass
class RemoteSession:
    credential: SyncCredential
    token_manager: TokenManager
    service: GoogleCalendarService

    @property
    def calendar_id(self) -> str:
        return self.credential.calendar_id or "primary"

    def access_token(self, force: bool = False) -> str:
        return self.token_manager.ensure_access_token(self.credential, force_refresh=force)


def open_session(
    config: AppConfig,
    state_store: StateStore,
    user_id: str,
    clock: Clock | None = None,
) -> RemoteSession:
    """Wire a user's stored credential to an authorized calendar adapter."""
    credential = state_store.get_credential(user_id)
    if credential is None:
        raise NotConnected(f"Google Calendar is not connected for user {user_id}")
    if not credential.access_token and not credential.refresh_token:
        raise AuthExpired(f"No usable token stored for user {user_id}; reconnect Google Calendar.")

    timeout = config.sync.request_timeout_seconds
    token_manager = TokenManager(state_store, GoogleOAuthClient(config.google, timeout_seconds=timeout), clock)

    def token_provider(force: bool = False) -> str:
        return token_manager.ensure_access_token(credential, force_refresh=force)

    service = GoogleCalendarService(
        config.google,
        token_provider,
        timeout_seconds=timeout,
        max_results=config.sync.max_results,
    )
    return RemoteSession(credential=credential, token_manager=token_manager, service=service)
