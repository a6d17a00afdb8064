from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import requests

from agenda.errors import RemoteRejected, RemoteUnavailable
from agenda.models import GoogleConfig


logger = logging.getLogger(__name__)


@dataclass
class TokenGrant:
    access_token: str
    expires_in: int
    refresh_token: str | None = None


def _grant_from_payload(payload: dict[str, Any]) -> TokenGrant:
    access_token = str(payload.get("access_token") or "").strip()
    if not access_token:
        raise RemoteRejected("Token response did not contain an access_token.")
    refresh_token = str(payload.get("refresh_token") or "").strip() or None
    return TokenGrant(
        access_token=access_token,
        expires_in=int(payload.get("expires_in") or 3600),
        refresh_token=refresh_token,
    )


class GoogleOAuthClient:
    def __init__(self, config: GoogleConfig, timeout_seconds: int = 30) -> None:
        self.config = config
        self.timeout_seconds = timeout_seconds

    def build_auth_url(self, state: str | None = None) -> str:
        if not self.config.client_id or not self.config.redirect_uri:
            raise RemoteRejected("Missing Google OAuth configuration")
        params = {
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.config.scopes),
            "access_type": "offline",
            "prompt": "consent",
        }
        if state:
            params["state"] = state
        return f"{self.config.auth_url}?{urlencode(params)}"

    def _post_token(self, form: dict[str, str]) -> dict[str, Any]:
        if not self.config.client_id or not self.config.client_secret:
            raise RemoteRejected("Missing Google OAuth configuration")
        try:
            response = requests.post(
                self.config.token_url,
                data={
                    "client_id": self.config.client_id,
                    "client_secret": self.config.client_secret,
                    **form,
                },
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise RemoteUnavailable(f"Token endpoint unreachable: {exc}") from exc
        if response.status_code >= 500:
            raise RemoteUnavailable(f"Token endpoint HTTP {response.status_code}: {response.text[:300]}")
        if not response.ok:
            raise RemoteRejected(
                f"Token request failed: HTTP {response.status_code}: {response.text[:300]}",
                status_code=response.status_code,
            )
        return response.json()

    def exchange_code(self, code: str) -> TokenGrant:
        grant = _grant_from_payload(
            self._post_token(
                {
                    "code": code,
                    "redirect_uri": self.config.redirect_uri,
                    "grant_type": "authorization_code",
                }
            )
        )
        logger.info("Exchanged authorization code (refresh token issued: %s)", bool(grant.refresh_token))
        return grant

    def refresh(self, refresh_token: str) -> TokenGrant:
        return _grant_from_payload(
            self._post_token({"refresh_token": refresh_token, "grant_type": "refresh_token"})
        )

    def revoke(self, token: str) -> bool:
        """Best-effort revocation; never raises."""
        try:
            response = requests.post(
                self.config.revoke_url,
                params={"token": token},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            logger.warning("Failed to revoke token: %s", exc)
            return False
        if not response.ok:
            logger.warning("Token revocation returned HTTP %s", response.status_code)
            return False
        return True
