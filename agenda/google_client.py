from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable
from urllib.parse import quote

import requests

from agenda.color_map import to_remote_color
from agenda.errors import RemoteNotFound, RemoteRejected, RemoteUnavailable
from agenda.models import Event, GoogleConfig, RemoteEvent, serialize_datetime


logger = logging.getLogger(__name__)

# Called with force=True after a 401 to obtain a freshly refreshed token.
TokenProvider = Callable[..., str]

GONE_STATUSES = {404, 410}


def build_event_payload(event: Event) -> dict[str, Any]:
    return {
        "summary": event.title,
        "description": event.description or "",
        "start": {"dateTime": serialize_datetime(event.start_at), "timeZone": "UTC"},
        "end": {"dateTime": serialize_datetime(event.end_at), "timeZone": "UTC"},
        "colorId": to_remote_color(event.category),
    }


class GoogleCalendarService:
    def __init__(
        self,
        config: GoogleConfig,
        token_provider: TokenProvider,
        timeout_seconds: int = 30,
        max_results: int = 2500,
    ) -> None:
        self.config = config
        self.token_provider = token_provider
        self.timeout_seconds = timeout_seconds
        self.max_results = max_results

    def _events_url(self, calendar_id: str, remote_id: str | None = None) -> str:
        url = f"{self.config.api_base_url}/calendars/{quote(calendar_id, safe='')}/events"
        if remote_id:
            url += f"/{quote(remote_id, safe='')}"
        return url

    def _send(self, method: str, url: str, token: str, **kwargs: Any) -> requests.Response:
        try:
            return requests.request(
                method,
                url,
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.timeout_seconds,
                **kwargs,
            )
        except requests.RequestException as exc:
            raise RemoteUnavailable(f"{method} {url} failed: {type(exc).__name__}: {exc}") from exc

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        response = self._send(method, url, self.token_provider(), **kwargs)
        if response.status_code == 401:
            logger.info("Google Calendar answered 401, retrying once with a refreshed token")
            response = self._send(method, url, self.token_provider(force=True), **kwargs)
        if response.status_code >= 500:
            raise RemoteUnavailable(f"{method} {url}: HTTP {response.status_code}")
        if response.status_code in GONE_STATUSES:
            raise RemoteNotFound(f"{method} {url}: HTTP {response.status_code}", status_code=response.status_code)
        if not response.ok:
            raise RemoteRejected(
                f"{method} {url}: HTTP {response.status_code}: {response.text[:300]}",
                status_code=response.status_code,
            )
        return response

    def list_events(self, calendar_id: str, window_start: datetime, window_end: datetime) -> list[RemoteEvent]:
        params: dict[str, Any] = {
            "timeMin": serialize_datetime(window_start),
            "timeMax": serialize_datetime(window_end),
            "showDeleted": "true",
            "singleEvents": "true",
            "orderBy": "updated",
            "maxResults": self.max_results,
        }
        events: list[RemoteEvent] = []
        while True:
            payload = self._request("GET", self._events_url(calendar_id), params=params).json()
            events.extend(RemoteEvent.from_api(item) for item in payload.get("items", []) or [])
            page_token = payload.get("nextPageToken")
            if not page_token:
                break
            params["pageToken"] = page_token
        logger.debug("Fetched %s remote events from %s", len(events), calendar_id)
        return events

    def get_event(self, calendar_id: str, remote_id: str) -> RemoteEvent:
        response = self._request("GET", self._events_url(calendar_id, remote_id))
        return RemoteEvent.from_api(response.json())

    def create_event(self, calendar_id: str, payload: dict[str, Any]) -> RemoteEvent:
        response = self._request("POST", self._events_url(calendar_id), json=payload)
        return RemoteEvent.from_api(response.json())

    def update_event(self, calendar_id: str, remote_id: str, payload: dict[str, Any]) -> RemoteEvent:
        response = self._request("PUT", self._events_url(calendar_id, remote_id), json=payload)
        return RemoteEvent.from_api(response.json())

    def delete_event(self, calendar_id: str, remote_id: str) -> None:
        try:
            self._request("DELETE", self._events_url(calendar_id, remote_id))
        except RemoteNotFound:
            logger.debug("Remote event %s already gone", remote_id)
