import json
import unittest
from datetime import datetime, timezone
from unittest import mock

import requests
import responses

from agenda.errors import RemoteNotFound, RemoteRejected, RemoteUnavailable
from agenda.google_client import GoogleCalendarService, build_event_payload
from agenda.models import Event, EventCategory, GoogleConfig


EVENTS_URL = "https://www.googleapis.com/calendar/v3/calendars/primary/events"
START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
END = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


def _item(remote_id: str, **extra) -> dict:
    item = {
        "id": remote_id,
        "summary": remote_id,
        "updated": "2026-03-01T00:00:00Z",
        "start": {"dateTime": "2026-03-02T09:00:00Z"},
        "end": {"dateTime": "2026-03-02T10:00:00Z"},
    }
    item.update(extra)
    return item


class GoogleCalendarServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.token_provider = mock.Mock(return_value="token-1")
        self.service = GoogleCalendarService(GoogleConfig(), self.token_provider, timeout_seconds=5, max_results=2)

    @responses.activate
    def test_list_events_follows_pages_and_keeps_cancelled(self) -> None:
        responses.add(
            responses.GET,
            EVENTS_URL,
            json={"items": [_item("a"), _item("b", status="cancelled")], "nextPageToken": "p2"},
        )
        responses.add(responses.GET, EVENTS_URL, json={"items": [_item("c")]})

        events = self.service.list_events("primary", START, END)

        self.assertEqual([e.id for e in events], ["a", "b", "c"])
        self.assertTrue(events[1].is_cancelled)
        first = responses.calls[0].request
        self.assertIn("showDeleted=true", first.url)
        self.assertIn("singleEvents=true", first.url)
        self.assertIn("orderBy=updated", first.url)
        self.assertIn("maxResults=2", first.url)
        self.assertEqual(first.headers["Authorization"], "Bearer token-1")
        self.assertIn("pageToken=p2", responses.calls[1].request.url)

    @responses.activate
    def test_create_sends_payload(self) -> None:
        responses.add(responses.POST, EVENTS_URL, json=_item("new"))
        event = Event(
            id="e1",
            user_id="u",
            title="Deadline",
            start_at=START,
            end_at=END,
            category=EventCategory.DEADLINE,
        )

        created = self.service.create_event("primary", build_event_payload(event))

        self.assertEqual(created.id, "new")
        body = json.loads(responses.calls[0].request.body)
        self.assertEqual(body["colorId"], "11")
        self.assertEqual(body["start"], {"dateTime": "2026-03-02T09:00:00+00:00", "timeZone": "UTC"})
        self.assertEqual(body["description"], "")

    @responses.activate
    def test_401_retries_once_with_forced_refresh(self) -> None:
        self.token_provider.side_effect = lambda force=False: "fresh" if force else "stale"
        responses.add(responses.GET, f"{EVENTS_URL}/x", status=401)
        responses.add(responses.GET, f"{EVENTS_URL}/x", json=_item("x"))

        self.assertEqual(self.service.get_event("primary", "x").id, "x")
        self.assertEqual(responses.calls[1].request.headers["Authorization"], "Bearer fresh")

    @responses.activate
    def test_second_401_is_rejected(self) -> None:
        responses.add(responses.GET, f"{EVENTS_URL}/x", status=401)
        responses.add(responses.GET, f"{EVENTS_URL}/x", status=401)
        with self.assertRaises(RemoteRejected) as ctx:
            self.service.get_event("primary", "x")
        self.assertEqual(ctx.exception.status_code, 401)

    @responses.activate
    def test_error_mapping(self) -> None:
        responses.add(responses.PUT, f"{EVENTS_URL}/x", status=404)
        with self.assertRaises(RemoteNotFound):
            self.service.update_event("primary", "x", {})
        responses.add(responses.PUT, f"{EVENTS_URL}/y", status=403, json={"error": "forbidden"})
        with self.assertRaises(RemoteRejected):
            self.service.update_event("primary", "y", {})
        responses.add(responses.GET, EVENTS_URL, status=502)
        with self.assertRaises(RemoteUnavailable):
            self.service.list_events("primary", START, END)

    @responses.activate
    def test_transport_failure_is_unavailable(self) -> None:
        responses.add(responses.GET, EVENTS_URL, body=requests.exceptions.ConnectTimeout("slow"))
        with self.assertRaises(RemoteUnavailable):
            self.service.list_events("primary", START, END)

    @responses.activate
    def test_delete_treats_gone_as_success(self) -> None:
        responses.add(responses.DELETE, f"{EVENTS_URL}/gone", status=410)
        responses.add(responses.DELETE, f"{EVENTS_URL}/ok", status=204)
        self.service.delete_event("primary", "gone")
        self.service.delete_event("primary", "ok")
        self.assertEqual(len(responses.calls), 2)


if __name__ == "__main__":
    unittest.main()
