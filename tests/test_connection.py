import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

import responses

from agenda.config_manager import ConfigManager
from agenda.connection import ConnectionService
from agenda.errors import NotConnected, RemoteRejected, ValidationFailed
from agenda.state_store import StateStore
from tests.fakes import FakeClock


TOKEN_URL = "https://oauth2.googleapis.com/token"
REVOKE_URL = "https://oauth2.googleapis.com/revoke"


class ConnectionServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(self.temp_dir.cleanup)
        root = Path(self.temp_dir.name)
        self.clock = FakeClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))
        self.config_manager = ConfigManager(root / "config.yaml")
        self.config_manager.update(
            {"google": {"client_id": "cid", "client_secret": "secret", "redirect_uri": "https://app/cb"}}
        )
        self.state_store = StateStore(str(root / "agenda.db"), clock=self.clock)
        self.connection = ConnectionService(self.config_manager, self.state_store, clock=self.clock)

    def test_auth_url_requires_client_configuration(self) -> None:
        self.assertIn("client_id=cid", self.connection.auth_url())
        self.config_manager.update({"google": {"client_id": ""}})
        with self.assertRaises(ValidationFailed):
            self.connection.auth_url()

    @responses.activate
    def test_authorization_stores_credential(self) -> None:
        responses.add(responses.POST, TOKEN_URL, json={"access_token": "at", "expires_in": 3600, "refresh_token": "rt"})

        authorization = self.connection.complete_authorization("u1", "code-1")

        self.assertEqual(authorization.grant.access_token, "at")
        stored = self.state_store.get_credential("u1")
        self.assertEqual(stored.refresh_token, "rt")
        self.assertEqual(stored.token_expiry, self.clock() + timedelta(hours=1))
        self.assertEqual(self.connection.status("u1"), {"connected": True, "lastSync": None})

    @responses.activate
    def test_reauthorization_without_refresh_token_keeps_old_one(self) -> None:
        self.state_store.upsert_credential(user_id="u1", access_token="a0", refresh_token="rt0", token_expiry=None)
        responses.add(responses.POST, TOKEN_URL, json={"access_token": "a1", "expires_in": 3600})

        self.connection.complete_authorization("u1", "code-2")

        stored = self.state_store.get_credential("u1")
        self.assertEqual(stored.access_token, "a1")
        self.assertEqual(stored.refresh_token, "rt0")

    @responses.activate
    def test_rejected_code_stores_nothing(self) -> None:
        responses.add(responses.POST, TOKEN_URL, json={"error": "invalid_grant"}, status=400)
        with self.assertRaises(RemoteRejected):
            self.connection.complete_authorization("u1", "bad")
        self.assertIsNone(self.state_store.get_credential("u1"))

    @responses.activate
    def test_disconnect_survives_failed_revocation(self) -> None:
        self.state_store.upsert_credential(user_id="u1", access_token="a", refresh_token="r", token_expiry=None)
        responses.add(responses.POST, REVOKE_URL, status=500)

        revoked = self.connection.disconnect("u1")

        self.assertFalse(revoked)
        self.assertIsNone(self.state_store.get_credential("u1"))
        self.assertEqual(self.connection.status("u1"), {"connected": False})

    def test_disconnect_unknown_user(self) -> None:
        with self.assertRaises(NotConnected):
            self.connection.disconnect("nobody")


if __name__ == "__main__":
    unittest.main()
