import unittest
from urllib.parse import parse_qs, urlparse

import responses

from agenda.errors import RemoteRejected, RemoteUnavailable
from agenda.google_oauth import GoogleOAuthClient
from agenda.models import GoogleConfig


TOKEN_URL = "https://oauth2.googleapis.com/token"
REVOKE_URL = "https://oauth2.googleapis.com/revoke"


class GoogleOAuthClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.client = GoogleOAuthClient(
            GoogleConfig(client_id="cid", client_secret="secret", redirect_uri="https://app.example.com/cb"),
            timeout_seconds=5,
        )

    def test_auth_url_requests_offline_consent(self) -> None:
        query = parse_qs(urlparse(self.client.build_auth_url(state="xyz")).query)
        self.assertEqual(query["client_id"], ["cid"])
        self.assertEqual(query["redirect_uri"], ["https://app.example.com/cb"])
        self.assertEqual(query["access_type"], ["offline"])
        self.assertEqual(query["prompt"], ["consent"])
        self.assertEqual(query["response_type"], ["code"])
        self.assertEqual(query["state"], ["xyz"])
        self.assertIn("https://www.googleapis.com/auth/calendar", query["scope"][0].split(" "))

    @responses.activate
    def test_exchange_code(self) -> None:
        responses.add(
            responses.POST,
            TOKEN_URL,
            json={"access_token": "at", "expires_in": 3599, "refresh_token": "rt"},
        )
        grant = self.client.exchange_code("auth-code")
        self.assertEqual((grant.access_token, grant.expires_in, grant.refresh_token), ("at", 3599, "rt"))
        body = parse_qs(responses.calls[0].request.body)
        self.assertEqual(body["grant_type"], ["authorization_code"])
        self.assertEqual(body["code"], ["auth-code"])

    @responses.activate
    def test_refresh_without_rotation(self) -> None:
        responses.add(responses.POST, TOKEN_URL, json={"access_token": "at2", "expires_in": 3600})
        grant = self.client.refresh("rt")
        self.assertEqual(grant.access_token, "at2")
        self.assertIsNone(grant.refresh_token)

    @responses.activate
    def test_rejected_and_unavailable(self) -> None:
        responses.add(responses.POST, TOKEN_URL, json={"error": "invalid_grant"}, status=400)
        with self.assertRaises(RemoteRejected) as ctx:
            self.client.refresh("bad")
        self.assertEqual(ctx.exception.status_code, 400)

        responses.replace(responses.POST, TOKEN_URL, status=503)
        with self.assertRaises(RemoteUnavailable):
            self.client.refresh("rt")

    @responses.activate
    def test_revoke_is_best_effort(self) -> None:
        responses.add(responses.POST, REVOKE_URL, status=400)
        self.assertFalse(self.client.revoke("token"))
        responses.replace(responses.POST, REVOKE_URL, status=200)
        self.assertTrue(self.client.revoke("token"))


if __name__ == "__main__":
    unittest.main()
