"""Tests for Supabase identity helpers."""

import unittest
from unittest.mock import patch

import httpx
from fastapi import HTTPException

from rizzmate import auth


class _FakeResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        return self._payload


def _fake_client(captured, response, error=None):
    class FakeAsyncClient:
        def __init__(self, timeout):
            self.timeout = timeout

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb):
            return False

        async def get(self, url, headers=None):
            captured["url"] = url
            captured["headers"] = headers
            if error is not None:
                raise error
            return response

        async def post(self, url, headers=None, json=None):
            captured["url"] = url
            captured["json"] = json
            if error is not None:
                raise error
            return response

    return FakeAsyncClient


class AuthTests(unittest.IsolatedAsyncioTestCase):
    async def test_get_user_from_token_returns_user(self):
        captured: dict = {}

        with (
            patch("rizzmate.auth.SUPABASE_URL", "https://db.example.com/"),
            patch("rizzmate.auth.SUPABASE_SECRET_KEY", "service-key"),
            patch(
                "rizzmate.auth.httpx.AsyncClient",
                new=_fake_client(captured, _FakeResponse(200, {"id": "user-1"})),
            ),
        ):
            user = await auth.get_user_from_token("token-1")

        self.assertEqual(user, {"id": "user-1"})
        self.assertEqual(captured["url"], "https://db.example.com/auth/v1/user")
        self.assertEqual(captured["headers"]["Authorization"], "Bearer token-1")

    async def test_get_user_from_token_rejects_invalid_session(self):
        with (
            patch("rizzmate.auth.SUPABASE_URL", "https://db.example.com"),
            patch("rizzmate.auth.SUPABASE_SECRET_KEY", "service-key"),
            patch(
                "rizzmate.auth.httpx.AsyncClient",
                new=_fake_client({}, _FakeResponse(401, {"msg": "expired"})),
            ),
        ):
            with self.assertRaises(HTTPException) as raised:
                await auth.get_user_from_token("stale")

        self.assertEqual(raised.exception.status_code, 401)

    async def test_login_surfaces_supabase_error_message(self):
        with (
            patch("rizzmate.auth.SUPABASE_URL", "https://db.example.com"),
            patch("rizzmate.auth.SUPABASE_SECRET_KEY", "service-key"),
            patch(
                "rizzmate.auth.httpx.AsyncClient",
                new=_fake_client(
                    {}, _FakeResponse(400, {"error_description": "Invalid login credentials"})
                ),
            ),
        ):
            with self.assertRaises(HTTPException) as raised:
                await auth.login_user("user@example.com", "wrong-password")

        self.assertEqual(raised.exception.status_code, 400)
        self.assertEqual(raised.exception.detail, "Invalid login credentials")

    async def test_supabase_outage_is_reported_as_unavailable(self):
        with (
            patch("rizzmate.auth.SUPABASE_URL", "https://db.example.com"),
            patch("rizzmate.auth.SUPABASE_SECRET_KEY", "service-key"),
            patch(
                "rizzmate.auth.httpx.AsyncClient",
                new=_fake_client({}, None, error=httpx.ConnectError("refused")),
            ),
        ):
            with self.assertLogs("rizzmate.auth", level="ERROR"):
                with self.assertRaises(HTTPException) as token_raised:
                    await auth.get_user_from_token("token-1")
                with self.assertRaises(HTTPException) as login_raised:
                    await auth.login_user("user@example.com", "secret-pass")

        self.assertEqual(token_raised.exception.status_code, 503)
        self.assertEqual(login_raised.exception.status_code, 503)

    async def test_missing_supabase_config_is_a_server_error(self):
        with patch("rizzmate.auth.SUPABASE_URL", None):
            with self.assertRaises(HTTPException) as raised:
                await auth.register_user("user@example.com", "secret-pass")

        self.assertEqual(raised.exception.status_code, 500)


if __name__ == "__main__":
    unittest.main()
