#!/usr/bin/env python3
"""Route tests for the AT Protocol OAuth BFF server"""

from dataclasses import replace
from urllib.parse import parse_qs, urlsplit
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from starlette.testclient import TestClient

from atproto_oauth import ATProtoOAuth, ConfigurationError
from conftest import TEST_DID, TEST_HANDLE, TEST_SECRET, FakeOAuthClient, cookie_pair
from oauth_types import OAuthClientError, OAuthClientErrorKind
from server import create_app, create_app_from_env, load_client_factory


@pytest.fixture
def client(oauth):
    """Create a test client"""
    return TestClient(create_app(oauth))


def _login(client) -> str:
    """Run login and callback, return the session cookie pair."""
    login = client.get("/login", params={"handle": TEST_HANDLE}, follow_redirects=False)
    state = parse_qs(urlsplit(login.headers["location"]).query)["state"][0]
    callback = client.get("/oauth/callback", params={"code": "auth-code", "state": state}, follow_redirects=False)
    return cookie_pair(callback.headers["set-cookie"])


class TestRootEndpoint:

    def test_health(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "type": "atproto-oauth-bff"}


class TestOAuthRoutes:

    def test_client_metadata(self, client, oauth):
        response = client.get("/oauth-client-metadata.json")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/json")
        assert response.json() == oauth.client_metadata

    def test_login_redirects(self, client):
        response = client.get("/login", params={"handle": TEST_HANDLE}, follow_redirects=False)

        assert response.status_code == 302
        assert response.headers["location"].startswith("https://bsky.social/oauth/authorize")

    def test_login_invalid_handle(self, client):
        response = client.get("/login", params={"handle": "@@@"})

        assert response.status_code == 400
        assert response.text == "Invalid handle format"

    def test_callback_sets_cookie(self, client):
        cookie = _login(client)
        assert cookie.startswith("sid=")

    def test_callback_invalid_state(self, client):
        response = client.get("/oauth/callback", params={"code": "auth-code", "state": "garbage"})

        assert response.status_code == 400
        assert response.text == "Invalid state parameter"

    def test_logout_requires_post(self, client):
        assert client.get("/api/auth/logout").status_code == 405

    def test_logout(self, client, storage):
        cookie = _login(client)

        response = client.post("/api/auth/logout", headers={"cookie": cookie})

        assert response.status_code == 200
        assert response.json() == {"success": True}
        assert "Max-Age=0" in response.headers["set-cookie"]
        assert len(storage) == 0


class TestSessionEndpoint:

    def test_authenticated(self, client):
        cookie = _login(client)

        response = client.get("/api/auth/session", headers={"cookie": cookie})

        assert response.status_code == 200
        assert response.json() == {
            "authenticated": True,
            "did": TEST_DID,
            "handle": TEST_HANDLE,
            "pds_url": "https://pds.example.com",
        }
        assert response.headers["set-cookie"].startswith("sid=")

    def test_unauthenticated(self, client):
        response = client.get("/api/auth/session")

        assert response.status_code == 401
        body = response.json()
        assert body["authenticated"] is False
        assert body["error"] == "NO_COOKIE"

    def test_expired_session(self, client, storage):
        cookie = _login(client)
        storage._data.clear()

        response = client.get("/api/auth/session", headers={"cookie": cookie})

        assert response.status_code == 401
        assert response.json()["error"] == "SESSION_EXPIRED"

    def test_transient_failure_is_503(self, client, oauth):
        cookie = _login(client)
        oauth.oauth_client.restore_error = OAuthClientError("upstream unreachable", OAuthClientErrorKind.NETWORK)

        response = client.get("/api/auth/session", headers={"cookie": cookie})

        assert response.status_code == 503
        assert response.json()["error"] == "OAUTH_ERROR"
        assert response.headers["set-cookie"].startswith("sid=")


class TestLifespan:

    def test_storage_closed_on_shutdown(self, config, audit):
        storage = MagicMock()
        storage.close = AsyncMock()
        oauth = ATProtoOAuth(replace(config, storage=storage), audit_logger=audit)

        with TestClient(create_app(oauth)):
            storage.close.assert_not_awaited()
        storage.close.assert_awaited_once()


class TestAppFromEnv:

    def test_load_client_factory(self):
        assert load_client_factory("conftest:FakeOAuthClient") is FakeOAuthClient

    @pytest.mark.parametrize("path", ["conftest", ":FakeOAuthClient", "missing_module:x", "conftest:missing"])
    def test_load_client_factory_errors(self, path):
        with pytest.raises(ConfigurationError):
            load_client_factory(path)

    def test_create_app_from_env(self):
        env = {
            "ATPROTO_BASE_URL": "https://app.example.com",
            "ATPROTO_APP_NAME": "Env App",
            "COOKIE_SECRET": TEST_SECRET,
            "OAUTH_CLIENT_FACTORY": "conftest:FakeOAuthClient",
        }
        with patch.dict("os.environ", env, clear=True), patch("server.RedisStorage") as mock_storage:
            app = create_app_from_env()

        mock_storage.assert_called_once_with()
        paths = {route.path for route in app.routes}
        assert {"/login", "/oauth/callback", "/oauth-client-metadata.json",
                "/api/auth/logout", "/api/auth/session"} <= paths

    def test_create_app_from_env_requires_factory(self):
        with patch.dict("os.environ", {}, clear=True):
            with pytest.raises(ConfigurationError):
                create_app_from_env()
