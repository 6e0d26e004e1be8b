"""
Shared fixtures: fake OAuth client and session, in-memory storage, and
helpers to build Starlette requests without a running server.
"""

import urllib.parse
from dataclasses import dataclass
from typing import Any, Dict, Optional
from unittest.mock import MagicMock

import pytest
from starlette.requests import Request

from atproto_oauth import ATProtoOAuth, OAuthConfig
from audit_logger import AuditLogger
from oauth_storage import MemoryStorage
from oauth_types import CallbackResult


TEST_SECRET = "test-cookie-secret-that-is-long-enough-0123456789"
TEST_DID = "did:plc:test"
TEST_HANDLE = "alice.bsky.social"
AUTH_SERVER_URL = "https://bsky.social/oauth/authorize"


@dataclass
class FakeSession:
    did: str = TEST_DID
    access_token: str = "access-token"
    refresh_token: Optional[str] = "refresh-token"
    handle: Optional[str] = TEST_HANDLE
    pds_url: str = "https://pds.example.com"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "did": self.did,
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "handle": self.handle,
            "pdsUrl": self.pds_url,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FakeSession":
        return cls(
            did=data["did"],
            access_token=data["accessToken"],
            refresh_token=data.get("refreshToken"),
            handle=data.get("handle"),
            pds_url=data["pdsUrl"],
        )


class FakeOAuthClient:
    """OAuth client that never leaves the process; restore reads storage."""

    def __init__(self, storage=None, session: Optional[FakeSession] = None, **init_kwargs):
        self.storage = storage
        self.session = session or FakeSession()
        self.init_kwargs = init_kwargs
        self.authorize_calls = []
        self.callback_calls = []
        self.restore_calls = []
        self.authorize_error: Optional[Exception] = None
        self.callback_error: Optional[Exception] = None
        self.restore_error: Optional[Exception] = None

    async def authorize(self, handle, *, state=None, scope=None, prompt=None):
        self.authorize_calls.append({"handle": handle, "state": state, "scope": scope, "prompt": prompt})
        if self.authorize_error:
            raise self.authorize_error
        return f"{AUTH_SERVER_URL}?{urllib.parse.urlencode({'client_id': 'test', 'state': state})}"

    async def callback(self, params):
        self.callback_calls.append(dict(params))
        if self.callback_error:
            raise self.callback_error
        return CallbackResult(session=self.session, state=params.get("state"))

    async def restore(self, session_id):
        self.restore_calls.append(session_id)
        if self.restore_error:
            raise self.restore_error
        if self.storage is None:
            return None
        data = await self.storage.get(f"session:{session_id}")
        return FakeSession.from_dict(data) if data else None


def make_request(
    path: str = "/",
    query: Optional[Dict[str, str]] = None,
    method: str = "GET",
    cookie: Optional[str] = None
) -> Request:
    """Build a Starlette request for calling handlers directly."""
    headers = [(b"host", b"app.example.com"), (b"user-agent", b"pytest-agent/1.0")]
    if cookie:
        headers.append((b"cookie", cookie.encode("latin-1")))

    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": method,
        "scheme": "https",
        "path": path,
        "raw_path": path.encode(),
        "root_path": "",
        "query_string": urllib.parse.urlencode(query or {}).encode(),
        "headers": headers,
        "client": ("203.0.113.7", 54321),
        "server": ("app.example.com", 443),
    }
    return Request(scope)


def cookie_pair(set_cookie_header: str) -> str:
    """'sid=value' part of a Set-Cookie header, usable as a Cookie header."""
    return set_cookie_header.split(";", 1)[0]


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def audit():
    return MagicMock(spec=AuditLogger)


@pytest.fixture
def client_factory():
    """Factory recording the clients it builds."""
    built = []

    def factory(**kwargs):
        client = FakeOAuthClient(**kwargs)
        built.append(client)
        return client

    factory.built = built
    return factory


@pytest.fixture
def config(storage, client_factory):
    return OAuthConfig(
        base_url="https://app.example.com",
        app_name="Test App",
        cookie_secret=TEST_SECRET,
        storage=storage,
        oauth_client_factory=client_factory,
    )


@pytest.fixture
def oauth(config, audit):
    return ATProtoOAuth(config, audit_logger=audit)
