"""
Tests for the sealed-cookie session manager.
"""

import time
from unittest.mock import patch

import pytest

from conftest import TEST_DID, TEST_SECRET, cookie_pair, make_request
from oauth_types import SessionData, SessionErrorType
from session_cookies import SealError, SessionManager


@pytest.fixture
def manager():
    return SessionManager(TEST_SECRET, session_ttl=3600)


def _data():
    now = int(time.time() * 1000)
    return SessionData(did=TEST_DID, created_at=now, last_accessed=now)


class TestSealing:

    def test_seal_unseal_round_trip(self, manager):
        sealed = manager.seal({"did": TEST_DID, "n": 1})
        assert manager.unseal(sealed) == {"did": TEST_DID, "n": 1}

    def test_sealed_value_is_opaque(self, manager):
        sealed = manager.seal({"did": TEST_DID})
        assert TEST_DID not in sealed
        assert "=" not in sealed

    def test_each_seal_uses_fresh_nonce(self, manager):
        assert manager.seal({"did": TEST_DID}) != manager.seal({"did": TEST_DID})

    def test_tampered_value_rejected(self, manager):
        sealed = manager.seal({"did": TEST_DID})
        tampered = sealed[:-2] + ("AA" if not sealed.endswith("AA") else "BB")
        with pytest.raises(SealError):
            manager.unseal(tampered)

    def test_other_secret_rejected(self, manager):
        other = SessionManager("another-secret-that-is-long-enough-for-aes")
        with pytest.raises(SealError):
            other.unseal(manager.seal({"did": TEST_DID}))

    @pytest.mark.parametrize("value", ["", "short", "!!!not-base64!!!"])
    def test_garbage_rejected(self, manager, value):
        with pytest.raises(SealError):
            manager.unseal(value)

    def test_short_secret_rejected(self):
        with pytest.raises(ValueError):
            SessionManager("too-short")


class TestSessionCookies:

    @pytest.mark.asyncio
    async def test_create_session_cookie_attributes(self, manager):
        header = await manager.create_session(_data())

        assert header.startswith("sid=")
        assert "Path=/" in header
        assert "Max-Age=3600" in header
        assert "HttpOnly" in header
        assert "SameSite=Lax" in header
        assert "Secure" in header

    @pytest.mark.asyncio
    async def test_insecure_cookie_for_plain_http(self):
        manager = SessionManager(TEST_SECRET, secure=False)
        header = await manager.create_session(_data())
        assert "Secure" not in header

    @pytest.mark.asyncio
    async def test_read_back_session(self, manager):
        header = await manager.create_session(_data())

        result = await manager.get_session_from_request(make_request(cookie=cookie_pair(header)))

        assert result.error is None
        assert result.data.did == TEST_DID
        assert result.set_cookie_header.startswith("sid=")

    @pytest.mark.asyncio
    async def test_no_cookie(self, manager):
        result = await manager.get_session_from_request(make_request())

        assert result.data is None
        assert result.error.type is SessionErrorType.NO_COOKIE

    @pytest.mark.asyncio
    async def test_invalid_cookie(self, manager):
        result = await manager.get_session_from_request(make_request(cookie="sid=garbage"))

        assert result.data is None
        assert result.error.type is SessionErrorType.INVALID_COOKIE

    @pytest.mark.asyncio
    async def test_token_cannot_be_used_as_cookie(self, manager):
        token = await manager.seal_token({"did": TEST_DID})

        result = await manager.get_session_from_request(make_request(cookie=f"sid={token}"))

        assert result.error.type is SessionErrorType.INVALID_COOKIE

    @pytest.mark.asyncio
    async def test_expired_cookie(self, manager):
        header = await manager.create_session(_data())
        later = time.time() + 3601

        with patch("session_cookies.time.time", return_value=later):
            result = await manager.get_session_from_request(make_request(cookie=cookie_pair(header)))

        assert result.error.type is SessionErrorType.SESSION_EXPIRED

    @pytest.mark.asyncio
    async def test_read_slides_last_accessed(self, manager):
        data = _data()
        data.last_accessed -= 10000
        header = await manager.create_session(data)

        result = await manager.get_session_from_request(make_request(cookie=cookie_pair(header)))

        assert result.data.last_accessed > data.last_accessed
        assert result.data.created_at == data.created_at

    def test_clear_cookie_header(self, manager):
        header = manager.get_clear_cookie_header()
        assert header.startswith("sid=;")
        assert "Max-Age=0" in header


class TestSealedTokens:

    @pytest.mark.asyncio
    async def test_round_trip(self, manager):
        token = await manager.seal_token({"did": TEST_DID})
        assert await manager.unseal_token(token) == {"did": TEST_DID}

    @pytest.mark.asyncio
    async def test_expired_token(self, manager):
        token = await manager.seal_token({"did": TEST_DID}, ttl=60)

        with patch("session_cookies.time.time", return_value=time.time() + 61):
            assert await manager.unseal_token(token) is None

    @pytest.mark.asyncio
    async def test_cookie_value_is_not_a_token(self, manager):
        header = await manager.create_session(_data())
        assert await manager.unseal_token(cookie_pair(header).split("=", 1)[1]) is None

    @pytest.mark.asyncio
    async def test_garbage_token(self, manager):
        assert await manager.unseal_token("garbage") is None
