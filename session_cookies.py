"""
Sealed Cookie Session Manager

Issues and reads the browser session cookie that identifies a signed-in
subject. The cookie payload {did, createdAt, lastAccessed, exp} is sealed
with AES-256-GCM, so it is both confidential and tamper-evident.

Also seals short-lived tokens that are safe to embed in a URL (used to hand
a session to a native app after the mobile OAuth flow).

SECURITY: cookie values and sealed tokens must never be logged.
"""

import base64
import json
import logging
import os
import time
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from starlette.requests import Request

from oauth_types import (
    DEFAULT_LOGGER_NAME,
    CookieSessionResult,
    SessionData,
    SessionError,
    SessionErrorType,
)


class SealError(ValueError):
    """Sealed value could not be opened (wrong key, tampered or malformed)."""
    pass


class SessionManager:
    """
    Cookie session manager backed by AES-256-GCM sealing.

    Features:
    - Key derived once from the cookie secret (PBKDF2-HMAC-SHA256)
    - Unique nonce per seal
    - Sliding expiry: every successful read re-issues the cookie
    - Separate payload type for URL tokens so they cannot be replayed as cookies
    """

    # Encryption constants
    KEY_SIZE = 32  # 256 bits for AES-256
    NONCE_SIZE = 12  # 96 bits recommended for GCM
    TAG_SIZE = 16  # 128 bits authentication tag
    KDF_ITERATIONS = 200000
    KDF_SALT = b"atproto-oauth/session-cookie/v1"

    MIN_SECRET_LENGTH = 32
    DEFAULT_TOKEN_TTL = 300  # 5 minutes

    # Payload type markers
    SESSION_TYPE = "session"
    TOKEN_TYPE = "token"

    def __init__(
        self,
        cookie_secret: str,
        cookie_name: str = "sid",
        session_ttl: int = 604800,
        secure: bool = True,
        same_site: str = "Lax",
        token_ttl: int = DEFAULT_TOKEN_TTL,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize the session manager.

        Args:
            cookie_secret: Secret of at least 32 characters
            cookie_name: Name of the session cookie
            session_ttl: Cookie lifetime in seconds
            secure: Emit the Secure cookie attribute
            same_site: SameSite cookie attribute
            token_ttl: Default lifetime of sealed URL tokens in seconds
            logger: Logger for diagnostics

        Raises:
            ValueError: If the secret is missing or too short
        """
        if not cookie_secret or len(cookie_secret) < self.MIN_SECRET_LENGTH:
            raise ValueError(
                f"cookie_secret must be at least {self.MIN_SECRET_LENGTH} characters"
            )

        self.cookie_name = cookie_name
        self.session_ttl = session_ttl
        self.secure = secure
        self.same_site = same_site
        self.token_ttl = token_ttl
        self.logger = logger or logging.getLogger(f"{DEFAULT_LOGGER_NAME}.cookies")

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=self.KEY_SIZE,
            salt=self.KDF_SALT,
            iterations=self.KDF_ITERATIONS,
        )
        self.cipher = AESGCM(kdf.derive(cookie_secret.encode('utf-8')))

    # ===== Sealing =====

    def seal(self, payload: Dict[str, Any]) -> str:
        """
        Seal a JSON payload.

        Args:
            payload: JSON-serializable dict

        Returns:
            URL-safe base64 of nonce || ciphertext || tag, without padding
        """
        nonce = os.urandom(self.NONCE_SIZE)
        plaintext = json.dumps(payload, separators=(",", ":")).encode('utf-8')
        sealed = nonce + self.cipher.encrypt(nonce, plaintext, None)
        return base64.urlsafe_b64encode(sealed).decode('ascii').rstrip('=')

    def unseal(self, sealed: str) -> Dict[str, Any]:
        """
        Open a sealed payload.

        Args:
            sealed: Output of seal()

        Returns:
            The original payload dict

        Raises:
            SealError: If the value is malformed, tampered or sealed with another key
        """
        try:
            padded = sealed + "=" * (-len(sealed) % 4)
            raw = base64.urlsafe_b64decode(padded.encode('ascii'))
        except (ValueError, UnicodeEncodeError) as e:
            raise SealError(f"Malformed sealed value: {e}")

        if len(raw) < self.NONCE_SIZE + self.TAG_SIZE:
            raise SealError("Sealed value too short")

        nonce, ciphertext_and_tag = raw[:self.NONCE_SIZE], raw[self.NONCE_SIZE:]
        try:
            plaintext = self.cipher.decrypt(nonce, ciphertext_and_tag, None)
        except InvalidTag:
            raise SealError("Sealed value failed authentication")

        try:
            payload = json.loads(plaintext.decode('utf-8'))
        except ValueError as e:
            raise SealError(f"Sealed payload is not JSON: {e}")

        if not isinstance(payload, dict):
            raise SealError("Sealed payload must be an object")
        return payload

    # ===== Cookies =====

    def _build_cookie(self, value: str, max_age: int) -> str:
        parts = [
            f"{self.cookie_name}={value}",
            "Path=/",
            f"Max-Age={max_age}",
            "HttpOnly",
            f"SameSite={self.same_site}",
        ]
        if self.secure:
            parts.append("Secure")
        return "; ".join(parts)

    def _session_cookie(self, data: SessionData) -> str:
        payload = data.to_dict()
        payload["typ"] = self.SESSION_TYPE
        payload["exp"] = _now_ms() + self.session_ttl * 1000
        return self._build_cookie(self.seal(payload), self.session_ttl)

    async def create_session(self, data: SessionData) -> str:
        """
        Mint a session cookie for a subject.

        Args:
            data: Cookie payload

        Returns:
            Set-Cookie header value
        """
        self.logger.debug(f"Creating session cookie for DID: {data.did}")
        return self._session_cookie(data)

    async def get_session_from_request(self, request: Request) -> CookieSessionResult:
        """
        Read and unseal the session cookie.

        Args:
            request: Incoming request

        Returns:
            CookieSessionResult with data and a refreshed Set-Cookie header,
            or an error of type NO_COOKIE, INVALID_COOKIE or SESSION_EXPIRED
        """
        sealed = request.cookies.get(self.cookie_name)
        if not sealed:
            return CookieSessionResult(
                error=SessionError(SessionErrorType.NO_COOKIE, "No session cookie")
            )

        try:
            payload = self.unseal(sealed)
            if payload.get("typ") != self.SESSION_TYPE:
                raise SealError("Sealed value is not a session cookie")
            data = SessionData.from_dict(payload)
            expires_at = int(payload["exp"])
        except (SealError, KeyError, TypeError, ValueError) as e:
            self.logger.warning(f"Rejected session cookie: {e}")
            return CookieSessionResult(
                error=SessionError(SessionErrorType.INVALID_COOKIE, "Invalid session cookie")
            )

        now = _now_ms()
        if expires_at <= now:
            self.logger.info(f"Session cookie expired for DID: {data.did}")
            return CookieSessionResult(
                error=SessionError(SessionErrorType.SESSION_EXPIRED, "Session cookie expired")
            )

        data.last_accessed = now
        return CookieSessionResult(data=data, set_cookie_header=self._session_cookie(data))

    def get_clear_cookie_header(self) -> str:
        """Set-Cookie header value that expires the session cookie immediately."""
        return self._build_cookie("", 0)

    # ===== URL Tokens =====

    async def seal_token(self, payload: Dict[str, Any], ttl: Optional[int] = None) -> str:
        """
        Seal a short-lived token for URL embedding.

        Args:
            payload: JSON-serializable claims (e.g. {"did": ...})
            ttl: Lifetime in seconds (default: token_ttl)

        Returns:
            Opaque URL-safe token
        """
        claims = dict(payload)
        claims["typ"] = self.TOKEN_TYPE
        claims["exp"] = _now_ms() + (ttl or self.token_ttl) * 1000
        return self.seal(claims)

    async def unseal_token(self, token: str) -> Optional[Dict[str, Any]]:
        """
        Open a token produced by seal_token.

        Args:
            token: Opaque token

        Returns:
            The original claims, or None if invalid or expired
        """
        try:
            claims = self.unseal(token)
        except SealError as e:
            self.logger.warning(f"Rejected sealed token: {e}")
            return None

        if claims.get("typ") != self.TOKEN_TYPE:
            return None
        expires_at = claims.pop("exp", 0)
        if not isinstance(expires_at, int) or expires_at <= _now_ms():
            return None

        claims.pop("typ", None)
        return claims


def _now_ms() -> int:
    return int(time.time() * 1000)
