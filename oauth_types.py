"""
AT Protocol OAuth Types

Collaborator contracts and result types shared by the BFF auth layer:
- OAuth protocol client (authorize, callback, restore)
- Sealed-cookie session manager
- Key-value storage backend

Also defines the error-kind enumeration used to tell transient network
failures apart from terminal session failures at the client boundary.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Protocol

import httpx
from redis import exceptions as redis_exceptions
from starlette.requests import Request


# Library default: silent unless the application configures logging
DEFAULT_LOGGER_NAME = "atproto_oauth"
logging.getLogger(DEFAULT_LOGGER_NAME).addHandler(logging.NullHandler())


# ===== Collaborator Protocols =====

class SessionInterface(Protocol):
    """
    OAuth session produced by the protocol client.

    The client owns token refresh and DPoP proofs; this layer only reads
    identity fields and asks the session to serialize itself for storage.
    """
    did: str
    access_token: str
    refresh_token: Optional[str]
    handle: Optional[str]
    pds_url: str

    def to_dict(self) -> Dict[str, Any]:
        ...


@dataclass
class CallbackResult:
    """Result of exchanging an authorization code."""
    session: SessionInterface
    state: Optional[str] = None


class OAuthClientInterface(Protocol):
    """OAuth protocol client (PAR, PKCE, DPoP and refresh live behind this)."""

    async def authorize(
        self,
        handle: str,
        *,
        state: Optional[str] = None,
        scope: Optional[str] = None,
        prompt: Optional[str] = None
    ) -> str:
        """Return the authorization server URL to redirect the user to."""
        ...

    async def callback(self, params: Mapping[str, str]) -> CallbackResult:
        """Exchange callback query parameters for a session."""
        ...

    async def restore(self, session_id: str) -> Optional[SessionInterface]:
        """Restore (and refresh if needed) a stored session, or None."""
        ...


class OAuthStorage(Protocol):
    """Durable key-value store with optional TTL in seconds."""

    async def get(self, key: str) -> Optional[Any]:
        ...

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...


# ===== Session Cookie Types =====

class SessionErrorType(str, Enum):
    """Error categories surfaced by session lookup."""
    NO_COOKIE = "NO_COOKIE"
    INVALID_COOKIE = "INVALID_COOKIE"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    OAUTH_ERROR = "OAUTH_ERROR"
    UNKNOWN = "UNKNOWN"


@dataclass
class SessionData:
    """Payload sealed into the session cookie (timestamps in ms)."""
    did: str
    created_at: int
    last_accessed: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "did": self.did,
            "createdAt": self.created_at,
            "lastAccessed": self.last_accessed
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionData":
        return cls(
            did=data["did"],
            created_at=int(data["createdAt"]),
            last_accessed=int(data["lastAccessed"])
        )


@dataclass
class SessionError:
    """Typed error attached to a failed session lookup."""
    type: SessionErrorType
    message: str
    details: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {"type": self.type.value, "message": self.message}
        if self.details is not None:
            result["details"] = self.details
        return result


@dataclass
class CookieSessionResult:
    """Result of reading the session cookie from a request."""
    data: Optional[SessionData] = None
    set_cookie_header: Optional[str] = None
    error: Optional[SessionError] = None


class CookieSessionManagerInterface(Protocol):
    """Sealed-cookie session manager."""

    async def create_session(self, data: SessionData) -> str:
        ...

    async def get_session_from_request(self, request: Request) -> CookieSessionResult:
        ...

    def get_clear_cookie_header(self) -> str:
        ...

    async def seal_token(self, payload: Dict[str, Any], ttl: Optional[int] = None) -> str:
        ...


@dataclass
class SessionLookupResult:
    """Result of resolving a request into a live OAuth session."""
    session: Optional[SessionInterface]
    set_cookie_header: Optional[str] = None
    error: Optional[SessionError] = None


# ===== Client Boundary Errors =====

class OAuthClientErrorKind(str, Enum):
    """Failure categories reported by OAuth client adapters."""
    NETWORK = "network"
    SESSION = "session"
    TOKEN = "token"
    ISSUER_MISMATCH = "issuer_mismatch"
    UNKNOWN = "unknown"


class OAuthClientError(Exception):
    """Error raised by an OAuth client adapter, tagged with its kind."""

    def __init__(self, message: str, kind: OAuthClientErrorKind = OAuthClientErrorKind.UNKNOWN):
        self.kind = kind
        super().__init__(message)


class IssuerMismatchError(OAuthClientError):
    """
    The authorization server that completed the flow is not authoritative
    for the resolved identity. Carries the handle to re-authorize with.
    """

    def __init__(self, message: str, handle: Optional[str] = None):
        self.handle = handle
        super().__init__(message, OAuthClientErrorKind.ISSUER_MISMATCH)


_TRANSIENT_ERRORS = (
    httpx.TransportError,
    redis_exceptions.ConnectionError,
    redis_exceptions.TimeoutError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)


def classify_oauth_error(error: BaseException) -> OAuthClientErrorKind:
    """
    Map an exception raised by the OAuth client to an error kind.

    Transport-level failures (HTTP or storage connection) are NETWORK;
    tagged client errors keep their own kind; everything else is UNKNOWN.

    Args:
        error: Exception raised by the client

    Returns:
        The error kind
    """
    if isinstance(error, OAuthClientError):
        return error.kind
    if isinstance(error, _TRANSIENT_ERRORS):
        return OAuthClientErrorKind.NETWORK
    return OAuthClientErrorKind.UNKNOWN
