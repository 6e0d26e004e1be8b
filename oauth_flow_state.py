"""
OAuth Flow State

Pending-login intent (handle, redirect target, mobile/PWA flags) is carried
inside the OAuth `state` parameter instead of a server-side table. The state
round-trips through a third-party authorization server, so it is treated as
attacker-observable: parsing is strict, and the redirect target is
re-validated on receipt.
"""

import json
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Any, Optional


# Upper bound on the serialized state we accept back from the callback
MAX_STATE_LENGTH = 2048

MAX_HANDLE_LENGTH = 253

MAX_SERVER_URL_LENGTH = 1024

_HANDLE_RE = re.compile(
    r"^([a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)+"
    r"[a-zA-Z]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$"
)


class InvalidFlowStateError(ValueError):
    """Serialized flow state is malformed or fails validation."""
    pass


class FlowMode(str, Enum):
    """How the callback delivers the completed login."""
    WEB = "web"
    MOBILE = "mobile"
    PWA = "pwa"


def is_valid_handle(handle: str) -> bool:
    """
    Check a string against the AT Protocol handle grammar.

    Args:
        handle: Candidate handle (e.g. alice.bsky.social)

    Returns:
        True if syntactically valid
    """
    if not handle or len(handle) > MAX_HANDLE_LENGTH or not handle.isascii():
        return False
    return _HANDLE_RE.match(handle) is not None


def is_authorization_server_url(value: str) -> bool:
    """Login input naming an authorization server instead of a handle."""
    return value.startswith("https://") and len(value) <= MAX_SERVER_URL_LENGTH


def is_safe_redirect_path(path: str) -> bool:
    """
    Check that a post-login redirect stays on this origin.

    Only relative paths beginning with exactly one '/' are allowed. A leading
    '//' is protocol-relative in browsers, and backslashes are normalized to
    '/' by some of them.

    Args:
        path: Candidate redirect path

    Returns:
        True if safe to redirect to
    """
    if not path or not path.startswith("/") or path.startswith("//"):
        return False
    if "\\" in path:
        return False
    return not any(ord(ch) < 0x20 or ord(ch) == 0x7f for ch in path)


@dataclass
class OAuthFlowState:
    """Login intent carried through the authorization server."""
    handle: str
    timestamp: int
    redirect_path: Optional[str] = None
    mobile: bool = False
    pwa: bool = False

    @classmethod
    def create(
        cls,
        handle: str,
        redirect_path: Optional[str] = None,
        mobile: bool = False,
        pwa: bool = False
    ) -> "OAuthFlowState":
        return cls(
            handle=handle,
            timestamp=int(time.time() * 1000),
            redirect_path=redirect_path,
            mobile=mobile,
            pwa=pwa
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"handle": self.handle, "timestamp": self.timestamp}
        if self.redirect_path:
            data["redirectPath"] = self.redirect_path
        if self.mobile:
            data["mobile"] = True
        if self.pwa:
            data["pwa"] = True
        return data

    def serialize(self) -> str:
        """Compact JSON form passed as the OAuth state parameter."""
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def parse(cls, raw: str) -> "OAuthFlowState":
        """
        Parse and validate a serialized flow state.

        Unknown fields are ignored. Anything else that does not match the
        expected shape is rejected rather than defaulted.

        Args:
            raw: Value of the `state` callback parameter

        Returns:
            Parsed OAuthFlowState

        Raises:
            InvalidFlowStateError: If the state is malformed
        """
        if not raw or len(raw) > MAX_STATE_LENGTH:
            raise InvalidFlowStateError("State is empty or too long")

        try:
            data = json.loads(raw)
        except ValueError as e:
            raise InvalidFlowStateError(f"State is not valid JSON: {e}")

        if not isinstance(data, dict):
            raise InvalidFlowStateError("State must be a JSON object")

        handle = data.get("handle")
        if not isinstance(handle, str) or not (
            is_valid_handle(handle) or is_authorization_server_url(handle)
        ):
            raise InvalidFlowStateError("State has no valid handle")

        timestamp = data.get("timestamp")
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            raise InvalidFlowStateError("State has no valid timestamp")

        redirect_path = data.get("redirectPath")
        if redirect_path is not None and (
            not isinstance(redirect_path, str) or not is_safe_redirect_path(redirect_path)
        ):
            raise InvalidFlowStateError("State has an unsafe redirect path")

        flags = {}
        for name in ("mobile", "pwa"):
            value = data.get(name, False)
            if not isinstance(value, bool):
                raise InvalidFlowStateError(f"State flag '{name}' must be a boolean")
            flags[name] = value

        return cls(
            handle=handle,
            timestamp=int(timestamp),
            redirect_path=redirect_path,
            mobile=flags["mobile"],
            pwa=flags["pwa"]
        )


def resolve_flow_mode(state: OAuthFlowState, mobile_scheme: Optional[str]) -> FlowMode:
    """
    Decide how the callback delivers the login.

    Precedence: mobile (flag set and a scheme configured), then PWA, then web.

    Args:
        state: Parsed flow state
        mobile_scheme: Server-configured app callback scheme

    Returns:
        The flow mode
    """
    if state.mobile and mobile_scheme:
        return FlowMode.MOBILE
    if state.pwa:
        return FlowMode.PWA
    return FlowMode.WEB
