"""
OAuth Session Store

Persists OAuth sessions keyed by subject DID and restores them through the
OAuth client, which refreshes tokens as needed.

Restore applies a recovery policy:
- Network failures are transient: re-raised unchanged so the caller can retry
- Every other failure is terminal (corrupt record, expired or revoked refresh
  token): the stored record is deleted and None is returned
"""

import logging
import time
from datetime import datetime, timezone
from typing import Optional

from oauth_types import (
    DEFAULT_LOGGER_NAME,
    OAuthClientErrorKind,
    OAuthClientInterface,
    OAuthStorage,
    SessionInterface,
    classify_oauth_error,
)


SESSION_KEY_PREFIX = "session:"

# Tokens with more than this left were most likely just refreshed
LIKELY_REFRESHED_THRESHOLD_MS = 60 * 60 * 1000


def session_key(did: str) -> str:
    """Storage key for a subject's OAuth session."""
    return f"{SESSION_KEY_PREFIX}{did}"


class OAuthSessions:
    """
    Stores and restores OAuth sessions.

    Responsibilities:
    - Restore sessions via the OAuth client (automatic refresh)
    - Garbage-collect sessions that can never be restored
    - Save and delete session records with the configured TTL
    """

    def __init__(
        self,
        oauth_client: OAuthClientInterface,
        storage: OAuthStorage,
        session_ttl: int,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize the session store.

        Args:
            oauth_client: OAuth client used for restoration
            storage: Storage backend for session records
            session_ttl: Record TTL in seconds
            logger: Logger for diagnostics
        """
        self.oauth_client = oauth_client
        self.storage = storage
        self.session_ttl = session_ttl
        self.logger = logger or logging.getLogger(f"{DEFAULT_LOGGER_NAME}.sessions")

    async def restore(self, did: str) -> Optional[SessionInterface]:
        """
        Restore the OAuth session for a DID.

        Args:
            did: Subject DID

        Returns:
            The live session, or None if there is none or it is unrecoverable

        Raises:
            Exception: The client's own error, unchanged, for network failures
        """
        self.logger.debug(f"Restoring OAuth session for DID: {did}")

        try:
            session = await self.oauth_client.restore(did)
        except Exception as e:
            kind = classify_oauth_error(e)
            if kind is OAuthClientErrorKind.NETWORK:
                self.logger.warning(
                    f"Transient failure restoring OAuth session for DID {did}: "
                    f"{type(e).__name__}: {e}"
                )
                raise

            self.logger.error(
                f"Unrecoverable OAuth session for DID {did} ({kind.value}), "
                f"removing stored record: {type(e).__name__}: {e}"
            )
            await self._discard(did)
            return None

        if session is None:
            self.logger.info(f"OAuth session not found for DID: {did}")
            return None

        self.logger.debug(f"OAuth session restored for DID: {did}")
        self._log_token_status(did, session)
        return session

    async def _discard(self, did: str) -> None:
        try:
            await self.storage.delete(session_key(did))
        except Exception as e:
            self.logger.warning(f"Failed to delete dead OAuth session for DID {did}: {e}")

    def _log_token_status(self, did: str, session: SessionInterface) -> None:
        time_until_expiry = getattr(session, "time_until_expiry", None)
        if time_until_expiry is None:
            return

        now = time.time()
        expires_at = datetime.fromtimestamp(now + time_until_expiry / 1000, tz=timezone.utc)
        self.logger.debug(
            f"Token status for DID {did}: "
            f"expires_at={expires_at.isoformat()}, "
            f"minutes_left={round(time_until_expiry / 1000 / 60)}, "
            f"likely_refreshed={time_until_expiry > LIKELY_REFRESHED_THRESHOLD_MS}, "
            f"has_refresh_token={bool(getattr(session, 'refresh_token', None))}"
        )

    async def save(self, session: SessionInterface) -> None:
        """
        Persist a session record with the configured TTL.

        Args:
            session: Session to store
        """
        await self.storage.set(session_key(session.did), session.to_dict(), ttl=self.session_ttl)
        self.logger.info(f"OAuth session saved for DID: {session.did}")

    async def delete(self, did: str) -> None:
        """
        Remove a stored session record.

        Args:
            did: Subject DID
        """
        await self.storage.delete(session_key(did))
        self.logger.info(f"OAuth session deleted for DID: {did}")
