"""
OAuth Storage Backends

Key-value storage with TTL for OAuth session records. Two backends:
- MemoryStorage: process-local, for tests and single-process development
- RedisStorage: shared Redis instance, for production deployments

Both store JSON-compatible values only, so a record written through one
backend can be read back unchanged through the other.
"""

import json
import logging
import os
import time
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from oauth_types import DEFAULT_LOGGER_NAME


logger = logging.getLogger(f"{DEFAULT_LOGGER_NAME}.storage")


class MemoryStorage:
    """
    In-memory storage with lazy TTL expiry.

    Values are copied through JSON on write and read, matching what a
    networked backend would hand back.
    """

    def __init__(self):
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}

    async def get(self, key: str) -> Optional[Any]:
        entry = self._data.get(key)
        if entry is None:
            return None

        raw, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            del self._data[key]
            logger.debug(f"Memory storage key expired: {key}")
            return None

        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        expires_at = time.monotonic() + ttl if ttl else None
        self._data[key] = (json.dumps(value), expires_at)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def __len__(self) -> int:
        return len(self._data)


class RedisStorage:
    """
    Redis-backed storage.

    Keys are namespaced with a prefix; TTLs map to SET ... EX.
    """

    KEY_PREFIX = "atproto:"

    def __init__(self, redis_url: Optional[str] = None, key_prefix: Optional[str] = None, client=None):
        """
        Initialize Redis storage.

        Args:
            redis_url: Redis connection URL (default: from REDIS_URL env var)
            key_prefix: Namespace prefix for all keys (default: "atproto:")
            client: Pre-built redis.asyncio client (overrides redis_url)
        """
        self.redis_url = redis_url or os.getenv("REDIS_URL", "redis://localhost:6379")
        self.key_prefix = key_prefix if key_prefix is not None else self.KEY_PREFIX
        self.redis_client = client or redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_keepalive=True
        )
        logger.info(f"Redis storage initialized with prefix '{self.key_prefix}'")

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    async def get(self, key: str) -> Optional[Any]:
        data = await self.redis_client.get(self._key(key))
        if data is None:
            return None

        if isinstance(data, bytes):
            data = data.decode('utf-8')
        return json.loads(data)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        await self.redis_client.set(self._key(key), json.dumps(value), ex=ttl or None)
        logger.debug(f"Stored key {key} (ttl={ttl})")

    async def delete(self, key: str) -> None:
        await self.redis_client.delete(self._key(key))
        logger.debug(f"Deleted key {key}")

    async def ping(self) -> bool:
        """
        Test Redis connection.

        Returns:
            True if Redis is reachable
        """
        try:
            return bool(await self.redis_client.ping())
        except RedisError as e:
            logger.error(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        await self.redis_client.aclose()
