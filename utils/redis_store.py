"""
Kestrel Persistence Store

Durable key-value storage for ledger, alert and watchlist state. Redis is
the production backend; the in-memory store serves local runs without a
Redis server and tests.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Dict, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from config.settings import Settings, StorageBackend, get_settings
from core.errors import PersistenceError
from utils.logger import storage_logger as logger


class PersistenceStore(ABC):
    """
    Minimal durable key-value contract.

    ``get`` returns None for a key that was never written; both calls raise
    PersistenceError when the backend cannot be reached in time.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[bytes]:
        ...

    @abstractmethod
    async def set(self, key: str, value: bytes) -> None:
        ...

    async def close(self) -> None:
        """Release backend resources."""
        return None


class MemoryStore(PersistenceStore):
    """Process-local store; contents do not survive a restart."""

    def __init__(self, initial: Optional[Dict[str, bytes]] = None):
        self._data: Dict[str, bytes] = dict(initial or {})

    async def get(self, key: str) -> Optional[bytes]:
        return self._data.get(key)

    async def set(self, key: str, value: bytes) -> None:
        self._data[key] = bytes(value)

    def keys(self):
        return list(self._data)


class RedisStore(PersistenceStore):
    """
    Redis-backed store.

    Each key is written with a single SET, so readers see either the old or
    the new document. Every call is bounded by ``timeout`` seconds.
    """

    def __init__(
        self,
        url: str,
        key_prefix: str = "kestrel",
        timeout: float = 5.0,
        max_connections: int = 10,
        client: Optional[aioredis.Redis] = None,
    ):
        self.url = url
        self.key_prefix = key_prefix
        self.timeout = timeout

        if client is None:
            client = aioredis.Redis.from_url(
                url,
                max_connections=max_connections,
                decode_responses=False,
            )
        self._client = client

    def _key(self, key: str) -> str:
        """Generate prefixed storage key."""
        return f"{self.key_prefix}:{key}"

    async def get(self, key: str) -> Optional[bytes]:
        try:
            value = await asyncio.wait_for(self._client.get(self._key(key)), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise PersistenceError(f"Redis GET timed out after {self.timeout}s", key=key) from e
        except (RedisError, OSError) as e:
            raise PersistenceError(f"Redis GET failed: {e}", key=key) from e

        if value is None:
            return None
        if isinstance(value, str):
            return value.encode("utf-8")
        return value

    async def set(self, key: str, value: bytes) -> None:
        try:
            ok = await asyncio.wait_for(self._client.set(self._key(key), value), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise PersistenceError(f"Redis SET timed out after {self.timeout}s", key=key) from e
        except (RedisError, OSError) as e:
            raise PersistenceError(f"Redis SET failed: {e}", key=key) from e

        if not ok:
            raise PersistenceError("Redis SET was not acknowledged", key=key)

    async def ping(self) -> bool:
        """
        Test Redis connectivity.

        Returns:
            bool: True if connection successful
        """
        try:
            await asyncio.wait_for(self._client.ping(), timeout=self.timeout)
            logger.debug("Redis connection test successful")
            return True
        except (asyncio.TimeoutError, RedisError, OSError) as e:
            logger.storage(f"Redis connection test failed: {e}", level="ERROR")
            return False

    async def close(self) -> None:
        try:
            await self._client.aclose()
            logger.info("Redis connections cleaned up")
        except (RedisError, OSError) as e:
            logger.error(f"Error cleaning up Redis connections: {e}")


def create_store(settings: Optional[Settings] = None) -> PersistenceStore:
    """
    Build the configured persistence backend.

    Args:
        settings: Settings to read; defaults to the global instance

    Returns:
        PersistenceStore: Redis or in-memory store
    """
    settings = settings or get_settings()

    if settings.storage_backend == StorageBackend.MEMORY:
        logger.warning("Using in-memory storage - state will not survive a restart")
        return MemoryStore()

    logger.info(f"Using Redis storage with prefix '{settings.redis_key_prefix}'")
    return RedisStore(
        url=settings.redis_url,
        key_prefix=settings.redis_key_prefix,
        timeout=settings.storage_timeout_seconds,
        max_connections=settings.redis_max_connections,
    )
