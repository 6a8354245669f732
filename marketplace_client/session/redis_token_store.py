"""
Redis-backed token store implementation.
Suitable when several processes share one signed-in identity.

Version: 1.0.0
"""
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.exceptions import RedisError

from ..utils.encryption import TokenEncryption
from .distributed_lock import DistributedLock, LockReleaseError
from .token_store import TokenStore, TokenStoreError
from .validators import StoredSession, STORAGE_KEYS

logger = logging.getLogger(__name__)


class RedisTokenStore(TokenStore):
    """
    Redis-backed implementation of TokenStore.

    Features:
    - Shared state across processes
    - All three keys written in one MULTI/EXEC transaction
    - lock() spans processes via DistributedLock, so concurrent 401s in
      different processes still produce a single refresh call
    - Optional encryption at rest
    """

    store_type = "redis"

    def __init__(
        self,
        redis_url: str,
        key_prefix: str = "marketplace:session:",
        encryptor: Optional[TokenEncryption] = None,
        lock_timeout: int = 30,
        lock_wait_timeout: float = 10.0,
        socket_timeout: int = 5,
        socket_connect_timeout: int = 5
    ):
        """
        Initialize Redis token store.

        Args:
            redis_url: Redis connection URL
            key_prefix: Prefix for stored keys
            encryptor: Optional cipher for stored values
            lock_timeout: Expiry of the refresh lock in seconds
            lock_wait_timeout: How long lock() waits for another holder in seconds
            socket_timeout: Socket timeout in seconds
            socket_connect_timeout: Connection timeout in seconds
        """
        super().__init__(encryptor=encryptor)
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.lock_timeout = lock_timeout
        self.lock_wait_timeout = lock_wait_timeout
        self.pool = redis.ConnectionPool.from_url(
            redis_url,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_connect_timeout,
            decode_responses=True
        )
        self.client: Optional[Redis] = None

        logger.info(
            f"RedisTokenStore initialized "
            f"(url={redis_url}, prefix={key_prefix}, encryption={encryptor is not None})"
        )

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    async def _ensure_connection(self) -> Redis:
        if self.client is None:
            self.client = Redis(connection_pool=self.pool)
        return self.client

    async def ping(self) -> bool:
        """Check Redis connectivity."""
        try:
            client = await self._ensure_connection()
            return bool(await client.ping())
        except RedisError as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    async def get_item(self, key: str) -> Optional[str]:
        client = await self._ensure_connection()
        try:
            return await client.get(self._key(key))
        except RedisError as e:
            raise TokenStoreError(f"Redis get failed for '{key}': {e}") from e

    async def set_item(self, key: str, value: str) -> None:
        client = await self._ensure_connection()
        try:
            await client.set(self._key(key), value)
        except RedisError as e:
            raise TokenStoreError(f"Redis set failed for '{key}': {e}") from e

    async def remove_item(self, key: str) -> None:
        client = await self._ensure_connection()
        try:
            await client.delete(self._key(key))
        except RedisError as e:
            raise TokenStoreError(f"Redis delete failed for '{key}': {e}") from e

    async def save(self, stored: StoredSession) -> None:
        """Persist all three values atomically."""
        client = await self._ensure_connection()
        try:
            async with client.pipeline(transaction=True) as pipe:
                for key, value in stored.to_items().items():
                    if value is None:
                        pipe.delete(self._key(key))
                    else:
                        pipe.set(self._key(key), self._encode(value))
                await pipe.execute()
        except RedisError as e:
            raise TokenStoreError(f"Redis transaction failed: {e}") from e

    async def clear(self) -> None:
        client = await self._ensure_connection()
        try:
            await client.delete(*(self._key(key) for key in STORAGE_KEYS))
        except RedisError as e:
            raise TokenStoreError(f"Redis delete failed: {e}") from e
        logger.debug("Token store cleared")

    @asynccontextmanager
    async def _locked(self) -> AsyncIterator[None]:
        async with self._write_lock:
            client = await self._ensure_connection()
            refresh_lock = DistributedLock(
                client,
                f"{self.key_prefix}refresh",
                ttl=self.lock_timeout,
                wait_timeout=self.lock_wait_timeout
            )
            await refresh_lock.acquire()
            try:
                yield
            finally:
                try:
                    await refresh_lock.release()
                except LockReleaseError as e:
                    # The key still expires on its own.
                    logger.warning(f"{e}; lock expires in {self.lock_timeout}s")

    def lock(self):
        """
        Lock held across every process sharing this key prefix.

        Raises:
            LockAcquisitionError: (a TokenStoreError) Redis failed or another
                process kept the lock past ``lock_wait_timeout``
        """
        return self._locked()

    async def get_stats(self) -> Dict[str, Any]:
        client = await self._ensure_connection()
        try:
            present = await client.exists(*(self._key(key) for key in STORAGE_KEYS))
        except RedisError as e:
            raise TokenStoreError(f"Redis exists failed: {e}") from e

        return {
            "store_type": self.store_type,
            "key_prefix": self.key_prefix,
            "keys_present": present,
            "encryption": self.encryptor is not None
        }

    async def close(self) -> None:
        """Close Redis connections."""
        if self.client is not None:
            await self.client.aclose()
            self.client = None
        await self.pool.disconnect()
        logger.info("RedisTokenStore connections closed")


__all__ = ['RedisTokenStore']
