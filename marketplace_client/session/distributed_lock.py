"""
Cross-process lock guarding token refresh.

Processes that share one Redis token store take this lock before reading and
rotating the token pair, so a refresh token is never spent twice.

Version: 1.0.0
"""
import asyncio
import logging
import uuid
from typing import Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from ..utils.retry import RetryConfig
from .token_store import TokenStoreError

logger = logging.getLogger(__name__)


class LockAcquisitionError(TokenStoreError):
    """The lock stayed busy past the wait timeout, or Redis failed."""
    pass


class LockReleaseError(TokenStoreError):
    """Redis failed while releasing the lock."""
    pass


class DistributedLock:
    """
    Owner-tagged Redis lock (``SET key owner NX PX ttl``).

    The key expires after ``ttl`` seconds, so a crashed holder cannot block
    refreshes forever. Release deletes the key only while it still carries
    this holder's owner tag.
    """

    # Compare-and-delete; a plain DEL could drop a lock re-taken after expiry.
    RELEASE_SCRIPT = """
    if redis.call("get", KEYS[1]) ~= ARGV[1] then
        return 0
    end
    return redis.call("del", KEYS[1])
    """

    def __init__(
        self,
        redis_client: Redis,
        name: str,
        ttl: float = 30.0,
        wait_timeout: float = 10.0,
        poll: Optional[RetryConfig] = None
    ):
        """
        Args:
            redis_client: Redis client instance
            name: Lock name, stored under ``lock:<name>``
            ttl: Seconds before an abandoned lock expires
            wait_timeout: Seconds acquire() keeps polling a busy lock
            poll: Backoff between polls
        """
        self.redis_client = redis_client
        self.key = f"lock:{name}"
        self.ttl_ms = int(ttl * 1000)
        self.wait_timeout = wait_timeout
        self.poll = poll or RetryConfig(initial_delay=0.05, max_delay=1.0)

        self.owner: Optional[str] = None
        self._release_script = redis_client.register_script(self.RELEASE_SCRIPT)

    @property
    def held(self) -> bool:
        return self.owner is not None

    async def _try_set(self, owner: str) -> bool:
        try:
            return bool(await self.redis_client.set(self.key, owner, nx=True, px=self.ttl_ms))
        except RedisError as e:
            logger.error(f"Redis error while locking {self.key}: {e}")
            raise LockAcquisitionError(f"Redis error while locking {self.key}: {e}") from e

    async def acquire(self, blocking: bool = True) -> None:
        """
        Take the lock, polling with backoff while another owner holds it.

        Raises:
            LockAcquisitionError: Still busy after ``wait_timeout`` (immediately
                when ``blocking`` is False), or Redis failed
        """
        if self.held:
            raise LockAcquisitionError(f"{self.key} is already held by this instance")

        owner = uuid.uuid4().hex
        loop = asyncio.get_running_loop()
        deadline = loop.time() + (self.wait_timeout if blocking else 0.0)
        polls = 0

        while not await self._try_set(owner):
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning(f"Gave up waiting for {self.key} after {polls + 1} tries")
                raise LockAcquisitionError(f"{self.key} is held by another process")

            await asyncio.sleep(min(self.poll.delay_for(polls), remaining))
            polls += 1

        self.owner = owner
        logger.debug(f"Acquired {self.key} (owner={owner[:8]}, ttl={self.ttl_ms}ms)")

    async def release(self) -> bool:
        """
        Give the lock back.

        Returns:
            False if it was not held or had already expired
        """
        if not self.held:
            return False

        owner, self.owner = self.owner, None
        try:
            deleted = await self._release_script(keys=[self.key], args=[owner])
        except RedisError as e:
            logger.error(f"Redis error while unlocking {self.key}: {e}")
            raise LockReleaseError(f"Redis error while unlocking {self.key}: {e}") from e

        if not deleted:
            logger.warning(f"{self.key} expired before release (ttl={self.ttl_ms}ms)")
        return bool(deleted)

    async def __aenter__(self) -> "DistributedLock":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.release()
        return False


__all__ = [
    'DistributedLock',
    'LockAcquisitionError',
    'LockReleaseError'
]
