"""
Backoff policy and retry helper.
Drives ChatSession.reopen() and the wait loop of the refresh lock; request
retries after a 401 are handled by the API client and never go through here.

Version: 1.0.0
"""
import asyncio
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

logger = logging.getLogger(__name__)


class BackoffKind(str, Enum):
    """Growth of the wait between attempts."""
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    CONSTANT = "constant"


@dataclass(frozen=True)
class RetryConfig:
    """
    How often to try and how long to wait in between.

    ``jitter`` adds up to that fraction of the computed wait, so clients
    reconnecting after the same outage do not hit the server in lockstep.
    """
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    kind: BackoffKind = BackoffKind.EXPONENTIAL
    jitter: float = 0.0
    retry_on_exceptions: Tuple[Type[BaseException], ...] = (Exception,)

    def delay_for(self, retry_number: int) -> float:
        """Wait before retry ``retry_number`` (0 = first retry), capped at max_delay."""
        if self.kind == BackoffKind.CONSTANT:
            wait = self.initial_delay
        elif self.kind == BackoffKind.LINEAR:
            wait = self.initial_delay * (retry_number + 1)
        else:
            wait = self.initial_delay * self.multiplier ** retry_number

        if self.jitter:
            wait += random.uniform(0, wait * self.jitter)
        return min(wait, self.max_delay)


async def retry_async_call(
    func: Callable[..., Awaitable[Any]],
    *args,
    config: Optional[RetryConfig] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    **kwargs
) -> Any:
    """
    Await ``func(*args, **kwargs)`` until it succeeds.

    Only ``config.retry_on_exceptions`` are retried; anything else propagates
    immediately. After ``config.max_attempts`` failed calls the last error is
    re-raised.
    """
    config = config or RetryConfig()
    name = getattr(func, "__name__", repr(func))
    attempt = 0

    while True:
        attempt += 1
        try:
            return await func(*args, **kwargs)
        except config.retry_on_exceptions as e:
            if attempt >= config.max_attempts:
                logger.error(f"{name} gave up after {attempt} attempts: {e}")
                raise

            wait = config.delay_for(attempt - 1)
            logger.warning(
                f"{name} attempt {attempt}/{config.max_attempts} failed "
                f"({type(e).__name__}: {e}), next try in {wait:.2f}s"
            )
            await sleep(wait)


__all__ = [
    'BackoffKind',
    'RetryConfig',
    'retry_async_call',
]
