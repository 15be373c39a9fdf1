import asyncio
import logging

import redis.asyncio as redis
from redis.exceptions import RedisError

from social.atmd.account.errors import (
    RepositoryError,
    RepositoryErrorCode,
    translate_redis_error,
)
from social.atmd.account.result import Err, Ok, Result

logger = logging.getLogger(__name__)

REFRESH_LOCK_KEY_PREFIX = "lock:refresh:"


class RedisRefreshLock:
    """
    Serialises token refreshes across server processes.

    Refresh tokens are single use, so only the holder of the lock for a grant may spend
    one. The lock is a ``SET NX EX`` key: a holder that dies without releasing it blocks
    others for at most ``ttl`` seconds. ``acquire`` waits for a held lock, polling every
    ``wait`` seconds, and gives up with CONSTRAINT_VIOLATION after ``attempts`` polls.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        ttl: int = 30,
        attempts: int = 40,
        wait: float = 0.25,
    ) -> None:
        self._redis_client = redis_client
        self._ttl = ttl
        self._attempts = attempts
        self._wait = wait

    async def acquire(self, name: str) -> Result[None, RepositoryError]:
        key = f"{REFRESH_LOCK_KEY_PREFIX}{name}"
        for _ in range(self._attempts):
            try:
                acquired = await self._redis_client.set(key, "1", nx=True, ex=self._ttl)
            except RedisError as e:
                return Err(translate_redis_error(e, "Failed to acquire refresh lock"))
            if acquired:
                return Ok(None)
            await asyncio.sleep(self._wait)
        return Err(
            RepositoryError(
                RepositoryErrorCode.CONSTRAINT_VIOLATION,
                f"Refresh lock {name} is still held",
            )
        )

    async def release(self, name: str) -> None:
        try:
            await self._redis_client.delete(f"{REFRESH_LOCK_KEY_PREFIX}{name}")
        except RedisError:
            # The key expires on its own.
            logger.warning("Failed to release refresh lock %s", name, exc_info=True)
