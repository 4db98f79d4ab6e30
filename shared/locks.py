import asyncio
import logging
from contextlib import asynccontextmanager

from redis.exceptions import LockError

logger = logging.getLogger(__name__)


class LockUnavailable(Exception):
    pass


class LocalKeyedLock:
    """
    One asyncio.Lock per key, dropped again once nobody holds or waits for it.
    Only serializes callers inside this process.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]


class RedisKeyedLock:
    """
    Redis-backed lock shared by every instance pointed at the same Redis.

    timeout: seconds before Redis drops a lock whose holder died.
    blocking_timeout: seconds to wait for the lock before giving up.
    """

    def __init__(
        self,
        client,
        timeout: float = 10.0,
        blocking_timeout: float = 5.0,
        prefix: str = "lock",
    ):
        self._client = client
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout
        self._prefix = prefix

    @asynccontextmanager
    async def hold(self, key: str):
        name = f"{self._prefix}:{key}"
        lock = self._client.lock(
            name,
            timeout=self.timeout,
            blocking_timeout=self.blocking_timeout,
        )
        if not await lock.acquire():
            raise LockUnavailable(f"Could not acquire {name} within {self.blocking_timeout}s")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                # expired while held; the critical section outlived the timeout
                logger.warning("Lock %s was lost before release", name)
