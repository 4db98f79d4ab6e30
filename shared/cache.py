import json
import time

import redis.asyncio as redis


def get_redis(url: str):
    return redis.from_url(url, decode_responses=True)


class RedisCache:
    """
    JSON values in Redis with per-key TTL.

    Keys are namespaced with `prefix` so several services can share one Redis.
    """

    def __init__(self, client, prefix: str = "cache"):
        self._client = client
        self._prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def get(self, key: str) -> dict | None:
        raw = await self._client.get(self._key(key))
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            await self._client.delete(self._key(key))
            return None

    async def set(self, key: str, value: dict, ttl_seconds: int) -> None:
        await self._client.set(self._key(key), json.dumps(value), ex=ttl_seconds)

    async def add(self, key: str, value: dict, ttl_seconds: int) -> bool:
        """Store only if absent. Returns False when the key already existed."""
        stored = await self._client.set(self._key(key), json.dumps(value), ex=ttl_seconds, nx=True)
        return bool(stored)

    async def evict(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self._client.delete(*[self._key(k) for k in keys])

    async def close(self) -> None:
        await self._client.aclose()


class MemoryCache:
    """Process-local stand-in for RedisCache with the same semantics."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._entries: dict[str, tuple[float, str]] = {}

    def _live(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, raw = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        return raw

    async def get(self, key: str) -> dict | None:
        raw = self._live(key)
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: dict, ttl_seconds: int) -> None:
        self._entries[key] = (self._clock() + ttl_seconds, json.dumps(value))

    async def add(self, key: str, value: dict, ttl_seconds: int) -> bool:
        if self._live(key) is not None:
            return False
        await self.set(key, value, ttl_seconds)
        return True

    async def evict(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._entries.pop(key, None) is not None:
                removed += 1
        return removed

    async def close(self) -> None:
        self._entries.clear()
