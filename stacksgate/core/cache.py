"""Process-wide cache service.

Two layers:
- MemoryCache: in-process dict with TTL against an injected clock (always present)
- Redis (optional): shared across processes, values stored as JSON strings

Reads try Redis first and fall back to memory; writes go to both. Redis
failures are logged at debug level and never surface to callers. Concurrent
writers race with last-writer-wins; staleness is bounded by the TTL.
"""

import json
from datetime import datetime, timedelta
from typing import Any

import structlog
from redis.asyncio import Redis

from stacksgate.core.clock import Clock, utc_now

logger = structlog.get_logger(__name__)


class MemoryCache:
    """In-memory TTL cache keyed by string."""

    def __init__(self, clock: Clock = utc_now):
        self._clock = clock
        self._entries: dict[str, tuple[Any, datetime]] = {}

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        return value

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        self._entries[key] = (value, self._clock() + timedelta(seconds=ttl_seconds))

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()


class CacheService:
    """Tiered cache: optional Redis in front of an in-memory TTL cache.

    Values must be JSON-serializable so they survive the Redis round trip.
    """

    KEY_PREFIX = "stacksgate:"

    def __init__(self, redis: Redis | None = None, clock: Clock = utc_now):
        self.redis = redis
        self.memory = MemoryCache(clock)

    def _key(self, key: str) -> str:
        return f"{self.KEY_PREFIX}{key}"

    async def get(self, key: str) -> Any | None:
        if self.redis is not None:
            try:
                raw = await self.redis.get(self._key(key))
                if raw is not None:
                    return json.loads(raw)
            except Exception as exc:
                logger.debug("cache_redis_get_failed", key=key, error=str(exc))

        return self.memory.get(key)

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        if self.redis is not None:
            try:
                await self.redis.set(self._key(key), json.dumps(value), ex=max(1, int(ttl_seconds)))
            except Exception as exc:
                logger.debug("cache_redis_set_failed", key=key, error=str(exc))

        self.memory.set(key, value, ttl_seconds)

    async def delete(self, key: str) -> None:
        if self.redis is not None:
            try:
                await self.redis.delete(self._key(key))
            except Exception as exc:
                logger.debug("cache_redis_delete_failed", key=key, error=str(exc))

        self.memory.delete(key)
