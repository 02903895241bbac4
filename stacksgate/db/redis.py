"""Process-wide Redis client used as the shared cache tier.

Redis is optional for the engine: when ``redis_url`` is empty or the server
cannot be reached, callers keep running on the in-memory cache alone.
"""

import redis.asyncio as redis
import structlog

from stacksgate.core.config import get_settings

logger = structlog.get_logger(__name__)

_client: redis.Redis | None = None


async def init_redis(url: str | None = None) -> redis.Redis:
    """Connect (once) and return the shared client.

    Raises whatever ``ping`` raises when the server is unreachable; the client
    is discarded in that case so a later call can try again.
    """
    global _client

    if _client is not None:
        return _client

    client = redis.from_url(
        url or get_settings().redis_url,
        decode_responses=True,
        socket_connect_timeout=5,
        health_check_interval=30,
    )
    try:
        await client.ping()
    except Exception:
        await client.aclose()
        raise

    _client = client
    logger.info("redis_connected")
    return _client


async def close_redis() -> None:
    global _client

    if _client is None:
        return
    await _client.aclose()
    _client = None


def get_redis() -> redis.Redis:
    """Shared client; RuntimeError until ``init_redis`` has succeeded."""
    if _client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _client
