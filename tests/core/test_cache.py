"""Tests for the tiered cache service."""

import json
from unittest.mock import AsyncMock

import fakeredis.aioredis
import pytest

from stacksgate.core.cache import CacheService, MemoryCache

pytestmark = pytest.mark.unit


def test_memory_cache_expires_entries(clock):
    cache = MemoryCache(clock)
    cache.set("rate", {"rate": "65000"}, ttl_seconds=10)

    assert cache.get("rate") == {"rate": "65000"}
    clock.advance(seconds=10)
    assert cache.get("rate") is None


def test_memory_cache_delete_and_clear(clock):
    cache = MemoryCache(clock)
    cache.set("a", 1, 60)
    cache.set("b", 2, 60)

    cache.delete("a")
    assert cache.get("a") is None
    cache.clear()
    assert cache.get("b") is None


async def test_cache_without_redis_uses_memory(clock):
    cache = CacheService(clock=clock)

    await cache.set("tx_status:0x1", {"status": "pending"}, 30)

    assert await cache.get("tx_status:0x1") == {"status": "pending"}
    clock.advance(seconds=31)
    assert await cache.get("tx_status:0x1") is None


async def test_cache_writes_prefixed_json_to_redis(clock):
    redis = fakeredis.aioredis.FakeRedis(decode_responses=True)
    cache = CacheService(redis, clock=clock)

    await cache.set("sbtc_balance:SP1", 1500, 30)

    assert json.loads(await redis.get("stacksgate:sbtc_balance:SP1")) == 1500
    assert 0 < await redis.ttl("stacksgate:sbtc_balance:SP1") <= 30


async def test_cache_reads_values_written_by_another_process(clock):
    redis = fakeredis.aioredis.FakeRedis(decode_responses=True)
    await redis.set("stacksgate:btc_usd_previous_rate", json.dumps("64000"))

    cache = CacheService(redis, clock=clock)

    assert await cache.get("btc_usd_previous_rate") == "64000"


async def test_cache_delete_removes_both_layers(clock):
    redis = fakeredis.aioredis.FakeRedis(decode_responses=True)
    cache = CacheService(redis, clock=clock)
    await cache.set("key", "value", 60)

    await cache.delete("key")

    assert await redis.get("stacksgate:key") is None
    assert cache.memory.get("key") is None


async def test_redis_failure_falls_back_to_memory(clock):
    broken = AsyncMock()
    broken.get.side_effect = ConnectionError("redis down")
    broken.set.side_effect = ConnectionError("redis down")
    cache = CacheService(broken, clock=clock)

    await cache.set("key", {"a": 1}, 60)

    assert await cache.get("key") == {"a": 1}
