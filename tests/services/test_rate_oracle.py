"""Tests for RateOracle source fallback, caching, conversion and trend."""

from decimal import Decimal

import fakeredis.aioredis
import httpx
import pytest

from stacksgate.core.cache import CacheService
from stacksgate.core.exceptions import ValidationError
from stacksgate.services.rates import (
    DEFAULT_SOURCES,
    PREVIOUS_RATE_CACHE_KEY,
    RATE_CACHE_KEY,
    PriceSource,
    RateOracle,
    btc_to_sats,
    format_currency,
    is_valid_amount,
    sats_to_btc,
)

pytestmark = pytest.mark.unit

SOURCE_A = PriceSource("SourceA", "https://a.example/price", lambda data: data["usd"])
SOURCE_B = PriceSource("SourceB", "https://b.example/price", lambda data: data["usd"])


class PriceFeeds:
    """MockTransport handler: per-host JSON body, or an HTTP status to fail with."""

    def __init__(self, **hosts):
        self.hosts = hosts
        self.calls: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host.split(".")[0]
        self.calls.append(host)
        reply = self.hosts.get(host, 503)
        if isinstance(reply, int):
            return httpx.Response(reply)
        return httpx.Response(200, json=reply)


@pytest.fixture
def cache(clock):
    return CacheService(clock=clock)


def make_oracle(cache, clock, feeds, **kwargs) -> RateOracle:
    return RateOracle(
        cache,
        sources=kwargs.pop("sources", (SOURCE_A, SOURCE_B)),
        transport=httpx.MockTransport(feeds),
        clock=clock,
        **kwargs,
    )


# ============================================================================
# get_rate / refresh
# ============================================================================


async def test_first_source_failure_falls_through_to_second(cache, clock):
    feeds = PriceFeeds(a=500, b={"usd": 65000})
    oracle = make_oracle(cache, clock, feeds)

    snapshot = await oracle.get_rate()

    assert snapshot.rate == Decimal("65000")
    assert snapshot.source == "SourceB"
    assert feeds.calls == ["a", "b"]
    assert (await cache.get(RATE_CACHE_KEY))["source"] == "SourceB"


@pytest.mark.parametrize("bad", [{"usd": 0}, {"usd": -5}, {"usd": "NaN"}, {"usd": "abc"}, {"other": 1}])
async def test_malformed_or_non_positive_rate_skipped(cache, clock, bad):
    oracle = make_oracle(cache, clock, PriceFeeds(a=bad, b={"usd": "64000.50"}))

    snapshot = await oracle.get_rate()

    assert snapshot.rate == Decimal("64000.50")
    assert snapshot.source == "SourceB"


async def test_fresh_cache_served_without_network(cache, clock):
    feeds = PriceFeeds(a={"usd": 64000})
    oracle = make_oracle(cache, clock, feeds)
    await oracle.get_rate()

    clock.advance(seconds=60)
    feeds.hosts["a"] = {"usd": 70000}
    snapshot = await oracle.get_rate()

    assert snapshot.rate == Decimal("64000")
    assert feeds.calls == ["a"]


async def test_expired_cache_refetches(cache, clock):
    feeds = PriceFeeds(a={"usd": 64000})
    oracle = make_oracle(cache, clock, feeds)
    await oracle.get_rate()

    clock.advance(seconds=301)
    feeds.hosts["a"] = {"usd": 66000}

    assert (await oracle.get_rate()).rate == Decimal("66000")


async def test_all_sources_down_serves_unexpired_cache(cache, clock):
    feeds = PriceFeeds(a={"usd": 64000})
    oracle = make_oracle(cache, clock, feeds)
    await oracle.get_rate()

    feeds.hosts.clear()
    snapshot = await oracle.refresh()

    assert snapshot.rate == Decimal("64000")
    assert snapshot.source == "SourceA"


async def test_all_sources_down_and_no_cache_uses_uncached_fallback(cache, clock):
    oracle = make_oracle(cache, clock, PriceFeeds(), fallback_rate=43000)

    snapshot = await oracle.get_rate()

    assert snapshot.rate == Decimal("43000")
    assert snapshot.source == "fallback"
    assert await cache.get(RATE_CACHE_KEY) is None


async def test_network_error_treated_as_source_failure(cache, clock):
    def handler(request):
        if request.url.host == "a.example":
            raise httpx.ConnectTimeout("timed out", request=request)
        return httpx.Response(200, json={"usd": 65000})

    oracle = RateOracle(cache, sources=(SOURCE_A, SOURCE_B), transport=httpx.MockTransport(handler), clock=clock)

    assert (await oracle.get_rate()).source == "SourceB"


def test_default_source_parsers():
    coingecko, coinbase, binance, kraken = DEFAULT_SOURCES

    assert coingecko.parser({"bitcoin": {"usd": 65000}}) == 65000
    assert coinbase.parser({"data": {"amount": "65000.12"}}) == "65000.12"
    assert binance.parser({"price": "65000.00"}) == "65000.00"
    assert kraken.parser({"result": {"XXBTZUSD": {"c": ["65000.1", "0.01"]}}}) == "65000.1"


async def test_snapshot_survives_redis_round_trip(clock):
    redis = fakeredis.aioredis.FakeRedis(decode_responses=True)
    oracle = make_oracle(CacheService(redis, clock=clock), clock, PriceFeeds(a={"usd": "64000.25"}))
    await oracle.get_rate()

    # A second process sharing the same Redis reads the cached snapshot
    other = make_oracle(CacheService(redis, clock=clock), clock, PriceFeeds())
    snapshot = await other.get_rate()

    assert snapshot.rate == Decimal("64000.25")
    assert snapshot.source == "SourceA"


# ============================================================================
# convert
# ============================================================================


async def test_convert_sbtc_to_usd(cache, clock):
    oracle = make_oracle(cache, clock, PriceFeeds(a={"usd": 65000}))

    result = await oracle.convert(Decimal("0.0015"), "sbtc", "usd")

    assert result.converted == Decimal("97.50")
    assert result.rate == Decimal("65000")
    assert result.source == "SourceA"


@pytest.mark.parametrize("amount", ["0.01", "1", "100", "12345.67", "1000000"])
@pytest.mark.parametrize("rate", ["12345.67", "43000", "64123.45", "98765.43"])
async def test_convert_round_trip_within_one_sbtc_unit(cache, clock, amount, rate):
    oracle = make_oracle(cache, clock, PriceFeeds(a={"usd": rate}))
    snapshot = await oracle.get_rate()

    to_sbtc = await oracle.convert(amount, "usd", "sbtc", snapshot=snapshot)
    back = await oracle.convert(to_sbtc.converted, "sbtc", "usd", snapshot=snapshot)

    assert to_sbtc.converted == to_sbtc.converted.quantize(Decimal("0.00000001"))
    assert abs(back.converted - Decimal(amount)) <= Decimal("0.00000001")


async def test_convert_uses_given_snapshot(cache, clock):
    feeds = PriceFeeds(a={"usd": 65000})
    oracle = make_oracle(cache, clock, feeds)
    snapshot = await oracle.get_rate()
    feeds.calls.clear()

    result = await oracle.convert(1, "sbtc", "usd", snapshot=snapshot)

    assert result.converted == Decimal("65000.00")
    assert feeds.calls == []


@pytest.mark.parametrize(
    "amount,unit",
    [(0, "usd"), (-1, "usd"), ("0.001", "usd"), (1_000_001, "usd"), (1001, "sbtc"), (float("inf"), "sbtc")],
)
async def test_convert_rejects_out_of_bounds_amounts(cache, clock, amount, unit):
    oracle = make_oracle(cache, clock, PriceFeeds(a={"usd": 65000}))

    with pytest.raises(ValidationError):
        await oracle.convert(amount, unit, "usd" if unit == "sbtc" else "sbtc")


async def test_convert_rejects_unknown_unit(cache, clock):
    oracle = make_oracle(cache, clock, PriceFeeds(a={"usd": 65000}))

    with pytest.raises(ValidationError):
        await oracle.convert(1, "eth", "usd")


# ============================================================================
# with_trend
# ============================================================================


async def test_first_trend_sample_is_stable_and_stored(cache, clock):
    oracle = make_oracle(cache, clock, PriceFeeds(a={"usd": 65000}))

    snapshot = await oracle.with_trend()

    assert snapshot.trend == "stable"
    assert await cache.get(PREVIOUS_RATE_CACHE_KEY) == "65000"


@pytest.mark.parametrize("new_rate,trend", [(65100, "up"), (64900, "down"), (65050, "stable")])
async def test_trend_against_previous_sample(cache, clock, new_rate, trend):
    await cache.set(PREVIOUS_RATE_CACHE_KEY, "65000", 3600)
    oracle = make_oracle(cache, clock, PriceFeeds(a={"usd": new_rate}))

    assert (await oracle.with_trend()).trend == trend


async def test_fallback_rate_not_stored_as_trend_sample(cache, clock):
    oracle = make_oracle(cache, clock, PriceFeeds())

    await oracle.with_trend()

    assert await cache.get(PREVIOUS_RATE_CACHE_KEY) is None


# ============================================================================
# helpers
# ============================================================================


def test_sats_conversions():
    assert sats_to_btc(150_000) == Decimal("0.00150000")
    assert btc_to_sats("0.0015") == 150_000
    assert btc_to_sats(Decimal("0.000000015")) == 2


def test_format_currency():
    assert format_currency(Decimal("1234.5"), "usd") == "$1,234.50"
    assert format_currency(Decimal("0.001"), "sbtc") == "0.00100000 sBTC"


def test_is_valid_amount_bounds():
    assert is_valid_amount("0.01", "usd") is True
    assert is_valid_amount(True, "usd") is False
    assert is_valid_amount(1, "doge") is False
