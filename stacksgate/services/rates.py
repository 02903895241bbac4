"""RateOracle — BTC/USD price with multi-source fallback and caching.

Sources are tried in order, each under its own timeout; the first well-formed
positive rate wins and is cached. When every source fails the oracle serves
the last cached value if it has not expired, else a hardcoded fallback that is
never cached (so the next call tries the sources again).

sBTC is pegged 1:1 to BTC, so the BTC/USD rate converts sBTC directly.
"""

import math
from collections.abc import Callable
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

import httpx
import structlog

from stacksgate.core.cache import CacheService
from stacksgate.core.clock import Clock, utc_now
from stacksgate.core.exceptions import ValidationError
from stacksgate.schemas.payments import SATS_PER_BTC
from stacksgate.schemas.rates import ConversionResult, ExchangeRateSnapshot

logger = structlog.get_logger(__name__)

RATE_CACHE_KEY = "btc_usd_exchange_rate"
PREVIOUS_RATE_CACHE_KEY = "btc_usd_previous_rate"
FALLBACK_SOURCE = "fallback"
USER_AGENT = "StacksGate-Payment-Gateway/1.0"

TREND_THRESHOLD_PERCENT = Decimal("0.1")

USD_QUANT = Decimal("0.01")
SBTC_QUANT = Decimal("0.00000001")

UNITS = ("usd", "sbtc")
AMOUNT_LIMITS = {
    "usd": (Decimal("0.01"), Decimal("1000000")),
    "sbtc": (Decimal("0.00000001"), Decimal("1000")),
}


@dataclass(frozen=True)
class PriceSource:
    """One public price endpoint and how to read BTC/USD out of its JSON."""

    name: str
    url: str
    parser: Callable[[Any], Any]


DEFAULT_SOURCES: tuple[PriceSource, ...] = (
    PriceSource(
        "CoinGecko",
        "https://api.coingecko.com/api/v3/simple/price?ids=bitcoin&vs_currencies=usd",
        lambda data: data["bitcoin"]["usd"],
    ),
    PriceSource(
        "Coinbase",
        "https://api.coinbase.com/v2/prices/BTC-USD/spot",
        lambda data: data["data"]["amount"],
    ),
    PriceSource(
        "Binance",
        "https://api.binance.com/api/v3/ticker/price?symbol=BTCUSDT",
        lambda data: data["price"],
    ),
    PriceSource(
        "Kraken",
        "https://api.kraken.com/0/public/Ticker?pair=XBTUSD",
        lambda data: next(iter(data["result"].values()))["c"][0],
    ),
)


def _to_decimal(value: Any) -> Decimal | None:
    """Parse a rate/amount; None unless finite."""
    if isinstance(value, bool):
        return None
    try:
        result = Decimal(str(value).replace(",", ""))
    except (InvalidOperation, ValueError):
        return None
    return result if result.is_finite() else None


def is_valid_amount(amount: Any, unit: str) -> bool:
    """Finite, positive and inside the per-unit bounds."""
    if unit not in AMOUNT_LIMITS:
        return False
    if isinstance(amount, float) and not math.isfinite(amount):
        return False
    value = _to_decimal(amount)
    if value is None or value <= 0:
        return False
    low, high = AMOUNT_LIMITS[unit]
    return low <= value <= high


def sats_to_btc(amount_sats: int) -> Decimal:
    return (Decimal(amount_sats) / SATS_PER_BTC).quantize(SBTC_QUANT)


def btc_to_sats(amount_btc: Decimal | float | str) -> int:
    value = _to_decimal(amount_btc)
    if value is None:
        raise ValidationError(f"Invalid BTC amount: {amount_btc}")
    return int((value * SATS_PER_BTC).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_currency(amount: Decimal | float, unit: str) -> str:
    """``$1,234.50`` for USD, ``0.00100000 sBTC`` for sBTC."""
    value = _to_decimal(amount)
    if value is None:
        raise ValidationError(f"Invalid amount: {amount}")
    if unit == "usd":
        sign = "-" if value < 0 else ""
        return f"{sign}${abs(value).quantize(USD_QUANT, rounding=ROUND_HALF_UP):,}"
    return f"{value.quantize(SBTC_QUANT, rounding=ROUND_HALF_UP)} sBTC"


def convert_amount(amount: Decimal, from_unit: str, to_unit: str, rate: Decimal) -> Decimal:
    """Pure conversion at ``rate`` USD per BTC with fixed rounding."""
    if from_unit == to_unit:
        quant = USD_QUANT if to_unit == "usd" else SBTC_QUANT
        return amount.quantize(quant, rounding=ROUND_HALF_UP)
    if from_unit == "sbtc":
        return (amount * rate).quantize(USD_QUANT, rounding=ROUND_HALF_UP)
    return (amount / rate).quantize(SBTC_QUANT, rounding=ROUND_HALF_UP)


class RateOracle:
    """BTC/USD oracle backed by the shared CacheService."""

    def __init__(
        self,
        cache: CacheService,
        sources: tuple[PriceSource, ...] | list[PriceSource] = DEFAULT_SOURCES,
        ttl_seconds: float = 300,
        trend_ttl_seconds: float = 3600,
        fallback_rate: Decimal | float = Decimal("43000"),
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Clock = utc_now,
    ):
        self.cache = cache
        self.sources = tuple(sources)
        self.ttl_seconds = ttl_seconds
        self.trend_ttl_seconds = trend_ttl_seconds
        self.fallback_rate = Decimal(str(fallback_rate))
        self.timeout = timeout
        self.transport = transport
        self.clock = clock

    async def get_rate(self) -> ExchangeRateSnapshot:
        """Cached snapshot if fresh, otherwise query the sources."""
        cached = await self._cached_snapshot()
        if cached is not None:
            return cached
        return await self.refresh()

    async def refresh(self) -> ExchangeRateSnapshot:
        """Query the sources now, bypassing a fresh cache entry."""
        async with httpx.AsyncClient(
            timeout=self.timeout,
            transport=self.transport,
            headers={"User-Agent": USER_AGENT},
        ) as client:
            for source in self.sources:
                rate = await self._fetch(client, source)
                if rate is None:
                    continue
                snapshot = ExchangeRateSnapshot(rate=rate, timestamp=self.clock(), source=source.name)
                await self.cache.set(RATE_CACHE_KEY, snapshot.model_dump(mode="json"), self.ttl_seconds)
                logger.info("exchange_rate_fetched", source=source.name, rate=str(rate))
                return snapshot

        cached = await self._cached_snapshot()
        if cached is not None:
            logger.warning("exchange_rate_sources_failed_using_cache", rate=str(cached.rate), source=cached.source)
            return cached

        logger.error("exchange_rate_sources_failed_using_fallback", rate=str(self.fallback_rate))
        return ExchangeRateSnapshot(rate=self.fallback_rate, timestamp=self.clock(), source=FALLBACK_SOURCE)

    async def _fetch(self, client: httpx.AsyncClient, source: PriceSource) -> Decimal | None:
        try:
            response = await client.get(source.url)
            response.raise_for_status()
            rate = _to_decimal(source.parser(response.json()))
        except (httpx.HTTPError, ValueError, KeyError, IndexError, TypeError, StopIteration) as exc:
            logger.warning("exchange_rate_source_failed", source=source.name, error=str(exc) or type(exc).__name__)
            return None

        if rate is None or rate <= 0:
            logger.warning("exchange_rate_source_invalid", source=source.name)
            return None
        return rate

    async def _cached_snapshot(self) -> ExchangeRateSnapshot | None:
        raw = await self.cache.get(RATE_CACHE_KEY)
        if raw is None:
            return None
        try:
            return ExchangeRateSnapshot.model_validate(raw)
        except ValueError:
            await self.cache.delete(RATE_CACHE_KEY)
            return None

    async def convert(
        self,
        amount: Decimal | float | str,
        from_unit: str,
        to_unit: str,
        snapshot: ExchangeRateSnapshot | None = None,
    ) -> ConversionResult:
        """Convert between ``usd`` and ``sbtc`` at the current (or given) rate.

        Raises:
            ValidationError: unknown unit or amount outside the unit's bounds
        """
        if from_unit not in UNITS or to_unit not in UNITS:
            raise ValidationError(f"Units must be one of {', '.join(UNITS)}")
        if not is_valid_amount(amount, from_unit):
            raise ValidationError(f"Invalid {from_unit} amount: {amount}")

        value = _to_decimal(amount)
        snapshot = snapshot or await self.get_rate()
        converted = convert_amount(value, from_unit, to_unit, snapshot.rate)

        return ConversionResult(
            amount=value,
            from_unit=from_unit,
            converted=converted,
            to_unit=to_unit,
            rate=snapshot.rate,
            source=snapshot.source,
            timestamp=snapshot.timestamp,
        )

    async def with_trend(self) -> ExchangeRateSnapshot:
        """Current snapshot annotated with movement against the previous sample."""
        current = await self.get_rate()

        previous_raw = await self.cache.get(PREVIOUS_RATE_CACHE_KEY)
        previous = _to_decimal(previous_raw) if previous_raw is not None else None

        trend = "stable"
        if previous is not None and previous > 0:
            change_percent = (current.rate - previous) / previous * 100
            if change_percent > TREND_THRESHOLD_PERCENT:
                trend = "up"
            elif change_percent < -TREND_THRESHOLD_PERCENT:
                trend = "down"
        elif current.source != FALLBACK_SOURCE:
            # Sample refreshes only when the previous one expires
            await self.cache.set(PREVIOUS_RATE_CACHE_KEY, str(current.rate), self.trend_ttl_seconds)

        return current.model_copy(update={"trend": trend})
