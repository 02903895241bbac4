"""Request/response schemas for the exchange rate endpoints."""

from decimal import Decimal

from pydantic import BaseModel

from stacksgate.schemas.rates import ExchangeRateSnapshot, Trend, Unit


class ExchangeRateResponse(BaseModel):
    btc_usd: Decimal
    source: str
    last_updated: str
    trend: Trend | None = None

    @classmethod
    def from_snapshot(cls, snapshot: ExchangeRateSnapshot) -> "ExchangeRateResponse":
        return cls(
            btc_usd=snapshot.rate,
            source=snapshot.source,
            last_updated=snapshot.timestamp.isoformat(),
            trend=snapshot.trend,
        )


class ConvertRequest(BaseModel):
    amount: Decimal
    from_unit: Unit
    to_unit: Unit


class ConvertResponse(BaseModel):
    amount: Decimal
    from_unit: Unit
    converted: Decimal
    to_unit: Unit
    formatted: str
    rate: Decimal
    source: str
