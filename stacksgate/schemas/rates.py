"""Pydantic schemas for exchange rates and conversions."""

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel

Unit = Literal["usd", "sbtc"]
Trend = Literal["up", "down", "stable"]


class ExchangeRateSnapshot(BaseModel):
    """Cached BTC/USD rate. Never persisted durably."""

    rate: Decimal  # USD per BTC
    timestamp: datetime
    source: str
    trend: Trend | None = None


class ConversionResult(BaseModel):
    amount: Decimal
    from_unit: Unit
    converted: Decimal
    to_unit: Unit
    rate: Decimal
    source: str
    timestamp: datetime
