"""Injectable clock so TTLs, expiry and lookback windows can be tested without sleeping."""

from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


def unix_seconds(dt: datetime) -> int:
    return int(dt.timestamp())
