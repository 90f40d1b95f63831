"""
Centralized datetime and timezone utilities for Stock League.

All persisted timestamps are naive UTC. Wall-clock concerns (the daily
screener reset) are expressed in the configured market timezone.
"""

from datetime import datetime, timezone
from typing import Optional

import pytz


def utcnow() -> datetime:
    """Current time as naive UTC, matching the database columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalise a datetime to naive UTC.

    Aware values are converted; naive values are assumed to already be UTC.

    Examples:
        >>> to_naive_utc(datetime(2025, 1, 2, 9, 0, tzinfo=timezone.utc))
        datetime.datetime(2025, 1, 2, 9, 0)
        >>> to_naive_utc(None) is None
        True
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_market_time(value: datetime, tz_name: str) -> datetime:
    """Convert a naive-UTC or aware datetime into the market timezone."""
    market_tz = pytz.timezone(tz_name)
    if value.tzinfo is None:
        value = pytz.utc.localize(value)
    return value.astimezone(market_tz)


def format_market_clock(value: datetime, tz_name: str) -> str:
    """HH:MM:SS in the market timezone, for log lines."""
    return to_market_time(value, tz_name).strftime("%H:%M:%S")
