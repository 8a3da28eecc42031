"""Time helpers."""

from __future__ import annotations

from datetime import UTC, date, datetime
import time as _time
from typing import Callable

__all__ = ["Clock", "now_utc", "utcnow_naive", "monotonic", "today_utc"]

Clock = Callable[[], datetime]


def now_utc() -> datetime:
    """Return the current UTC time with timezone information."""

    return datetime.now(UTC)


def utcnow_naive() -> datetime:
    """Return the current UTC time without tzinfo, as stored in the database."""

    return now_utc().replace(tzinfo=None)


def today_utc() -> date:
    return now_utc().date()


def monotonic() -> float:
    return _time.monotonic()
