"""Job priority levels and parsing helpers."""

from __future__ import annotations

from enum import IntEnum
from typing import Any

__all__ = ["JobPriority", "parse_priority"]


class JobPriority(IntEnum):
    """Five-level job priority; lower values are leased first."""

    CRITICAL = 1
    HIGH = 2
    NORMAL = 3
    LOW = 4
    BACKGROUND = 5


def parse_priority(value: Any, *, default: JobPriority = JobPriority.NORMAL) -> JobPriority:
    """Resolve ``value`` (member name, number or enum) into a :class:`JobPriority`.

    Out-of-range numbers are clamped to the nearest level; unknown names fall
    back to ``default``.
    """

    if value is None:
        return default
    if isinstance(value, JobPriority):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return default
        member = JobPriority.__members__.get(text.upper())
        if member is not None:
            return member
        try:
            value = int(text)
        except ValueError:
            return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    number = max(int(JobPriority.CRITICAL), min(int(JobPriority.BACKGROUND), number))
    return JobPriority(number)
