"""Cron evaluation helpers built on croniter.

Expressions are evaluated in the schedule's IANA timezone; results are
returned in UTC.
"""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter


def is_valid_cron(expression: str) -> bool:
    return isinstance(expression, str) and bool(expression.strip()) and croniter.is_valid(expression)


def is_valid_timezone(name: str) -> bool:
    if not isinstance(name, str) or not name:
        return False
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def iter_fire_times(expression: str, timezone: str, after: datetime) -> Iterator[datetime]:
    """Yield fire times strictly after ``after``, in UTC."""
    tz = ZoneInfo(timezone)
    cron = croniter(expression, after.astimezone(tz))
    while True:
        yield cron.get_next(datetime).astimezone(UTC)


def next_fire_times(
    expression: str, timezone: str, after: datetime, count: int = 1
) -> list[datetime]:
    times = iter_fire_times(expression, timezone, after)
    return [next(times) for _ in range(count)]


def fire_times_between(
    expression: str, timezone: str, start: datetime, end: datetime
) -> list[datetime]:
    """Fire times in ``(start, end]``."""
    result = []
    for fire_time in iter_fire_times(expression, timezone, start):
        if fire_time > end:
            break
        result.append(fire_time)
    return result
