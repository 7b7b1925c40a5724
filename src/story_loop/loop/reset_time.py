"""Parse "resets 3am (Asia/Makassar)" announcements into a wait duration."""

from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from story_loop.loop.models import ResetHint

RESET_BUFFER = timedelta(seconds=60)

_RESET_PATTERN = re.compile(
    r"resets\s+(?P<hour>\d{1,2})\s*(?P<meridiem>am|pm)(?:\s*\((?P<tz>[A-Za-z0-9/_+\-]+)\))?",
    re.IGNORECASE,
)


def to_24_hour(hour: int, meridiem: str) -> int:
    """Convert a 12-hour clock reading; ``12am`` is 0 and ``12pm`` is 12."""

    if not 1 <= hour <= 12:
        raise ValueError(f"hour out of 12-hour range: {hour}")
    meridiem = meridiem.lower()
    if meridiem == "am":
        return 0 if hour == 12 else hour
    if meridiem == "pm":
        return 12 if hour == 12 else hour + 12
    raise ValueError(f"unknown meridiem: {meridiem!r}")


def next_occurrence(now: datetime, hour: int) -> datetime:
    """Next wall-clock ``hour:00`` strictly after ``now``."""

    target = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if _absolute(target) <= _absolute(now):
        target += timedelta(days=1)
    return target


def parse_reset_hint(output: str, *, now: datetime | None = None) -> ResetHint | None:
    """Find the first reset announcement in ``output``.

    The wait includes ``RESET_BUFFER``. When ``now`` is timezone-aware and the
    announcement names a known IANA zone, the hour is read in that zone;
    otherwise it is read in ``now``'s own frame. Returns ``None`` when nothing
    usable is found so callers can apply their own fallback.
    """

    reference = now or datetime.now()
    for match in _RESET_PATTERN.finditer(output):
        try:
            hour = to_24_hour(int(match.group("hour")), match.group("meridiem"))
        except ValueError:
            continue
        timezone = match.group("tz")
        local_now = _in_zone(reference, timezone)
        reset_at = next_occurrence(local_now, hour)
        return ResetHint(
            hour=hour,
            reset_at=reset_at,
            wait=(_absolute(reset_at) - _absolute(local_now)) + RESET_BUFFER,
            timezone=timezone,
            raw=match.group(0),
        )
    return None


def _in_zone(now: datetime, timezone: str | None) -> datetime:
    if timezone is None or now.tzinfo is None:
        return now
    try:
        return now.astimezone(ZoneInfo(timezone))
    except (ZoneInfoNotFoundError, ValueError):
        return now


def _absolute(moment: datetime) -> datetime:
    """Aware datetimes compare in UTC; same-zone arithmetic ignores DST shifts."""

    if moment.tzinfo is None:
        return moment
    return moment.astimezone(UTC)
