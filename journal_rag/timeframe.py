"""Relative time phrase detection ("last week", "past 10 days", ...)."""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .logger import LOGGER
from .models import TimeRange

_LAST_N_DAYS = re.compile(r"\b(?:last|past|previous)\s+(\d{1,3})\s+days?\b")
_LAST_N_WEEKS = re.compile(r"\b(?:last|past|previous)\s+(\d{1,2})\s+weeks?\b")


def resolve_timezone(name: Optional[str]) -> timezone | ZoneInfo:
    if not name:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        LOGGER.warning("Unknown timezone '%s', using UTC", name)
        return timezone.utc


def _day_start(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def detect_time_range(
    text: str,
    tz_name: Optional[str] = "UTC",
    now: Optional[datetime] = None,
) -> Optional[TimeRange]:
    """Map a relative time phrase in ``text`` to a concrete window.

    Windows are computed in the requester's timezone and returned as aware
    datetimes. Returns None when no phrase is present.
    """
    lowered = (text or "").lower()
    tz = resolve_timezone(tz_name)
    current = (now or datetime.now(timezone.utc)).astimezone(tz)
    today = _day_start(current)

    match = _LAST_N_DAYS.search(lowered)
    if match:
        days = max(1, int(match.group(1)))
        return TimeRange(start=today - timedelta(days=days), end=current)

    match = _LAST_N_WEEKS.search(lowered)
    if match:
        weeks = max(1, int(match.group(1)))
        return TimeRange(start=today - timedelta(weeks=weeks), end=current)

    if re.search(r"\btoday\b|\bthis morning\b|\btonight\b", lowered):
        return TimeRange(start=today, end=current)

    if re.search(r"\byesterday\b", lowered):
        return TimeRange(start=today - timedelta(days=1), end=today - timedelta(microseconds=1))

    if re.search(r"\bthis week\b", lowered):
        return TimeRange(start=today - timedelta(days=today.weekday()), end=current)

    if re.search(r"\b(?:last|past|previous) week\b", lowered):
        return TimeRange(start=today - timedelta(days=7), end=current)

    if re.search(r"\bthis month\b", lowered):
        return TimeRange(start=today.replace(day=1), end=current)

    if re.search(r"\b(?:last|past|previous) month\b", lowered):
        return TimeRange(start=today - timedelta(days=30), end=current)

    if re.search(r"\b(?:last|past|previous) year\b|\bthis year\b", lowered):
        return TimeRange(start=today - timedelta(days=365), end=current)

    if re.search(r"\brecent(?:ly)?\b|\blately\b", lowered):
        return TimeRange(start=today - timedelta(days=14), end=current)

    return None


__all__ = ["detect_time_range", "resolve_timezone"]
