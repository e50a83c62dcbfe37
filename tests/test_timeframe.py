"""Tests for relative time phrase detection."""

from datetime import datetime, timedelta, timezone

import pytest

from journal_rag.timeframe import detect_time_range, resolve_timezone

NOW = datetime(2026, 3, 15, 18, 30, tzinfo=timezone.utc)
MIDNIGHT = datetime(2026, 3, 15, tzinfo=timezone.utc)


@pytest.mark.parametrize("text, days_back", [
    ("How did I feel over the last 10 days?", 10),
    ("past 2 weeks at work", 14),
    ("what happened last week", 7),
    ("anything interesting lately?", 14),
    ("how was last month", 30),
])
def test_relative_windows(text, days_back):
    window = detect_time_range(text, "UTC", NOW)
    assert window.start == MIDNIGHT - timedelta(days=days_back)
    assert window.end == NOW


def test_yesterday_is_a_closed_day():
    window = detect_time_range("What did I do yesterday?", "UTC", NOW)
    assert window.start == MIDNIGHT - timedelta(days=1)
    assert window.end < MIDNIGHT


def test_this_week_starts_on_monday():
    # 2026-03-15 is a Sunday
    window = detect_time_range("how is this week going", "UTC", NOW)
    assert window.start == datetime(2026, 3, 9, tzinfo=timezone.utc)


def test_requester_timezone_is_used():
    window = detect_time_range("today", "Asia/Tokyo", NOW)
    # 18:30 UTC is already the 16th in Tokyo
    assert window.start.day == 16
    assert window.start.utcoffset() == timedelta(hours=9)


def test_no_phrase_returns_none():
    assert detect_time_range("What do I write about Dana?", "UTC", NOW) is None


def test_unknown_timezone_falls_back_to_utc():
    assert resolve_timezone("Mars/Olympus_Mons") == timezone.utc
    assert resolve_timezone(None) == timezone.utc
