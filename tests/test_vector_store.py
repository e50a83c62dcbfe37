"""Tests for the owner-scoped Qdrant search adapter."""

from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from journal_rag.errors import UpstreamProviderError
from journal_rag.models import TimeRange
from journal_rag.vector_store import (
    OWNER_PAYLOAD_KEY,
    TIMESTAMP_PAYLOAD_KEY,
    JournalVectorSearch,
    build_owner_filter,
)


def test_owner_filter_always_present():
    flt = build_owner_filter("owner-1")
    assert [c.key for c in flt.must] == [OWNER_PAYLOAD_KEY]
    assert flt.must[0].match.value == "owner-1"


def test_date_window_adds_range():
    window = TimeRange(start=datetime(2026, 3, 1, tzinfo=timezone.utc))
    flt = build_owner_filter("owner-1", window)
    ts = flt.must[1]
    assert ts.key == TIMESTAMP_PAYLOAD_KEY
    assert ts.range.gte == window.start.timestamp()
    assert ts.range.lte is None


def test_owner_is_required():
    with pytest.raises(ValueError):
        build_owner_filter("")


def test_search_maps_points_to_rows():
    client = MagicMock()
    client.query_points.return_value = SimpleNamespace(points=[
        SimpleNamespace(id="p1", score=0.82, payload={
            "entry_id": 42, "content": "Long walk", "created_at": "2026-03-02", "emotions": {"calm": 0.6},
        }),
    ])
    rows = JournalVectorSearch(client, "journal").search([0.1] * 8, "owner-1", top_k=5, threshold=0.3)

    assert rows[0]["id"] == 42
    assert rows[0]["similarity"] == 0.82
    kwargs = client.query_points.call_args.kwargs
    assert kwargs["limit"] == 5
    assert kwargs["score_threshold"] == 0.3
    assert kwargs["query_filter"].must[0].match.value == "owner-1"


def test_client_errors_are_wrapped():
    client = MagicMock()
    client.query_points.side_effect = RuntimeError("connection reset")
    with pytest.raises(UpstreamProviderError):
        JournalVectorSearch(client, "journal").search([0.1], "owner-1", top_k=5, threshold=0.3)
