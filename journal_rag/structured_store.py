"""Owner-scoped reads against the PostgreSQL journal store.

Only validated ``Filter`` objects ever reach SQL. Each one is rendered with
``psycopg.sql`` composition (identifiers quoted, values bound as
parameters), and the aggregations are fixed, predefined statements. No
caller-supplied SQL string is accepted anywhere in this module.
"""

from __future__ import annotations

import re
from typing import Any, Callable, ContextManager, Dict, List, Optional, Sequence, Tuple

import psycopg
from psycopg import sql

from .errors import UpstreamProviderError, ValidationError
from .logger import LOGGER
from .models import (
    JOURNAL_COLUMNS,
    OWNER_COLUMN,
    SELECTABLE_COLUMNS,
    Filter,
    FilterOperator,
    PercentageResult,
    StructuredSpec,
    TimeRange,
)
from .pg_database import pg_connection

JOURNAL_TABLE = "journal_entries"
THEMES_TABLE = "themes"
EMOTIONS_TABLE = "emotions"

# Always selected so every row can be cited
_BASE_COLUMNS = ("id", "created_at", "refined_text")

_STOPWORDS = frozenset({
    "the", "and", "for", "was", "were", "what", "when", "where", "which", "who",
    "how", "did", "does", "have", "has", "had", "about", "with", "that", "this",
    "from", "they", "them", "their", "there", "been", "being", "into", "over",
    "your", "you", "mine", "myself", "feel", "felt", "any", "are", "can", "could",
    "would", "should", "tell", "show", "give", "last", "past", "week", "month",
    "ive", "didnt", "dont", "doesnt", "cant", "wont", "its", "isnt", "wasnt",
})

_APOSTROPHES = re.compile(r"['\u2019]")


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def keyword_terms(text: str, max_terms: int = 8) -> List[str]:
    """Significant lowercase words of ``text`` for full-text matching.

    Apostrophes are removed before splitting, so every term is plain ASCII
    letters and safe inside a tsquery.
    """
    seen: List[str] = []
    for word in re.findall(r"[a-z]+", _APOSTROPHES.sub("", text.lower())):
        if len(word) < 3 or word in _STOPWORDS or word in seen:
            continue
        seen.append(word)
        if len(seen) >= max_terms:
            break
    return seen


def render_predicate(flt: Filter, owner_id: str) -> Tuple[sql.Composable, List[Any]]:
    """Render one filter as a parameterized SQL predicate."""
    column = sql.Identifier(flt.column)
    op = flt.operator

    if op == FilterOperator.EQUALS_CURRENT_OWNER:
        # Always the trusted owner, whatever the filter carries
        return sql.SQL("{} = %s").format(column), [owner_id]
    if op == FilterOperator.EQUALS:
        return sql.SQL("{} = %s").format(column), [flt.value]
    if op == FilterOperator.GTE:
        return sql.SQL("{} >= %s").format(column), [flt.value]
    if op == FilterOperator.LTE:
        return sql.SQL("{} <= %s").format(column), [flt.value]
    if op == FilterOperator.CONTAINS_TEXT:
        return sql.SQL("{} ILIKE %s").format(column), [f"%{_escape_like(flt.value)}%"]
    if op == FilterOperator.ARRAY_CONTAINS:
        return sql.SQL("%s = ANY({})").format(column), [flt.value]
    if op == FilterOperator.NESTED_KEY_GTE:
        return (
            sql.SQL("({} ->> %s)::float >= %s").format(column),
            [flt.value.key, flt.value.minimum],
        )
    raise ValidationError(f"Unsupported filter operator: {op!r}")


def render_where(filters: Sequence[Filter], owner_id: str) -> Tuple[sql.Composable, List[Any]]:
    """AND together a validated filter chain.

    The chain must contain exactly one owner predicate; anything else means
    validation was skipped upstream and the query is refused.
    """
    if not owner_id:
        raise ValidationError("owner_id is required for structured queries")
    owner_filters = [f for f in filters if f.is_owner_filter]
    if len(owner_filters) != 1:
        raise ValidationError(
            f"Filter chain must contain exactly one owner predicate, found {len(owner_filters)}"
        )

    parts: List[sql.Composable] = []
    params: List[Any] = []
    for flt in filters:
        predicate, values = render_predicate(flt, owner_id)
        parts.append(predicate)
        params.extend(values)
    return sql.SQL(" AND ").join(parts), params


def _normalize_row(row: Dict[str, Any]) -> Dict[str, Any]:
    created_at = row.get("created_at")
    return {
        "id": row.get("id"),
        "content": row.get("refined_text") or row.get("transcription_text") or "",
        "created_at": created_at.isoformat() if hasattr(created_at, "isoformat") else created_at,
        "themes": row.get("master_themes") or [],
        "emotions": row.get("emotions") or {},
        "entities": row.get("entities") or [],
        "sentiment": row.get("sentiment"),
        "rank": row.get("rank"),
    }


class JournalStore:
    """Predefined structured queries against the journal table."""

    def __init__(self, connection_factory: Callable[[], ContextManager[psycopg.Connection]] = pg_connection):
        self._connection = connection_factory

    # -----------------------------------------------------------------
    # Plumbing
    # -----------------------------------------------------------------

    def _fetch_all(self, query: sql.Composable, params: Sequence[Any], label: str) -> List[Dict[str, Any]]:
        try:
            with self._connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(query, params)
                    return list(cur.fetchall())
        except psycopg.Error as exc:
            LOGGER.warning("JournalStore [%s] failed: %s", label, exc)
            raise UpstreamProviderError("structured_store", f"{label}: {exc}", exc) from exc

    def _fetch_scalar(self, query: sql.Composable, params: Sequence[Any], label: str) -> int:
        rows = self._fetch_all(query, params, label)
        if not rows:
            return 0
        value = next(iter(rows[0].values()))
        return int(value or 0)

    @staticmethod
    def _window_filters(date_window: Optional[TimeRange]) -> List[Filter]:
        if date_window is None or date_window.is_empty:
            return []
        filters = []
        if date_window.start:
            filters.append(Filter("created_at", FilterOperator.GTE, date_window.start))
        if date_window.end:
            filters.append(Filter("created_at", FilterOperator.LTE, date_window.end))
        return filters

    @staticmethod
    def _owner_only() -> Filter:
        return Filter(OWNER_COLUMN, FilterOperator.EQUALS_CURRENT_OWNER)

    # -----------------------------------------------------------------
    # Structured plans
    # -----------------------------------------------------------------

    def select(self, spec: StructuredSpec, owner_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        columns = list(_BASE_COLUMNS)
        for column in spec.columns or SELECTABLE_COLUMNS:
            if column not in JOURNAL_COLUMNS or column == OWNER_COLUMN:
                raise ValidationError(f"Column not selectable: {column!r}")
            if column not in columns:
                columns.append(column)

        order_by = spec.order_by if spec.order_by in JOURNAL_COLUMNS else "created_at"
        where, params = render_where(spec.filters, owner_id)
        query = sql.SQL("SELECT {cols} FROM {table} WHERE {where} ORDER BY {order} {direction} LIMIT %s").format(
            cols=sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            table=sql.Identifier(JOURNAL_TABLE),
            where=where,
            order=sql.Identifier(order_by),
            direction=sql.SQL("DESC" if spec.descending else "ASC"),
        )
        rows = self._fetch_all(query, params + [limit or spec.limit], "select")
        return [_normalize_row(r) for r in rows]

    def count(self, filters: Sequence[Filter], owner_id: str) -> int:
        where, params = render_where(filters, owner_id)
        query = sql.SQL("SELECT COUNT(*) AS total FROM {table} WHERE {where}").format(
            table=sql.Identifier(JOURNAL_TABLE), where=where,
        )
        return self._fetch_scalar(query, params, "count")

    def percentage(
        self,
        filters: Sequence[Filter],
        subset_filters: Sequence[Filter],
        owner_id: str,
    ) -> PercentageResult:
        total = self.count(filters, owner_id)
        subset = self.count(list(filters) + list(subset_filters), owner_id) if subset_filters else total
        return PercentageResult(subset_count=subset, total_count=total)

    def top_emotions(self, filters: Sequence[Filter], owner_id: str, limit: int = 5) -> List[Dict[str, Any]]:
        where, params = render_where(filters, owner_id)
        query = sql.SQL(
            "SELECT e.key AS emotion, AVG(e.value::float) AS average_score, COUNT(*) AS entry_count "
            "FROM {table}, jsonb_each_text({emotions}) AS e "
            "WHERE {where} GROUP BY e.key ORDER BY average_score DESC LIMIT %s"
        ).format(
            table=sql.Identifier(JOURNAL_TABLE),
            emotions=sql.Identifier("emotions"),
            where=where,
        )
        rows = self._fetch_all(query, params + [limit], "top_emotions")
        return [
            {
                "emotion": r["emotion"],
                "averageScore": round(float(r["average_score"] or 0.0), 3),
                "entryCount": int(r["entry_count"] or 0),
            }
            for r in rows
        ]

    # -----------------------------------------------------------------
    # Fallback reads
    # -----------------------------------------------------------------

    def keyword_search(
        self,
        owner_id: str,
        text: str,
        limit: int,
        date_window: Optional[TimeRange] = None,
    ) -> List[Dict[str, Any]]:
        """Full-text match over entry text, OR-ing the significant words."""
        terms = keyword_terms(text)
        if not terms:
            return []
        ts_query = " or ".join(terms)

        filters = [self._owner_only()] + self._window_filters(date_window)
        where, params = render_where(filters, owner_id)
        document = sql.SQL("to_tsvector('english', coalesce({}, ''))").format(sql.Identifier("refined_text"))
        query = sql.SQL(
            "SELECT {cols}, ts_rank({doc}, websearch_to_tsquery('english', %s)) AS rank FROM {table} "
            "WHERE {where} AND {doc} @@ websearch_to_tsquery('english', %s) ORDER BY rank DESC LIMIT %s"
        ).format(
            cols=sql.SQL(", ").join(sql.Identifier(c) for c in SELECTABLE_COLUMNS),
            doc=document,
            table=sql.Identifier(JOURNAL_TABLE),
            where=where,
        )
        rows = self._fetch_all(query, [ts_query] + params + [ts_query, limit], "keyword_search")
        LOGGER.debug("JournalStore keyword_search owner=%s terms=%s -> %d rows", owner_id, terms, len(rows))
        return [_normalize_row(r) for r in rows]

    def most_recent(self, owner_id: str, limit: int) -> List[Dict[str, Any]]:
        where, params = render_where([self._owner_only()], owner_id)
        query = sql.SQL("SELECT {cols} FROM {table} WHERE {where} ORDER BY {created} DESC LIMIT %s").format(
            cols=sql.SQL(", ").join(sql.Identifier(c) for c in SELECTABLE_COLUMNS),
            table=sql.Identifier(JOURNAL_TABLE),
            where=where,
            created=sql.Identifier("created_at"),
        )
        return [_normalize_row(r) for r in self._fetch_all(query, params + [limit], "most_recent")]

    def count_entries(self, owner_id: str) -> int:
        return self.count([self._owner_only()], owner_id)

    # -----------------------------------------------------------------
    # Vocabularies
    # -----------------------------------------------------------------

    def vocabularies(self) -> Tuple[List[str], List[str]]:
        """Active theme names and emotion names."""
        themes = self._fetch_all(
            sql.SQL("SELECT name FROM {} WHERE is_active ORDER BY name").format(sql.Identifier(THEMES_TABLE)),
            [],
            "themes",
        )
        emotions = self._fetch_all(
            sql.SQL("SELECT name FROM {} ORDER BY name").format(sql.Identifier(EMOTIONS_TABLE)),
            [],
            "emotions",
        )
        return [r["name"] for r in themes], [r["name"] for r in emotions]


__all__ = ["JournalStore", "keyword_terms", "render_predicate", "render_where", "JOURNAL_TABLE"]
