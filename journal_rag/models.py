"""Typed request, plan, and result objects shared by the pipeline stages.

All objects are created per request and are immutable once built. Filters
form a closed tagged union: an unknown operator, an unknown column, or an
operator the column cannot support is rejected at construction time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from .constants import MAX_PRIORITY, MIN_PRIORITY
from .errors import ValidationError


# =============================================================================
# Enums
# =============================================================================

class QueryCategory(str, Enum):
    """Top-level routing category for a conversational turn."""
    JOURNAL_SPECIFIC = "JOURNAL_SPECIFIC"
    NEEDS_CLARIFICATION = "NEEDS_CLARIFICATION"
    GENERAL = "GENERAL"


class SubQuestionType(str, Enum):
    TEMPORAL = "temporal"
    EMOTIONAL = "emotional"
    THEMATIC = "thematic"
    ENTITY = "entity"
    ANALYTICAL = "analytical"
    CONTEXTUAL = "contextual"


class SearchStrategy(str, Enum):
    """Preferred retrieval strategy for a sub-question."""
    VECTOR = "vector"
    STRUCTURED = "structured"
    HYBRID = "hybrid"


class PlanKind(str, Enum):
    COUNT = "count"
    SELECT = "select"
    CALCULATION = "calculation"
    VECTOR_SEARCH = "vector_search"
    HYBRID = "hybrid"


class StructuredOperation(str, Enum):
    """Predefined structured-store calls. No ad-hoc SQL exists."""
    SELECT = "select"
    COUNT = "count"
    PERCENTAGE = "percentage"
    TOP_EMOTIONS = "top_emotions"


class FilterOperator(str, Enum):
    EQUALS = "equals"
    EQUALS_CURRENT_OWNER = "equals_current_owner"
    GTE = "gte"
    LTE = "lte"
    CONTAINS_TEXT = "contains_text"
    ARRAY_CONTAINS = "array_contains"
    NESTED_KEY_GTE = "nested_key_gte"


class ColumnKind(str, Enum):
    OWNER = "owner"
    IDENTIFIER = "identifier"
    TEXT = "text"
    TIMESTAMP = "timestamp"
    NUMBER = "number"
    TEXT_ARRAY = "text_array"
    SCORE_MAP = "score_map"


class ExecutionState(str, Enum):
    PLANNED = "PLANNED"
    PRIMARY_ATTEMPTED = "PRIMARY_ATTEMPTED"
    SECONDARY_ATTEMPTED = "SECONDARY_ATTEMPTED"
    SUCCEEDED = "SUCCEEDED"
    DEGRADED = "DEGRADED"
    FAILED = "FAILED"


class ConfidenceTag(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class SearchMethod(str, Enum):
    """How evidence for a fragment (or the whole request) was obtained."""
    VECTOR = "vector"
    STRUCTURED = "structured"
    HYBRID = "hybrid"
    KEYWORD_FALLBACK = "keyword_fallback"
    RECENT_FALLBACK = "recent_fallback"
    NONE = "none"


TERMINAL_STATES = frozenset({
    ExecutionState.SUCCEEDED,
    ExecutionState.DEGRADED,
    ExecutionState.FAILED,
})


# =============================================================================
# Journal columns (the only columns a Filter may reference)
# =============================================================================

OWNER_COLUMN = "owner_id"

JOURNAL_COLUMNS: Dict[str, ColumnKind] = {
    OWNER_COLUMN: ColumnKind.OWNER,
    "id": ColumnKind.IDENTIFIER,
    "created_at": ColumnKind.TIMESTAMP,
    "refined_text": ColumnKind.TEXT,
    "transcription_text": ColumnKind.TEXT,
    "master_themes": ColumnKind.TEXT_ARRAY,
    "entities": ColumnKind.TEXT_ARRAY,
    "emotions": ColumnKind.SCORE_MAP,
    "sentiment": ColumnKind.NUMBER,
}

# Columns the owner might be smuggled in under by an upstream model
OWNER_ALIASES = frozenset({OWNER_COLUMN, "user_id", "userid", "owner", "requester_id"})

OPERATORS_BY_KIND: Dict[ColumnKind, frozenset] = {
    ColumnKind.OWNER: frozenset({FilterOperator.EQUALS_CURRENT_OWNER}),
    ColumnKind.IDENTIFIER: frozenset({FilterOperator.EQUALS}),
    ColumnKind.TEXT: frozenset({FilterOperator.EQUALS, FilterOperator.CONTAINS_TEXT}),
    ColumnKind.TIMESTAMP: frozenset({FilterOperator.EQUALS, FilterOperator.GTE, FilterOperator.LTE}),
    ColumnKind.NUMBER: frozenset({FilterOperator.EQUALS, FilterOperator.GTE, FilterOperator.LTE}),
    ColumnKind.TEXT_ARRAY: frozenset({FilterOperator.ARRAY_CONTAINS}),
    ColumnKind.SCORE_MAP: frozenset({FilterOperator.NESTED_KEY_GTE}),
}

# Columns selectable in a structured ``select``
SELECTABLE_COLUMNS = tuple(c for c in JOURNAL_COLUMNS if c != OWNER_COLUMN)


def parse_datetime(value: Any) -> datetime:
    """Parse an ISO date/datetime (or pass a datetime through) as an aware datetime."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValidationError(f"Invalid date value: {value!r}") from exc
    else:
        raise ValidationError(f"Invalid date value: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# =============================================================================
# Filters
# =============================================================================

class NestedScore(NamedTuple):
    """Payload of ``nested_key_gte``: ``column ->> key >= minimum``."""
    key: str
    minimum: float


@dataclass(frozen=True)
class Filter:
    """One predicate against the journal table."""
    column: str
    operator: FilterOperator
    value: Any = None

    def __post_init__(self) -> None:
        try:
            operator = FilterOperator(self.operator)
        except ValueError:
            raise ValidationError(f"Unsupported filter operator: {self.operator!r}")
        object.__setattr__(self, "operator", operator)

        kind = JOURNAL_COLUMNS.get(self.column)
        if kind is None:
            raise ValidationError(f"Unknown filter column: {self.column!r}")
        if operator not in OPERATORS_BY_KIND[kind]:
            raise ValidationError(
                f"Operator {operator.value} is not valid for column {self.column} ({kind.value})"
            )

        object.__setattr__(self, "value", self._coerce_value(kind, operator, self.value))

    @staticmethod
    def _coerce_value(kind: ColumnKind, operator: FilterOperator, value: Any) -> Any:
        if operator == FilterOperator.EQUALS_CURRENT_OWNER:
            # Bound to the trusted owner during plan validation
            return None if value is None else str(value)

        if operator == FilterOperator.NESTED_KEY_GTE:
            if isinstance(value, NestedScore):
                return value
            if isinstance(value, dict):
                key = value.get("key")
                minimum = value.get("value", value.get("minimum"))
            elif isinstance(value, (list, tuple)) and len(value) == 2:
                key, minimum = value
            else:
                raise ValidationError(f"nested_key_gte needs {{key, value}}, got {value!r}")
            if not isinstance(key, str) or not key.strip():
                raise ValidationError("nested_key_gte key must be a non-empty string")
            try:
                return NestedScore(key=key.strip(), minimum=float(minimum))
            except (TypeError, ValueError):
                raise ValidationError(f"nested_key_gte value must be numeric, got {minimum!r}")

        if kind == ColumnKind.TIMESTAMP:
            return parse_datetime(value)

        if kind == ColumnKind.NUMBER:
            if isinstance(value, bool):
                raise ValidationError(f"Numeric filter value expected, got {value!r}")
            try:
                return float(value)
            except (TypeError, ValueError):
                raise ValidationError(f"Numeric filter value expected, got {value!r}")

        if not isinstance(value, str) or not value.strip():
            raise ValidationError(
                f"{operator.value} on {kind.value} needs a non-empty string, got {value!r}"
            )
        return value.strip()

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Filter":
        if not isinstance(raw, dict):
            raise ValidationError(f"Filter must be an object, got {type(raw).__name__}")
        column = raw.get("column")
        operator = raw.get("operator")
        if not isinstance(column, str) or not isinstance(operator, str):
            raise ValidationError(f"Filter needs string column and operator: {raw!r}")
        return cls(column=column.strip(), operator=operator.strip().lower(), value=raw.get("value"))

    @property
    def is_owner_filter(self) -> bool:
        return self.operator == FilterOperator.EQUALS_CURRENT_OWNER or self.column == OWNER_COLUMN

    def to_dict(self) -> Dict[str, Any]:
        value = self.value
        if isinstance(value, NestedScore):
            value = {"key": value.key, "value": value.minimum}
        elif isinstance(value, datetime):
            value = value.isoformat()
        return {"column": self.column, "operator": self.operator.value, "value": value}


# =============================================================================
# Requests
# =============================================================================

@dataclass(frozen=True)
class TimeRange:
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.start and self.end and self.start > self.end:
            raise ValidationError(f"Time range start {self.start} is after end {self.end}")

    @property
    def is_empty(self) -> bool:
        return self.start is None and self.end is None

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["TimeRange"]:
        if not raw:
            return None
        if not isinstance(raw, dict):
            raise ValidationError(f"Time range must be an object, got {type(raw).__name__}")
        start = raw.get("start") or raw.get("startDate")
        end = raw.get("end") or raw.get("endDate")
        return cls(
            start=parse_datetime(start) if start else None,
            end=parse_datetime(end) if end else None,
        )

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
        }


@dataclass(frozen=True)
class ConversationTurn:
    role: str
    content: str
    timestamp: Optional[datetime] = None
    # Category assigned when this turn was classified (assistant turns carry
    # the category of the reply they answered)
    category: Optional[QueryCategory] = None


@dataclass(frozen=True)
class RequesterProfile:
    timezone: str = "UTC"
    # None means "unknown"; resolved from the store by the orchestrator
    record_count: Optional[int] = None
    locale: str = "en"


@dataclass(frozen=True)
class Question:
    text: str
    requester_id: str
    thread_id: Optional[str] = None
    history: Tuple[ConversationTurn, ...] = ()
    profile: RequesterProfile = field(default_factory=RequesterProfile)
    time_range: Optional[TimeRange] = None


@dataclass(frozen=True)
class Classification:
    category: QueryCategory
    canned_reply: Optional[str] = None
    skip_pipeline: bool = False
    confidence: float = 1.0
    reasoning: str = ""


# =============================================================================
# Sub-questions
# =============================================================================

@dataclass(frozen=True)
class SubQuestionParameters:
    time_range: Optional[TimeRange] = None
    emotions: Tuple[str, ...] = ()
    themes: Tuple[str, ...] = ()
    entities: Tuple[str, ...] = ()
    analysis_kind: Optional[str] = None


@dataclass(frozen=True)
class SubQuestion:
    text: str
    type: SubQuestionType
    priority: int = 3
    strategy: SearchStrategy = SearchStrategy.VECTOR
    parameters: SubQuestionParameters = field(default_factory=SubQuestionParameters)
    rationale: str = ""

    def __post_init__(self) -> None:
        try:
            priority = int(self.priority)
        except (TypeError, ValueError):
            priority = 3
        object.__setattr__(self, "priority", max(MIN_PRIORITY, min(MAX_PRIORITY, priority)))


# =============================================================================
# Plans
# =============================================================================

@dataclass(frozen=True)
class StructuredSpec:
    operation: StructuredOperation
    filters: Tuple[Filter, ...] = ()
    # Extra predicates for the numerator of a ``percentage``
    subset_filters: Tuple[Filter, ...] = ()
    columns: Tuple[str, ...] = ()
    order_by: Optional[str] = "created_at"
    descending: bool = True
    limit: int = 20

    def owner_filters(self) -> List[Filter]:
        return [f for f in self.filters if f.is_owner_filter]


@dataclass(frozen=True)
class VectorSpec:
    query_text: str
    enabled: bool = True
    top_k: int = 10
    threshold: float = 0.3
    date_window: Optional[TimeRange] = None


@dataclass(frozen=True)
class AnalysisPlan:
    kind: PlanKind
    structured: Optional[StructuredSpec] = None
    vector: Optional[VectorSpec] = None
    rationale: str = ""
    degraded: bool = False

    @property
    def uses_vector(self) -> bool:
        return self.vector is not None and self.vector.enabled

    @property
    def uses_structured(self) -> bool:
        return self.structured is not None


# =============================================================================
# Results
# =============================================================================

@dataclass(frozen=True)
class PercentageResult:
    subset_count: int
    total_count: int

    @property
    def percentage(self) -> float:
        if self.total_count <= 0:
            return 0.0
        return round(100.0 * self.subset_count / self.total_count, 1)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subsetCount": self.subset_count,
            "totalCount": self.total_count,
            "percentage": self.percentage,
        }


@dataclass
class ExecutionResult:
    """Outcome of one sub-question after the fallback chain settled."""
    sub_question: SubQuestion
    plan: Optional[AnalysisPlan]
    state: ExecutionState = ExecutionState.PLANNED
    vector_rows: List[Dict[str, Any]] = field(default_factory=list)
    structured_rows: List[Dict[str, Any]] = field(default_factory=list)
    count: Optional[int] = None
    percentage: Optional[PercentageResult] = None
    statistics: Optional[List[Dict[str, Any]]] = None
    error: Optional[str] = None
    confidence: ConfidenceTag = ConfidenceTag.HIGH
    attempts: int = 0
    fallbacks_used: List[str] = field(default_factory=list)
    search_method: SearchMethod = SearchMethod.NONE
    no_evidence: bool = False

    @property
    def rows(self) -> List[Dict[str, Any]]:
        return self.vector_rows + self.structured_rows

    @property
    def has_scalar(self) -> bool:
        return self.count is not None or self.percentage is not None or self.statistics is not None

    @property
    def has_evidence(self) -> bool:
        return bool(self.vector_rows or self.structured_rows) or self.has_scalar


@dataclass(frozen=True)
class RouteConfig:
    name: str
    max_concurrency: int
    timeout_seconds: float
    max_entries: int
    max_embeddings: int
    cache_strategy: str


__all__ = [
    # Enums
    "QueryCategory",
    "SubQuestionType",
    "SearchStrategy",
    "PlanKind",
    "StructuredOperation",
    "FilterOperator",
    "ColumnKind",
    "ExecutionState",
    "ConfidenceTag",
    "SearchMethod",
    # Constants
    "TERMINAL_STATES",
    "OWNER_COLUMN",
    "OWNER_ALIASES",
    "JOURNAL_COLUMNS",
    "OPERATORS_BY_KIND",
    "SELECTABLE_COLUMNS",
    # Dataclasses
    "NestedScore",
    "Filter",
    "TimeRange",
    "ConversationTurn",
    "RequesterProfile",
    "Question",
    "Classification",
    "SubQuestionParameters",
    "SubQuestion",
    "StructuredSpec",
    "VectorSpec",
    "AnalysisPlan",
    "PercentageResult",
    "ExecutionResult",
    "RouteConfig",
    # Functions
    "parse_datetime",
]
