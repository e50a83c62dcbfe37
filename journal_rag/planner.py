"""Turn each sub-question into a validated, owner-scoped AnalysisPlan.

Plans come from the planning model when one is configured, otherwise from a
deterministic draft built from the sub-question's parameters. Either way,
every filter is rebuilt through ``Filter`` (closed operator set) and the
owner predicate is replaced by the server-trusted requester id. When
planning fails, the planner falls back to a conservative vector search so
execution can always proceed.
"""

from __future__ import annotations

import json as json_module
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .cache import CacheNamespace, CacheService
from .constants import (
    DEFAULT_SELECT_LIMIT,
    DEFAULT_VECTOR_THRESHOLD,
    DEFAULT_VECTOR_TOP_K,
    DEGRADED_THRESHOLD,
    DEGRADED_TOP_K,
    EMOTION_SCORE_FLOOR,
    PLANNER_MODEL,
)
from .errors import ValidationError
from .llm import GeminiModel
from .logger import LOGGER
from .models import (
    OWNER_ALIASES,
    OWNER_COLUMN,
    SELECTABLE_COLUMNS,
    AnalysisPlan,
    Filter,
    FilterOperator,
    NestedScore,
    PlanKind,
    SearchStrategy,
    StructuredOperation,
    StructuredSpec,
    SubQuestion,
    SubQuestionType,
    TimeRange,
    VectorSpec,
)

# Structured operation each structured plan kind must use
_KIND_OPERATIONS = {
    PlanKind.COUNT: frozenset({StructuredOperation.COUNT}),
    PlanKind.SELECT: frozenset({StructuredOperation.SELECT}),
    PlanKind.CALCULATION: frozenset({StructuredOperation.PERCENTAGE, StructuredOperation.TOP_EMOTIONS}),
    PlanKind.HYBRID: frozenset(StructuredOperation),
}

_COUNT_KINDS = frozenset({"count", "frequency", "how_many"})
_PERCENTAGE_KINDS = frozenset({"percentage", "ratio", "proportion"})


# =============================================================================
# Validation helpers
# =============================================================================

def _is_owner_filter_raw(raw: Any) -> bool:
    if isinstance(raw, Filter):
        return raw.is_owner_filter
    if not isinstance(raw, dict):
        return False
    column = str(raw.get("column", "")).strip().lower()
    operator = str(raw.get("operator", "")).strip().lower()
    return column in OWNER_ALIASES or operator == FilterOperator.EQUALS_CURRENT_OWNER.value


def owner_filter(owner_id: str) -> Filter:
    return Filter(OWNER_COLUMN, FilterOperator.EQUALS_CURRENT_OWNER, owner_id)


def secure_filters(raw_filters: Iterable[Any], owner_id: str) -> Tuple[Filter, ...]:
    """Re-validate a filter chain and bind it to the trusted owner.

    Any owner predicate that arrived with the chain (generated, fabricated,
    or copied from the request) is discarded; exactly one predicate bound
    to ``owner_id`` is appended. Unknown operators or columns raise
    ``ValidationError``.
    """
    if not owner_id:
        raise ValidationError("owner_id is required to scope a plan")

    secured: List[Filter] = []
    dropped = 0
    for raw in raw_filters or ():
        if _is_owner_filter_raw(raw):
            dropped += 1
            continue
        flt = raw if isinstance(raw, Filter) else Filter.from_dict(raw)
        if flt not in secured:
            secured.append(flt)

    if dropped:
        LOGGER.info("Planner: discarded %d upstream owner filter(s), binding trusted owner", dropped)
    secured.append(owner_filter(owner_id))
    return tuple(secured)


def merge_time_range(plan: AnalysisPlan, time_range: Optional[TimeRange]) -> AnalysisPlan:
    """Scope ``plan`` to ``time_range``; applying it twice changes nothing."""
    if time_range is None or time_range.is_empty:
        return plan

    structured = plan.structured
    if structured is not None:
        filters = list(structured.filters)
        bounds = (
            (FilterOperator.GTE, time_range.start),
            (FilterOperator.LTE, time_range.end),
        )
        for operator, bound in bounds:
            if bound is None:
                continue
            wanted = Filter("created_at", operator, bound)
            if wanted in filters:
                continue
            filters = [f for f in filters if not (f.column == "created_at" and f.operator == operator)]
            filters.append(wanted)
        if tuple(filters) != structured.filters:
            structured = replace(structured, filters=tuple(filters))

    vector = plan.vector
    if vector is not None and vector.date_window != time_range:
        vector = replace(vector, date_window=time_range)

    if structured is plan.structured and vector is plan.vector:
        return plan
    return replace(plan, structured=structured, vector=vector)


def _clamp_int(value: Any, default: int, low: int, high: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return max(low, min(high, number))


def _clamp_float(value: Any, default: float, low: float, high: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return max(low, min(high, number))


# =============================================================================
# AnalysisPlanner
# =============================================================================

class AnalysisPlanner:
    """Produce one AnalysisPlan per sub-question."""

    def __init__(
        self,
        model: Optional[GeminiModel] = None,
        cache: Optional[CacheService] = None,
        use_model: bool = True,
    ):
        self.use_model = use_model
        self.model = model if model is not None else (GeminiModel(PLANNER_MODEL) if use_model else None)
        self.cache = cache

    # -----------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------

    def plan(
        self,
        sub_question: SubQuestion,
        owner_id: str,
        time_range: Optional[TimeRange] = None,
    ) -> AnalysisPlan:
        window = time_range or sub_question.parameters.time_range
        key = self._cache_key(sub_question, owner_id, window)
        if self.cache is not None and key is not None:
            cached = self.cache.get(CacheNamespace.PLAN, key)
            if cached is not None:
                LOGGER.debug("Planner: plan cache hit for '%s'", sub_question.text[:60])
                return cached

        try:
            if self.use_model and self.model is not None:
                plan = self._plan_with_model(sub_question, owner_id)
            else:
                plan = self.draft_plan(sub_question, owner_id)
        except Exception as exc:
            LOGGER.warning(
                "Planner failed for '%s' (%s), using degraded vector plan",
                sub_question.text[:60], exc,
            )
            plan = self.degraded_plan(sub_question)

        plan = merge_time_range(plan, window)

        if self.cache is not None and key is not None and not plan.degraded:
            self.cache.set(CacheNamespace.PLAN, key, plan)

        LOGGER.info(
            "Planner [%s]: kind=%s structured=%s vector=%s degraded=%s",
            sub_question.type.value,
            plan.kind.value,
            plan.structured.operation.value if plan.structured else None,
            plan.uses_vector,
            plan.degraded,
        )
        return plan

    @staticmethod
    def degraded_plan(sub_question: SubQuestion) -> AnalysisPlan:
        """Conservative vector search over the raw sub-question text."""
        return AnalysisPlan(
            kind=PlanKind.VECTOR_SEARCH,
            structured=None,
            vector=VectorSpec(
                query_text=sub_question.text,
                top_k=DEGRADED_TOP_K,
                threshold=DEGRADED_THRESHOLD,
            ),
            rationale="Planning failed; falling back to semantic search over the question text",
            degraded=True,
        )

    def draft_plan(self, sub_question: SubQuestion, owner_id: str) -> AnalysisPlan:
        """Deterministic plan derived from the sub-question's parameters."""
        params = sub_question.parameters
        analysis_kind = (params.analysis_kind or "").lower()
        term_filters = self._term_filters(sub_question)
        query_text = self._vector_text(sub_question)
        vector = VectorSpec(
            query_text=query_text,
            top_k=DEFAULT_VECTOR_TOP_K,
            threshold=DEFAULT_VECTOR_THRESHOLD,
        )

        if analysis_kind in _COUNT_KINDS:
            return AnalysisPlan(
                kind=PlanKind.COUNT,
                structured=StructuredSpec(
                    operation=StructuredOperation.COUNT,
                    filters=secure_filters(term_filters, owner_id),
                ),
                rationale="Counting intent",
            )

        if analysis_kind in _PERCENTAGE_KINDS and term_filters:
            return AnalysisPlan(
                kind=PlanKind.CALCULATION,
                structured=StructuredSpec(
                    operation=StructuredOperation.PERCENTAGE,
                    filters=secure_filters([], owner_id),
                    subset_filters=tuple(term_filters),
                ),
                rationale="Share of entries matching the requested terms",
            )

        windowed = params.time_range is not None and not params.time_range.is_empty
        if sub_question.type in (SubQuestionType.EMOTIONAL, SubQuestionType.TEMPORAL) and windowed:
            operation = (
                StructuredOperation.TOP_EMOTIONS
                if sub_question.type == SubQuestionType.EMOTIONAL
                else StructuredOperation.SELECT
            )
            return AnalysisPlan(
                kind=PlanKind.HYBRID,
                structured=StructuredSpec(
                    operation=operation,
                    filters=secure_filters(term_filters, owner_id),
                    limit=DEFAULT_SELECT_LIMIT,
                ),
                vector=vector,
                rationale="Time-windowed question: aggregate the window and pull representative entries",
            )

        if sub_question.strategy == SearchStrategy.HYBRID:
            return AnalysisPlan(
                kind=PlanKind.HYBRID,
                structured=StructuredSpec(
                    operation=StructuredOperation.SELECT,
                    filters=secure_filters(term_filters, owner_id),
                    limit=DEFAULT_SELECT_LIMIT,
                ),
                vector=vector,
                rationale="Both structured filters and semantic similarity are informative",
            )

        if sub_question.strategy == SearchStrategy.STRUCTURED:
            if sub_question.type == SubQuestionType.EMOTIONAL and not term_filters:
                return AnalysisPlan(
                    kind=PlanKind.CALCULATION,
                    structured=StructuredSpec(
                        operation=StructuredOperation.TOP_EMOTIONS,
                        filters=secure_filters([], owner_id),
                    ),
                    rationale="Emotion summary",
                )
            return AnalysisPlan(
                kind=PlanKind.SELECT,
                structured=StructuredSpec(
                    operation=StructuredOperation.SELECT,
                    filters=secure_filters(term_filters, owner_id),
                    limit=DEFAULT_SELECT_LIMIT,
                ),
                rationale="Exact criteria on structured metadata",
            )

        return AnalysisPlan(
            kind=PlanKind.VECTOR_SEARCH,
            vector=vector,
            rationale="Semantic retrieval of example entries",
        )

    def validate_plan(self, raw: Any, sub_question: SubQuestion, owner_id: str) -> AnalysisPlan:
        """Rebuild a model-produced plan through the typed model.

        Raises ``ValidationError`` for anything outside the closed plan and
        operator vocabularies.
        """
        if not isinstance(raw, dict):
            raise ValidationError(f"plan must be an object, got {type(raw).__name__}")
        try:
            kind = PlanKind(str(raw.get("kind", "")).strip().lower())
        except ValueError:
            raise ValidationError(f"unknown plan kind: {raw.get('kind')!r}")

        structured = self._structured_from_dict(raw.get("structured"), owner_id)
        vector = self._vector_from_dict(raw.get("vector"), sub_question)

        if kind == PlanKind.VECTOR_SEARCH:
            if vector is None:
                raise ValidationError("vector_search plan without a vector spec")
            structured = None
        else:
            if structured is None:
                raise ValidationError(f"{kind.value} plan without a structured spec")
            if structured.operation not in _KIND_OPERATIONS[kind]:
                raise ValidationError(
                    f"{kind.value} plan cannot use operation {structured.operation.value}"
                )
            if kind == PlanKind.HYBRID:
                if vector is None:
                    vector = VectorSpec(query_text=self._vector_text(sub_question))
            else:
                vector = None

        return AnalysisPlan(
            kind=kind,
            structured=structured,
            vector=vector,
            rationale=str(raw.get("rationale") or ""),
        )

    # -----------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------

    def _plan_with_model(self, sub_question: SubQuestion, owner_id: str) -> AnalysisPlan:
        draft = self.draft_plan(sub_question, owner_id)
        params = sub_question.parameters
        prompt = f"""You plan retrieval over a table of personal journal entries.

COLUMNS:
- created_at (timestamp): operators equals, gte, lte
- refined_text, transcription_text (text): operators equals, contains_text
- master_themes, entities (text[]): operator array_contains
- emotions (json of emotion -> score 0..1): operator nested_key_gte with value {{"key": "<emotion>", "value": <min score>}}
- sentiment (number -1..1): operators equals, gte, lte
Ownership scoping is added automatically; do not filter on any user or owner id.

PLAN KINDS:
- count: structured operation "count"
- select: structured operation "select"
- calculation: structured operation "percentage" (filters = base set, subsetFilters = numerator) or "top_emotions"
- vector_search: semantic similarity only
- hybrid: a structured operation plus vector search

SUB-QUESTION: "{sub_question.text}"
TYPE: {sub_question.type.value}  PREFERRED STRATEGY: {sub_question.strategy.value}
THEMES: {list(params.themes)}  EMOTIONS: {list(params.emotions)}  ENTITIES: {list(params.entities)}
ANALYSIS: {params.analysis_kind or "none"}

A reasonable starting point: {json_module.dumps(self._plan_to_dict(draft))}

Return ONLY JSON:
{{"kind": "count|select|calculation|vector_search|hybrid",
  "structured": {{"operation": "select|count|percentage|top_emotions", "filters": [{{"column": "", "operator": "", "value": null}}],
                 "subsetFilters": [], "columns": [], "orderBy": "created_at", "descending": true, "limit": 20}} or null,
  "vector": {{"enabled": true, "queryText": "", "topK": 10, "threshold": 0.3}} or null,
  "rationale": "short"}}"""

        raw = self.model.generate_json(prompt)
        LOGGER.debug("AnalysisPlanner RAW response: %s", json_module.dumps(raw)[:500])
        return self.validate_plan(raw, sub_question, owner_id)

    @staticmethod
    def _structured_from_dict(raw: Any, owner_id: str) -> Optional[StructuredSpec]:
        if raw is None:
            return None
        if not isinstance(raw, dict):
            raise ValidationError("structured spec must be an object")
        try:
            operation = StructuredOperation(str(raw.get("operation", "")).strip().lower())
        except ValueError:
            raise ValidationError(f"unknown structured operation: {raw.get('operation')!r}")

        columns = tuple(raw.get("columns") or ())
        unknown = [c for c in columns if c not in SELECTABLE_COLUMNS]
        if unknown:
            raise ValidationError(f"columns not selectable: {unknown}")

        subset = [f for f in (raw.get("subsetFilters") or []) if not _is_owner_filter_raw(f)]
        order_by = raw.get("orderBy") or "created_at"
        if order_by not in SELECTABLE_COLUMNS:
            raise ValidationError(f"cannot order by {order_by!r}")

        return StructuredSpec(
            operation=operation,
            filters=secure_filters(raw.get("filters") or [], owner_id),
            subset_filters=tuple(Filter.from_dict(f) for f in subset),
            columns=columns,
            order_by=order_by,
            descending=bool(raw.get("descending", True)),
            limit=_clamp_int(raw.get("limit"), DEFAULT_SELECT_LIMIT, 1, 100),
        )

    def _vector_from_dict(self, raw: Any, sub_question: SubQuestion) -> Optional[VectorSpec]:
        if raw is None:
            return None
        if not isinstance(raw, dict):
            raise ValidationError("vector spec must be an object")
        if not raw.get("enabled", True):
            return None
        query_text = str(raw.get("queryText") or "").strip() or self._vector_text(sub_question)
        return VectorSpec(
            query_text=query_text,
            top_k=_clamp_int(raw.get("topK"), DEFAULT_VECTOR_TOP_K, 1, 50),
            threshold=_clamp_float(raw.get("threshold"), DEFAULT_VECTOR_THRESHOLD, 0.0, 1.0),
        )

    @staticmethod
    def _term_filters(sub_question: SubQuestion) -> List[Filter]:
        params = sub_question.parameters
        filters: List[Filter] = []
        if params.themes:
            filters.append(Filter("master_themes", FilterOperator.ARRAY_CONTAINS, params.themes[0]))
        if params.emotions:
            filters.append(Filter(
                "emotions",
                FilterOperator.NESTED_KEY_GTE,
                NestedScore(params.emotions[0], EMOTION_SCORE_FLOOR),
            ))
        if params.entities:
            filters.append(Filter("entities", FilterOperator.ARRAY_CONTAINS, params.entities[0]))
        return filters

    @staticmethod
    def _vector_text(sub_question: SubQuestion) -> str:
        params = sub_question.parameters
        extras = list(params.emotions) + list(params.themes) + list(params.entities)
        if not extras:
            return sub_question.text
        return f"{sub_question.text} ({', '.join(extras)})"

    @staticmethod
    def _plan_to_dict(plan: AnalysisPlan) -> Dict[str, Any]:
        structured = None
        if plan.structured is not None:
            structured = {
                "operation": plan.structured.operation.value,
                "filters": [f.to_dict() for f in plan.structured.filters if not f.is_owner_filter],
                "subsetFilters": [f.to_dict() for f in plan.structured.subset_filters],
                "limit": plan.structured.limit,
            }
        vector = None
        if plan.vector is not None:
            vector = {
                "enabled": plan.vector.enabled,
                "queryText": plan.vector.query_text,
                "topK": plan.vector.top_k,
                "threshold": plan.vector.threshold,
            }
        return {"kind": plan.kind.value, "structured": structured, "vector": vector}

    def _cache_key(
        self,
        sub_question: SubQuestion,
        owner_id: str,
        window: Optional[TimeRange],
    ) -> Optional[str]:
        if self.cache is None:
            return None
        params = sub_question.parameters
        return self.cache.make_key(
            sub_question.text,
            owner_id,
            {
                "type": sub_question.type.value,
                "strategy": sub_question.strategy.value,
                "themes": list(params.themes),
                "emotions": list(params.emotions),
                "entities": list(params.entities),
                "analysis": params.analysis_kind,
                "window": window.to_dict() if window else None,
                "model": self.use_model,
            },
        )


__all__ = ["AnalysisPlanner", "merge_time_range", "owner_filter", "secure_filters"]
