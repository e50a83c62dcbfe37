"""Run analysis plans against the stores with a per-fragment fallback chain.

Each sub-question moves through

    PLANNED -> PRIMARY_ATTEMPTED -> SECONDARY_ATTEMPTED -> SUCCEEDED | DEGRADED | FAILED

with at most three attempts: the plan's primary strategy, a keyword match
over entry text, then the owner's most recent entries. Fragment errors are
captured on the result; only ``ConfigurationError`` escapes.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from threading import Lock
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .cache import CacheNamespace, CacheService
from .constants import DEFAULT_VECTOR_TOP_K, MAX_ATTEMPTS, RECENT_FALLBACK_LIMIT
from .embeddings import CachedEmbedder
from .errors import ConfigurationError, PartialResultError, RetrievalFailedError, UpstreamProviderError
from .logger import LOGGER
from .models import (
    AnalysisPlan,
    ConfidenceTag,
    ExecutionResult,
    ExecutionState,
    PlanKind,
    RouteConfig,
    SearchMethod,
    StructuredOperation,
    StructuredSpec,
    SubQuestion,
    TERMINAL_STATES,
    TimeRange,
    VectorSpec,
)
from .profiling import time_async_function
from .retry import RetryPolicy, default_retry_policy
from .structured_store import JournalStore
from .vector_store import JournalVectorSearch

# Share of the route timeout the fan-out may use, so partial results reach
# the router before its own deadline
SETTLE_FRACTION = 0.9

_PRIMARY_METHODS = {
    PlanKind.VECTOR_SEARCH: SearchMethod.VECTOR,
    PlanKind.HYBRID: SearchMethod.HYBRID,
    PlanKind.COUNT: SearchMethod.STRUCTURED,
    PlanKind.SELECT: SearchMethod.STRUCTURED,
    PlanKind.CALCULATION: SearchMethod.STRUCTURED,
}


class EmbeddingBudget:
    """Thread-safe cap on embedding requests for one request's fan-out."""

    def __init__(self, limit: Optional[int]):
        self.limit = limit
        self.used = 0
        self.lock = Lock()

    def consume(self) -> None:
        with self.lock:
            if self.limit is not None and self.used >= self.limit:
                raise UpstreamProviderError("embedding", f"embedding budget of {self.limit} exhausted")
            self.used += 1


@dataclass
class StepOutcome:
    """Evidence produced by one attempt of the chain."""
    method: SearchMethod
    vector_rows: List[Dict[str, Any]] = field(default_factory=list)
    structured_rows: List[Dict[str, Any]] = field(default_factory=list)
    count: Optional[int] = None
    percentage: Any = None
    statistics: Optional[List[Dict[str, Any]]] = None

    @property
    def has_evidence(self) -> bool:
        return bool(
            self.vector_rows
            or self.structured_rows
            or self.count is not None
            or self.percentage is not None
            or self.statistics is not None
        )


def _fragment_label(sub_question: SubQuestion) -> str:
    return sub_question.text[:80]


def _consume_task_exception(task: "asyncio.Future") -> None:
    # Abandoned tasks must not log "exception was never retrieved"
    if not task.cancelled():
        task.exception()


class RetrievalExecutor:
    """Execute AnalysisPlans, owner-scoped, with keyword and recency fallbacks."""

    def __init__(
        self,
        embedder: CachedEmbedder,
        vector_search: JournalVectorSearch,
        store: JournalStore,
        cache: Optional[CacheService] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.embedder = embedder
        self.vector_search = vector_search
        self.store = store
        self.cache = cache
        self.retry_policy = retry_policy or default_retry_policy()

    # -----------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------

    async def execute(
        self,
        sub_question: SubQuestion,
        plan: AnalysisPlan,
        owner_id: str,
        route: Optional[RouteConfig] = None,
        budget: Optional[EmbeddingBudget] = None,
    ) -> ExecutionResult:
        """Run one fragment through the fallback chain. Never raises for upstream errors."""
        budget = budget or EmbeddingBudget(route.max_embeddings if route else None)
        cache_key = self._result_key(sub_question, plan, owner_id, route)
        if cache_key is not None:
            cached = self.cache.get(CacheNamespace.RESULT, cache_key)
            if cached is not None:
                LOGGER.debug("RetrievalExecutor: result cache hit for '%s'", _fragment_label(sub_question))
                return replace(
                    cached,
                    sub_question=sub_question,
                    vector_rows=list(cached.vector_rows),
                    structured_rows=list(cached.structured_rows),
                    fallbacks_used=list(cached.fallbacks_used),
                )

        result = ExecutionResult(sub_question=sub_question, plan=plan)
        errors: List[str] = []
        steps = (
            ("primary", lambda: self._run_primary(plan, owner_id, route, budget)),
            ("keyword", lambda: self._run_keyword(sub_question, plan, owner_id, route)),
            ("recent", lambda: self._run_recent(owner_id)),
        )

        for name, step in steps[:MAX_ATTEMPTS]:
            result.attempts += 1
            if name != "primary":
                result.fallbacks_used.append(name)
            try:
                outcome = await step()
            except ConfigurationError:
                raise
            except Exception as exc:
                LOGGER.warning(
                    "RetrievalExecutor [%s]: %s step failed: %s",
                    _fragment_label(sub_question), name, exc,
                )
                errors.append(f"{name}: {exc}")
                outcome = None

            if outcome is not None and outcome.has_evidence:
                self._apply(result, outcome, name)
                break

            if name == "primary":
                result.state = ExecutionState.PRIMARY_ATTEMPTED
            elif name == "keyword":
                result.state = ExecutionState.SECONDARY_ATTEMPTED
        else:
            self._settle_without_evidence(result, errors)

        LOGGER.info(
            "RetrievalExecutor [%s]: state=%s method=%s attempts=%d rows=%d fallbacks=%s",
            _fragment_label(sub_question), result.state.value, result.search_method.value,
            result.attempts, len(result.rows), result.fallbacks_used,
        )

        if cache_key is not None and result.state == ExecutionState.SUCCEEDED:
            self.cache.set(CacheNamespace.RESULT, cache_key, result)
        return result

    @time_async_function
    async def execute_all(
        self,
        pairs: Sequence[Tuple[SubQuestion, AnalysisPlan]],
        owner_id: str,
        route: RouteConfig,
    ) -> List[ExecutionResult]:
        """Fan out all fragments under the route's concurrency and timeout.

        Fragments that have not settled by the deadline are recorded as
        FAILED and abandoned; they are not cancelled. When every fragment
        FAILED, ``RetrievalFailedError`` is raised so the router can retry
        the whole fan-out under its next route.
        """
        if not pairs:
            return []

        semaphore = asyncio.Semaphore(max(1, route.max_concurrency))
        budget = EmbeddingBudget(route.max_embeddings)

        async def _bounded(sub_question: SubQuestion, plan: AnalysisPlan) -> ExecutionResult:
            async with semaphore:
                return await self.execute(sub_question, plan, owner_id, route, budget)

        tasks = [asyncio.ensure_future(_bounded(sq, plan)) for sq, plan in pairs]
        for task in tasks:
            task.add_done_callback(_consume_task_exception)

        _, pending = await asyncio.wait(tasks, timeout=route.timeout_seconds * SETTLE_FRACTION)

        results: List[ExecutionResult] = []
        for (sub_question, plan), task in zip(pairs, tasks):
            if task in pending:
                results.append(self._failed(sub_question, plan, "timed out"))
                continue
            exc = task.exception()
            if isinstance(exc, ConfigurationError):
                raise exc
            if exc is not None:
                LOGGER.error(
                    "RetrievalExecutor [%s]: fragment crashed: %s",
                    _fragment_label(sub_question), exc,
                )
                results.append(self._failed(sub_question, plan, str(exc)))
                continue
            result = task.result()
            if result.state not in TERMINAL_STATES:
                LOGGER.error(
                    "RetrievalExecutor [%s]: fragment returned in non-terminal state %s",
                    _fragment_label(sub_question), result.state.value,
                )
                result = self._failed(sub_question, plan, f"unsettled state {result.state.value}")
            results.append(result)

        failed = [_fragment_label(r.sub_question) for r in results if r.state == ExecutionState.FAILED]
        if pending:
            LOGGER.warning(
                "RetrievalExecutor: abandoned %d unsettled fragment(s) after %.1fs on route %s",
                len(pending), route.timeout_seconds * SETTLE_FRACTION, route.name,
            )
        if len(failed) == len(results):
            raise RetrievalFailedError(results)
        if failed:
            LOGGER.warning("RetrievalExecutor: %s", PartialResultError(failed, len(results)))
        return results

    # -----------------------------------------------------------------
    # Chain steps
    # -----------------------------------------------------------------

    async def _run_primary(
        self,
        plan: AnalysisPlan,
        owner_id: str,
        route: Optional[RouteConfig],
        budget: EmbeddingBudget,
    ) -> StepOutcome:
        method = _PRIMARY_METHODS[plan.kind]
        outcome = StepOutcome(method=method)

        vector_spec = plan.vector if plan.uses_vector else None
        structured_spec = plan.structured

        if vector_spec is not None and structured_spec is not None:
            vector_part, structured_part = await asyncio.gather(
                asyncio.to_thread(self._vector_step, vector_spec, owner_id, route, budget),
                asyncio.to_thread(self._structured_step, structured_spec, owner_id, route),
                return_exceptions=True,
            )
            failures = [p for p in (vector_part, structured_part) if isinstance(p, BaseException)]
            if len(failures) == 2:
                raise failures[0]
            for part in failures:
                LOGGER.warning("RetrievalExecutor: one hybrid branch failed, keeping the other: %s", part)
            if not isinstance(vector_part, BaseException):
                outcome.vector_rows = vector_part
            if not isinstance(structured_part, BaseException):
                self._merge_structured(outcome, structured_part)
            return outcome

        if vector_spec is not None:
            outcome.vector_rows = await asyncio.to_thread(
                self._vector_step, vector_spec, owner_id, route, budget,
            )
            return outcome

        if structured_spec is not None:
            part = await asyncio.to_thread(self._structured_step, structured_spec, owner_id, route)
            self._merge_structured(outcome, part)
        return outcome

    async def _run_keyword(
        self,
        sub_question: SubQuestion,
        plan: AnalysisPlan,
        owner_id: str,
        route: Optional[RouteConfig],
    ) -> StepOutcome:
        text = plan.vector.query_text if plan.vector is not None else sub_question.text
        window = self._plan_window(sub_question, plan)
        limit = route.max_entries if route else DEFAULT_VECTOR_TOP_K
        rows = await asyncio.to_thread(
            self.retry_policy.call,
            lambda: self.store.keyword_search(owner_id, text, limit, window),
            "keyword_search",
        )
        return StepOutcome(method=SearchMethod.KEYWORD_FALLBACK, structured_rows=rows)

    async def _run_recent(self, owner_id: str) -> StepOutcome:
        rows = await asyncio.to_thread(
            self.retry_policy.call,
            lambda: self.store.most_recent(owner_id, RECENT_FALLBACK_LIMIT),
            "most_recent",
        )
        return StepOutcome(method=SearchMethod.RECENT_FALLBACK, structured_rows=rows)

    # -----------------------------------------------------------------
    # Blocking store calls (run in worker threads)
    # -----------------------------------------------------------------

    def _vector_step(
        self,
        spec: VectorSpec,
        owner_id: str,
        route: Optional[RouteConfig],
        budget: EmbeddingBudget,
    ) -> List[Dict[str, Any]]:
        budget.consume()
        vector = self.embedder.embed(spec.query_text)
        top_k = min(spec.top_k, route.max_entries) if route else spec.top_k
        return self.retry_policy.call(
            lambda: self.vector_search.search(vector, owner_id, top_k, spec.threshold, spec.date_window),
            label="vector_search",
        )

    def _structured_step(
        self,
        spec: StructuredSpec,
        owner_id: str,
        route: Optional[RouteConfig],
    ) -> Dict[str, Any]:
        operation = spec.operation
        if operation == StructuredOperation.SELECT:
            limit = min(spec.limit, route.max_entries) if route else spec.limit
            rows = self.retry_policy.call(lambda: self.store.select(spec, owner_id, limit=limit), label="select")
            return {"rows": rows}
        if operation == StructuredOperation.COUNT:
            return {"count": self.retry_policy.call(lambda: self.store.count(spec.filters, owner_id), label="count")}
        if operation == StructuredOperation.PERCENTAGE:
            return {
                "percentage": self.retry_policy.call(
                    lambda: self.store.percentage(spec.filters, spec.subset_filters, owner_id),
                    label="percentage",
                )
            }
        if operation == StructuredOperation.TOP_EMOTIONS:
            return {
                "statistics": self.retry_policy.call(
                    lambda: self.store.top_emotions(spec.filters, owner_id),
                    label="top_emotions",
                )
            }
        raise UpstreamProviderError("structured_store", f"unsupported operation {operation!r}")

    # -----------------------------------------------------------------
    # Result bookkeeping
    # -----------------------------------------------------------------

    @staticmethod
    def _merge_structured(outcome: StepOutcome, part: Dict[str, Any]) -> None:
        outcome.structured_rows = part.get("rows") or []
        outcome.count = part.get("count")
        outcome.percentage = part.get("percentage")
        outcome.statistics = part.get("statistics")

    @staticmethod
    def _apply(result: ExecutionResult, outcome: StepOutcome, step: str) -> None:
        result.vector_rows = outcome.vector_rows
        result.structured_rows = outcome.structured_rows
        result.count = outcome.count
        result.percentage = outcome.percentage
        result.statistics = outcome.statistics
        result.search_method = outcome.method
        if step == "primary":
            result.state = ExecutionState.SUCCEEDED
            result.confidence = ConfidenceTag.HIGH
        elif step == "keyword":
            result.state = ExecutionState.SUCCEEDED
            result.confidence = ConfidenceTag.MEDIUM
        else:
            result.state = ExecutionState.DEGRADED
            result.confidence = ConfidenceTag.LOW

    @staticmethod
    def _settle_without_evidence(result: ExecutionResult, errors: List[str]) -> None:
        result.confidence = ConfidenceTag.LOW
        result.search_method = SearchMethod.NONE
        if len(errors) == result.attempts:
            result.state = ExecutionState.FAILED
            result.error = "; ".join(errors)
        else:
            result.state = ExecutionState.DEGRADED
            result.no_evidence = True
            if errors:
                result.error = "; ".join(errors)

    @staticmethod
    def _failed(sub_question: SubQuestion, plan: AnalysisPlan, reason: str) -> ExecutionResult:
        return ExecutionResult(
            sub_question=sub_question,
            plan=plan,
            state=ExecutionState.FAILED,
            error=reason,
            confidence=ConfidenceTag.LOW,
        )

    @staticmethod
    def _plan_window(sub_question: SubQuestion, plan: AnalysisPlan) -> Optional[TimeRange]:
        if plan.vector is not None and plan.vector.date_window is not None:
            return plan.vector.date_window
        return sub_question.parameters.time_range

    def _result_key(
        self,
        sub_question: SubQuestion,
        plan: AnalysisPlan,
        owner_id: str,
        route: Optional[RouteConfig],
    ) -> Optional[str]:
        if self.cache is None:
            return None
        return self.cache.make_key(
            sub_question.text,
            owner_id,
            {"plan": repr(plan), "maxEntries": route.max_entries if route else None},
        )


__all__ = ["EmbeddingBudget", "RetrievalExecutor", "StepOutcome", "SETTLE_FRACTION"]
