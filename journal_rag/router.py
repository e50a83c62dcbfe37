"""Adaptive route selection and timeout-raced execution.

A route bounds how much work one request may do: fan-out concurrency, the
overall deadline, and per-fragment entry and embedding caps. The router
picks a primary and a fallback route from request signals and recent
latency, then runs the retrieval operation under the primary route,
falling back once, and finally to the most conservative route.
"""

from __future__ import annotations

import asyncio
import re
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Sequence, TypeVar

from .cache import normalize_text, stable_hash
from .constants import (
    ROUTE_DEFAULT_ESTIMATE_MS,
    ROUTE_HISTORY_LIMIT,
    ROUTE_LATENCY_SMOOTHING,
    ROUTE_PERFORMANCE_THRESHOLD_MS,
)
from .errors import ConfigurationError
from .logger import LOGGER
from .models import RouteConfig, SubQuestion, SubQuestionType

T = TypeVar("T")


class Complexity(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


class AnswerShape(str, Enum):
    FACTUAL = "factual"
    ANALYTICAL = "analytical"
    EMOTIONAL = "emotional"


# =============================================================================
# Predefined routes
# =============================================================================

ROUTES: Dict[str, RouteConfig] = {
    "fast_track": RouteConfig("fast_track", max_concurrency=2, timeout_seconds=3.0,
                              max_entries=5, max_embeddings=3, cache_strategy="aggressive"),
    "standard": RouteConfig("standard", max_concurrency=3, timeout_seconds=5.0,
                            max_entries=10, max_embeddings=8, cache_strategy="balanced"),
    "comprehensive": RouteConfig("comprehensive", max_concurrency=5, timeout_seconds=10.0,
                                 max_entries=20, max_embeddings=15, cache_strategy="performance"),
    "emotion_focused": RouteConfig("emotion_focused", max_concurrency=3, timeout_seconds=6.0,
                                   max_entries=12, max_embeddings=10, cache_strategy="emotion_optimized"),
    "temporal_optimized": RouteConfig("temporal_optimized", max_concurrency=4, timeout_seconds=7.0,
                                      max_entries=15, max_embeddings=12, cache_strategy="temporal_aware"),
}

# Most conservative route, used for the last-chance attempt
CONSERVATIVE_ROUTE = "fast_track"
EMERGENCY_ROUTE_LABEL = "emergency_fallback"

_BASE_ESTIMATES_MS = {
    "fast_track": 800,
    "standard": 1500,
    "comprehensive": 3000,
    "emotion_focused": 2000,
    "temporal_optimized": 2200,
}

_ANALYTICAL_TERMS = re.compile(
    r"\b(compare|comparison|trend|trends|pattern|patterns|correlat\w*|relationship|"
    r"over time|change[sd]?|progress|why|analy[sz]e|analysis|versus|vs)\b"
)


def get_route(name: str) -> RouteConfig:
    return ROUTES.get(name, ROUTES["standard"])


# =============================================================================
# Signals
# =============================================================================

def estimate_complexity(message: str, sub_questions: Sequence[SubQuestion] = ()) -> Complexity:
    """Score fan-out width, analytical vocabulary and message length."""
    score = 0
    if len(sub_questions) >= 3:
        score += 2
    elif len(sub_questions) == 2:
        score += 1

    score += min(2, len(_ANALYTICAL_TERMS.findall(message.lower())))

    if len(message.split()) > 25:
        score += 1

    if score >= 3:
        return Complexity.COMPLEX
    if score == 0:
        return Complexity.SIMPLE
    return Complexity.MODERATE


def expected_shape(sub_questions: Sequence[SubQuestion]) -> AnswerShape:
    types = {sq.type for sq in sub_questions}
    if SubQuestionType.EMOTIONAL in types:
        return AnswerShape.EMOTIONAL
    if SubQuestionType.ANALYTICAL in types:
        return AnswerShape.ANALYTICAL
    return AnswerShape.FACTUAL


@dataclass(frozen=True)
class RoutingSignals:
    message: str
    complexity: Complexity = Complexity.MODERATE
    has_time_constraint: bool = False
    expected_shape: AnswerShape = AnswerShape.FACTUAL
    record_count: Optional[int] = None


@dataclass(frozen=True)
class RouteDecision:
    primary: RouteConfig
    fallback: RouteConfig
    expected_ms: int
    downgraded: bool = False


@dataclass
class RoutedOutcome(Generic[T]):
    result: T
    route_used: str
    elapsed_ms: float
    adaptations: List[str] = field(default_factory=list)


@dataclass
class _LatencyRecord:
    route: str
    latency_ms: float
    success: bool
    timestamp: float


def _consume_task_exception(task: "asyncio.Future") -> None:
    if not task.cancelled():
        task.exception()


# =============================================================================
# AdaptiveRouter
# =============================================================================

class AdaptiveRouter:
    """Pick routes from signals and latency history; run operations under them."""

    def __init__(
        self,
        performance_threshold_ms: float = ROUTE_PERFORMANCE_THRESHOLD_MS,
        history_limit: int = ROUTE_HISTORY_LIMIT,
        smoothing: float = ROUTE_LATENCY_SMOOTHING,
        default_estimate_ms: float = ROUTE_DEFAULT_ESTIMATE_MS,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.performance_threshold_ms = performance_threshold_ms
        self.history_limit = history_limit
        self.smoothing = smoothing
        self.default_estimate_ms = default_estimate_ms
        self._clock = clock
        self._history: "OrderedDict[str, _LatencyRecord]" = OrderedDict()

    # -----------------------------------------------------------------
    # Selection
    # -----------------------------------------------------------------

    def select_routes(self, signals: RoutingSignals) -> RouteDecision:
        records = signals.record_count or 0

        if signals.complexity == Complexity.SIMPLE and records < 20:
            primary, fallback = "fast_track", "standard"
        elif signals.complexity == Complexity.COMPLEX or records > 100:
            primary, fallback = "comprehensive", "standard"
        elif signals.expected_shape == AnswerShape.EMOTIONAL:
            primary, fallback = "emotion_focused", "standard"
        elif signals.has_time_constraint:
            primary, fallback = "temporal_optimized", "standard"
        else:
            # Balanced resolves to the standard limits
            primary, fallback = "standard", "fast_track"

        downgraded = False
        average = self.average_latency(signals.message)
        if average > self.performance_threshold_ms and primary == "comprehensive":
            LOGGER.info(
                "AdaptiveRouter: average latency %.0fms over %.0fms, downgrading comprehensive -> standard",
                average, self.performance_threshold_ms,
            )
            primary, fallback = "standard", "fast_track"
            downgraded = True

        decision = RouteDecision(
            primary=get_route(primary),
            fallback=get_route(fallback),
            expected_ms=self.estimate_latency(primary, signals),
            downgraded=downgraded,
        )
        LOGGER.info(
            "AdaptiveRouter: selected %s (fallback %s), expected %dms [complexity=%s shape=%s time=%s records=%s]",
            decision.primary.name, decision.fallback.name, decision.expected_ms,
            signals.complexity.value, signals.expected_shape.value,
            signals.has_time_constraint, signals.record_count,
        )
        return decision

    @staticmethod
    def estimate_latency(route_name: str, signals: RoutingSignals) -> int:
        estimate = float(_BASE_ESTIMATES_MS.get(route_name, 1500))
        if (signals.record_count or 0) > 50:
            estimate *= 1.5
        if signals.complexity == Complexity.COMPLEX:
            estimate *= 1.3
        if signals.has_time_constraint:
            estimate *= 1.1
        return int(round(estimate))

    # -----------------------------------------------------------------
    # Execution
    # -----------------------------------------------------------------

    async def execute(
        self,
        signals: RoutingSignals,
        operation: Callable[[RouteConfig], Awaitable[T]],
    ) -> RoutedOutcome[T]:
        """Run ``operation`` under the primary route, then fallback, then fast_track.

        ``ConfigurationError`` is never retried under another route.
        """
        decision = self.select_routes(signals)
        adaptations: List[str] = []
        if decision.downgraded:
            adaptations.append("latency_downgrade")

        start = self._clock()
        attempts = (
            (decision.primary, decision.primary.name, None),
            (decision.fallback, decision.fallback.name, "fallback_route_used"),
            (get_route(CONSERVATIVE_ROUTE), EMERGENCY_ROUTE_LABEL, "minimal_processing_fallback"),
        )

        last_error: Optional[BaseException] = None
        for route, label, adaptation in attempts:
            if adaptation:
                adaptations.append(adaptation)
            attempt_start = self._clock()
            try:
                result = await self._race(operation, route)
            except ConfigurationError:
                raise
            except Exception as exc:
                LOGGER.warning("AdaptiveRouter: route %s failed: %s", label, str(exc) or type(exc).__name__)
                self.record(signals.message, label, (self._clock() - attempt_start) * 1000.0, False)
                last_error = exc
                continue

            elapsed = (self._clock() - start) * 1000.0
            self.record(signals.message, label, elapsed, True)
            LOGGER.info("AdaptiveRouter: completed with route %s (%.0fms)", label, elapsed)
            return RoutedOutcome(result=result, route_used=label, elapsed_ms=elapsed, adaptations=adaptations)

        elapsed = (self._clock() - start) * 1000.0
        LOGGER.error("AdaptiveRouter: all routes failed after %.0fms", elapsed)
        raise last_error

    @staticmethod
    async def _race(operation: Callable[[RouteConfig], Awaitable[T]], route: RouteConfig) -> T:
        task = asyncio.ensure_future(operation(route))
        done, _ = await asyncio.wait({task}, timeout=route.timeout_seconds)
        if not done:
            # Abandon, do not cancel
            task.add_done_callback(_consume_task_exception)
            raise asyncio.TimeoutError(f"route {route.name} timed out after {route.timeout_seconds}s")
        return task.result()

    # -----------------------------------------------------------------
    # Latency history
    # -----------------------------------------------------------------

    @staticmethod
    def query_key(message: str) -> str:
        return stable_hash(normalize_text(message))

    def record(self, message: str, route: str, elapsed_ms: float, success: bool) -> None:
        """Fold one outcome into the moving-average latency for this query."""
        key = self.query_key(message)
        previous = self._history.get(key)
        if previous is None:
            latency = float(elapsed_ms)
        else:
            latency = self.smoothing * float(elapsed_ms) + (1.0 - self.smoothing) * previous.latency_ms

        self._history[key] = _LatencyRecord(route=route, latency_ms=latency, success=success, timestamp=time.time())
        self._history.move_to_end(key)
        while len(self._history) > self.history_limit:
            self._history.popitem(last=False)

    def average_latency(self, message: str) -> float:
        record = self._history.get(self.query_key(message))
        if record is not None:
            return record.latency_ms
        successes = [r.latency_ms for r in self._history.values() if r.success]
        if not successes:
            return self.default_estimate_ms
        return sum(successes) / len(successes)

    def history_size(self) -> int:
        return len(self._history)

    def snapshot(self) -> Dict[str, Any]:
        """Latency history summary for the health endpoint; counts use each key's latest outcome."""
        successes = sum(1 for r in self._history.values() if r.success)
        return {
            "entries": len(self._history),
            "successes": successes,
            "failures": len(self._history) - successes,
            "thresholdMs": self.performance_threshold_ms,
            "routes": sorted({r.route for r in self._history.values()}),
        }


__all__ = [
    "AdaptiveRouter",
    "AnswerShape",
    "Complexity",
    "CONSERVATIVE_ROUTE",
    "EMERGENCY_ROUTE_LABEL",
    "ROUTES",
    "RouteDecision",
    "RoutedOutcome",
    "RoutingSignals",
    "estimate_complexity",
    "expected_shape",
    "get_route",
]
