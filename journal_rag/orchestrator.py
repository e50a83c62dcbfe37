"""Request orchestration: from one conversational turn to a grounded answer.

``answer_question`` runs the stages in order (classify, decompose, plan,
route and execute, aggregate, generate) against a ``PipelineContext`` that
owns every shared component, including the process-wide ``CacheService``.

Only ``ConfigurationError`` escapes; every other failure is logged and
turned into an apologetic, degraded response.
"""

from __future__ import annotations

import asyncio
import copy
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from .aggregator import EvidenceAggregator, EvidenceContext
from .cache import CacheNamespace, CacheService, default_namespace_configs
from .classifier import QueryClassifier
from .config import AppConfig, PipelineSettings
from .constants import (
    ANSWER_TIMEOUT_SECONDS,
    DEFAULT_EMOTIONS,
    DEFAULT_THEMES,
    REQUEST_BUDGET_SECONDS,
    STAGE_TIMEOUT_SECONDS,
)
from .decomposer import SubQuestionDecomposer, Vocabulary, attach_time_range
from .embeddings import CachedEmbedder, GeminiEmbeddingProvider
from .errors import ConfigurationError, RetrievalFailedError, UpstreamProviderError, ValidationError
from .executor import RetrievalExecutor
from .llm import GeminiModel
from .logger import LOGGER
from .models import (
    AnalysisPlan,
    Classification,
    ConfidenceTag,
    ConversationTurn,
    ExecutionResult,
    ExecutionState,
    QueryCategory,
    Question,
    RequesterProfile,
    SearchMethod,
    SubQuestion,
    TimeRange,
    parse_datetime,
)
from .planner import AnalysisPlanner, merge_time_range
from .profiling import elapsed_ms
from .responder import APOLOGY_REPLY, CLARIFICATION_REPLY, AnswerGenerator
from .retry import RetryPolicy
from .router import AdaptiveRouter, RoutingSignals, estimate_complexity, expected_shape
from .structured_store import JournalStore
from .timeframe import detect_time_range
from .vector_store import JournalVectorSearch, get_qdrant_client

T = TypeVar("T")


# =============================================================================
# Pipeline context
# =============================================================================

@dataclass
class PipelineContext:
    """Every shared component a request needs, built once per process."""
    cache: CacheService
    store: JournalStore
    classifier: QueryClassifier
    decomposer: SubQuestionDecomposer
    planner: AnalysisPlanner
    executor: RetrievalExecutor
    router: AdaptiveRouter
    aggregator: EvidenceAggregator = field(default_factory=EvidenceAggregator)
    responder: Optional[AnswerGenerator] = None
    classification_retry: RetryPolicy = field(default_factory=lambda: RetryPolicy(max_retries=1))
    stage_timeout_seconds: float = STAGE_TIMEOUT_SECONDS
    answer_timeout_seconds: float = ANSWER_TIMEOUT_SECONDS
    request_budget_seconds: float = REQUEST_BUDGET_SECONDS


def build_cache(settings: PipelineSettings) -> CacheService:
    cache_settings = settings.cache
    return CacheService(
        namespaces=default_namespace_configs(
            capacity=cache_settings.capacity,
            ttl_seconds=cache_settings.ttl_seconds,
            max_entry_bytes=cache_settings.max_entry_bytes,
        ),
        eviction_fraction=cache_settings.eviction_fraction,
    )


def build_pipeline_context(
    settings: Optional[PipelineSettings] = None,
    cache: Optional[CacheService] = None,
    qdrant_client: Optional[Any] = None,
) -> PipelineContext:
    """Wire the production pipeline from configuration."""
    config = AppConfig.get()
    settings = settings or config.settings
    cache = cache or build_cache(settings)
    client = config.client

    embedder = CachedEmbedder(
        GeminiEmbeddingProvider(model=settings.embedding_model, client=client),
        cache,
        model=settings.embedding_model,
    )
    vector_search = JournalVectorSearch(
        qdrant_client or get_qdrant_client(settings.qdrant_url),
        settings.qdrant_collection,
    )
    store = JournalStore()

    LOGGER.info(
        "Pipeline context built: classifier=%s decomposer=%s planner=%s (model=%s) answer=%s",
        settings.classifier_model, settings.decomposer_model, settings.planner_model,
        settings.planner_use_model, settings.answer_model,
    )
    return PipelineContext(
        cache=cache,
        store=store,
        classifier=QueryClassifier(GeminiModel(settings.classifier_model, client=client)),
        decomposer=SubQuestionDecomposer(GeminiModel(settings.decomposer_model, client=client, temperature=0.3)),
        planner=AnalysisPlanner(
            GeminiModel(settings.planner_model, client=client) if settings.planner_use_model else None,
            cache=cache,
            use_model=settings.planner_use_model,
        ),
        executor=RetrievalExecutor(embedder, vector_search, store, cache=cache),
        router=AdaptiveRouter(),
        responder=AnswerGenerator(GeminiModel(settings.answer_model, client=client, temperature=0.4)),
    )


# =============================================================================
# Request parsing
# =============================================================================

def _parse_turn(raw: Dict[str, Any]) -> ConversationTurn:
    category = raw.get("category")
    timestamp = raw.get("timestamp")
    try:
        parsed_category = QueryCategory(str(category).upper()) if category else None
    except ValueError:
        parsed_category = None
    return ConversationTurn(
        role=str(raw.get("role") or "user").lower(),
        content=str(raw.get("content") or ""),
        timestamp=parse_datetime(timestamp) if timestamp else None,
        category=parsed_category,
    )


def question_from_payload(payload: Dict[str, Any], requester_id: str) -> Question:
    """Build a Question from a camelCase request body.

    The requester id always comes from the caller's verified identity; any
    ``requesterId`` in the payload is ignored.
    """
    if not requester_id:
        raise ValidationError("requester id is required")
    message = payload.get("message")
    if not isinstance(message, str) or not message.strip():
        raise ValidationError("message must be a non-empty string")

    raw_profile = payload.get("requesterProfile") or {}
    record_count = raw_profile.get("recordCount")
    profile = RequesterProfile(
        timezone=raw_profile.get("timezone") or "UTC",
        record_count=int(record_count) if record_count is not None else None,
        locale=raw_profile.get("locale") or "en",
    )

    return Question(
        text=message.strip(),
        requester_id=requester_id,
        thread_id=payload.get("threadId"),
        history=tuple(_parse_turn(t) for t in payload.get("conversationContext") or []),
        profile=profile,
        time_range=TimeRange.from_dict(payload.get("timeRange")),
    )


# =============================================================================
# Response helpers
# =============================================================================

def _last_assistant_content(history: Sequence[ConversationTurn]) -> str:
    for turn in reversed(history):
        if turn.role == "assistant":
            return turn.content[:200]
    return ""


def _response_key(ctx: PipelineContext, question: Question) -> str:
    return ctx.cache.make_key(
        question.text,
        question.requester_id,
        {
            "thread": question.thread_id,
            "lastAssistant": _last_assistant_content(question.history),
            "timeRange": question.time_range.to_dict() if question.time_range else None,
        },
    )


def _build_response(
    text: str,
    started: float,
    classification: Optional[str],
    context: Optional[EvidenceContext] = None,
    route_used: Optional[str] = None,
    sub_question_count: int = 0,
    degraded: bool = False,
) -> Dict[str, Any]:
    analysis: Dict[str, Any] = {
        "searchMethod": context.search_method.value if context else SearchMethod.NONE.value,
        "fallbacksUsed": list(context.fallbacks_used) if context else [],
        "resultsCount": context.results_count if context else 0,
        "processingTimeMs": int(round(elapsed_ms(started))),
        "degraded": bool(degraded or (context.degraded if context else False)),
        "classification": classification,
        "routeUsed": route_used,
        "subQuestionCount": sub_question_count,
        "failedFragments": list(context.failed_fragments) if context else [],
        "noEvidence": bool(context.no_evidence) if context else False,
    }
    response: Dict[str, Any] = {
        "response": text,
        "analysis": analysis,
        "referenceRecords": list(context.reference_records) if context else [],
    }
    if context is not None and context.statistical_data:
        response["statisticalData"] = context.statistical_data
    return response


def _failed_results(
    pairs: Sequence[Tuple[SubQuestion, AnalysisPlan]],
    reason: str,
) -> List[ExecutionResult]:
    return [
        ExecutionResult(
            sub_question=sq,
            plan=plan,
            state=ExecutionState.FAILED,
            error=reason,
            confidence=ConfidenceTag.LOW,
        )
        for sq, plan in pairs
    ]


# =============================================================================
# Stages
# =============================================================================

async def _in_thread(stage: str, timeout: float, func: Callable[..., T], *args: Any) -> T:
    """Run a blocking stage in a worker thread; a timeout becomes UpstreamProviderError.

    The thread is abandoned on timeout, not joined.
    """
    try:
        return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout)
    except asyncio.TimeoutError as exc:
        LOGGER.warning("Orchestrator: %s timed out after %.1fs", stage, timeout)
        raise UpstreamProviderError(stage, f"timed out after {timeout}s", exc) from exc


async def _resolve_record_count(ctx: PipelineContext, question: Question) -> RequesterProfile:
    profile = question.profile
    if profile.record_count is not None:
        return profile
    try:
        count = await asyncio.to_thread(ctx.store.count_entries, question.requester_id)
    except UpstreamProviderError as exc:
        LOGGER.warning("Orchestrator: record count unavailable (%s), continuing without it", exc)
        return profile
    return RequesterProfile(timezone=profile.timezone, record_count=count, locale=profile.locale)


async def _classify(ctx: PipelineContext, question: Question, profile: RequesterProfile) -> Classification:
    return await _in_thread(
        "classification",
        ctx.stage_timeout_seconds,
        ctx.classification_retry.call,
        lambda: ctx.classifier.classify(question.text, question.history, profile),
        "classification",
    )


def load_vocabulary(ctx: PipelineContext) -> Vocabulary:
    """Theme and emotion vocabularies, cached; built-in lists when the store is down."""
    key = ctx.cache.make_key("vocabularies", params={"kind": "themes+emotions"}, time_bucket=False)

    def _fetch() -> Optional[Tuple[List[str], List[str]]]:
        try:
            themes, emotions = ctx.store.vocabularies()
        except UpstreamProviderError as exc:
            LOGGER.warning("Orchestrator: vocabulary lookup failed (%s), using built-in lists", exc)
            return None
        return themes, emotions

    loaded = ctx.cache.get_or_compute(CacheNamespace.RESULT, key, _fetch)
    themes, emotions = loaded if loaded else ([], [])
    return Vocabulary(themes or DEFAULT_THEMES, emotions or DEFAULT_EMOTIONS)


async def _respond_without_journal(
    ctx: PipelineContext,
    question: Question,
    classification: Classification,
    started: float,
) -> Dict[str, Any]:
    if classification.canned_reply is not None:
        return _build_response(classification.canned_reply, started, classification.category.value)

    try:
        text = await _in_thread(
            "direct reply", ctx.answer_timeout_seconds,
            ctx.responder.generate_general, question.text, classification.category, question.history,
        )
    except UpstreamProviderError as exc:
        LOGGER.warning("Orchestrator: direct reply failed (%s)", exc)
        fallback = (
            CLARIFICATION_REPLY
            if classification.category == QueryCategory.NEEDS_CLARIFICATION
            else APOLOGY_REPLY
        )
        return _build_response(fallback, started, classification.category.value, degraded=True)
    return _build_response(text, started, classification.category.value)


# =============================================================================
# Public API
# =============================================================================

async def answer_question(
    question: Question,
    ctx: PipelineContext,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Answer one conversational turn.

    Returns ``{response, analysis, referenceRecords, statisticalData?}``.
    Raises only ``ConfigurationError``. The whole turn is bounded by
    ``ctx.request_budget_seconds``; model-backed stages by their own timeouts.
    """
    started = time.perf_counter()
    try:
        return await asyncio.wait_for(_answer(question, ctx, started, now), ctx.request_budget_seconds)
    except ConfigurationError:
        raise
    except asyncio.TimeoutError:
        LOGGER.error(
            "Orchestrator: request budget of %.1fs spent for owner=%s, abandoning in-flight work",
            ctx.request_budget_seconds, question.requester_id,
        )
        return _build_response(APOLOGY_REPLY, started, None, degraded=True)
    except Exception as exc:
        LOGGER.exception("Orchestrator: request failed for owner=%s: %s", question.requester_id, exc)
        return _build_response(APOLOGY_REPLY, started, None, degraded=True)


async def _answer(
    question: Question,
    ctx: PipelineContext,
    started: float,
    now: Optional[datetime],
) -> Dict[str, Any]:
    owner_id = question.requester_id
    if not owner_id:
        raise ValidationError("requester id is required")

    # ------------------------------------------------------------------
    # Step 1: Response cache
    # ------------------------------------------------------------------
    response_key = _response_key(ctx, question)
    cached = ctx.cache.get(CacheNamespace.RESPONSE, response_key)
    if cached is not None:
        LOGGER.info("Orchestrator: response cache hit for owner=%s", owner_id)
        response = copy.deepcopy(cached)
        response["analysis"]["processingTimeMs"] = int(round(elapsed_ms(started)))
        return response

    # ------------------------------------------------------------------
    # Step 2: Classification
    # ------------------------------------------------------------------
    profile = await _resolve_record_count(ctx, question)
    try:
        classification = await _classify(ctx, question, profile)
    except UpstreamProviderError as exc:
        LOGGER.error("Orchestrator: classification failed after retries: %s", exc)
        return _build_response(APOLOGY_REPLY, started, None, degraded=True)

    if classification.skip_pipeline or classification.category != QueryCategory.JOURNAL_SPECIFIC:
        return await _respond_without_journal(ctx, question, classification, started)

    # ------------------------------------------------------------------
    # Step 3: Decomposition
    # ------------------------------------------------------------------
    vocabulary = await asyncio.to_thread(load_vocabulary, ctx)
    time_range = question.time_range or detect_time_range(question.text, profile.timezone, now)
    try:
        sub_questions = await _in_thread(
            "decomposition", ctx.stage_timeout_seconds,
            ctx.decomposer.decompose, question.text, question.history, vocabulary, time_range, now,
        )
    except UpstreamProviderError:
        sub_questions = [
            attach_time_range(sq, time_range)
            for sq in SubQuestionDecomposer.fallback(question.text, now=now)
        ]

    # ------------------------------------------------------------------
    # Step 4: Planning
    # ------------------------------------------------------------------
    async def _plan(sub_question: SubQuestion) -> AnalysisPlan:
        try:
            return await _in_thread(
                "planning", ctx.stage_timeout_seconds,
                ctx.planner.plan, sub_question, owner_id, time_range,
            )
        except UpstreamProviderError:
            window = time_range or sub_question.parameters.time_range
            return merge_time_range(AnalysisPlanner.degraded_plan(sub_question), window)

    plans = await asyncio.gather(*[_plan(sq) for sq in sub_questions])
    pairs = list(zip(sub_questions, plans))

    # ------------------------------------------------------------------
    # Step 5: Routed execution
    # ------------------------------------------------------------------
    signals = RoutingSignals(
        message=question.text,
        complexity=estimate_complexity(question.text, sub_questions),
        has_time_constraint=time_range is not None,
        expected_shape=expected_shape(sub_questions),
        record_count=profile.record_count,
    )
    try:
        outcome = await ctx.router.execute(
            signals,
            lambda route: ctx.executor.execute_all(pairs, owner_id, route),
        )
        results, route_used = outcome.result, outcome.route_used
    except ConfigurationError:
        raise
    except RetrievalFailedError as exc:
        LOGGER.error("Orchestrator: every route failed: %s", exc)
        results, route_used = exc.results, None
    except Exception as exc:
        LOGGER.error("Orchestrator: every route failed: %s", exc)
        results, route_used = _failed_results(pairs, str(exc) or "route failed"), None

    # ------------------------------------------------------------------
    # Step 6: Aggregation + answer
    # ------------------------------------------------------------------
    context = ctx.aggregator.build(results)
    degraded = False
    try:
        text = await _in_thread(
            "answer", ctx.answer_timeout_seconds,
            ctx.responder.generate, question.text, context, question.history,
        )
    except UpstreamProviderError as exc:
        LOGGER.warning("Orchestrator: answer generation failed: %s", exc)
        text, degraded = APOLOGY_REPLY, True

    response = _build_response(
        text,
        started,
        classification.category.value,
        context=context,
        route_used=route_used,
        sub_question_count=len(sub_questions),
        degraded=degraded,
    )

    if not response["analysis"]["degraded"]:
        ctx.cache.set(CacheNamespace.RESPONSE, response_key, copy.deepcopy(response))

    LOGGER.info(
        "Orchestrator: answered owner=%s in %dms (method=%s route=%s results=%d degraded=%s)",
        owner_id, response["analysis"]["processingTimeMs"], response["analysis"]["searchMethod"],
        route_used, response["analysis"]["resultsCount"], response["analysis"]["degraded"],
    )
    return response


__all__ = [
    "PipelineContext",
    "answer_question",
    "build_cache",
    "build_pipeline_context",
    "load_vocabulary",
    "question_from_payload",
]
