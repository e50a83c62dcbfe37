"""
Shared pytest fixtures for the journal pipeline tests.

Provides scripted models and in-memory stores so no Gemini, PostgreSQL or
Qdrant instance is needed.
"""

import hashlib
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import pytest

from journal_rag.aggregator import EvidenceAggregator
from journal_rag.cache import CacheService, default_namespace_configs
from journal_rag.classifier import QueryClassifier
from journal_rag.decomposer import SubQuestionDecomposer, Vocabulary
from journal_rag.embeddings import CachedEmbedder
from journal_rag.errors import UpstreamProviderError
from journal_rag.executor import RetrievalExecutor
from journal_rag.models import PercentageResult
from journal_rag.orchestrator import PipelineContext
from journal_rag.planner import AnalysisPlanner
from journal_rag.responder import AnswerGenerator
from journal_rag.retry import RetryPolicy, no_retry
from journal_rag.router import AdaptiveRouter


class FakeModel:
    """Scripted stand-in for GeminiModel.

    ``responses`` are consumed in order; the last one repeats. An exception
    instance in the script is raised instead of returned.
    """

    def __init__(self, *responses: Any, model: str = "fake-model"):
        self.model = model
        self._responses = list(responses)
        self.calls = 0
        self.prompts: List[str] = []

    def _next(self, prompt: str) -> Any:
        self.calls += 1
        self.prompts.append(prompt)
        if not self._responses:
            raise UpstreamProviderError(self.model, "no scripted response")
        index = min(self.calls - 1, len(self._responses) - 1)
        response = self._responses[index]
        if isinstance(response, BaseException):
            raise response
        return response

    def generate_json(self, prompt: str) -> Any:
        return self._next(prompt)

    def generate_text(self, prompt: str) -> str:
        return self._next(prompt)


class CountingEmbeddingProvider:
    """Deterministic embeddings from a text hash; counts provider calls."""

    dimension = 8

    def __init__(self, error: Optional[BaseException] = None):
        self.calls = 0
        self.error = error
        self._lock = threading.Lock()

    def embed(self, text: str) -> List[float]:
        with self._lock:
            self.calls += 1
        if self.error is not None:
            raise self.error
        digest = hashlib.md5(text.encode()).hexdigest()
        return [int(digest[i:i + 2], 16) / 255.0 for i in range(0, 16, 2)]


class FakeVectorSearch:
    """Records every search; returns canned rows or raises."""

    def __init__(
        self,
        rows: Optional[List[Dict[str, Any]]] = None,
        error: Optional[BaseException] = None,
        delay: float = 0.0,
    ):
        self.rows = rows or []
        self.error = error
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []

    def search(self, vector, owner_id, top_k, threshold, date_window=None):
        self.calls.append({
            "owner_id": owner_id,
            "top_k": top_k,
            "threshold": threshold,
            "date_window": date_window,
        })
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return [dict(row) for row in self.rows[:top_k]]


class FakeStore:
    """In-memory JournalStore replacement.

    ``errors`` maps a method name to the exception it should raise.
    """

    def __init__(
        self,
        select_rows: Optional[List[Dict[str, Any]]] = None,
        count_value: int = 0,
        percentage: Optional[PercentageResult] = None,
        top_emotions: Optional[List[Dict[str, Any]]] = None,
        keyword_rows: Optional[List[Dict[str, Any]]] = None,
        recent_rows: Optional[List[Dict[str, Any]]] = None,
        entry_count: int = 12,
        themes: Optional[List[str]] = None,
        emotions: Optional[List[str]] = None,
        errors: Optional[Dict[str, BaseException]] = None,
    ):
        self.select_rows = select_rows or []
        self.count_value = count_value
        self.percentage_result = percentage or PercentageResult(0, 0)
        self.top_emotion_rows = top_emotions or []
        self.keyword_rows = keyword_rows or []
        self.recent_rows = recent_rows or []
        self.entry_count = entry_count
        self.themes = themes if themes is not None else ["Work", "Family", "Health"]
        self.emotions = emotions if emotions is not None else ["anxiety", "joy", "stress"]
        self.errors = errors or {}
        self.calls: List[tuple] = []
        self._lock = threading.Lock()

    def _record(self, name: str, *args: Any) -> None:
        with self._lock:
            self.calls.append((name,) + args)
        if name in self.errors:
            raise self.errors[name]

    def called(self, name: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == name]

    def select(self, spec, owner_id, limit=None):
        self._record("select", owner_id, limit)
        return [dict(r) for r in self.select_rows[: limit or spec.limit]]

    def count(self, filters, owner_id):
        self._record("count", owner_id, tuple(filters))
        return self.count_value

    def percentage(self, filters, subset_filters, owner_id):
        self._record("percentage", owner_id)
        return self.percentage_result

    def top_emotions(self, filters, owner_id, limit=5):
        self._record("top_emotions", owner_id, tuple(filters))
        return [dict(r) for r in self.top_emotion_rows]

    def keyword_search(self, owner_id, text, limit, date_window=None):
        self._record("keyword_search", owner_id, text, limit, date_window)
        return [dict(r) for r in self.keyword_rows[:limit]]

    def most_recent(self, owner_id, limit):
        self._record("most_recent", owner_id, limit)
        return [dict(r) for r in self.recent_rows[:limit]]

    def count_entries(self, owner_id):
        self._record("count_entries", owner_id)
        return self.entry_count

    def vocabularies(self):
        self._record("vocabularies")
        return list(self.themes), list(self.emotions)


class FakeClock:
    """Manually advanced wall clock for cache TTL tests."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_row(entry_id: Any, content: str = "", similarity: Optional[float] = None, **extra: Any) -> Dict[str, Any]:
    row = {
        "id": entry_id,
        "content": content or f"Journal entry {entry_id}",
        "created_at": "2026-03-10T09:00:00+00:00",
        "themes": [],
        "emotions": {},
        "entities": [],
        "sentiment": None,
    }
    if similarity is not None:
        row["similarity"] = similarity
    row.update(extra)
    return row


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return CacheService(clock=clock)


@pytest.fixture
def small_cache(clock):
    """Capacity-10 namespaces so eviction is easy to trigger."""
    return CacheService(namespaces=default_namespace_configs(capacity=10), clock=clock)


@pytest.fixture
def vocabulary():
    return Vocabulary(["Work", "Family", "Health"], ["anxiety", "joy", "stress"])


@pytest.fixture
def embedding_provider():
    return CountingEmbeddingProvider()


@pytest.fixture
def make_executor(cache, embedding_provider):
    def _make(
        vector_search: Optional[FakeVectorSearch] = None,
        store: Optional[FakeStore] = None,
        result_cache: bool = False,
        provider: Optional[CountingEmbeddingProvider] = None,
    ) -> RetrievalExecutor:
        embedder = CachedEmbedder(provider or embedding_provider, cache, model="fake-embedding")
        return RetrievalExecutor(
            embedder,
            vector_search or FakeVectorSearch(),
            store or FakeStore(),
            cache=cache if result_cache else None,
            retry_policy=no_retry(),
        )
    return _make


@pytest.fixture
def make_context(cache, embedding_provider):
    """Build a PipelineContext from fakes; returns (ctx, parts)."""
    def _make(
        classifier_model: Optional[FakeModel] = None,
        decomposer_model: Optional[FakeModel] = None,
        answer_model: Optional[FakeModel] = None,
        vector_search: Optional[FakeVectorSearch] = None,
        store: Optional[FakeStore] = None,
    ):
        parts = {
            "classifier_model": classifier_model or FakeModel({"category": "JOURNAL_SPECIFIC"}),
            "decomposer_model": decomposer_model or FakeModel(UpstreamProviderError("fake", "down")),
            "answer_model": answer_model or FakeModel("Here is what your journal shows."),
            "vector_search": vector_search or FakeVectorSearch(),
            "store": store or FakeStore(),
            "embedding_provider": embedding_provider,
        }
        embedder = CachedEmbedder(embedding_provider, cache, model="fake-embedding")
        ctx = PipelineContext(
            cache=cache,
            store=parts["store"],
            classifier=QueryClassifier(parts["classifier_model"]),
            decomposer=SubQuestionDecomposer(parts["decomposer_model"]),
            planner=AnalysisPlanner(None, cache=cache, use_model=False),
            executor=RetrievalExecutor(
                embedder, parts["vector_search"], parts["store"], cache=cache, retry_policy=no_retry(),
            ),
            router=AdaptiveRouter(),
            aggregator=EvidenceAggregator(),
            responder=AnswerGenerator(parts["answer_model"]),
            classification_retry=RetryPolicy(max_retries=1, sleep=lambda _: None),
        )
        return ctx, parts
    return _make


@pytest.fixture
def instant_retry() -> Callable[..., RetryPolicy]:
    def _make(max_retries: int = 2, sleeps: Optional[list] = None) -> RetryPolicy:
        record = sleeps if sleeps is not None else []
        return RetryPolicy(max_retries=max_retries, sleep=record.append)
    return _make
