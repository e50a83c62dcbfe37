"""End-to-end tests of answer_question over fake providers and stores."""

import asyncio
import time
from datetime import datetime, timezone

import pytest

from conftest import FakeModel, FakeStore, FakeVectorSearch, make_row
from journal_rag.classifier import FIRST_ENTRY_INVITATION
from journal_rag.errors import ConfigurationError, UpstreamProviderError, ValidationError
from journal_rag.models import QueryCategory, RouteConfig, TimeRange
from journal_rag.orchestrator import answer_question, load_vocabulary, question_from_payload
from journal_rag.responder import APOLOGY_REPLY, CLARIFICATION_REPLY
from journal_rag.router import ROUTES

OWNER = "owner-123"
NOW = datetime(2026, 3, 15, 18, 0, tzinfo=timezone.utc)


def _ask(ctx, message, **payload):
    question = question_from_payload(dict(payload, message=message), OWNER)
    return asyncio.run(answer_question(question, ctx, now=NOW))


class TestQuestionFromPayload:
    def test_payload_requester_id_is_ignored(self):
        question = question_from_payload({"message": "hi", "requesterId": "someone-else"}, OWNER)
        assert question.requester_id == OWNER

    def test_camel_case_fields(self):
        question = question_from_payload({
            "message": "  How was my week?  ",
            "threadId": "t-1",
            "conversationContext": [
                {"role": "assistant", "content": "Try a walk.", "category": "general"},
            ],
            "requesterProfile": {"timezone": "Europe/Berlin", "recordCount": 4},
            "timeRange": {"start": "2026-03-01", "end": "2026-03-07"},
        }, OWNER)

        assert question.text == "How was my week?"
        assert question.thread_id == "t-1"
        assert question.history[0].category == QueryCategory.GENERAL
        assert question.profile.timezone == "Europe/Berlin"
        assert question.profile.record_count == 4
        assert question.time_range.start == datetime(2026, 3, 1, tzinfo=timezone.utc)

    @pytest.mark.parametrize("payload, owner", [
        ({"message": "  "}, OWNER),
        ({"message": "hi"}, ""),
        ({"message": "hi", "timeRange": "last week"}, OWNER),
        ({"message": "hi", "timeRange": ["2026-03-01"]}, OWNER),
    ])
    def test_invalid_payloads(self, payload, owner):
        with pytest.raises(ValidationError):
            question_from_payload(payload, owner)


class TestScenarios:
    def test_zero_records_skip_retrieval(self, make_context):
        ctx, parts = make_context()
        response = _ask(ctx, "analyze my stress patterns", requesterProfile={"recordCount": 0})

        assert response["response"] == FIRST_ENTRY_INVITATION
        assert response["analysis"]["classification"] == "GENERAL"
        assert response["analysis"]["searchMethod"] == "none"
        assert parts["classifier_model"].calls == 0
        assert parts["vector_search"].calls == []
        assert parts["store"].calls == []
        assert parts["embedding_provider"].calls == 0

    def test_explicit_window_reaches_vector_search(self, make_context):
        decomposer = FakeModel({"subQuestions": [{
            "question": "How did I feel last week?",
            "type": "emotional",
            "priority": 5,
            "searchStrategy": "hybrid",
            "parameters": {"emotions": ["joy"]},
        }]})
        stats = [{"emotion": "joy", "averageScore": 0.7, "entryCount": 3}]
        ctx, parts = make_context(
            decomposer_model=decomposer,
            vector_search=FakeVectorSearch(rows=[make_row(1, similarity=0.9), make_row(2, similarity=0.7)]),
            store=FakeStore(top_emotions=stats),
        )
        response = _ask(
            ctx, "How did I feel last week?",
            timeRange={"start": "2026-03-08", "end": "2026-03-15"},
        )

        window = TimeRange(
            start=datetime(2026, 3, 8, tzinfo=timezone.utc),
            end=datetime(2026, 3, 15, tzinfo=timezone.utc),
        )
        assert parts["vector_search"].calls[0]["date_window"] == window
        assert parts["vector_search"].calls[0]["owner_id"] == OWNER
        assert response["analysis"]["searchMethod"] == "hybrid"
        assert response["analysis"]["resultsCount"] == 2
        assert response["statisticalData"]["topEmotions"][0]["emotions"] == stats
        assert response["analysis"]["degraded"] is False

    def test_vector_failure_uses_keyword_fallback(self, make_context):
        ctx, _ = make_context(
            vector_search=FakeVectorSearch(error=UpstreamProviderError("qdrant", "down")),
            store=FakeStore(keyword_rows=[make_row(i, "Dinner with Dana", rank=0.5) for i in range(3)]),
        )
        response = _ask(ctx, "What did I write about Dana?")

        analysis = response["analysis"]
        assert analysis["searchMethod"] == "keyword_fallback"
        assert "keyword" in analysis["fallbacksUsed"]
        assert analysis["resultsCount"] == 3
        assert len(response["referenceRecords"]) == 3

    def test_time_phrase_is_detected(self, make_context):
        ctx, parts = make_context(vector_search=FakeVectorSearch(rows=[make_row(1)]))
        _ask(ctx, "What did I write about Dana in the past 3 days?")
        window = parts["vector_search"].calls[0]["date_window"]
        assert window.start == datetime(2026, 3, 12, tzinfo=timezone.utc)


class TestFailures:
    def test_classification_failure_apologizes_after_one_retry(self, make_context):
        classifier = FakeModel(UpstreamProviderError("gemini", "503"))
        ctx, parts = make_context(classifier_model=classifier)
        response = _ask(ctx, "How have I been sleeping?")

        assert response["response"] == APOLOGY_REPLY
        assert response["analysis"]["degraded"] is True
        assert classifier.calls == 2
        assert parts["vector_search"].calls == []

    def test_configuration_error_propagates(self, make_context):
        ctx, _ = make_context(vector_search=FakeVectorSearch(error=ConfigurationError("QDRANT_URL missing")))
        with pytest.raises(ConfigurationError):
            _ask(ctx, "What did I write about Dana?")

    def test_answer_failure_keeps_analysis(self, make_context):
        ctx, _ = make_context(
            answer_model=FakeModel(UpstreamProviderError("gemini", "down")),
            vector_search=FakeVectorSearch(rows=[make_row(1)]),
        )
        response = _ask(ctx, "What did I write about Dana?")

        assert response["response"] == APOLOGY_REPLY
        assert response["analysis"]["degraded"] is True
        assert response["analysis"]["resultsCount"] == 1

    def test_all_fragments_empty_reports_no_evidence(self, make_context):
        ctx, parts = make_context()
        response = _ask(ctx, "What did I write about Dana?")

        assert response["analysis"]["noEvidence"] is True
        assert response["analysis"]["degraded"] is False
        assert "NO MATCHING JOURNAL ENTRIES" in parts["answer_model"].prompts[0]

    def test_store_outage_uses_builtin_vocabulary(self, make_context):
        ctx, _ = make_context(store=FakeStore(errors={"vocabularies": UpstreamProviderError("pg", "down")}))
        vocabulary = load_vocabulary(ctx)
        assert "joy" in vocabulary.emotions
        assert "Family" in vocabulary.themes


class TestGeneralReplies:
    def test_general_question_skips_retrieval(self, make_context):
        ctx, parts = make_context(
            classifier_model=FakeModel({"category": "GENERAL"}),
            answer_model=FakeModel("Journaling before bed can help you unwind."),
        )
        response = _ask(ctx, "Is journaling at night a good idea?")

        assert response["response"] == "Journaling before bed can help you unwind."
        assert response["analysis"]["classification"] == "GENERAL"
        assert parts["vector_search"].calls == []

    def test_clarification_falls_back_to_canned_question(self, make_context):
        ctx, _ = make_context(
            classifier_model=FakeModel({"category": "NEEDS_CLARIFICATION"}),
            answer_model=FakeModel(""),
        )
        response = _ask(ctx, "What about that?")
        assert response["response"] == CLARIFICATION_REPLY
        assert response["analysis"]["degraded"] is True


class TestResponseCache:
    def test_repeat_question_is_served_from_cache(self, make_context):
        ctx, parts = make_context(vector_search=FakeVectorSearch(rows=[make_row(1, similarity=0.8)]))
        first = _ask(ctx, "What did I write about Dana?", threadId="t-1")
        second = _ask(ctx, "what did i write about   dana?", threadId="t-1")

        assert second["response"] == first["response"]
        assert parts["classifier_model"].calls == 1
        assert len(parts["vector_search"].calls) == 1

    def test_cache_is_owner_scoped(self, make_context):
        ctx, parts = make_context(vector_search=FakeVectorSearch(rows=[make_row(1, similarity=0.8)]))
        _ask(ctx, "What did I write about Dana?")
        other = question_from_payload({"message": "What did I write about Dana?"}, "owner-456")
        asyncio.run(answer_question(other, ctx, now=NOW))
        assert parts["classifier_model"].calls == 2

    def test_degraded_responses_are_not_cached(self, make_context):
        ctx, parts = make_context(
            vector_search=FakeVectorSearch(error=UpstreamProviderError("qdrant", "down")),
            store=FakeStore(keyword_rows=[make_row(1, "Dinner with Dana", rank=0.5)]),
        )
        first = _ask(ctx, "What did I write about Dana?")
        _ask(ctx, "What did I write about Dana?")

        assert first["analysis"]["degraded"] is True
        assert parts["classifier_model"].calls == 2

    def test_no_evidence_response_is_cached(self, make_context):
        ctx, parts = make_context()
        first = _ask(ctx, "What did I write about Dana?")
        _ask(ctx, "What did I write about Dana?")

        assert first["analysis"]["noEvidence"] is True
        assert first["analysis"]["degraded"] is False
        assert parts["classifier_model"].calls == 1


class SlowOnceVectorSearch(FakeVectorSearch):
    """Stalls on the first search only."""

    def __init__(self, rows, first_delay):
        super().__init__(rows=rows)
        self.first_delay = first_delay

    def search(self, vector, owner_id, top_k, threshold, date_window=None):
        if not self.calls:
            self.calls.append({"owner_id": owner_id, "stalled": True})
            time.sleep(self.first_delay)
            return []
        return super().search(vector, owner_id, top_k, threshold, date_window)


class TestRouting:
    def test_stalled_primary_route_moves_to_fallback_route(self, make_context, monkeypatch):
        monkeypatch.setitem(ROUTES, "fast_track", RouteConfig(
            "fast_track", max_concurrency=2, timeout_seconds=0.2,
            max_entries=5, max_embeddings=3, cache_strategy="aggressive",
        ))
        vector_search = SlowOnceVectorSearch([make_row(1, similarity=0.8)], first_delay=0.6)
        ctx, _ = make_context(vector_search=vector_search)

        response = _ask(ctx, "What did I write about Dana?")

        analysis = response["analysis"]
        assert analysis["routeUsed"] == "standard"
        assert analysis["resultsCount"] == 1
        assert analysis["failedFragments"] == []
        assert len(vector_search.calls) == 2
        assert ctx.router.average_latency("What did I write about Dana?") > 0

    def test_every_route_failing_keeps_failure_reasons(self, make_context):
        ctx, _ = make_context(
            vector_search=FakeVectorSearch(error=UpstreamProviderError("qdrant", "down")),
            store=FakeStore(errors={
                "keyword_search": UpstreamProviderError("pg", "down"),
                "most_recent": UpstreamProviderError("pg", "down"),
            }),
        )
        response = _ask(ctx, "What did I write about Dana?")

        analysis = response["analysis"]
        assert analysis["routeUsed"] is None
        assert analysis["degraded"] is True
        assert len(analysis["failedFragments"]) == 1


class StallingModel(FakeModel):
    """Answers only after ``delay`` seconds."""

    def __init__(self, *responses, delay):
        super().__init__(*responses)
        self.delay = delay

    def _next(self, prompt):
        time.sleep(self.delay)
        return super()._next(prompt)


class TestTimeouts:
    def test_stalled_decomposer_uses_rule_fallback(self, make_context):
        decomposer = StallingModel({"subQuestions": [{"question": "never used", "type": "thematic"}]}, delay=0.5)
        ctx, parts = make_context(
            decomposer_model=decomposer,
            vector_search=FakeVectorSearch(rows=[make_row(1, similarity=0.8)]),
        )
        ctx.stage_timeout_seconds = 0.1

        response = _ask(ctx, "What did I write about Dana?")

        assert response["analysis"]["subQuestionCount"] == 1
        assert response["analysis"]["resultsCount"] == 1
        assert parts["answer_model"].calls == 1

    def test_stalled_classifier_apologizes(self, make_context):
        ctx, parts = make_context(classifier_model=StallingModel({"category": "JOURNAL_SPECIFIC"}, delay=0.5))
        ctx.stage_timeout_seconds = 0.1

        response = _ask(ctx, "How have I been sleeping?")

        assert response["response"] == APOLOGY_REPLY
        assert response["analysis"]["degraded"] is True
        assert parts["vector_search"].calls == []

    def test_request_budget_bounds_the_whole_turn(self, make_context):
        ctx, _ = make_context(
            answer_model=StallingModel("Too late.", delay=0.6),
            vector_search=FakeVectorSearch(rows=[make_row(1)]),
        )
        ctx.request_budget_seconds = 0.2

        response = _ask(ctx, "What did I write about Dana?")

        assert response["response"] == APOLOGY_REPLY
        assert response["analysis"]["degraded"] is True
