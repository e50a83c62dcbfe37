"""Tests for AnalysisPlanner drafting, validation and owner scoping."""

from datetime import datetime, timezone

import pytest

from conftest import FakeModel
from journal_rag.errors import ValidationError
from journal_rag.models import (
    OWNER_COLUMN,
    Filter,
    FilterOperator,
    PlanKind,
    SearchStrategy,
    StructuredOperation,
    SubQuestion,
    SubQuestionParameters,
    SubQuestionType,
    TimeRange,
)
from journal_rag.planner import AnalysisPlanner, merge_time_range, secure_filters

OWNER = "owner-123"

MARCH = TimeRange(
    start=datetime(2026, 3, 1, tzinfo=timezone.utc),
    end=datetime(2026, 3, 31, 23, 59, tzinfo=timezone.utc),
)


def _sq(text="How did I feel?", sq_type=SubQuestionType.THEMATIC, strategy=SearchStrategy.VECTOR, **params):
    return SubQuestion(text=text, type=sq_type, strategy=strategy, parameters=SubQuestionParameters(**params))


def _owner_filters(plan):
    return [f for f in plan.structured.filters if f.is_owner_filter]


class TestSecureFilters:
    def test_spoofed_owner_is_replaced(self):
        raw = [
            {"column": "user_id", "operator": "equals", "value": "victim"},
            {"column": OWNER_COLUMN, "operator": "equals_current_owner", "value": "victim"},
            {"column": "sentiment", "operator": "gte", "value": 0.5},
        ]
        filters = secure_filters(raw, OWNER)

        owner = [f for f in filters if f.is_owner_filter]
        assert len(owner) == 1
        assert owner[0].value == OWNER
        assert Filter("sentiment", FilterOperator.GTE, 0.5) in filters

    def test_duplicates_are_collapsed(self):
        raw = [{"column": "entities", "operator": "array_contains", "value": "Dana"}] * 2
        assert len(secure_filters(raw, OWNER)) == 2

    def test_unknown_operator_raises(self):
        with pytest.raises(ValidationError):
            secure_filters([{"column": "sentiment", "operator": "regex", "value": ".*"}], OWNER)

    def test_operator_must_suit_column(self):
        with pytest.raises(ValidationError):
            secure_filters([{"column": "master_themes", "operator": "gte", "value": "Work"}], OWNER)

    def test_unknown_column_raises(self):
        with pytest.raises(ValidationError):
            secure_filters([{"column": "password", "operator": "equals", "value": "x"}], OWNER)

    def test_empty_owner_raises(self):
        with pytest.raises(ValidationError):
            secure_filters([], "")


class TestDraftPlan:
    def test_count_intent(self):
        plan = AnalysisPlanner(use_model=False).plan(
            _sq("How many times did I mention work?", themes=("Work",), analysis_kind="count"), OWNER,
        )
        assert plan.kind == PlanKind.COUNT
        assert plan.structured.operation == StructuredOperation.COUNT
        assert len(_owner_filters(plan)) == 1
        assert Filter("master_themes", FilterOperator.ARRAY_CONTAINS, "Work") in plan.structured.filters

    def test_percentage_uses_subset_filters(self):
        plan = AnalysisPlanner(use_model=False).plan(
            _sq("What share of entries mention anxiety?", emotions=("anxiety",), analysis_kind="percentage"),
            OWNER,
        )
        assert plan.kind == PlanKind.CALCULATION
        assert plan.structured.operation == StructuredOperation.PERCENTAGE
        assert plan.structured.subset_filters[0].column == "emotions"
        assert plan.structured.subset_filters[0].value.minimum == 0.3

    def test_windowed_emotional_question_is_hybrid(self):
        plan = AnalysisPlanner(use_model=False).plan(
            _sq(sq_type=SubQuestionType.EMOTIONAL, time_range=MARCH), OWNER,
        )
        assert plan.kind == PlanKind.HYBRID
        assert plan.structured.operation == StructuredOperation.TOP_EMOTIONS
        assert plan.uses_vector
        assert plan.vector.date_window == MARCH
        assert Filter("created_at", FilterOperator.GTE, MARCH.start) in plan.structured.filters
        assert Filter("created_at", FilterOperator.LTE, MARCH.end) in plan.structured.filters

    def test_structured_strategy_selects(self):
        plan = AnalysisPlanner(use_model=False).plan(
            _sq(strategy=SearchStrategy.STRUCTURED, entities=("Dana",)), OWNER,
        )
        assert plan.kind == PlanKind.SELECT
        assert plan.vector is None

    def test_default_is_vector_search(self):
        plan = AnalysisPlanner(use_model=False).plan(_sq(themes=("Work",)), OWNER)
        assert plan.kind == PlanKind.VECTOR_SEARCH
        assert plan.structured is None
        assert plan.vector.query_text == "How did I feel? (Work)"


class TestModelPlans:
    def test_model_plan_is_validated_and_scoped(self):
        model = FakeModel({
            "kind": "select",
            "structured": {
                "operation": "select",
                "filters": [
                    {"column": "user_id", "operator": "equals", "value": "someone-else"},
                    {"column": "entities", "operator": "array_contains", "value": "Dana"},
                ],
                "limit": 500,
            },
            "vector": {"enabled": True, "topK": 10},
        })
        plan = AnalysisPlanner(model).plan(_sq(), OWNER)

        assert plan.kind == PlanKind.SELECT
        assert plan.degraded is False
        assert plan.vector is None
        assert plan.structured.limit == 100
        owner = _owner_filters(plan)
        assert len(owner) == 1 and owner[0].value == OWNER

    def test_kind_operation_mismatch_degrades(self):
        model = FakeModel({"kind": "count", "structured": {"operation": "select"}})
        plan = AnalysisPlanner(model).plan(_sq(), OWNER)
        assert plan.degraded is True

    def test_validate_plan_rejects_mismatch(self):
        planner = AnalysisPlanner(use_model=False)
        with pytest.raises(ValidationError):
            planner.validate_plan({"kind": "count", "structured": {"operation": "select"}}, _sq(), OWNER)

    def test_validate_plan_rejects_unselectable_column(self):
        planner = AnalysisPlanner(use_model=False)
        raw = {"kind": "select", "structured": {"operation": "select", "columns": ["owner_id"]}}
        with pytest.raises(ValidationError):
            planner.validate_plan(raw, _sq(), OWNER)

    def test_invalid_output_gives_degraded_vector_plan(self):
        model = FakeModel("this is not a plan")
        plan = AnalysisPlanner(model).plan(_sq("What did I write about Dana?"), OWNER)

        assert plan.degraded is True
        assert plan.kind == PlanKind.VECTOR_SEARCH
        assert plan.vector.top_k == 10
        assert plan.vector.threshold == 0.3
        assert plan.vector.query_text == "What did I write about Dana?"

    def test_vector_values_are_clamped(self):
        model = FakeModel({"kind": "vector_search", "vector": {"topK": 900, "threshold": 4}})
        plan = AnalysisPlanner(model).plan(_sq(), OWNER)
        assert plan.vector.top_k == 50
        assert plan.vector.threshold == 1.0


class TestPlanCache:
    def test_plans_are_cached(self, cache):
        model = FakeModel({"kind": "vector_search", "vector": {"topK": 5}})
        planner = AnalysisPlanner(model, cache=cache)

        first = planner.plan(_sq(), OWNER)
        second = planner.plan(_sq(), OWNER)

        assert first == second
        assert model.calls == 1

    def test_plan_cache_is_owner_scoped(self, cache):
        model = FakeModel({"kind": "vector_search", "vector": {"topK": 5}})
        planner = AnalysisPlanner(model, cache=cache)
        planner.plan(_sq(), OWNER)
        planner.plan(_sq(), "another-owner")
        assert model.calls == 2

    def test_degraded_plans_are_not_cached(self, cache):
        model = FakeModel("garbage")
        planner = AnalysisPlanner(model, cache=cache)
        planner.plan(_sq(), OWNER)
        planner.plan(_sq(), OWNER)
        assert model.calls == 2


class TestMergeTimeRange:
    def test_merge_is_idempotent(self):
        plan = AnalysisPlanner(use_model=False).draft_plan(
            _sq(strategy=SearchStrategy.HYBRID), OWNER,
        )
        once = merge_time_range(plan, MARCH)
        twice = merge_time_range(once, MARCH)
        assert once == twice
        assert twice is once
        created = [f for f in twice.structured.filters if f.column == "created_at"]
        assert len(created) == 2

    def test_new_window_replaces_old_bounds(self):
        plan = AnalysisPlanner(use_model=False).draft_plan(
            _sq(strategy=SearchStrategy.STRUCTURED), OWNER,
        )
        april = TimeRange(start=datetime(2026, 4, 1, tzinfo=timezone.utc))
        merged = merge_time_range(merge_time_range(plan, MARCH), april)

        gte = [f for f in merged.structured.filters if f.operator == FilterOperator.GTE]
        assert [f.value for f in gte] == [april.start]
        # The LTE bound from the first window is kept since April has no end
        assert any(f.operator == FilterOperator.LTE for f in merged.structured.filters)

    def test_empty_window_is_noop(self):
        plan = AnalysisPlanner.degraded_plan(_sq())
        assert merge_time_range(plan, None) is plan
        assert merge_time_range(plan, TimeRange()) is plan
