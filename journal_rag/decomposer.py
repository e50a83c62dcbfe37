"""Split a journal question into 1-4 independently answerable sub-questions."""

from __future__ import annotations

import json as json_module
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .constants import (
    DECOMPOSER_CONTEXT_TURNS,
    DECOMPOSER_MODEL,
    MAX_SUB_QUESTIONS,
    VOCABULARY_PROMPT_LIMIT,
)
from .errors import UpstreamProviderError, ValidationError
from .llm import GeminiModel
from .logger import LOGGER
from .models import (
    ConversationTurn,
    SearchStrategy,
    SubQuestion,
    SubQuestionParameters,
    SubQuestionType,
    TimeRange,
)
from .profiling import time_function

# Strategy spellings accepted from the model
_STRATEGY_ALIASES = {
    "vector": SearchStrategy.VECTOR,
    "semantic": SearchStrategy.VECTOR,
    "sql": SearchStrategy.STRUCTURED,
    "structured": SearchStrategy.STRUCTURED,
    "hybrid": SearchStrategy.HYBRID,
}


class Vocabulary:
    """Controlled theme and emotion terms; lookups are case-insensitive."""

    def __init__(self, themes: Iterable[str], emotions: Iterable[str]):
        self.themes: Tuple[str, ...] = tuple(themes)
        self.emotions: Tuple[str, ...] = tuple(emotions)
        self._themes = {t.lower(): t for t in self.themes}
        self._emotions = {e.lower(): e for e in self.emotions}

    def filter_themes(self, terms: Iterable[Any]) -> Tuple[str, ...]:
        return self._confine(terms, self._themes, "theme")

    def filter_emotions(self, terms: Iterable[Any]) -> Tuple[str, ...]:
        return self._confine(terms, self._emotions, "emotion")

    @staticmethod
    def _confine(terms: Iterable[Any], known: Dict[str, str], label: str) -> Tuple[str, ...]:
        kept: List[str] = []
        for term in terms or ():
            if not isinstance(term, str):
                continue
            canonical = known.get(term.strip().lower())
            if canonical is None:
                LOGGER.info("Decomposer: dropping out-of-vocabulary %s '%s'", label, term)
                continue
            if canonical not in kept:
                kept.append(canonical)
        return tuple(kept)


def attach_time_range(sub_question: SubQuestion, time_range: Optional[TimeRange]) -> SubQuestion:
    """Scope ``sub_question`` to the caller's window.

    An explicit caller window is authoritative and replaces any window the
    model or the keyword heuristics guessed.
    """
    if time_range is None or time_range.is_empty or sub_question.parameters.time_range == time_range:
        return sub_question
    return replace(sub_question, parameters=replace(sub_question.parameters, time_range=time_range))


class SubQuestionDecomposer:
    """Model-driven decomposition with a deterministic rule-based fallback.

    Whatever happens upstream, ``decompose`` returns between 1 and
    ``MAX_SUB_QUESTIONS`` sub-questions.
    """

    def __init__(self, model: Optional[GeminiModel] = None):
        self.model = model or GeminiModel(DECOMPOSER_MODEL, temperature=0.3)

    # -----------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------

    @time_function
    def decompose(
        self,
        message: str,
        context: Sequence[ConversationTurn],
        vocabulary: Vocabulary,
        time_range: Optional[TimeRange] = None,
        now: Optional[datetime] = None,
    ) -> List[SubQuestion]:
        try:
            raw = self._call_model(message, context, vocabulary)
            sub_questions = self._parse_sub_questions(raw, vocabulary)
            method = "model"
        except (UpstreamProviderError, ValidationError) as exc:
            LOGGER.warning("Decomposition failed (%s), using rule-based fallback", exc)
            sub_questions = self.fallback(message, now=now)
            method = "fallback"

        sub_questions = [attach_time_range(sq, time_range) for sq in sub_questions]

        LOGGER.info(
            "Decomposed '%s' into %d sub-questions via %s: %s",
            message[:60], len(sub_questions), method,
            [(sq.type.value, sq.strategy.value, sq.priority) for sq in sub_questions],
        )
        return sub_questions

    @staticmethod
    def fallback(message: str, now: Optional[datetime] = None) -> List[SubQuestion]:
        """Keyword heuristics plus one contextual safety-net question."""
        lowered = message.lower()
        today = (now or datetime.now(timezone.utc)).date()
        sub_questions: List[SubQuestion] = []

        def _since(days: int) -> TimeRange:
            start = datetime.combine(today - timedelta(days=days), datetime.min.time(), tzinfo=timezone.utc)
            return TimeRange(start=start)

        if "mood" in lowered or "feel" in lowered:
            sub_questions.append(SubQuestion(
                text="What emotions have been most prominent recently?",
                type=SubQuestionType.EMOTIONAL,
                priority=4,
                strategy=SearchStrategy.STRUCTURED,
                parameters=SubQuestionParameters(time_range=_since(7), analysis_kind="summary"),
                rationale="User is asking about emotional state",
            ))

        if "progress" in lowered or "improve" in lowered:
            sub_questions.append(SubQuestion(
                text="What patterns of growth or challenges can be identified?",
                type=SubQuestionType.ANALYTICAL,
                priority=5,
                strategy=SearchStrategy.HYBRID,
                parameters=SubQuestionParameters(time_range=_since(30), analysis_kind="trend"),
                rationale="User is interested in progress analysis",
            ))

        sub_questions.append(SubQuestion(
            text=message.strip() or "What are the most relevant recent entries?",
            type=SubQuestionType.CONTEXTUAL,
            priority=3,
            strategy=SearchStrategy.VECTOR,
            rationale="General context retrieval",
        ))
        return sub_questions

    # -----------------------------------------------------------------
    # Model call
    # -----------------------------------------------------------------

    def _call_model(
        self,
        message: str,
        context: Sequence[ConversationTurn],
        vocabulary: Vocabulary,
    ) -> Any:
        recent = [
            {"role": turn.role, "content": turn.content[:300]}
            for turn in list(context)[-DECOMPOSER_CONTEXT_TURNS:]
        ]
        prompt = f"""You generate retrieval sub-questions for a personal journal analysis system.

AVAILABLE THEMES (use only these exact names): {", ".join(vocabulary.themes[:VOCABULARY_PROMPT_LIMIT])}
AVAILABLE EMOTIONS (use only these exact names): {", ".join(vocabulary.emotions[:VOCABULARY_PROMPT_LIMIT])}

SEARCH STRATEGIES:
- vector: semantic similarity and concept matching
- sql: specific criteria, dates, counts, exact matches
- hybrid: both

USER QUERY: "{message}"
RECENT CONVERSATION: {json_module.dumps(recent)}

Generate 1-{MAX_SUB_QUESTIONS} sub-questions, each targeting one aspect of the query.

Return ONLY JSON: {{"subQuestions": [{{
    "question": "specific question",
    "type": "temporal|emotional|thematic|entity|analytical|contextual",
    "priority": 1-5,
    "searchStrategy": "vector|sql|hybrid",
    "parameters": {{
        "timeRange": {{"start": "YYYY-MM-DD", "end": "YYYY-MM-DD"}},
        "emotions": [], "themes": [], "entities": [],
        "analysisType": "trend|pattern|comparison|summary|count|percentage"
    }},
    "reasoning": "why"
}}]}}"""

        raw = self.model.generate_json(prompt)
        LOGGER.debug("SubQuestionDecomposer RAW response: %s", json_module.dumps(raw)[:500])
        return raw

    def _parse_sub_questions(self, raw: Any, vocabulary: Vocabulary) -> List[SubQuestion]:
        items = raw.get("subQuestions") if isinstance(raw, dict) else raw
        if not isinstance(items, list) or not items:
            raise ValidationError("decomposer returned no sub-question list")

        parsed: List[SubQuestion] = []
        for item in items:
            if not isinstance(item, dict):
                raise ValidationError(f"sub-question is not an object: {item!r}")
            text = str(item.get("question") or item.get("text") or "").strip()
            if not text:
                raise ValidationError("sub-question without text")

            try:
                sq_type = SubQuestionType(str(item.get("type", "")).strip().lower())
            except ValueError:
                raise ValidationError(f"invalid sub-question type: {item.get('type')!r}")

            strategy = _STRATEGY_ALIASES.get(str(item.get("searchStrategy", "vector")).strip().lower())
            if strategy is None:
                raise ValidationError(f"invalid search strategy: {item.get('searchStrategy')!r}")

            params = item.get("parameters") or {}
            if not isinstance(params, dict):
                raise ValidationError("sub-question parameters must be an object")

            lists = {}
            for name in ("emotions", "themes", "entities"):
                value = params.get(name) or []
                if not isinstance(value, list):
                    raise ValidationError(f"parameter '{name}' must be a list, got {type(value).__name__}")
                lists[name] = value

            entities = tuple(e.strip() for e in lists["entities"] if isinstance(e, str) and e.strip())
            parsed.append(SubQuestion(
                text=text,
                type=sq_type,
                priority=item.get("priority", 3),
                strategy=strategy,
                parameters=SubQuestionParameters(
                    time_range=TimeRange.from_dict(params.get("timeRange")),
                    emotions=vocabulary.filter_emotions(lists["emotions"]),
                    themes=vocabulary.filter_themes(lists["themes"]),
                    entities=entities,
                    analysis_kind=params.get("analysisType") or None,
                ),
                rationale=str(item.get("reasoning") or ""),
            ))

        if len(parsed) > MAX_SUB_QUESTIONS:
            LOGGER.info(
                "Decomposer produced %d sub-questions (max %d), keeping highest priority",
                len(parsed), MAX_SUB_QUESTIONS,
            )
            ranked = sorted(range(len(parsed)), key=lambda i: (-parsed[i].priority, i))
            keep = sorted(ranked[:MAX_SUB_QUESTIONS])
            parsed = [parsed[i] for i in keep]

        return parsed


__all__ = ["SubQuestionDecomposer", "Vocabulary", "attach_time_range"]
