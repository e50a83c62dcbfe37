"""Turn classification: does this message need the journal at all?

Deterministic fast paths run first and never touch a model:

1. Acknowledgements ("ok", "thanks", emoji-only) -> GENERAL, canned reply.
2. Analysis-shaped questions from a requester with zero records ->
   GENERAL, skip the pipeline, invite them to write a first entry.
3. Clarifying follow-ups on general advice -> GENERAL (continuity).

Everything else goes to a single model call. A failed call or an
out-of-enum category raises ``ClassificationError``; there is no silent
default, since a wrong category mis-routes retrieval.
"""

from __future__ import annotations

import json as json_module
import re
from typing import Any, Dict, Optional, Sequence

from .constants import CLASSIFIER_HISTORY_TURNS, CLASSIFIER_MODEL
from .errors import ClassificationError, UpstreamProviderError
from .llm import GeminiModel
from .logger import LOGGER
from .models import Classification, ConversationTurn, QueryCategory, RequesterProfile

ACKNOWLEDGEMENT_REPLY = "You're welcome! Let me know whenever you want to look back at your journal."

FIRST_ENTRY_INVITATION = (
    "I'd love to help you spot patterns, but there are no journal entries to look at yet. "
    "Try recording your first entry about how your day went, and once you've written a few, "
    "ask me again and I'll analyze them for you."
)

_ACKNOWLEDGEMENTS = frozenset({
    "ok", "okay", "k", "kk", "okie", "sure", "cool", "nice", "great", "awesome",
    "thanks", "thank you", "thankyou", "thx", "ty", "tysm", "thanks a lot",
    "got it", "gotcha", "alright", "all right", "perfect", "noted", "yep", "yes",
    "no problem", "np", "fine", "good", "ok thanks", "okay thanks", "ok thank you",
    "cool thanks", "great thanks", "awesome thanks", "makes sense",
})

_ANALYSIS_SHAPED = re.compile(
    r"\b(analy[sz]e|analysis|pattern|patterns|trend|trends|insight|insights|"
    r"rate me|score me|summari[sz]e my|how have i been|my progress|my mood|my moods|"
    r"my emotions|what do my|based on my)\b"
)

_CLARIFYING_FOLLOW_UP = re.compile(
    r"^(what do you mean|what does that mean|can you explain|could you explain|explain|"
    r"how do i|how would i|how can i|how does that|why|what about|what if|"
    r"can you elaborate|elaborate|tell me more|more on that|like what|such as|"
    r"and then|so how|is that|does that|would that|should i)\b"
)

_PERSONAL_RECORD_REFERENCE = re.compile(
    r"\b(my (journal|entries|entry|notes|records|logs|diary)|i wrote|i journaled|"
    r"i've written|i have written|in my entries|from my entries)\b"
)


def _normalize(message: str) -> str:
    return " ".join(re.sub(r"[!.?,~]+", " ", message.lower()).split())


def is_acknowledgement(message: str) -> bool:
    """True for bare acknowledgements and emoji-only messages."""
    stripped = message.strip()
    if not stripped:
        return True
    if not any(ch.isalnum() for ch in stripped):
        # Emoji, punctuation, or symbol only
        return True
    return _normalize(stripped) in _ACKNOWLEDGEMENTS


def is_analysis_shaped(message: str) -> bool:
    return bool(_ANALYSIS_SHAPED.search(message.lower()))


def is_clarifying_follow_up(message: str) -> bool:
    normalized = _normalize(message)
    if _PERSONAL_RECORD_REFERENCE.search(normalized):
        return False
    return bool(_CLARIFYING_FOLLOW_UP.match(normalized))


def _last_assistant_turn(history: Sequence[ConversationTurn]) -> Optional[ConversationTurn]:
    for turn in reversed(history):
        if turn.role == "assistant":
            return turn
    return None


class QueryClassifier:
    """Categorize the current turn given recent conversation history."""

    def __init__(self, model: Optional[GeminiModel] = None):
        self.model = model or GeminiModel(CLASSIFIER_MODEL)

    # -----------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------

    def classify(
        self,
        message: str,
        history: Sequence[ConversationTurn] = (),
        profile: Optional[RequesterProfile] = None,
    ) -> Classification:
        profile = profile or RequesterProfile()
        recent = list(history)[-CLASSIFIER_HISTORY_TURNS:]

        # --- Fast path: acknowledgements ---
        if is_acknowledgement(message):
            LOGGER.info("QueryClassifier: acknowledgement short-circuit")
            return Classification(
                category=QueryCategory.GENERAL,
                canned_reply=ACKNOWLEDGEMENT_REPLY,
                skip_pipeline=True,
                reasoning="acknowledgement",
            )

        # --- Fast path: nothing to analyze yet ---
        if profile.record_count == 0 and is_analysis_shaped(message):
            LOGGER.info("QueryClassifier: zero-record analysis request, inviting first entry")
            return Classification(
                category=QueryCategory.GENERAL,
                canned_reply=FIRST_ENTRY_INVITATION,
                skip_pipeline=True,
                reasoning="requester has no records to analyze",
            )

        # --- Fast path: continuity with general advice ---
        previous = _last_assistant_turn(recent)
        if (
            previous is not None
            and previous.category == QueryCategory.GENERAL
            and is_clarifying_follow_up(message)
        ):
            LOGGER.info("QueryClassifier: follow-up on general advice stays GENERAL")
            return Classification(
                category=QueryCategory.GENERAL,
                reasoning="clarifying follow-up on general advice",
            )

        # --- Model call ---
        raw = self._call_model(message, recent, profile)
        category = self._parse_category(raw.get("category"))

        try:
            confidence = float(raw.get("confidence", 1.0))
        except (TypeError, ValueError):
            confidence = 1.0

        classification = Classification(
            category=category,
            confidence=max(0.0, min(1.0, confidence)),
            reasoning=str(raw.get("reasoning") or ""),
        )
        LOGGER.info(
            "QueryClassifier RESULT: category=%s confidence=%.2f reasoning='%s'",
            classification.category.value, classification.confidence, classification.reasoning[:120],
        )
        return classification

    # -----------------------------------------------------------------
    # Model call
    # -----------------------------------------------------------------

    def _call_model(
        self,
        message: str,
        history: Sequence[ConversationTurn],
        profile: RequesterProfile,
    ) -> Dict[str, Any]:
        history_text = "\n".join(
            f"{turn.role.upper()}"
            f"{f' [{turn.category.value}]' if turn.category else ''}: {turn.content[:300]}"
            for turn in history
        ) or "(no prior turns)"

        prompt = f"""You classify messages sent to the assistant of a personal voice-journaling app.

CONVERSATION SO FAR (oldest first):
{history_text}

CURRENT MESSAGE: "{message}"
USER HAS {profile.record_count if profile.record_count is not None else "an unknown number of"} JOURNAL ENTRIES.

CATEGORIES:
- JOURNAL_SPECIFIC: needs the user's own journal entries to answer (their feelings, patterns, events, people, progress).
- NEEDS_CLARIFICATION: about the user's journal but too vague to act on.
- GENERAL: greetings, general mental-health or journaling advice, questions about the app, off-topic questions.

RULES:
- If the previous assistant turn gave general advice and the current message only asks to clarify or expand that advice, answer GENERAL even when the words sound personal.
- Use JOURNAL_SPECIFIC only when the answer depends on the user's own records.

Return ONLY JSON: {{"category": "JOURNAL_SPECIFIC|NEEDS_CLARIFICATION|GENERAL", "confidence": 0.0-1.0, "reasoning": "short"}}"""

        try:
            raw = self.model.generate_json(prompt)
        except UpstreamProviderError as exc:
            raise ClassificationError(f"classifier call failed: {exc}", exc) from exc

        if not isinstance(raw, dict):
            raise ClassificationError(
                f"classifier returned non-object output: {json_module.dumps(raw)[:200]}"
            )
        return raw

    @staticmethod
    def _parse_category(raw_category: Any) -> QueryCategory:
        if not isinstance(raw_category, str):
            raise ClassificationError(f"classifier returned no category: {raw_category!r}")
        try:
            return QueryCategory(raw_category.strip().upper())
        except ValueError:
            raise ClassificationError(f"classifier returned out-of-enum category: {raw_category!r}")


__all__ = [
    "ACKNOWLEDGEMENT_REPLY",
    "FIRST_ENTRY_INVITATION",
    "QueryClassifier",
    "is_acknowledgement",
    "is_analysis_shaped",
    "is_clarifying_follow_up",
]
