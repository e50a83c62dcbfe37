"""Answer generation from an evidence context."""

from __future__ import annotations

from typing import Optional, Sequence

from .aggregator import EvidenceContext
from .constants import ANSWER_HISTORY_TURNS, ANSWER_MODEL
from .errors import UpstreamProviderError
from .llm import GeminiModel
from .logger import LOGGER
from .models import ConversationTurn, QueryCategory

APOLOGY_REPLY = (
    "I'm sorry, I ran into a problem while looking through your journal. "
    "Please try asking again in a moment."
)

CLARIFICATION_REPLY = (
    "Could you tell me a little more about what you'd like to explore? "
    "For example, a time period, a feeling, or a person you've written about."
)


def _history_block(history: Sequence[ConversationTurn]) -> str:
    recent = list(history)[-ANSWER_HISTORY_TURNS:]
    if not recent:
        return "(no prior turns)"
    return "\n".join(f"{turn.role.upper()}: {turn.content[:500]}" for turn in recent)


class AnswerGenerator:
    """Write the final reply. Output is only checked for non-emptiness."""

    def __init__(self, model: Optional[GeminiModel] = None):
        self.model = model or GeminiModel(ANSWER_MODEL, temperature=0.4)

    def generate(
        self,
        message: str,
        context: EvidenceContext,
        history: Sequence[ConversationTurn] = (),
    ) -> str:
        prompt = f"""You are a warm, perceptive journaling companion. Answer the user's question
using ONLY the journal evidence below. Refer to dates naturally, quote sparingly,
and never invent entries or numbers that are not in the evidence.

CONVERSATION:
{_history_block(history)}

QUESTION: "{message}"

JOURNAL EVIDENCE:
{context.to_prompt_text()}

Reply in a few short paragraphs."""
        return self._complete(prompt, "journal answer")

    def generate_general(
        self,
        message: str,
        category: QueryCategory,
        history: Sequence[ConversationTurn] = (),
    ) -> str:
        """Reply without journal evidence (general advice or a clarifying question)."""
        if category == QueryCategory.NEEDS_CLARIFICATION:
            instruction = (
                "The question is about the user's journal but too vague to search. "
                "Ask one short, friendly clarifying question."
            )
        else:
            instruction = (
                "Answer helpfully as a journaling and wellbeing companion. Do not claim to "
                "have read the user's entries."
            )
        prompt = f"""{instruction}

CONVERSATION:
{_history_block(history)}

MESSAGE: "{message}\""""
        return self._complete(prompt, category.value.lower())

    def _complete(self, prompt: str, label: str) -> str:
        text = self.model.generate_text(prompt).strip()
        if not text:
            raise UpstreamProviderError(self.model.model, f"empty {label}")
        LOGGER.info("AnswerGenerator: produced %s (%d chars)", label, len(text))
        return text


__all__ = ["APOLOGY_REPLY", "AnswerGenerator", "CLARIFICATION_REPLY"]
