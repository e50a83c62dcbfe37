"""Merge per-fragment execution results into one evidence context."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .cache import stable_hash
from .constants import MAX_REFERENCE_RECORDS
from .logger import LOGGER
from .models import (
    ConfidenceTag,
    ExecutionResult,
    ExecutionState,
    SearchMethod,
)

_PRIMARY_METHODS = frozenset({SearchMethod.VECTOR, SearchMethod.STRUCTURED, SearchMethod.HYBRID})

# Higher is more degraded
_DEGRADATION_RANK = {
    SearchMethod.VECTOR: 0,
    SearchMethod.STRUCTURED: 0,
    SearchMethod.HYBRID: 0,
    SearchMethod.KEYWORD_FALLBACK: 1,
    SearchMethod.RECENT_FALLBACK: 2,
}

_SNIPPET_CHARS = 400


@dataclass
class EvidenceSection:
    """Evidence gathered for one sub-question."""
    question: str
    type: str
    state: ExecutionState
    confidence: ConfidenceTag
    search_method: SearchMethod
    rows: List[Dict[str, Any]] = field(default_factory=list)
    count: Optional[int] = None
    percentage: Optional[Dict[str, Any]] = None
    statistics: Optional[List[Dict[str, Any]]] = None
    error: Optional[str] = None
    no_evidence: bool = False


@dataclass
class EvidenceContext:
    sections: List[EvidenceSection]
    reference_records: List[Dict[str, Any]]
    statistical_data: Dict[str, Any]
    search_method: SearchMethod
    fallbacks_used: List[str]
    results_count: int
    degraded: bool
    failed_fragments: List[str]
    no_evidence: bool

    def to_prompt_text(self) -> str:
        """Render the evidence as plain text for the answer generator."""
        if self.no_evidence:
            return (
                "NO MATCHING JOURNAL ENTRIES were found for this question. Say so plainly, "
                "do not invent entries, and invite the user to add more detail or write about it."
            )

        lines: List[str] = []
        for index, section in enumerate(self.sections, 1):
            lines.append(
                f"### Part {index}: {section.question} "
                f"[{section.type}; confidence {section.confidence.value}; via {section.search_method.value}]"
            )
            if section.state == ExecutionState.FAILED:
                lines.append("(No data could be retrieved for this part.)")
                continue
            if section.no_evidence:
                lines.append("(No matching entries for this part.)")
                continue
            if section.count is not None:
                lines.append(f"Matching entries: {section.count}")
            if section.percentage is not None:
                lines.append(
                    f"Share of entries: {section.percentage['percentage']}% "
                    f"({section.percentage['subsetCount']} of {section.percentage['totalCount']})"
                )
            if section.statistics:
                lines.append("Top emotions (average score, entries):")
                for stat in section.statistics:
                    lines.append(f"- {stat['emotion']}: {stat['averageScore']} ({stat['entryCount']})")
            elif section.statistics is not None:
                lines.append("No emotion scores in this period.")
            for row in section.rows:
                lines.append(_format_row(row))
            if section.confidence == ConfidenceTag.LOW:
                lines.append("(These are simply the most recent entries; treat them as loose context.)")

        if self.degraded:
            lines.append(
                "\nNOTE: Some parts of the question could not be fully answered from the journal; "
                "acknowledge the gap briefly."
            )
        return "\n".join(lines)


def _format_row(row: Dict[str, Any]) -> str:
    content = (row.get("content") or "").strip().replace("\n", " ")
    if len(content) > _SNIPPET_CHARS:
        content = content[:_SNIPPET_CHARS].rstrip() + "..."
    date = str(row.get("created_at") or "")[:10] or "undated"
    emotions = row.get("emotions") or {}
    top = sorted(emotions.items(), key=lambda kv: _as_float(kv[1]), reverse=True)[:3]
    mood = f" | emotions: {', '.join(k for k, _ in top)}" if top else ""
    return f"- [{date}] {content}{mood}"


def _as_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _row_score(row: Dict[str, Any]) -> float:
    for key in ("similarity", "rank"):
        if row.get(key) is not None:
            return _as_float(row[key])
    return 0.0


def _row_key(row: Dict[str, Any]) -> str:
    if row.get("id") is not None:
        return str(row["id"])
    return stable_hash(row.get("created_at"), row.get("content"))


def is_degraded(result: ExecutionResult) -> bool:
    """FAILED, answered by a fallback step, or run from a degraded plan.

    A fragment that found nothing without any step erroring is a normal
    no-evidence outcome, not a degradation.
    """
    if result.state == ExecutionState.FAILED:
        return True
    if _DEGRADATION_RANK.get(result.search_method, 0) > 0:
        return True
    if result.plan is not None and result.plan.degraded:
        return True
    return result.no_evidence and bool(result.error)


def overall_search_method(results: Sequence[ExecutionResult]) -> SearchMethod:
    """Single fragment: its method. Mixed primaries: hybrid. Else the most degraded."""
    methods = [r.search_method for r in results if r.search_method != SearchMethod.NONE]
    if not methods:
        return SearchMethod.NONE
    if len(methods) == 1:
        return methods[0]

    primaries = {m for m in methods if m in _PRIMARY_METHODS}
    if SearchMethod.HYBRID in primaries or {SearchMethod.VECTOR, SearchMethod.STRUCTURED} <= primaries:
        return SearchMethod.HYBRID
    return max(methods, key=lambda m: _DEGRADATION_RANK[m])


class EvidenceAggregator:
    """Build the EvidenceContext handed to the answer generator."""

    def __init__(self, max_reference_records: int = MAX_REFERENCE_RECORDS):
        self.max_reference_records = max_reference_records

    def build(self, results: Sequence[ExecutionResult]) -> EvidenceContext:
        sections: List[EvidenceSection] = []
        records: Dict[str, Dict[str, Any]] = {}
        counts: List[Dict[str, Any]] = []
        percentages: List[Dict[str, Any]] = []
        top_emotions: List[Dict[str, Any]] = []
        fallbacks: List[str] = []
        failed: List[str] = []

        for result in results:
            question = result.sub_question.text
            percentage = result.percentage.to_dict() if result.percentage is not None else None
            sections.append(EvidenceSection(
                question=question,
                type=result.sub_question.type.value,
                state=result.state,
                confidence=result.confidence,
                search_method=result.search_method,
                rows=list(result.rows),
                count=result.count,
                percentage=percentage,
                statistics=result.statistics,
                error=result.error,
                no_evidence=result.no_evidence,
            ))

            for name in result.fallbacks_used:
                if name not in fallbacks:
                    fallbacks.append(name)
            if result.state == ExecutionState.FAILED:
                failed.append(question)

            if result.count is not None:
                counts.append({"question": question, "count": result.count})
            if percentage is not None:
                percentages.append(dict(percentage, question=question))
            if result.statistics:
                top_emotions.append({"question": question, "emotions": result.statistics})

            for row in result.rows:
                self._add_record(records, row, result.search_method)

        ranked = sorted(records.values(), key=lambda r: r["score"], reverse=True)
        statistical_data: Dict[str, Any] = {}
        if counts:
            statistical_data["counts"] = counts
        if percentages:
            statistical_data["percentages"] = percentages
        if top_emotions:
            statistical_data["topEmotions"] = top_emotions

        no_evidence = bool(results) and not any(r.has_evidence for r in results)
        degraded = any(is_degraded(r) for r in results)

        context = EvidenceContext(
            sections=sections,
            reference_records=ranked[: self.max_reference_records],
            statistical_data=statistical_data,
            search_method=overall_search_method(results),
            fallbacks_used=fallbacks,
            results_count=len(records),
            degraded=degraded or not results,
            failed_fragments=failed,
            no_evidence=no_evidence or not results,
        )
        LOGGER.info(
            "EvidenceAggregator: %d sections, %d unique records, method=%s degraded=%s failed=%d",
            len(sections), context.results_count, context.search_method.value,
            context.degraded, len(failed),
        )
        return context

    @staticmethod
    def _add_record(records: Dict[str, Dict[str, Any]], row: Dict[str, Any], method: SearchMethod) -> None:
        key = _row_key(row)
        score = _row_score(row)
        existing = records.get(key)
        if existing is not None and existing["score"] >= score:
            return
        content = row.get("content") or ""
        records[key] = {
            "id": row.get("id"),
            "content": content[:_SNIPPET_CHARS],
            "createdAt": row.get("created_at"),
            "themes": list(row.get("themes") or []),
            "emotions": dict(row.get("emotions") or {}),
            "score": score,
            "source": method.value,
        }


__all__ = ["EvidenceAggregator", "EvidenceContext", "EvidenceSection", "is_degraded", "overall_search_method"]
