"""Exception taxonomy for the query pipeline.

Only ``ConfigurationError`` is allowed to abort a request. Everything else is
recovered inside the pipeline (fallback chain, router fallback, safe default
plan) and at worst degrades the response.
"""

from __future__ import annotations

from typing import Any, List, Optional


class JournalPipelineError(Exception):
    """Base class for all pipeline errors."""
    pass


class ConfigurationError(JournalPipelineError):
    """Missing credentials or configuration. Fatal and non-retryable."""
    pass


class UpstreamProviderError(JournalPipelineError):
    """An embedding, model, or store call failed.

    Recoverable via the fallback chain or the router fallback; never
    surfaced raw to the caller.
    """

    def __init__(self, provider: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.cause = cause


class ClassificationError(UpstreamProviderError):
    """Classifier call failed or returned a category outside the enum."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__("classifier", message, cause)


class RetrievalFailedError(UpstreamProviderError):
    """Every sub-question of a fan-out FAILED; another route may still succeed.

    ``results`` holds the FAILED execution results with their reasons.
    """

    def __init__(self, results: List[Any]):
        reasons = sorted({str(getattr(r, "error", "") or "unknown") for r in results})
        super().__init__("retrieval", f"all {len(results)} sub-questions failed: {reasons}")
        self.results = list(results)


class ValidationError(JournalPipelineError):
    """Malformed plan, disallowed operator, or out-of-vocabulary term."""
    pass


class PartialResultError(JournalPipelineError):
    """Some sub-questions failed. The aggregate is still returned, degraded."""

    def __init__(self, failed_fragments: List[str], total: int):
        super().__init__(
            f"{len(failed_fragments)} of {total} sub-questions failed: {failed_fragments}"
        )
        self.failed_fragments = list(failed_fragments)
        self.total = total


__all__ = [
    "JournalPipelineError",
    "ConfigurationError",
    "UpstreamProviderError",
    "ClassificationError",
    "ValidationError",
    "PartialResultError",
    "RetrievalFailedError",
]
