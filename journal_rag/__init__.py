"""
Query-to-evidence pipeline for a personal journal corpus.

Classifies a conversational turn, decomposes it into sub-questions, plans
owner-scoped retrieval for each, executes the plans with a bounded fallback
chain, and assembles one evidence context for the answer generator.
"""

from __future__ import annotations

__all__ = [
    "aggregator",
    "cache",
    "classifier",
    "config",
    "constants",
    "decomposer",
    "embeddings",
    "errors",
    "executor",
    "llm",
    "logger",
    "models",
    "orchestrator",
    "pg_database",
    "planner",
    "profiling",
    "responder",
    "retry",
    "router",
    "structured_store",
    "timeframe",
    "vector_store",
]  # pragma: no cover
