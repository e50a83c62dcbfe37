"""Tunable constants for the journal query pipeline."""

from __future__ import annotations

import os

# Debug mode toggle (mirrors the logger switch)
DEBUG_RAG = os.getenv("DEBUG_RAG", "false").lower() == "true"

# ==============================================================================
# MODELS
# ==============================================================================

CLASSIFIER_MODEL = "gemini-2.5-flash-lite"
DECOMPOSER_MODEL = "gemini-2.5-flash"
PLANNER_MODEL = "gemini-2.5-flash"
ANSWER_MODEL = "gemini-2.5-flash"
EMBEDDING_MODEL = "gemini-embedding-001"
EMBEDDING_DIMENSIONS = 768

# ==============================================================================
# CONVERSATION
# ==============================================================================

# Prior turns handed to the classifier
CLASSIFIER_HISTORY_TURNS = 10
# Prior turns handed to the decomposer and answer generator
DECOMPOSER_CONTEXT_TURNS = 3
ANSWER_HISTORY_TURNS = 6

# ==============================================================================
# TIMEOUTS
# ==============================================================================

# HTTP timeout on every Gemini request (google-genai takes milliseconds)
MODEL_HTTP_TIMEOUT_MS = 20_000
# Wall-clock limit for the classifier, decomposer and planner stages
STAGE_TIMEOUT_SECONDS = 25.0
ANSWER_TIMEOUT_SECONDS = 45.0
# Whole request; in-flight work is abandoned once it is spent
REQUEST_BUDGET_SECONDS = 90.0

# ==============================================================================
# DECOMPOSITION
# ==============================================================================

MAX_SUB_QUESTIONS = 4
MIN_PRIORITY = 1
MAX_PRIORITY = 5
# Vocabulary slice shown to the decomposer prompt
VOCABULARY_PROMPT_LIMIT = 20

# ==============================================================================
# PLANNING / RETRIEVAL
# ==============================================================================

DEGRADED_TOP_K = 10
DEGRADED_THRESHOLD = 0.3
DEFAULT_VECTOR_TOP_K = 10
DEFAULT_VECTOR_THRESHOLD = 0.3
DEFAULT_SELECT_LIMIT = 20
# Minimum emotion score for a nested_key_gte emotion filter
EMOTION_SCORE_FLOOR = 0.3
# Records returned by the last-resort fallback
RECENT_FALLBACK_LIMIT = 5
# Hard ceiling on attempts per sub-question (primary, keyword, recent)
MAX_ATTEMPTS = 3
# Reference records handed back to the caller
MAX_REFERENCE_RECORDS = 20

# ==============================================================================
# CACHE
# ==============================================================================

CACHE_TTL_SECONDS = {
    "embedding": 15 * 60,
    "plan": 10 * 60,
    "result": 5 * 60,
    "response": 2 * 60,
}
CACHE_CAPACITY = 200
CACHE_EVICTION_FRACTION = 0.3
# Maximum serialized size per entry (bytes)
CACHE_MAX_ENTRY_BYTES = {
    "embedding": 64 * 1024,
    "plan": 16 * 1024,
    "result": 256 * 1024,
    "response": 32 * 1024,
}
# Eviction score = access_count * W1 - age_minutes * W2
CACHE_ACCESS_WEIGHT = 1.0
CACHE_AGE_WEIGHT = 1.0
# Coarse bucket folded into cache keys so cached results roll over
CACHE_TIME_BUCKET_SECONDS = 5 * 60

# ==============================================================================
# ROUTING
# ==============================================================================

ROUTE_PERFORMANCE_THRESHOLD_MS = 2000.0
ROUTE_HISTORY_LIMIT = 100
ROUTE_DEFAULT_ESTIMATE_MS = 1500.0
# Weight of the newest sample in the moving average
ROUTE_LATENCY_SMOOTHING = 0.3

# ==============================================================================
# VOCABULARIES (used only when the store is unreachable)
# ==============================================================================

DEFAULT_THEMES = (
    "Self & Identity",
    "Body & Health",
    "Mental Health",
    "Romantic Relationships",
    "Family",
    "Friendships & Social Circle",
    "Career & Workplace",
    "Money & Finances",
    "Education & Learning",
    "Habits & Routines",
    "Sleep & Rest",
    "Creativity & Hobbies",
    "Spirituality & Beliefs",
    "Technology & Social Media",
    "Environment & Living Space",
    "Time & Productivity",
)

DEFAULT_EMOTIONS = (
    "joy", "contentment", "gratitude", "hope", "excitement", "love", "pride",
    "relief", "calm", "sadness", "anxiety", "stress", "anger", "frustration",
    "fear", "loneliness", "guilt", "shame", "disappointment", "confusion",
    "overwhelm", "boredom", "nostalgia", "curiosity",
)

__all__ = [
    "DEBUG_RAG",
    "CLASSIFIER_MODEL",
    "DECOMPOSER_MODEL",
    "PLANNER_MODEL",
    "ANSWER_MODEL",
    "EMBEDDING_MODEL",
    "EMBEDDING_DIMENSIONS",
    "CLASSIFIER_HISTORY_TURNS",
    "DECOMPOSER_CONTEXT_TURNS",
    "ANSWER_HISTORY_TURNS",
    "MAX_SUB_QUESTIONS",
    "MIN_PRIORITY",
    "MAX_PRIORITY",
    "VOCABULARY_PROMPT_LIMIT",
    "MODEL_HTTP_TIMEOUT_MS",
    "STAGE_TIMEOUT_SECONDS",
    "ANSWER_TIMEOUT_SECONDS",
    "REQUEST_BUDGET_SECONDS",
    "DEGRADED_TOP_K",
    "DEGRADED_THRESHOLD",
    "DEFAULT_VECTOR_TOP_K",
    "DEFAULT_VECTOR_THRESHOLD",
    "DEFAULT_SELECT_LIMIT",
    "EMOTION_SCORE_FLOOR",
    "RECENT_FALLBACK_LIMIT",
    "MAX_ATTEMPTS",
    "MAX_REFERENCE_RECORDS",
    "CACHE_TTL_SECONDS",
    "CACHE_CAPACITY",
    "CACHE_EVICTION_FRACTION",
    "CACHE_MAX_ENTRY_BYTES",
    "CACHE_ACCESS_WEIGHT",
    "CACHE_AGE_WEIGHT",
    "CACHE_TIME_BUCKET_SECONDS",
    "ROUTE_PERFORMANCE_THRESHOLD_MS",
    "ROUTE_HISTORY_LIMIT",
    "ROUTE_DEFAULT_ESTIMATE_MS",
    "ROUTE_LATENCY_SMOOTHING",
    "DEFAULT_THEMES",
    "DEFAULT_EMOTIONS",
]
