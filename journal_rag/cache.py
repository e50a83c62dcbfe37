"""Namespaced in-memory cache with TTL classes and batched score eviction.

One ``CacheService`` instance is created per process and passed explicitly
through the pipeline context. It holds four namespaces:

- ``embedding``: text -> vector (longest TTL)
- ``plan``: sub-question key -> AnalysisPlan
- ``result``: plan key -> rows / aggregates
- ``response``: request key -> answer text (shortest TTL)

Values are pure functions of their key, so writes are last-writer-wins and
reads never take a lock. Only the eviction pass is serialized.
"""

from __future__ import annotations

import json
import math
import pickle
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, TypeVar

from .constants import (
    CACHE_ACCESS_WEIGHT,
    CACHE_AGE_WEIGHT,
    CACHE_CAPACITY,
    CACHE_EVICTION_FRACTION,
    CACHE_MAX_ENTRY_BYTES,
    CACHE_TIME_BUCKET_SECONDS,
    CACHE_TTL_SECONDS,
)
from .logger import LOGGER

T = TypeVar("T")

_FNV_OFFSET_BASIS_64 = 0xCBF29CE484222325
_FNV_PRIME_64 = 0x100000001B3
_MASK_64 = 0xFFFFFFFFFFFFFFFF


def fnv1a_64(data: bytes) -> int:
    """64-bit FNV-1a hash."""
    h = _FNV_OFFSET_BASIS_64
    for byte in data:
        h ^= byte
        h = (h * _FNV_PRIME_64) & _MASK_64
    return h


def normalize_text(text: str) -> str:
    """Lowercase, trim, and collapse internal whitespace."""
    return " ".join((text or "").lower().split())


def stable_hash(*parts: Any) -> str:
    """Hex FNV-1a digest of the canonical JSON form of ``parts``."""
    payload = json.dumps(parts, sort_keys=True, default=str, separators=(",", ":"))
    return f"{fnv1a_64(payload.encode('utf-8')):016x}"


class CacheNamespace(str, Enum):
    EMBEDDING = "embedding"
    PLAN = "plan"
    RESULT = "result"
    RESPONSE = "response"


@dataclass(frozen=True)
class NamespaceConfig:
    ttl_seconds: float
    capacity: int = CACHE_CAPACITY
    max_entry_bytes: Optional[int] = None


@dataclass
class CacheEntry:
    value: Any
    created_at: float
    ttl_class: CacheNamespace
    size_estimate: int
    access_count: int = 0
    last_accessed: float = 0.0

    def is_expired(self, now: float, ttl_seconds: float) -> bool:
        return (now - self.created_at) >= ttl_seconds

    def score(self, now: float, access_weight: float, age_weight: float) -> float:
        """Eviction score: frequently used, young entries score high."""
        age_minutes = (now - self.created_at) / 60.0
        return self.access_count * access_weight - age_minutes * age_weight


@dataclass
class NamespaceStats:
    hits: int = 0
    misses: int = 0
    writes: int = 0
    evictions: int = 0
    expirations: int = 0
    rejections: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "writes": self.writes,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "rejections": self.rejections,
        }


def default_namespace_configs(
    capacity: int = CACHE_CAPACITY,
    ttl_seconds: Optional[Mapping[str, float]] = None,
    max_entry_bytes: Optional[Mapping[str, int]] = None,
) -> Dict[CacheNamespace, NamespaceConfig]:
    ttls = dict(CACHE_TTL_SECONDS, **(ttl_seconds or {}))
    sizes = dict(CACHE_MAX_ENTRY_BYTES, **(max_entry_bytes or {}))
    return {
        ns: NamespaceConfig(
            ttl_seconds=ttls[ns.value],
            capacity=capacity,
            max_entry_bytes=sizes.get(ns.value),
        )
        for ns in CacheNamespace
    }


def estimate_size(value: Any) -> int:
    """Approximate serialized size of a value in bytes."""
    try:
        return len(pickle.dumps(value, protocol=pickle.HIGHEST_PROTOCOL))
    except (pickle.PicklingError, TypeError, AttributeError):
        return len(repr(value).encode("utf-8"))


class CacheService:
    """TTL + score-evicting cache shared by all requests."""

    def __init__(
        self,
        namespaces: Optional[Dict[CacheNamespace, NamespaceConfig]] = None,
        eviction_fraction: float = CACHE_EVICTION_FRACTION,
        access_weight: float = CACHE_ACCESS_WEIGHT,
        age_weight: float = CACHE_AGE_WEIGHT,
        time_bucket_seconds: float = CACHE_TIME_BUCKET_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        if not 0.2 <= eviction_fraction <= 0.3:
            raise ValueError(f"eviction_fraction must be within [0.2, 0.3], got {eviction_fraction}")

        self.configs = namespaces or default_namespace_configs()
        missing = set(CacheNamespace) - set(self.configs)
        if missing:
            raise ValueError(f"Missing namespace configs: {sorted(ns.value for ns in missing)}")

        self.eviction_fraction = eviction_fraction
        self.access_weight = access_weight
        self.age_weight = age_weight
        self.time_bucket_seconds = time_bucket_seconds
        self._clock = clock

        self._stores: Dict[CacheNamespace, Dict[str, CacheEntry]] = {ns: {} for ns in CacheNamespace}
        self._stats: Dict[CacheNamespace, NamespaceStats] = {ns: NamespaceStats() for ns in CacheNamespace}
        self._write_lock = threading.Lock()

        LOGGER.debug(
            "CacheService initialised: %s",
            {ns.value: (cfg.ttl_seconds, cfg.capacity) for ns, cfg in self.configs.items()},
        )

    # -----------------------------------------------------------------
    # Keys
    # -----------------------------------------------------------------

    def make_key(
        self,
        text: str,
        owner_id: str = "",
        params: Optional[Mapping[str, Any]] = None,
        time_bucket: bool = True,
    ) -> str:
        """Stable key over normalized text, owner, parameters and a coarse time bucket."""
        bucket = None
        if time_bucket and self.time_bucket_seconds > 0:
            bucket = int(self._clock() // self.time_bucket_seconds)
        return stable_hash(normalize_text(text), owner_id or "", dict(params or {}), bucket)

    # -----------------------------------------------------------------
    # Reads / writes
    # -----------------------------------------------------------------

    def get(self, namespace: CacheNamespace, key: str) -> Optional[Any]:
        store = self._stores[namespace]
        stats = self._stats[namespace]
        entry = store.get(key)
        if entry is None:
            stats.misses += 1
            return None

        now = self._clock()
        if entry.is_expired(now, self.configs[namespace].ttl_seconds):
            # Only drop the entry we looked at; a concurrent rewrite wins
            if store.get(key) is entry:
                store.pop(key, None)
            stats.expirations += 1
            stats.misses += 1
            return None

        entry.access_count += 1
        entry.last_accessed = now
        stats.hits += 1
        return entry.value

    def set(self, namespace: CacheNamespace, key: str, value: Any) -> bool:
        """Upsert a value. Returns False when the entry is rejected as oversized."""
        config = self.configs[namespace]
        size = estimate_size(value)
        if config.max_entry_bytes is not None and size > config.max_entry_bytes:
            self._stats[namespace].rejections += 1
            LOGGER.debug(
                "CacheService [%s]: rejected %d-byte entry (limit %d)",
                namespace.value, size, config.max_entry_bytes,
            )
            return False

        now = self._clock()
        entry = CacheEntry(
            value=value,
            created_at=now,
            ttl_class=namespace,
            size_estimate=size,
            last_accessed=now,
        )

        store = self._stores[namespace]
        if key in store:
            store[key] = entry
        else:
            # New keys grow the store: check capacity and insert under one lock
            with self._write_lock:
                if key not in store and len(store) >= config.capacity:
                    self._evict_batch(namespace, now)
                store[key] = entry
        self._stats[namespace].writes += 1
        return True

    def clear(self, namespace: Optional[CacheNamespace] = None) -> None:
        targets = [namespace] if namespace else list(CacheNamespace)
        for ns in targets:
            self._stores[ns].clear()

    def __len__(self) -> int:
        return sum(len(store) for store in self._stores.values())

    def size(self, namespace: CacheNamespace) -> int:
        return len(self._stores[namespace])

    # -----------------------------------------------------------------
    # Read-through
    # -----------------------------------------------------------------

    def get_or_compute(self, namespace: CacheNamespace, key: str, compute: Callable[[], T]) -> T:
        """Return the cached value, or compute, write back and return it.

        ``None`` results are not cached.
        """
        cached = self.get(namespace, key)
        if cached is not None:
            return cached
        value = compute()
        if value is not None:
            self.set(namespace, key, value)
        return value

    async def aget_or_compute(
        self,
        namespace: CacheNamespace,
        key: str,
        compute: Callable[[], Awaitable[T]],
    ) -> T:
        cached = self.get(namespace, key)
        if cached is not None:
            return cached
        value = await compute()
        if value is not None:
            self.set(namespace, key, value)
        return value

    # -----------------------------------------------------------------
    # Eviction
    # -----------------------------------------------------------------

    def _evict_batch(self, namespace: CacheNamespace, now: float) -> None:
        """Drop expired entries, then the lowest-scored fraction in one pass."""
        store = self._stores[namespace]
        config = self.configs[namespace]
        stats = self._stats[namespace]

        expired = [k for k, e in store.items() if e.is_expired(now, config.ttl_seconds)]
        for k in expired:
            store.pop(k, None)
        stats.expirations += len(expired)
        if len(store) < config.capacity:
            return

        batch = max(1, math.floor(config.capacity * self.eviction_fraction))
        ranked = sorted(
            store.items(),
            key=lambda item: item[1].score(now, self.access_weight, self.age_weight),
        )
        for k, _ in ranked[:batch]:
            store.pop(k, None)
        stats.evictions += min(batch, len(ranked))

        LOGGER.info(
            "CacheService [%s]: evicted %d of %d entries (%d expired)",
            namespace.value, min(batch, len(ranked)), len(ranked), len(expired),
        )

    # -----------------------------------------------------------------
    # Stats
    # -----------------------------------------------------------------

    def stats(self) -> Dict[str, Dict[str, Any]]:
        result: Dict[str, Dict[str, Any]] = {}
        for ns in CacheNamespace:
            counters = self._stats[ns].as_dict()
            lookups = counters["hits"] + counters["misses"]
            counters["size"] = len(self._stores[ns])
            counters["capacity"] = self.configs[ns].capacity
            counters["hit_rate"] = round(counters["hits"] / lookups, 3) if lookups else 0.0
            result[ns.value] = counters
        return result


__all__ = [
    "CacheEntry",
    "CacheNamespace",
    "CacheService",
    "NamespaceConfig",
    "NamespaceStats",
    "default_namespace_configs",
    "estimate_size",
    "fnv1a_64",
    "normalize_text",
    "stable_hash",
]
