"""Embedding provider adapter and its cache-backed wrapper."""

from __future__ import annotations

from typing import Any, List, Optional, Protocol

from google.genai import types

from .cache import CacheNamespace, CacheService
from .config import AppConfig
from .constants import EMBEDDING_DIMENSIONS, EMBEDDING_MODEL
from .errors import ConfigurationError, UpstreamProviderError
from .logger import LOGGER
from .retry import RetryPolicy, default_retry_policy


class EmbeddingProvider(Protocol):
    def embed(self, text: str) -> List[float]:
        ...


class GeminiEmbeddingProvider:
    """Query embeddings from the Gemini embedding model."""

    def __init__(
        self,
        model: str = EMBEDDING_MODEL,
        dimensions: int = EMBEDDING_DIMENSIONS,
        client: Optional[Any] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.model = model
        self.dimensions = dimensions
        self._client = client
        self.retry_policy = retry_policy or default_retry_policy()

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = AppConfig.get().client
        return self._client

    def _embed_once(self, text: str) -> List[float]:
        result = self.client.models.embed_content(
            model=self.model,
            contents=text,
            config=types.EmbedContentConfig(
                task_type="RETRIEVAL_QUERY",
                output_dimensionality=self.dimensions,
            ),
        )
        if not result.embeddings or not result.embeddings[0].values:
            raise UpstreamProviderError("embedding", "provider returned no vector")
        return list(result.embeddings[0].values)

    def embed(self, text: str) -> List[float]:
        if not text or not text.strip():
            raise UpstreamProviderError("embedding", "cannot embed empty text")
        try:
            return self.retry_policy.call(lambda: self._embed_once(text), label="embedding")
        except (ConfigurationError, UpstreamProviderError):
            raise
        except Exception as exc:
            LOGGER.warning("Embedding failed for '%s': %s", text[:60], exc)
            raise UpstreamProviderError("embedding", str(exc), exc) from exc


class CachedEmbedder:
    """Read-through embedding cache in front of any provider.

    Embeddings depend only on text and model, so keys carry no owner and
    no time bucket; the namespace TTL bounds their lifetime.
    """

    def __init__(self, provider: EmbeddingProvider, cache: CacheService, model: str = EMBEDDING_MODEL):
        self.provider = provider
        self.cache = cache
        self.model = model

    def key_for(self, text: str) -> str:
        return self.cache.make_key(text, params={"model": self.model}, time_bucket=False)

    def embed(self, text: str) -> List[float]:
        key = self.key_for(text)
        return self.cache.get_or_compute(
            CacheNamespace.EMBEDDING,
            key,
            lambda: self.provider.embed(text),
        )


__all__ = ["CachedEmbedder", "EmbeddingProvider", "GeminiEmbeddingProvider"]
