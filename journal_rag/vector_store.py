"""Qdrant vector store connection and owner-scoped similarity search."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from qdrant_client import QdrantClient
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    MatchValue,
    PayloadSchemaType,
    Range,
    VectorParams,
)

from .config import AppConfig
from .constants import EMBEDDING_DIMENSIONS
from .errors import UpstreamProviderError
from .logger import LOGGER
from .models import TimeRange

# Collection vector configuration
VECTOR_SIZE = EMBEDDING_DIMENSIONS
VECTOR_DISTANCE = Distance.COSINE

OWNER_PAYLOAD_KEY = "owner_id"
TIMESTAMP_PAYLOAD_KEY = "created_ts"


def get_qdrant_client(url: str | None = None) -> QdrantClient:
    """Create a Qdrant client from config or explicit URL."""
    target_url = url or AppConfig.get().qdrant_url
    client = QdrantClient(url=target_url)
    LOGGER.debug("Qdrant client connected to %s", target_url)
    return client


def ensure_collection(client: QdrantClient, collection_name: str | None = None) -> str:
    """Ensure the journal collection exists with its payload indexes.

    No-ops if it already exists. Returns the collection name.
    """
    name = collection_name or AppConfig.get().qdrant_collection

    if not client.collection_exists(name):
        client.create_collection(
            collection_name=name,
            vectors_config=VectorParams(size=VECTOR_SIZE, distance=VECTOR_DISTANCE),
        )
        LOGGER.info("Created Qdrant collection '%s' (%d dims, %s)", name, VECTOR_SIZE, VECTOR_DISTANCE)

        client.create_payload_index(
            collection_name=name,
            field_name=OWNER_PAYLOAD_KEY,
            field_schema=PayloadSchemaType.KEYWORD,
        )
        client.create_payload_index(
            collection_name=name,
            field_name=TIMESTAMP_PAYLOAD_KEY,
            field_schema=PayloadSchemaType.FLOAT,
        )
        LOGGER.info("Created payload indexes on %s, %s", OWNER_PAYLOAD_KEY, TIMESTAMP_PAYLOAD_KEY)
    else:
        LOGGER.debug("Qdrant collection '%s' already exists", name)

    return name


def build_owner_filter(owner_id: str, date_window: Optional[TimeRange] = None) -> Filter:
    """Qdrant filter restricting points to one owner and an optional date window."""
    if not owner_id:
        raise ValueError("owner_id is required for vector search")

    must: List[FieldCondition] = [
        FieldCondition(key=OWNER_PAYLOAD_KEY, match=MatchValue(value=owner_id)),
    ]
    if date_window is not None and not date_window.is_empty:
        must.append(
            FieldCondition(
                key=TIMESTAMP_PAYLOAD_KEY,
                range=Range(
                    gte=date_window.start.timestamp() if date_window.start else None,
                    lte=date_window.end.timestamp() if date_window.end else None,
                ),
            )
        )
    return Filter(must=must)


def _point_to_row(point: Any) -> Dict[str, Any]:
    payload = point.payload or {}
    return {
        "id": payload.get("entry_id", point.id),
        "content": payload.get("content", ""),
        "created_at": payload.get("created_at"),
        "themes": payload.get("master_themes") or [],
        "emotions": payload.get("emotions") or {},
        "entities": payload.get("entities") or [],
        "sentiment": payload.get("sentiment"),
        "similarity": float(point.score) if point.score is not None else None,
    }


class JournalVectorSearch:
    """Similarity search over journal embeddings, always owner-scoped."""

    def __init__(self, client: QdrantClient, collection_name: str):
        self.client = client
        self.collection_name = collection_name

    def search(
        self,
        vector: List[float],
        owner_id: str,
        top_k: int,
        threshold: float,
        date_window: Optional[TimeRange] = None,
    ) -> List[Dict[str, Any]]:
        query_filter = build_owner_filter(owner_id, date_window)
        try:
            response = self.client.query_points(
                collection_name=self.collection_name,
                query=vector,
                query_filter=query_filter,
                limit=top_k,
                score_threshold=threshold,
                with_payload=True,
            )
        except Exception as exc:
            LOGGER.warning("Qdrant search failed for owner=%s: %s", owner_id, exc)
            raise UpstreamProviderError("vector_store", str(exc), exc) from exc

        rows = [_point_to_row(point) for point in response.points]
        LOGGER.debug(
            "Vector search owner=%s top_k=%d threshold=%.2f window=%s -> %d rows",
            owner_id, top_k, threshold, date_window.to_dict() if date_window else None, len(rows),
        )
        return rows


__all__ = [
    "JournalVectorSearch",
    "build_owner_filter",
    "ensure_collection",
    "get_qdrant_client",
    "OWNER_PAYLOAD_KEY",
    "TIMESTAMP_PAYLOAD_KEY",
    "VECTOR_SIZE",
]
