"""FastAPI app for the journal assistant: store wiring, error mapping, health."""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from journal_rag.config import AppConfig
from journal_rag.errors import ConfigurationError
from journal_rag.orchestrator import build_cache, build_pipeline_context
from journal_rag.pg_database import check_pg_connection, close_pg_pool, init_pg_pool

logger = logging.getLogger(__name__)

SERVICE_UNAVAILABLE_DETAIL = "The journal assistant is not configured correctly. Please try again later."


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the stores and build the shared pipeline; close the pool on exit.

    Startup:
        1. Initialize AppConfig singleton (API key, store URLs, model names).
        2. Open the PostgreSQL pool and connect to Qdrant.
        3. Build the shared CacheService and PipelineContext on app.state.

    Shutdown:
        Close the PostgreSQL pool.
    """
    # --- Startup ---
    logger.info("Starting journal RAG API...")

    # 1. Config singleton (API key and settings)
    config = AppConfig.get()
    settings = config.settings
    logger.info("Config loaded: qdrant=%s collection=%s", settings.qdrant_url, settings.qdrant_collection)

    # 2. PostgreSQL connection pool
    pg_pool = None
    try:
        pg_pool = init_pg_pool(settings.database_url)
        pg_ok = check_pg_connection()
        logger.info("PostgreSQL connected: %s", "OK" if pg_ok else "FAILED")
    except ConfigurationError:
        raise
    except Exception as exc:
        logger.error("Failed to initialize PostgreSQL pool: %s", exc)
    app.state.pg_pool = pg_pool

    # 3. Qdrant client and collection
    qdrant_client = None
    try:
        from journal_rag.vector_store import ensure_collection, get_qdrant_client
        qdrant_client = get_qdrant_client(settings.qdrant_url)
        collection_name = ensure_collection(qdrant_client, settings.qdrant_collection)
        collection_info = qdrant_client.get_collection(collection_name)
        logger.info(
            "Qdrant connected: %d vectors in collection '%s'",
            collection_info.points_count or 0,
            collection_name,
        )
    except Exception as exc:
        logger.error("Failed to connect to Qdrant: %s", exc)
    app.state.qdrant_client = qdrant_client

    # 4. Shared cache and pipeline
    cache = build_cache(settings)
    app.state.cache = cache
    app.state.pipeline = build_pipeline_context(settings, cache=cache, qdrant_client=qdrant_client)

    logger.info(
        "Startup complete: postgres=%s qdrant=%s",
        "ready" if pg_pool is not None else "unavailable",
        "ready" if qdrant_client is not None else "unavailable",
    )

    yield  # --- Application runs ---

    # --- Shutdown ---
    close_pg_pool()
    logger.info("Shutting down journal RAG API.")


app = FastAPI(
    title="Journal RAG API",
    version="0.1.0",
    lifespan=lifespan,
)

from fastapi.middleware.cors import CORSMiddleware

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict to the web client origin when deployed
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    logger.error("Configuration error on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": SERVICE_UNAVAILABLE_DETAIL},
    )


from api.routes.query import router as query_router

app.include_router(query_router)


# --- Health ---

@app.get("/api/v1/health")
async def health(request: Request):
    """Store connectivity, per-namespace cache statistics and route latency history."""
    state = request.app.state
    pg_ok = getattr(state, "pg_pool", None) is not None and check_pg_connection()
    qdrant_ok = getattr(state, "qdrant_client", None) is not None
    cache = getattr(state, "cache", None)
    pipeline = getattr(state, "pipeline", None)
    return {
        "status": "ok" if pg_ok and qdrant_ok else "degraded",
        "postgres_connected": pg_ok,
        "qdrant_connected": qdrant_ok,
        "cache": cache.stats() if cache is not None else {},
        "routing": pipeline.router.snapshot() if pipeline is not None else {},
    }


def run() -> None:
    """Serve the API (``journal-rag-api`` console script)."""
    uvicorn.run(
        "api.main:app",
        host=os.getenv("API_HOST", "0.0.0.0"),
        port=int(os.getenv("API_PORT", "8000")),
        log_level="debug" if os.getenv("DEBUG_RAG", "false").lower() == "true" else "info",
    )
