"""Read-only PostgreSQL access for the journal store.

One process-wide psycopg3 pool is opened by the API lifespan. Every session
checked out through ``pg_connection()`` runs in a read-only transaction and
inherits a server-side ``statement_timeout``, so a slow aggregate cannot hold
a worker past its route budget.

    with pg_connection() as conn, conn.cursor() as cur:
        cur.execute("SELECT count(*) AS n FROM journal_entries WHERE user_id = %s", (owner,))
        n = cur.fetchone()["n"]
"""

import os
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import psycopg
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from .errors import ConfigurationError
from .logger import LOGGER

# Server aborts any pipeline statement running longer than this
STATEMENT_TIMEOUT_MS = int(os.getenv("JOURNAL_STATEMENT_TIMEOUT_MS", "8000"))

_pool: Optional[ConnectionPool] = None


def _session_kwargs() -> Dict[str, Any]:
    return {
        "row_factory": dict_row,
        "options": f"-c statement_timeout={STATEMENT_TIMEOUT_MS}",
    }


def init_pg_pool(database_url: Optional[str] = None, max_size: int = 10) -> ConnectionPool:
    """Open the shared pool on first call; later calls return the same pool."""
    global _pool
    if _pool is not None:
        return _pool

    conninfo = database_url or os.getenv("DATABASE_URL")
    if not conninfo:
        raise ConfigurationError("DATABASE_URL environment variable is required.")

    LOGGER.info(
        "Opening journal database pool (max_size=%d, statement_timeout=%dms)",
        max_size,
        STATEMENT_TIMEOUT_MS,
    )
    try:
        pool = ConnectionPool(
            conninfo=conninfo,
            min_size=1,
            max_size=max_size,
            kwargs=_session_kwargs(),
            open=True,
        )
    except psycopg.Error as exc:
        LOGGER.error("Journal database pool could not be opened: %s", exc)
        raise

    _pool = pool
    return pool


def get_pg_pool() -> ConnectionPool:
    if _pool is None:
        raise ConfigurationError("Journal database pool is not open; call init_pg_pool() during startup.")
    return _pool


def close_pg_pool() -> None:
    """Close the shared pool if one is open."""
    global _pool
    pool, _pool = _pool, None
    if pool is None:
        return
    LOGGER.info("Closing journal database pool")
    pool.close()


@contextmanager
def pg_connection(read_only: bool = True) -> Iterator[psycopg.Connection]:
    """Yield a pooled connection inside one transaction.

    The transaction commits when the block exits normally and rolls back
    when it raises; the exception is re-raised either way.
    """
    with get_pg_pool().connection() as conn:
        conn.read_only = read_only
        try:
            yield conn
        except Exception:
            conn.rollback()
            raise
        conn.commit()


def check_pg_connection() -> bool:
    """Round-trip ``SELECT 1``; False when the pool is closed or unreachable."""
    if _pool is None:
        return False
    try:
        with _pool.connection() as conn:
            conn.execute("SELECT 1")
    except psycopg.Error as exc:
        LOGGER.warning("Journal database health check failed: %s", exc)
        return False
    return True


__all__ = [
    "STATEMENT_TIMEOUT_MS",
    "check_pg_connection",
    "close_pg_pool",
    "get_pg_pool",
    "init_pg_pool",
    "pg_connection",
]
