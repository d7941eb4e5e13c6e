# services/db_service.py
"""
asyncpg access for the Postgres key-value backend.

The pool is created on first use from Settings (DATABASE_URL plus the DB_*
tuning fields) and closed by the worker at shutdown. Every query goes through
`_timed`, which applies the default timeout and logs slow statements.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from time import monotonic
from typing import Any, AsyncIterator, List, Optional
from urllib.parse import urlparse

import asyncpg

from app.config import Settings, get_settings, require_database_url

logger = logging.getLogger(__name__)

APPLICATION_NAME = "newsletter-backend"
SLOW_QUERY_THRESHOLD_MS = 1_000

_pool: asyncpg.Pool | None = None
_pool_lock: asyncio.Lock | None = None
_query_timeout_s: float = 30.0


def normalize_database_url(raw_dsn: str) -> str:
    """
    asyncpg only understands postgresql://; accept the SQLAlchemy-style
    postgresql+asyncpg:// scheme as well and keep the rest of the DSN untouched.
    """
    raw_dsn = raw_dsn.strip()
    if raw_dsn.startswith("postgresql+asyncpg://"):
        raw_dsn = "postgresql://" + raw_dsn[len("postgresql+asyncpg://"):]
    return raw_dsn


async def ensure_pool(dsn: Optional[str] = None, settings: Optional[Settings] = None) -> asyncpg.Pool:
    global _pool, _pool_lock, _query_timeout_s
    if _pool is not None:
        return _pool

    if _pool_lock is None:
        _pool_lock = asyncio.Lock()

    async with _pool_lock:
        if _pool is not None:
            return _pool

        settings = settings or get_settings()
        final_dsn = normalize_database_url(dsn or require_database_url(settings))
        _query_timeout_s = settings.DB_QUERY_TIMEOUT_MS / 1000

        parsed = urlparse(final_dsn)
        logger.info(
            "db_pool_initializing",
            extra={
                "dsn_host": parsed.hostname,
                "dsn_port": parsed.port,
                "application_name": APPLICATION_NAME,
                "pool_max_size": settings.DB_POOL_MAX_SIZE,
            },
        )
        _pool = await asyncpg.create_pool(
            dsn=final_dsn,
            min_size=settings.DB_POOL_MIN_SIZE,
            max_size=settings.DB_POOL_MAX_SIZE,
            command_timeout=60,
            statement_cache_size=0,
            max_inactive_connection_lifetime=30,
            server_settings={
                "application_name": APPLICATION_NAME,
                "statement_timeout": str(settings.DB_STATEMENT_TIMEOUT_MS),
            },
        )
        return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None
        logger.info("db_pool_closed")


async def _timed(conn: asyncpg.Connection, method: str, query: str, *args: Any) -> Any:
    start = monotonic()
    try:
        return await getattr(conn, method)(query, *args, timeout=_query_timeout_s)
    finally:
        duration_ms = (monotonic() - start) * 1000
        if duration_ms >= SLOW_QUERY_THRESHOLD_MS:
            logger.warning(
                "db_slow_query",
                extra={
                    "duration_ms": round(duration_ms, 2),
                    "method": method,
                    "query_snippet": query.strip().split("\n")[0][:200],
                },
            )


@asynccontextmanager
async def connection() -> AsyncIterator[asyncpg.Connection]:
    pool = await ensure_pool()
    async with pool.acquire() as conn:
        yield conn


async def fetch(query: str, *args: Any) -> List[asyncpg.Record]:
    async with connection() as conn:
        return await _timed(conn, "fetch", query, *args)


async def fetchval(query: str, *args: Any) -> Any:
    async with connection() as conn:
        return await _timed(conn, "fetchval", query, *args)


async def execute(query: str, *args: Any) -> str:
    """Returns the asyncpg status string, e.g. 'DELETE 3'."""
    async with connection() as conn:
        return await _timed(conn, "execute", query, *args)
