# Backend/services/kv_store.py
"""
Durable key-value store used for queues, sent records, dead letters and
subscribers.

Two backends share the KVStore interface:
- InMemoryKVStore: process-local, used by tests and local dry runs
- PostgresKVStore: `kv_store` table through services.db_service (asyncpg)

Listing is prefix based and paginated with an opaque cursor.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Dict, List, Optional, Tuple

from app.config import Settings, require_database_url
from app.core.logging import get_logger
from services.db_service import ensure_pool, execute, fetch, fetchval

logger = get_logger()

DEFAULT_LIST_LIMIT = 1000


@dataclass
class KVListResult:
    keys: List[str] = field(default_factory=list)
    cursor: Optional[str] = None
    list_complete: bool = True


class KVStore(ABC):
    """Minimal async key-value contract."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the stored value or None when missing or expired."""

    @abstractmethod
    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        """Create or overwrite `key`; `ttl_seconds` sets an expiry."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove `key`; deleting a missing key is a no-op."""

    @abstractmethod
    async def list(
        self,
        prefix: str,
        cursor: Optional[str] = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> KVListResult:
        """Return one page of keys starting with `prefix`, in key order."""

    @abstractmethod
    async def purge_expired(self) -> int:
        """Delete expired entries; returns how many were removed."""


async def iter_keys(store: KVStore, prefix: str, *, page_size: int = DEFAULT_LIST_LIMIT) -> AsyncIterator[str]:
    """Yield every key under `prefix`, following cursors until the listing is complete."""
    cursor: Optional[str] = None
    while True:
        page = await store.list(prefix, cursor=cursor, limit=page_size)
        for key in page.keys:
            yield key
        if page.list_complete or not page.cursor:
            break
        cursor = page.cursor


class InMemoryKVStore(KVStore):
    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        return self._live(key)

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def list(
        self,
        prefix: str,
        cursor: Optional[str] = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> KVListResult:
        limit = max(1, limit)
        keys = sorted(
            k for k in list(self._data.keys())
            if k.startswith(prefix) and (cursor is None or k > cursor) and self._live(k) is not None
        )
        page = keys[:limit]
        complete = len(keys) <= limit
        return KVListResult(
            keys=page,
            cursor=None if complete else page[-1],
            list_complete=complete,
        )

    async def purge_expired(self) -> int:
        expired = [k for k in list(self._data.keys()) if self._live(k) is None]
        return len(expired)

    def ttl_of(self, key: str) -> Optional[float]:
        """Seconds until `key` expires (tests and diagnostics)."""
        entry = self._data.get(key)
        if entry is None or entry[1] is None:
            return None
        return entry[1] - self._clock()


_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS kv_store (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    expires_at  TIMESTAMPTZ NULL
)
"""


class PostgresKVStore(KVStore):
    """
    KVStore over the `kv_store` table.

    Expired rows are filtered on read and removed lazily by `purge_expired`.
    """

    def __init__(self, dsn: Optional[str] = None) -> None:
        self._dsn = dsn
        self._schema_ready = False

    async def _ready(self) -> None:
        await ensure_pool(self._dsn)
        if not self._schema_ready:
            await execute(_SCHEMA_SQL)
            self._schema_ready = True

    async def get(self, key: str) -> Optional[str]:
        await self._ready()
        return await fetchval(
            """
            SELECT value FROM kv_store
            WHERE key = $1 AND (expires_at IS NULL OR expires_at > NOW())
            """,
            key,
        )

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        await self._ready()
        await execute(
            """
            INSERT INTO kv_store (key, value, expires_at)
            VALUES ($1, $2, CASE WHEN $3::int IS NULL THEN NULL
                                 ELSE NOW() + make_interval(secs => $3::int) END)
            ON CONFLICT (key) DO UPDATE
            SET value = EXCLUDED.value, expires_at = EXCLUDED.expires_at
            """,
            key,
            value,
            ttl_seconds,
        )

    async def delete(self, key: str) -> None:
        await self._ready()
        await execute("DELETE FROM kv_store WHERE key = $1", key)

    async def list(
        self,
        prefix: str,
        cursor: Optional[str] = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> KVListResult:
        await self._ready()
        limit = max(1, limit)
        # Keyset pagination: one extra row tells whether another page exists.
        rows = await fetch(
            """
            SELECT key FROM kv_store
            WHERE left(key, length($1)) = $1
              AND ($2::text IS NULL OR key > $2::text)
              AND (expires_at IS NULL OR expires_at > NOW())
            ORDER BY key
            LIMIT $3
            """,
            prefix,
            cursor,
            limit + 1,
        )
        keys = [r["key"] for r in rows]
        complete = len(keys) <= limit
        page = keys[:limit]
        return KVListResult(
            keys=page,
            cursor=None if complete else page[-1],
            list_complete=complete,
        )

    async def purge_expired(self) -> int:
        await self._ready()
        status = await execute("DELETE FROM kv_store WHERE expires_at IS NOT NULL AND expires_at <= NOW()")
        try:
            return int(str(status).split()[-1])
        except (ValueError, IndexError):
            return 0


def create_kv_store(settings: Settings) -> KVStore:
    """Build the store selected by KV_BACKEND."""
    if settings.KV_BACKEND == "postgres":
        logger.info("kv_store_selected", backend="postgres")
        return PostgresKVStore(require_database_url(settings))
    logger.info("kv_store_selected", backend="memory")
    return InMemoryKVStore()
