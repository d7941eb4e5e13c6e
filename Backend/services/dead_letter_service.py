# Backend/services/dead_letter_service.py
"""
Dead-letter inbox for operations that exhausted their retry budget.

Entries live under the dead-letter prefix with a bounded retention (7 days by
default). Nothing is replayed automatically: an operator inspects entries and
pops them with `retry()` (see app/workers/dead_letter_admin.py).
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from app.core.logging import get_logger
from app.models.dead_letter import DeadLetterEntry, DeadLetterError
from services.kv_store import KVStore, iter_keys

logger = get_logger()

DEFAULT_DLQ_PREFIX = "dlq:"
DEFAULT_DLQ_TTL_SECONDS = 7 * 24 * 60 * 60


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeadLetterStore:
    def __init__(
        self,
        store: KVStore,
        *,
        prefix: str = DEFAULT_DLQ_PREFIX,
        ttl_seconds: int = DEFAULT_DLQ_TTL_SECONDS,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.prefix = prefix
        self.ttl_seconds = ttl_seconds
        self._now = now

    def _new_key(self) -> str:
        epoch_ms = int(self._now().timestamp() * 1000)
        return f"{self.prefix}{epoch_ms}-{uuid.uuid4().hex[:8]}"

    async def add(self, item: Dict[str, Any], error: BaseException) -> str:
        """
        Park `item` with the error that exhausted it; returns the new key.
        """
        key = self._new_key()
        entry = DeadLetterEntry(
            item=item,
            error=DeadLetterError(message=str(error), name=type(error).__name__),
            enqueued_at=self._now(),
            retry_count=int(item.get("retry_count") or 0),
        )
        await self.store.put(key, entry.model_dump_json(), ttl_seconds=self.ttl_seconds)
        logger.warning(
            "dead_letter_added",
            key=key,
            error_type=entry.error.name,
            error=entry.error.message,
            queue_key=item.get("queue_key"),
            retry_count=entry.retry_count,
        )
        return key

    async def get(self, key: str) -> Optional[DeadLetterEntry]:
        raw = await self.store.get(key)
        if raw is None:
            return None
        try:
            return DeadLetterEntry.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("dead_letter_invalid_entry", key=key, error=str(exc))
            return None

    async def get_all(self) -> List[Tuple[str, DeadLetterEntry]]:
        entries: List[Tuple[str, DeadLetterEntry]] = []
        async for key in iter_keys(self.store, self.prefix):
            entry = await self.get(key)
            if entry is not None:
                entries.append((key, entry))
        return entries

    async def retry(self, key: str) -> Optional[Dict[str, Any]]:
        """
        Pop an entry for manual reprocessing.

        Returns the stored item with its `retry_count` incremented, or None when
        the key is missing or unreadable. Unreadable entries are left in place.
        """
        entry = await self.get(key)
        if entry is None:
            return None

        item = dict(entry.item)
        item["retry_count"] = int(item.get("retry_count") or 0) + 1
        await self.store.delete(key)
        logger.info("dead_letter_popped", key=key, retry_count=item["retry_count"])
        return item

    async def clear(self) -> int:
        keys = [key async for key in iter_keys(self.store, self.prefix)]
        for key in keys:
            await self.store.delete(key)
        logger.info("dead_letter_cleared", deleted=len(keys))
        return len(keys)
