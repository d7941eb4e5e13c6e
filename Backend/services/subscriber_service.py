from __future__ import annotations

import json
from typing import List, Optional

from app.core.logging import get_logger
from services.kv_store import KVStore, iter_keys

logger = get_logger()


def parse_subscriber_value(raw: Optional[str]) -> Optional[str]:
    """
    Subscriber records are JSON (`{"email": "..."}`) or, for older entries,
    the bare address. Anything without an '@' is ignored.
    """
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except ValueError:
        data = None

    if isinstance(data, dict):
        email = str(data.get("email") or "").strip()
        return email if "@" in email else None
    if data is None and "@" in raw:
        return raw.strip()
    return None


class SubscriberService:
    def __init__(self, store: KVStore, *, prefix: str = "subscriber:") -> None:
        self.store = store
        self.prefix = prefix

    async def get_all_subscribers(self) -> List[str]:
        """
        Snapshot of every subscriber address, in key order, without duplicates.
        """
        subscribers: List[str] = []
        seen = set()
        skipped = 0
        async for key in iter_keys(self.store, self.prefix):
            email = parse_subscriber_value(await self.store.get(key))
            if email is None:
                skipped += 1
                continue
            if email.lower() in seen:
                continue
            seen.add(email.lower())
            subscribers.append(email)

        if skipped:
            logger.warning("subscriber_records_skipped", skipped=skipped)
        logger.info("subscribers_loaded", count=len(subscribers))
        return subscribers
