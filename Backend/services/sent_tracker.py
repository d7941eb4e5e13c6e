from __future__ import annotations

import asyncio
from urllib.parse import quote

from app.core.logging import get_logger
from app.models.delivery_queue import SentRecord
from services.kv_store import KVStore

logger = get_logger()


def encode_url_key(normalized_url: str) -> str:
    """Percent-encode a URL for use inside a key (encodeURIComponent rules)."""
    return quote(normalized_url, safe="-_.!~*'()")


class SentTracker:
    """
    Records which posts were delivered, keyed both by post id and by normalized URL.

    A post counts as sent only when both records exist. A lone record means an
    earlier finalize was interrupted; the post is redelivered and a warning logged.
    """

    def __init__(
        self,
        store: KVStore,
        *,
        sent_prefix: str = "newsletter-sent:",
        sent_url_prefix: str = "newsletter-sent-url:",
    ) -> None:
        self.store = store
        self.sent_prefix = sent_prefix
        self.sent_url_prefix = sent_url_prefix

    def id_key(self, post_id: str) -> str:
        return f"{self.sent_prefix}{post_id}"

    def url_key(self, normalized_url: str) -> str:
        return f"{self.sent_url_prefix}{encode_url_key(normalized_url)}"

    async def already_sent(self, post_id: str, normalized_url: str) -> bool:
        by_id, by_url = await asyncio.gather(
            self.store.get(self.id_key(post_id)),
            self.store.get(self.url_key(normalized_url)),
        )
        if by_id is not None and by_url is not None:
            return True
        if by_id is not None or by_url is not None:
            logger.warning(
                "sent_tracker_partial_record",
                post_id=post_id,
                url=normalized_url,
                has_id_record=by_id is not None,
                has_url_record=by_url is not None,
            )
        return False

    async def mark_sent(
        self,
        post_id: str,
        normalized_url: str,
        record: SentRecord,
        queue_key: str,
    ) -> None:
        """
        Write both sent records and delete the queue key concurrently.
        Not atomic; see `already_sent` for how a partial write is treated.
        """
        payload = record.model_dump_json()
        await asyncio.gather(
            self.store.put(self.id_key(post_id), payload),
            self.store.put(self.url_key(normalized_url), payload),
            self.store.delete(queue_key),
        )
        logger.info(
            "newsletter_marked_sent",
            post_id=post_id,
            url=normalized_url,
            recipient_count=record.recipient_count,
        )
