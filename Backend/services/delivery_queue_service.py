# Backend/services/delivery_queue_service.py
"""
Delivery queue: fans one post out to a frozen subscriber list, one batch per call.

Each `process_batch` call sends at most `batch_size` recipients and persists
the queue before returning, so an invocation can stop between any two
batches. Queue records live under the `email-queue:` prefix until the last
batch is attempted, after which the SentTracker records the post and the queue
key is deleted.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from app.core.logging import get_logger
from app.models.delivery_queue import (
    DeliveryQueue,
    QueueError,
    QueuedPost,
    QueueStats,
    QueueStatus,
    SentRecord,
)
from app.models.feed_item import FeedItem, PostIdentity
from services.email import BatchSendResult
from services.email_service import EmailService
from services.errors import BatchSendError
from services.feed_parser import normalize_url, post_id_from_normalized_url
from services.kv_store import KVStore, iter_keys
from services.retry_service import RetryConfig, with_retry
from services.sent_tracker import SentTracker

logger = get_logger()

BATCH_RETRY_CONFIG = RetryConfig(max_attempts=3, initial_delay=5.0, backoff_multiplier=2.0, max_delay=30.0)
BATCH_RETRY_LIMIT = 3
BATCH_RETRY_DELAY = timedelta(minutes=5)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


@dataclass
class BatchOutcome:
    success: bool
    waiting: bool = False
    completed: bool = False
    retry_scheduled: bool = False
    abandoned: bool = False
    error: Optional[BaseException] = None
    stats: Optional[QueueStats] = None


class DeliveryQueueService:
    def __init__(
        self,
        store: KVStore,
        email_service: EmailService,
        sent_tracker: SentTracker,
        *,
        prefix: str = "email-queue:",
        batch_size: int = 100,
        batch_wait_minutes: int = 5,
        retry_config: RetryConfig = BATCH_RETRY_CONFIG,
        batch_retry_limit: int = BATCH_RETRY_LIMIT,
        now: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.email_service = email_service
        self.sent_tracker = sent_tracker
        self.prefix = prefix
        self.batch_size = max(1, batch_size)
        self.batch_wait = timedelta(minutes=batch_wait_minutes)
        self.retry_config = retry_config
        self.batch_retry_limit = max(1, batch_retry_limit)
        self._now = now
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def queue_key(self, post_id: str) -> str:
        return f"{self.prefix}{post_id}"

    async def load(self, key: str) -> Optional[DeliveryQueue]:
        raw = await self.store.get(key)
        if raw is None:
            return None
        try:
            return DeliveryQueue.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("delivery_queue_invalid_record", key=key, error=str(exc))
            return None

    async def save(self, key: str, queue: DeliveryQueue) -> None:
        await self.store.put(key, queue.model_dump_json())

    async def list_queues(self, status: QueueStatus) -> List[Tuple[str, DeliveryQueue]]:
        """All readable queues with `status`, in key order."""
        found: List[Tuple[str, DeliveryQueue]] = []
        async for key in iter_keys(self.store, self.prefix):
            queue = await self.load(key)
            if queue is not None and queue.status == status:
                found.append((key, queue))
        return found

    async def create_queue(
        self,
        item: FeedItem,
        identity: PostIdentity,
        subscribers: Sequence[str],
    ) -> Tuple[str, DeliveryQueue]:
        """
        Write a new `pending` queue for `item`. An existing queue under the same
        key is returned untouched.
        """
        key = self.queue_key(identity.post_id)
        existing = await self.load(key)
        if existing is not None:
            logger.info("delivery_queue_exists", key=key, status=existing.status.value)
            return key, existing

        queue = DeliveryQueue(
            post=QueuedPost(
                title=item.title or identity.post_id,
                url=identity.normalized_url,
                description=item.description,
                published_at=item.published_at,
                slug=identity.post_id,
                author=item.author,
                categories=list(item.categories),
                enclosure_url=item.enclosure_url,
            ),
            subscribers=list(subscribers),
            created_at=self._now(),
        )
        await self.save(key, queue)
        logger.info("delivery_queue_created", key=key, title=queue.post.title, subscriber_count=queue.total)
        return key, queue

    # ------------------------------------------------------------------
    # Batch processing
    # ------------------------------------------------------------------

    async def finalize(self, key: str, queue: DeliveryQueue) -> None:
        normalized = normalize_url(queue.post.url)
        post_id = post_id_from_normalized_url(normalized) or queue.post.slug
        record = SentRecord(
            url=normalized,
            slug=post_id,
            title=queue.post.title,
            published_at=queue.post.published_at,
            sent_at=self._now(),
            recipient_count=queue.offset,
        )
        await self.sent_tracker.mark_sent(post_id, normalized, record, key)
        queue.advance_status(QueueStatus.COMPLETED)
        queue.refresh_stats()
        logger.info(
            "delivery_queue_completed",
            key=key,
            sent=queue.stats.sent if queue.stats else 0,
            failed=len(queue.failed_recipients),
        )

    async def _send(self, queue: DeliveryQueue, batch: List[str]) -> BatchSendResult:
        async def _attempt(attempt: int) -> BatchSendResult:
            result = await self.email_service.send_newsletter(queue.post, batch)
            if result.total_sent <= 0:
                # Nothing delivered counts as a failed attempt, whatever the provider says.
                raise BatchSendError(
                    result.error or "Provider delivered to no recipients",
                    status=result.status_code or 503,
                    total_failed=result.total_failed or len(batch),
                )
            return result

        outcome = await with_retry(_attempt, self.retry_config, sleep=self._sleep)
        return outcome.unwrap()

    async def process_batch(self, key: str, queue: DeliveryQueue) -> BatchOutcome:
        """
        Attempt the next batch of `queue` and persist the result.

        Never raises for delivery or store failures; they are reported on the
        returned BatchOutcome and, where possible, recorded in `last_error`.
        """
        now = self._now()
        try:
            if queue.next_send_at is not None and now < _aware(queue.next_send_at):
                logger.info("delivery_queue_waiting", key=key, next_send_at=queue.next_send_at.isoformat())
                return BatchOutcome(success=True, waiting=True, stats=queue.stats)

            total = queue.total
            offset = queue.offset
            if total == 0 or offset >= total:
                await self.finalize(key, queue)
                return BatchOutcome(success=True, completed=True, stats=queue.stats)

            batch = queue.subscribers[offset:offset + self.batch_size]
            batch_label = f"{offset}-{offset + len(batch)}"
            queue.advance_status(QueueStatus.IN_PROGRESS)
            logger.info("delivery_batch_started", key=key, offset=offset, total=total, batch_size=len(batch))

            try:
                result = await self._send(queue, batch)
            except Exception as exc:
                return await self._on_batch_failure(key, queue, batch, batch_label, exc, now)

            # Refused addresses were attempted; the unsent tail stays ahead of
            # the offset and goes out again with the next slice.
            attempted = batch[:result.attempted]
            unsent = batch[result.attempted:]
            queue.sent_to.extend(attempted)
            failed = list(result.refused) + unsent
            if failed:
                queue.failed_recipients.extend(failed)
                logger.warning(
                    "delivery_batch_partial",
                    key=key,
                    sent=result.total_sent,
                    refused=len(result.refused),
                    unsent=len(unsent),
                )

            queue.batch_retry_count = 0
            queue.last_batch_sent_at = now
            stats = queue.refresh_stats()

            if queue.offset >= total:
                await self.finalize(key, queue)
                return BatchOutcome(success=True, completed=True, stats=stats)

            queue.next_send_at = now + self.batch_wait
            await self.save(key, queue)
            logger.info(
                "delivery_batch_sent",
                key=key,
                sent=stats.sent,
                total=stats.total,
                next_send_at=queue.next_send_at.isoformat(),
            )
            return BatchOutcome(success=True, stats=stats)

        except Exception as exc:
            logger.error("delivery_batch_error", key=key, error=str(exc), error_type=type(exc).__name__, exc_info=True)
            queue.last_error = QueueError(message=str(exc), timestamp=now)
            try:
                await self.save(key, queue)
            except Exception as save_exc:
                logger.error("delivery_queue_save_failed", key=key, error=str(save_exc))
            return BatchOutcome(success=False, error=exc, stats=queue.stats)

    async def _on_batch_failure(
        self,
        key: str,
        queue: DeliveryQueue,
        batch: List[str],
        batch_label: str,
        error: BaseException,
        now: datetime,
    ) -> BatchOutcome:
        queue.batch_retry_count += 1
        queue.last_error = QueueError(message=str(error), batch=batch_label, timestamp=now)

        abandoned = queue.batch_retry_count >= self.batch_retry_limit
        if abandoned:
            # Give up on this batch: mark it attempted and failed, move on.
            queue.sent_to.extend(batch)
            queue.failed_recipients.extend(batch)
            queue.batch_retry_count = 0
            logger.error("delivery_batch_abandoned", key=key, batch=batch_label, error=str(error))
        else:
            queue.next_send_at = now + BATCH_RETRY_DELAY
            logger.warning(
                "delivery_batch_retry_scheduled",
                key=key,
                batch=batch_label,
                batch_retry_count=queue.batch_retry_count,
                next_send_at=queue.next_send_at.isoformat(),
                error=str(error),
            )

        stats = queue.refresh_stats()
        if abandoned and queue.offset >= queue.total:
            await self.finalize(key, queue)
            return BatchOutcome(success=False, abandoned=True, completed=True, error=error, stats=stats)

        await self.save(key, queue)
        return BatchOutcome(
            success=False,
            retry_scheduled=not abandoned,
            abandoned=abandoned,
            error=error,
            stats=stats,
        )
