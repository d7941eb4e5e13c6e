# Backend/services/newsletter_orchestrator.py
"""
One scheduled newsletter invocation.

Order of work per run:
1. resume every `in-progress` queue (one batch each), else
2. start every `pending` queue (one batch each), else
3. discover new posts from the feed and create `pending` queues.

Discovery only runs when no queue is active, so one post finishes its fan-out
before the next one starts. Failures are logged and recorded under
`error:*:last` keys; `run()` itself does not raise.
"""

from __future__ import annotations

import json
import traceback
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from app.core.logging import get_logger
from app.core.request_id import get_run_id
from app.models.delivery_queue import DeliveryQueue, QueueStatus
from services.background_tasks import DetachedTasks
from services.dead_letter_service import DeadLetterStore
from services.delivery_queue_service import BatchOutcome, DeliveryQueueService
from services.feed_fetch_service import FetchedFeed
from services.feed_parser import detect_feed_type, is_valid_feed_url, parse_feed, post_identity
from services.kv_store import KVStore
from services.retry_service import RetryResult
from services.sent_tracker import SentTracker
from services.subscriber_service import SubscriberService

logger = get_logger()

DAILY_RUN_ERROR_KEY = "error:daily-run:last"
DAILY_RUN_ERROR_TTL = 7 * 24 * 60 * 60
FEED_FETCH_ERROR_KEY = "error:rss-fetch:last"
FEED_FETCH_ERROR_TTL = 24 * 60 * 60
RUN_SUMMARY_KEY = "run-summary:last"
RUN_SUMMARY_TTL = 7 * 24 * 60 * 60
RUN_LEASE_KEY = "lease:daily-run"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FeedFetcher(Protocol):
    async def fetch_feed(self, url: str) -> RetryResult[FetchedFeed]:
        ...


@dataclass
class RunSummary:
    run_id: Optional[str]
    started_at: str
    mode: str = "idle"
    queues_processed: int = 0
    queues_completed: int = 0
    queues_created: int = 0
    dead_lettered: int = 0
    feed_items: int = 0
    error: Optional[str] = None
    finished_at: Optional[str] = None
    batches: List[Dict[str, Any]] = field(default_factory=list)


class NewsletterOrchestrator:
    def __init__(
        self,
        store: KVStore,
        queue_service: DeliveryQueueService,
        sent_tracker: SentTracker,
        subscriber_service: SubscriberService,
        dead_letters: DeadLetterStore,
        feed_fetcher: FeedFetcher,
        *,
        feed_url: Optional[str],
        max_posts_per_run: int = 1,
        run_lease_seconds: int = 0,
        detached: Optional[DetachedTasks] = None,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.queue_service = queue_service
        self.sent_tracker = sent_tracker
        self.subscriber_service = subscriber_service
        self.dead_letters = dead_letters
        self.feed_fetcher = feed_fetcher
        self.feed_url = feed_url
        self.max_posts_per_run = max(1, max_posts_per_run)
        self.run_lease_seconds = max(0, run_lease_seconds)
        self.detached = detached if detached is not None else DetachedTasks()
        self._now = now

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self) -> RunSummary:
        summary = RunSummary(run_id=get_run_id(), started_at=self._now().isoformat())
        logger.info("daily_run_started")

        leased = False
        try:
            leased = await self._acquire_lease()
            if not leased:
                summary.mode = "skipped"
                logger.warning("daily_run_skipped_lease_held", lease_key=RUN_LEASE_KEY)
                return summary

            active = await self.queue_service.list_queues(QueueStatus.IN_PROGRESS)
            if active:
                summary.mode = "in-progress"
                logger.info("active_queues_found", count=len(active))
                await self._process_queues(active, summary)
                return summary

            pending = await self.queue_service.list_queues(QueueStatus.PENDING)
            if pending:
                summary.mode = "pending"
                logger.info("pending_queues_found", count=len(pending))
                await self._process_queues(pending, summary)
                return summary

            summary.mode = "discovery"
            await self._discover(summary)
            return summary

        except Exception as exc:
            summary.mode = "error"
            summary.error = str(exc)
            logger.error("daily_run_failed", error=str(exc), error_type=type(exc).__name__, exc_info=True)
            await self._record_error(
                DAILY_RUN_ERROR_KEY,
                {
                    "error": str(exc),
                    "name": type(exc).__name__,
                    "stack": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
                    "timestamp": self._now().isoformat(),
                },
                DAILY_RUN_ERROR_TTL,
            )
            return summary

        finally:
            if leased:
                await self._release_lease()
            summary.finished_at = self._now().isoformat()
            logger.info(
                "daily_run_finished",
                mode=summary.mode,
                queues_processed=summary.queues_processed,
                queues_created=summary.queues_created,
                dead_lettered=summary.dead_lettered,
            )
            self.detached.spawn(self._write_summary(summary), name="run-summary")

    # ------------------------------------------------------------------
    # Queue processing
    # ------------------------------------------------------------------

    async def _process_queues(self, queues: List[Tuple[str, DeliveryQueue]], summary: RunSummary) -> None:
        for key, queue in queues:
            outcome = await self.queue_service.process_batch(key, queue)
            summary.queues_processed += 1
            if outcome.completed:
                summary.queues_completed += 1
            summary.batches.append(
                {
                    "key": key,
                    "success": outcome.success,
                    "waiting": outcome.waiting,
                    "completed": outcome.completed,
                    "retry_scheduled": outcome.retry_scheduled,
                    "abandoned": outcome.abandoned,
                    "error": str(outcome.error) if outcome.error else None,
                }
            )
            if self._needs_dead_letter(outcome):
                await self.dead_letters.add(
                    {"queue_key": key, "queue": queue.model_dump(mode="json"), "retry_count": 0},
                    outcome.error,
                )
                summary.dead_lettered += 1

    @staticmethod
    def _needs_dead_letter(outcome: BatchOutcome) -> bool:
        # Scheduled retries stay in the queue; only exhausted or unexpected failures are parked.
        if outcome.success or outcome.error is None:
            return False
        return outcome.abandoned or not outcome.retry_scheduled

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def _discover(self, summary: RunSummary) -> None:
        if not self.feed_url:
            logger.info("feed_url_not_configured")
            return
        if not is_valid_feed_url(self.feed_url):
            logger.error("feed_url_invalid", url=self.feed_url)
            await self._record_fetch_error("feed URL must be an absolute http(s) URL", attempts=0)
            return

        subscribers = await self.subscriber_service.get_all_subscribers()
        if not subscribers:
            logger.info("no_subscribers_found")
            return

        fetched = await self.feed_fetcher.fetch_feed(self.feed_url)
        if not fetched.success or fetched.result is None:
            logger.error(
                "feed_fetch_exhausted",
                url=self.feed_url,
                attempts=fetched.attempts,
                error=str(fetched.error) if fetched.error else None,
            )
            await self._record_fetch_error(
                str(fetched.error) if fetched.error else "unknown error",
                attempts=fetched.attempts,
            )
            return

        feed_type = detect_feed_type(fetched.result.text)
        logger.info(
            "feed_fetched",
            url=self.feed_url,
            feed_type=feed_type,
            content_type=fetched.result.content_type,
            attempts=fetched.attempts,
        )
        items = parse_feed(fetched.result.text, fetched.result.content_type)
        summary.feed_items = len(items)
        if not items:
            logger.info("feed_has_no_items", url=self.feed_url, feed_type=feed_type)
            return

        created = 0
        for item in items:
            if created >= self.max_posts_per_run:
                break
            identity = post_identity(item)
            if not identity.post_id:
                continue
            if await self.sent_tracker.already_sent(identity.post_id, identity.normalized_url):
                logger.info("post_already_sent", post_id=identity.post_id)
                continue
            await self.queue_service.create_queue(item, identity, subscribers)
            created += 1

        summary.queues_created = created
        logger.info("discovery_finished", feed_items=len(items), queues_created=created)

    # ------------------------------------------------------------------
    # Best-effort records
    # ------------------------------------------------------------------

    async def _record_error(self, key: str, payload: Dict[str, Any], ttl_seconds: int) -> None:
        try:
            await self.store.put(key, json.dumps(payload), ttl_seconds=ttl_seconds)
        except Exception as e:
            logger.error("error_record_write_failed", key=key, error=str(e))

    async def _record_fetch_error(self, error: str, *, attempts: int) -> None:
        await self._record_error(
            FEED_FETCH_ERROR_KEY,
            {"url": self.feed_url, "error": error, "attempts": attempts, "timestamp": self._now().isoformat()},
            FEED_FETCH_ERROR_TTL,
        )

    async def _write_summary(self, summary: RunSummary) -> None:
        await self.store.put(RUN_SUMMARY_KEY, json.dumps(asdict(summary)), ttl_seconds=RUN_SUMMARY_TTL)

    async def _acquire_lease(self) -> bool:
        if not self.run_lease_seconds:
            return True
        # Read-then-write; two runs racing in the same instant can both pass.
        if await self.store.get(RUN_LEASE_KEY) is not None:
            return False
        await self.store.put(
            RUN_LEASE_KEY,
            json.dumps({"run_id": get_run_id(), "acquired_at": self._now().isoformat()}),
            ttl_seconds=self.run_lease_seconds,
        )
        return True

    async def _release_lease(self) -> None:
        if not self.run_lease_seconds:
            return
        try:
            await self.store.delete(RUN_LEASE_KEY)
        except Exception as e:
            logger.warning("run_lease_release_failed", error=str(e))
