# Backend/app/workers/newsletter_bot.py
"""
Newsletter Bot: one scheduled invocation of the feed-driven newsletter pipeline.

Each invocation:
- resumes an active delivery queue (one batch), or
- starts a pending queue (one batch), or
- discovers new feed posts and queues them for delivery

Run it from a scheduler (cron, GitHub Actions, systemd timer); --loop keeps
it running in-process for local use.

Path: Backend/app/workers/newsletter_bot.py
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import Optional

# --- Uniform logging ---
from app.core.logging import configure_logging, get_logger
from app.core.request_id import with_run_id

configure_logging(service_name="worker")
logger = get_logger()
logger = logger.bind(worker="newsletter_bot")

# ---------------------------------------------------------------------------
# Pathing so 'app.*' and 'services.*' resolve (CI, GH Actions, local run)
# ---------------------------------------------------------------------------
THIS_FILE = Path(__file__).resolve()
APP_DIR = THIS_FILE.parent.parent           # .../Backend/app
BACKEND_DIR = APP_DIR.parent                # .../Backend

if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))    # .../Backend

from app.config import Settings, get_settings
from services.background_tasks import DetachedTasks
from services.db_service import close_pool
from services.dead_letter_service import DeadLetterStore
from services.delivery_queue_service import DeliveryQueueService
from services.email_service import EmailService
from services.feed_fetch_service import FeedFetchService
from services.kv_store import KVStore, create_kv_store
from services.newsletter_orchestrator import NewsletterOrchestrator, RunSummary
from services.sent_tracker import SentTracker
from services.subscriber_service import SubscriberService

# Global flag for graceful shutdown
_shutdown_requested = False


def _signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    global _shutdown_requested
    logger.info("shutdown_signal_received", signal=signum)
    _shutdown_requested = True


async def _purge_expired(store: KVStore) -> None:
    try:
        purged = await store.purge_expired()
    except Exception as e:
        logger.warning("kv_store_purge_failed", error=str(e), error_type=type(e).__name__)
        return
    if purged:
        logger.info("kv_store_expired_purged", count=purged)


async def run_once(settings: Settings, store: KVStore) -> RunSummary:
    """
    One invocation. Breaker, provider and services are built fresh here and
    shared by nothing outside this call.
    """
    with with_run_id() as run_id:
        sent_tracker = SentTracker(
            store,
            sent_prefix=settings.PREFIX_NEWSLETTER_SENT,
            sent_url_prefix=settings.PREFIX_NEWSLETTER_SENT_URL,
        )
        queue_service = DeliveryQueueService(
            store,
            EmailService.from_settings(settings),
            sent_tracker,
            prefix=settings.PREFIX_EMAIL_QUEUE,
            batch_size=settings.BATCH_SIZE,
            batch_wait_minutes=settings.BATCH_WAIT_MINUTES,
        )
        dead_letters = DeadLetterStore(
            store,
            prefix=settings.PREFIX_DEAD_LETTER,
            ttl_seconds=settings.DLQ_TTL_SECONDS,
        )
        subscribers = SubscriberService(store, prefix=settings.PREFIX_SUBSCRIBER)
        detached = DetachedTasks()

        async with FeedFetchService(
            user_agent=settings.USER_AGENT,
            timeout_s=settings.fetch_timeout_s,
        ) as fetcher:
            orchestrator = NewsletterOrchestrator(
                store,
                queue_service,
                sent_tracker,
                subscribers,
                dead_letters,
                fetcher,
                feed_url=settings.FEED_URL,
                max_posts_per_run=settings.MAX_POSTS_PER_RUN,
                run_lease_seconds=settings.RUN_LEASE_SECONDS,
                detached=detached,
            )
            summary = await orchestrator.run()

        await detached.drain()
        await _purge_expired(store)
        logger.info(
            "newsletter_bot_run_complete",
            run_id=run_id,
            mode=summary.mode,
            queues_processed=summary.queues_processed,
            queues_created=summary.queues_created,
            dead_lettered=summary.dead_lettered,
            error=summary.error,
        )
        return summary


async def run_newsletter_loop(
    *,
    loop: bool = False,
    interval: int = 900,
    max_iterations: Optional[int] = None,
) -> None:
    """
    Args:
        loop: Keep running, one invocation every `interval` seconds
        interval: Seconds between invocations in loop mode
        max_iterations: Stop after this many invocations (None = infinite)
    """
    global _shutdown_requested

    settings = get_settings()
    store = create_kv_store(settings)
    if settings.KV_BACKEND == "memory":
        logger.warning("kv_store_memory_backend", hint="state is lost when the process exits")

    if loop:
        signal.signal(signal.SIGINT, _signal_handler)
        signal.signal(signal.SIGTERM, _signal_handler)

    iteration = 0
    try:
        while not _shutdown_requested:
            if max_iterations and iteration >= max_iterations:
                logger.info("newsletter_bot_max_iterations_reached", iterations=iteration)
                break

            iteration += 1
            await run_once(settings, store)

            if not loop:
                break
            if not _shutdown_requested:
                logger.debug("newsletter_bot_sleeping", seconds=interval)
                await asyncio.sleep(interval)
    finally:
        if settings.KV_BACKEND == "postgres":
            await close_pool()
        logger.info("newsletter_bot_shutdown", iterations=iteration)


def main():
    """CLI entry point for the newsletter bot."""
    parser = argparse.ArgumentParser(
        description="Newsletter Bot - feed discovery and batched newsletter delivery"
    )
    parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep running and invoke every --interval seconds",
    )
    parser.add_argument(
        "--interval",
        type=int,
        default=900,
        help="Seconds between invocations in --loop mode (default: 900)",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=None,
        help="Maximum number of invocations (default: infinite in --loop mode)",
    )

    args = parser.parse_args()
    asyncio.run(
        run_newsletter_loop(
            loop=args.loop,
            interval=args.interval,
            max_iterations=args.max_iterations,
        )
    )


if __name__ == "__main__":
    main()
