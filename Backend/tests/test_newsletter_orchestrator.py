from __future__ import annotations

import json
from unittest.mock import AsyncMock

import pytest

from app.models.delivery_queue import QueueStatus
from services.background_tasks import DetachedTasks
from services.dead_letter_service import DeadLetterStore
from services.delivery_queue_service import DeliveryQueueService
from services.errors import HTTPStatusFailure
from services.kv_store import InMemoryKVStore
from services.newsletter_orchestrator import (
    DAILY_RUN_ERROR_KEY,
    FEED_FETCH_ERROR_KEY,
    RUN_LEASE_KEY,
    RUN_SUMMARY_KEY,
    NewsletterOrchestrator,
)
from services.sent_tracker import SentTracker
from services.subscriber_service import SubscriberService
from tests.fixtures import (
    RSS_ONE_ITEM,
    FakeClock,
    FakeEmailService,
    FakeFeedFetcher,
    failed_send,
    make_queue,
)

FEED_URL = "https://example.com/feed.xml"
QUEUE_KEY = "email-queue:blog/hello-world"


def _build(store, *, email=None, fetcher=None, feed_url=FEED_URL, **kwargs):
    clock = FakeClock()
    tracker = SentTracker(store)
    queue_service = DeliveryQueueService(
        store,
        email or FakeEmailService(),
        tracker,
        now=clock,
        sleep=AsyncMock(),
    )
    return NewsletterOrchestrator(
        store,
        queue_service,
        tracker,
        SubscriberService(store),
        DeadLetterStore(store, now=clock),
        fetcher or FakeFeedFetcher(RSS_ONE_ITEM),
        feed_url=feed_url,
        now=clock,
        **kwargs,
    )


async def _with_subscribers(*emails: str) -> InMemoryKVStore:
    store = InMemoryKVStore()
    for i, email in enumerate(emails):
        await store.put(f"subscriber:{i:03d}", json.dumps({"email": email}))
    return store


@pytest.mark.asyncio
async def test_discovery_creates_pending_queue_without_sending():
    store = await _with_subscribers("a@example.com", "b@example.com")
    email = FakeEmailService()
    orchestrator = _build(store, email=email)

    summary = await orchestrator.run()

    assert summary.mode == "discovery"
    assert summary.queues_created == 1
    assert summary.feed_items == 1
    assert email.calls == []
    queues = await orchestrator.queue_service.list_queues(QueueStatus.PENDING)
    assert len(queues) == 1
    key, queue = queues[0]
    assert key == QUEUE_KEY
    assert queue.subscribers == ["a@example.com", "b@example.com"]
    assert queue.sent_to == []


@pytest.mark.asyncio
async def test_post_is_delivered_once_across_runs():
    store = await _with_subscribers("a@example.com", "b@example.com")
    email = FakeEmailService()
    fetcher = FakeFeedFetcher(RSS_ONE_ITEM)
    orchestrator = _build(store, email=email, fetcher=fetcher)

    await orchestrator.run()
    second = await orchestrator.run()
    third = await orchestrator.run()

    assert second.mode == "pending"
    assert second.queues_completed == 1
    assert await store.get(QUEUE_KEY) is None
    assert third.mode == "discovery"
    assert third.queues_created == 0
    assert len(email.calls) == 1
    assert len(fetcher.urls) == 2


@pytest.mark.asyncio
async def test_active_queues_take_priority_over_discovery():
    store = await _with_subscribers("a@example.com")
    fetcher = FakeFeedFetcher(RSS_ONE_ITEM)
    orchestrator = _build(store, fetcher=fetcher)
    await orchestrator.queue_service.save(
        "email-queue:older",
        make_queue(["x@example.com", "y@example.com"], slug="older", status=QueueStatus.IN_PROGRESS),
    )

    summary = await orchestrator.run()

    assert summary.mode == "in-progress"
    assert summary.queues_processed == 1
    assert fetcher.urls == []


@pytest.mark.asyncio
async def test_no_subscribers_skips_fetch():
    store = InMemoryKVStore()
    fetcher = FakeFeedFetcher(RSS_ONE_ITEM)

    summary = await _build(store, fetcher=fetcher).run()

    assert summary.queues_created == 0
    assert fetcher.urls == []


@pytest.mark.asyncio
async def test_missing_feed_url_skips_discovery():
    store = await _with_subscribers("a@example.com")
    fetcher = FakeFeedFetcher(RSS_ONE_ITEM)

    summary = await _build(store, fetcher=fetcher, feed_url=None).run()

    assert summary.mode == "discovery"
    assert fetcher.urls == []


@pytest.mark.asyncio
async def test_fetch_failure_is_recorded():
    store = await _with_subscribers("a@example.com")
    fetcher = FakeFeedFetcher(error=HTTPStatusFailure("HTTP 500: Internal Server Error", status=500))

    summary = await _build(store, fetcher=fetcher).run()

    assert summary.error is None
    record = json.loads(await store.get(FEED_FETCH_ERROR_KEY))
    assert record["url"] == FEED_URL
    assert record["attempts"] == 3
    assert "HTTP 500" in record["error"]
    assert store.ttl_of(FEED_FETCH_ERROR_KEY) == pytest.approx(24 * 60 * 60, abs=5)


@pytest.mark.asyncio
async def test_invalid_feed_url_is_rejected_before_fetch():
    store = await _with_subscribers("a@example.com")
    fetcher = FakeFeedFetcher(RSS_ONE_ITEM)

    summary = await _build(store, fetcher=fetcher, feed_url="ftp://example.com/feed.xml").run()

    assert summary.mode == "discovery"
    assert summary.queues_created == 0
    assert fetcher.urls == []
    record = json.loads(await store.get(FEED_FETCH_ERROR_KEY))
    assert record["url"] == "ftp://example.com/feed.xml"
    assert record["attempts"] == 0


@pytest.mark.asyncio
async def test_max_posts_per_run_limits_new_queues():
    store = await _with_subscribers("a@example.com")
    feed = """<rss version="2.0"><channel>
      <item><title>One</title><link>https://example.com/one</link></item>
      <item><title>Two</title><link>https://example.com/two</link></item>
      <item><title>Three</title><link>https://example.com/three</link></item>
    </channel></rss>"""

    summary = await _build(store, fetcher=FakeFeedFetcher(feed), max_posts_per_run=2).run()

    assert summary.queues_created == 2
    assert (await store.list("email-queue:")).keys == ["email-queue:one", "email-queue:two"]


@pytest.mark.asyncio
async def test_abandoned_batch_is_dead_lettered():
    store = await _with_subscribers("a@example.com")
    email = FakeEmailService([failed_send(2, status_code=422)])
    orchestrator = _build(store, email=email)
    await orchestrator.queue_service.save(
        QUEUE_KEY,
        make_queue(["x@example.com", "y@example.com"], status=QueueStatus.IN_PROGRESS, batch_retry_count=2),
    )

    summary = await orchestrator.run()

    assert summary.dead_lettered == 1
    [(_, entry)] = await orchestrator.dead_letters.get_all()
    assert entry.item["queue_key"] == QUEUE_KEY
    assert entry.item["queue"]["post"]["slug"] == "blog/hello-world"
    assert entry.error.name == "BatchSendError"


@pytest.mark.asyncio
async def test_scheduled_retry_is_not_dead_lettered():
    store = await _with_subscribers("a@example.com")
    email = FakeEmailService([failed_send(2, status_code=422)])
    orchestrator = _build(store, email=email)
    await orchestrator.queue_service.save(QUEUE_KEY, make_queue(["x@example.com", "y@example.com"]))

    summary = await orchestrator.run()

    assert summary.dead_lettered == 0
    assert await orchestrator.dead_letters.get_all() == []
    queue = await orchestrator.queue_service.load(QUEUE_KEY)
    assert queue.batch_retry_count == 1


@pytest.mark.asyncio
async def test_unexpected_error_is_recorded_and_not_raised():
    store = await _with_subscribers("a@example.com")
    orchestrator = _build(store)
    orchestrator.queue_service.list_queues = AsyncMock(side_effect=RuntimeError("store unavailable"))

    summary = await orchestrator.run()

    assert summary.mode == "error"
    assert summary.error == "store unavailable"
    record = json.loads(await store.get(DAILY_RUN_ERROR_KEY))
    assert record["name"] == "RuntimeError"
    assert "store unavailable" in record["stack"]


@pytest.mark.asyncio
async def test_run_summary_written_in_background():
    store = await _with_subscribers("a@example.com")
    detached = DetachedTasks()

    await _build(store, detached=detached).run()
    await detached.drain()
    assert len(detached) == 0

    summary = json.loads(await store.get(RUN_SUMMARY_KEY))
    assert summary["mode"] == "discovery"
    assert summary["queues_created"] == 1


@pytest.mark.asyncio
async def test_held_lease_skips_run():
    store = await _with_subscribers("a@example.com")
    await store.put(RUN_LEASE_KEY, "{}", ttl_seconds=60)
    fetcher = FakeFeedFetcher(RSS_ONE_ITEM)

    summary = await _build(store, fetcher=fetcher, run_lease_seconds=60).run()

    assert summary.mode == "skipped"
    assert fetcher.urls == []
    assert await store.get(RUN_LEASE_KEY) == "{}"


@pytest.mark.asyncio
async def test_lease_released_after_run():
    store = await _with_subscribers("a@example.com")

    summary = await _build(store, run_lease_seconds=60).run()

    assert summary.mode == "discovery"
    assert await store.get(RUN_LEASE_KEY) is None
