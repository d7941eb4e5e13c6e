# Backend/tests/fixtures/__init__.py
"""
Test fixtures for the newsletter pipeline tests.

Factory functions and fakes:
- make_feed_item()
- make_queue()
- make_subscribers()
- FakeClock
- FakeEmailService
- FakeFeedFetcher
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Sequence, Tuple

from app.models.delivery_queue import DeliveryQueue, QueuedPost
from app.models.feed_item import FeedItem
from services.email import BatchSendResult
from services.feed_fetch_service import FetchedFeed
from services.retry_service import RetryResult

T0 = datetime(2024, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


def make_feed_item(
    url: str = "https://example.com/blog/hello-world",
    title: str = "Hello World",
    published_at: str = "2024-01-15T10:00:00.000Z",
    description: str = "First post",
    **overrides: Any,
) -> FeedItem:
    """Factory function to create a FeedItem."""
    return FeedItem(
        url=url,
        title=title,
        guid=overrides.pop("guid", url),
        published_at=published_at,
        description=description,
        **overrides,
    )


def make_subscribers(count: int, domain: str = "example.com") -> List[str]:
    return [f"user{i:04d}@{domain}" for i in range(count)]


def make_queue(
    subscribers: Optional[Sequence[str]] = None,
    slug: str = "blog/hello-world",
    created_at: datetime = T0,
    **overrides: Any,
) -> DeliveryQueue:
    """Factory function to create a pending DeliveryQueue."""
    return DeliveryQueue(
        post=QueuedPost(
            title="Hello World",
            url=f"https://example.com/{slug}",
            slug=slug,
            published_at="2024-01-15T10:00:00.000Z",
        ),
        subscribers=list(subscribers if subscribers is not None else make_subscribers(3)),
        created_at=created_at,
        **overrides,
    )


class FakeClock:
    """Mutable datetime source; call it like `datetime.now`."""

    def __init__(self, start: datetime = T0):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class FakeEmailService:
    """
    Stands in for EmailService. `results` is consumed one per send; when it
    runs out every recipient is reported as sent.
    """

    def __init__(self, results: Optional[List[BatchSendResult]] = None):
        self.results = list(results or [])
        self.calls: List[Tuple[QueuedPost, List[str]]] = []

    async def send_newsletter(self, post: QueuedPost, recipients: Sequence[str]) -> BatchSendResult:
        self.calls.append((post, list(recipients)))
        if self.results:
            return self.results.pop(0)
        return BatchSendResult(success=True, total_sent=len(recipients))


def failed_send(recipients: int, status_code: int = 503, error: str = "Provider unavailable") -> BatchSendResult:
    return BatchSendResult(
        success=False,
        total_sent=0,
        total_failed=recipients,
        error=error,
        status_code=status_code,
    )


class FakeFeedFetcher:
    """Returns canned feed text, or a failed envelope when `error` is set."""

    def __init__(
        self,
        text: str = "",
        content_type: str = "application/rss+xml",
        error: Optional[BaseException] = None,
    ):
        self.text = text
        self.content_type = content_type
        self.error = error
        self.urls: List[str] = []

    async def fetch_feed(self, url: str) -> RetryResult[FetchedFeed]:
        self.urls.append(url)
        if self.error is not None:
            return RetryResult(success=False, attempts=3, error=self.error)
        return RetryResult(
            success=True,
            attempts=1,
            result=FetchedFeed(url=url, status_code=200, content_type=self.content_type, text=self.text),
        )


RSS_ONE_ITEM = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Example Blog</title>
    <link>https://example.com</link>
    <item>
      <title>Hello World</title>
      <link>https://example.com/blog/hello-world/</link>
      <guid>https://example.com/blog/hello-world/</guid>
      <pubDate>Mon, 15 Jan 2024 10:00:00 GMT</pubDate>
      <description>First post</description>
    </item>
  </channel>
</rss>
"""
