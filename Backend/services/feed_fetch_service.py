from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx

from app.core.logging import get_logger
from services.retry_service import RetryConfig, RetryResult, fetch_with_retry

logger = get_logger()

# Feed fetches back off harder than the generic default: 2 s, 4 s.
FEED_RETRY_CONFIG = RetryConfig(max_attempts=3, initial_delay=2.0, backoff_multiplier=2.0)


@dataclass
class FetchedFeed:
    url: str
    status_code: int
    content_type: str
    text: str


class FeedFetchService:
    """
    HTTP client for the configured feed document.

    Usage:
        async with FeedFetchService(user_agent=..., timeout_s=60) as svc:
            result = await svc.fetch_feed(url)
    """

    def __init__(
        self,
        *,
        user_agent: str,
        timeout_s: float = 60.0,
        retry_config: RetryConfig = FEED_RETRY_CONFIG,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.user_agent = user_agent
        self.timeout_s = timeout_s
        self.retry_config = retry_config
        self._sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "FeedFetchService":
        self._client = httpx.AsyncClient(
            timeout=self.timeout_s,
            headers={"User-Agent": self.user_agent},
            follow_redirects=True,
        )
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def fetch_feed(self, url: str) -> RetryResult[FetchedFeed]:
        """
        Fetch the feed with retry. Never raises for HTTP or network failures;
        inspect `success` / `error` on the returned envelope.
        """
        if self._client is None:
            raise RuntimeError(f"{self.__class__.__name__} HTTP client not initialized")

        result = await fetch_with_retry(self._client, url, self.retry_config, sleep=self._sleep)
        if not result.success or result.result is None:
            logger.warning(
                "feed_fetch_failed",
                url=url,
                attempts=result.attempts,
                error=str(result.error) if result.error else None,
            )
            return RetryResult(success=False, attempts=result.attempts, error=result.error)

        response = result.result
        feed = FetchedFeed(
            url=str(response.url),
            status_code=response.status_code,
            content_type=response.headers.get("content-type", ""),
            text=response.text,
        )
        logger.info(
            "feed_fetched",
            url=url,
            status=response.status_code,
            bytes=len(response.content),
            attempts=result.attempts,
        )
        return RetryResult(success=True, attempts=result.attempts, result=feed)
