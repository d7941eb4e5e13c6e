from __future__ import annotations

from unittest.mock import AsyncMock

import httpx
import pytest

from services.errors import BatchSendError, HTTPStatusFailure
from services.retry_service import (
    RetryConfig,
    RetryResult,
    calculate_delay,
    error_status,
    fetch_with_retry,
    is_retryable_error,
    with_retry,
)

NO_JITTER = RetryConfig(max_attempts=3, initial_delay=1.0, backoff_multiplier=2.0, jitter=False)


def test_calculate_delay_exponential_and_capped():
    config = RetryConfig(initial_delay=2.0, backoff_multiplier=2.0, max_delay=5.0, jitter=False)

    assert calculate_delay(1, config) == 2.0
    assert calculate_delay(2, config) == 4.0
    assert calculate_delay(3, config) == 5.0


def test_calculate_delay_jitter_stays_within_quarter():
    config = RetryConfig(initial_delay=4.0, jitter=True)

    assert calculate_delay(1, config, rng=lambda: 0.0) == pytest.approx(3.0)
    assert calculate_delay(1, config, rng=lambda: 0.5) == pytest.approx(4.0)
    assert calculate_delay(1, config, rng=lambda: 1.0) == pytest.approx(5.0)


def test_is_retryable_error_by_message_and_status():
    config = RetryConfig()

    assert is_retryable_error(TimeoutError("read timed out"), config)
    assert is_retryable_error(ConnectionError("ECONNRESET by peer"), config)
    assert is_retryable_error(HTTPStatusFailure("HTTP 503", status=503), config)
    assert is_retryable_error(BatchSendError("slow down", status=429), config)
    assert not is_retryable_error(HTTPStatusFailure("HTTP 404", status=404), config)
    assert not is_retryable_error(ValueError("bad input"), config)
    assert not is_retryable_error(None, config)


def test_error_status_reads_nested_response():
    class _Response:
        status_code = 502

    class _Error(Exception):
        response = _Response()

    assert error_status(_Error("boom")) == 502
    assert error_status(HTTPStatusFailure("x", status=418)) == 418
    assert error_status(ValueError("x")) is None


@pytest.mark.asyncio
async def test_with_retry_succeeds_after_transient_failures():
    sleep = AsyncMock()
    calls = []

    async def op(attempt: int) -> str:
        calls.append(attempt)
        if attempt < 3:
            raise HTTPStatusFailure("HTTP 503", status=503)
        return "ok"

    result = await with_retry(op, NO_JITTER, sleep=sleep)

    assert result.success is True
    assert result.result == "ok"
    assert result.attempts == 3
    assert calls == [1, 2, 3]
    assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]


@pytest.mark.asyncio
async def test_with_retry_never_exceeds_max_attempts():
    sleep = AsyncMock()
    op = AsyncMock(side_effect=HTTPStatusFailure("HTTP 500", status=500))

    result = await with_retry(op, NO_JITTER, sleep=sleep)

    assert result.success is False
    assert result.attempts == 3
    assert op.await_count == 3
    assert isinstance(result.error, HTTPStatusFailure)
    # No sleep after the final attempt.
    assert sleep.await_count == 2


@pytest.mark.asyncio
async def test_with_retry_stops_on_non_retryable_error():
    sleep = AsyncMock()
    op = AsyncMock(side_effect=HTTPStatusFailure("HTTP 404", status=404))

    result = await with_retry(op, NO_JITTER, sleep=sleep)

    assert result.success is False
    assert result.attempts == 1
    sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_with_retry_single_attempt_config():
    op = AsyncMock(side_effect=TimeoutError("timed out"))

    result = await with_retry(op, NO_JITTER.with_overrides(max_attempts=1), sleep=AsyncMock())

    assert result.attempts == 1
    assert op.await_count == 1


@pytest.mark.asyncio
async def test_unwrap_returns_result_or_raises_recorded_error():
    ok = await with_retry(AsyncMock(return_value="feed"), NO_JITTER, sleep=AsyncMock())
    failed = await with_retry(
        AsyncMock(side_effect=BatchSendError("Invalid sender", status=422)), NO_JITTER, sleep=AsyncMock()
    )

    assert ok.unwrap() == "feed"
    with pytest.raises(BatchSendError, match="Invalid sender"):
        failed.unwrap()


def test_unwrap_failure_without_error_still_raises():
    with pytest.raises(RuntimeError):
        RetryResult(success=False, attempts=0).unwrap()


@pytest.mark.asyncio
async def test_fetch_with_retry_retries_server_errors(httpx_mock):
    url = "https://example.com/feed.xml"
    httpx_mock.add_response(url=url, status_code=503, text="busy")
    httpx_mock.add_response(url=url, status_code=200, text="<rss/>")
    sleep = AsyncMock()

    async with httpx.AsyncClient() as client:
        result = await fetch_with_retry(client, url, NO_JITTER, sleep=sleep)

    assert result.success is True
    assert result.attempts == 2
    assert result.result.text == "<rss/>"
    assert len(httpx_mock.get_requests()) == 2
    sleep.assert_awaited_once_with(1.0)


@pytest.mark.asyncio
async def test_fetch_with_retry_gives_up_on_client_error(httpx_mock):
    url = "https://example.com/missing.xml"
    httpx_mock.add_response(url=url, status_code=404, text="not found")

    async with httpx.AsyncClient() as client:
        result = await fetch_with_retry(client, url, NO_JITTER, sleep=AsyncMock())

    assert result.success is False
    assert result.attempts == 1
    assert isinstance(result.error, HTTPStatusFailure)
    assert result.error.status == 404
