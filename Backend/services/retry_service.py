# Backend/services/retry_service.py
"""
Retry executor with exponential backoff.

`with_retry` never raises for operation failures: it always returns a
RetryResult envelope and leaves the failure decision to the caller.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, Sequence, TypeVar

import httpx

from app.core.logging import get_logger
from services.errors import HTTPStatusFailure

logger = get_logger()

T = TypeVar("T")

DEFAULT_RETRYABLE_ERRORS: Sequence[str] = (
    "ETIMEDOUT",
    "ECONNRESET",
    "ECONNREFUSED",
    "ENOTFOUND",
    "NetworkError",
    "TimeoutError",
    # Python / httpx spellings of the same conditions
    "timed out",
    "Connection refused",
    "Connection reset",
    "ConnectError",
    "ConnectTimeout",
    "ReadTimeout",
    "RemoteProtocolError",
)

DEFAULT_RETRYABLE_STATUS_CODES: Sequence[int] = (408, 429, 500, 502, 503, 504, 522, 524)


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    initial_delay: float = 1.0  # seconds
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter: bool = True
    retryable_errors: Sequence[str] = field(default=DEFAULT_RETRYABLE_ERRORS)
    retryable_status_codes: Sequence[int] = field(default=DEFAULT_RETRYABLE_STATUS_CODES)

    def with_overrides(self, **changes: Any) -> "RetryConfig":
        return replace(self, **changes)


@dataclass
class RetryResult(Generic[T]):
    success: bool
    attempts: int
    result: Optional[T] = None
    error: Optional[BaseException] = None

    def unwrap(self) -> T:
        """Return `result`, or raise the recorded error of a failed run."""
        if self.error is not None:
            raise self.error
        if not self.success:
            raise RuntimeError("retried operation failed without recording an error")
        return self.result  # type: ignore[return-value]


def calculate_delay(attempt: int, config: RetryConfig, rng: Callable[[], float] = random.random) -> float:
    """
    Delay before the attempt that follows `attempt` (1-based), in seconds.
    """
    base = min(
        config.initial_delay * (config.backoff_multiplier ** (attempt - 1)),
        config.max_delay,
    )
    if config.jitter:
        # +/- 25% of the base delay
        return max(0.0, base + base * 0.25 * (rng() * 2 - 1))
    return base


def error_status(error: BaseException) -> Optional[int]:
    """HTTP status carried by an error, directly or under `.response`."""
    for attr in ("status", "status_code"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    if response is not None:
        for attr in ("status", "status_code"):
            value = getattr(response, attr, None)
            if isinstance(value, int):
                return value
    return None


def is_retryable_error(error: Optional[BaseException], config: RetryConfig) -> bool:
    if error is None:
        return False

    haystack = f"{type(error).__name__}: {error}"
    if any(marker in haystack for marker in config.retryable_errors):
        return True

    status = error_status(error)
    return status is not None and status in config.retryable_status_codes


async def with_retry(
    operation: Callable[[int], Awaitable[T]],
    config: Optional[RetryConfig] = None,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rng: Callable[[], float] = random.random,
) -> RetryResult[T]:
    """
    Await `operation(attempt)` up to `config.max_attempts` times.

    Args:
        operation: Coroutine function receiving the 1-based attempt number
        config: Retry policy; defaults to RetryConfig()
        sleep: Awaitable sleep used between attempts (injectable for tests)
        rng: Random source for jitter

    Returns:
        RetryResult with either `result` or the last `error`
    """
    config = config or RetryConfig()
    max_attempts = max(1, config.max_attempts)
    last_error: Optional[BaseException] = None
    attempt = 0

    while attempt < max_attempts:
        attempt += 1
        try:
            result = await operation(attempt)
            return RetryResult(success=True, attempts=attempt, result=result)
        except Exception as exc:
            last_error = exc
            logger.warning(
                "retry_attempt_failed",
                attempt=attempt,
                max_attempts=max_attempts,
                error=str(exc),
                error_type=type(exc).__name__,
            )

            if attempt >= max_attempts:
                break
            if not is_retryable_error(exc, config):
                logger.info("retry_aborted_non_retryable", attempt=attempt, error_type=type(exc).__name__)
                break

            delay = calculate_delay(attempt, config, rng)
            logger.debug("retry_scheduled", attempt=attempt, delay_s=round(delay, 3))
            await sleep(delay)

    return RetryResult(success=False, attempts=attempt, error=last_error)


async def fetch_with_retry(
    client: httpx.AsyncClient,
    url: str,
    config: Optional[RetryConfig] = None,
    *,
    headers: Optional[dict] = None,
    timeout: Optional[float] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> RetryResult[httpx.Response]:
    """
    GET `url` through `with_retry`.

    Non-2xx responses raise HTTPStatusFailure inside the retried operation, so
    retryable statuses (429, 5xx) are attempted again and others stop at once.
    """

    async def _get(attempt: int) -> httpx.Response:
        kwargs: Dict[str, Any] = {}
        if headers:
            kwargs["headers"] = headers
        if timeout is not None:
            kwargs["timeout"] = timeout
        response = await client.get(url, **kwargs)
        if not response.is_success:
            raise HTTPStatusFailure(
                f"HTTP {response.status_code}: {response.reason_phrase}",
                status=response.status_code,
            )
        return response

    return await with_retry(_get, config, sleep=sleep)
