from __future__ import annotations

from typing import Optional


class NewsletterError(Exception):
    """Base class for delivery pipeline errors."""


class HTTPStatusFailure(NewsletterError):
    """Non-2xx response from an upstream HTTP endpoint (feed source)."""

    def __init__(self, message: str, status: int):
        super().__init__(message)
        self.status = status


class BatchSendError(NewsletterError):
    """
    Provider reported that a batch could not be delivered.

    `status` follows HTTP semantics so the retry executor can classify it:
    5xx/429 are transient, other 4xx are permanent.
    """

    def __init__(self, message: str, status: Optional[int] = None, total_failed: int = 0):
        super().__init__(message)
        self.status = status
        self.total_failed = total_failed


class CircuitOpenError(NewsletterError):
    """Raised without calling the wrapped operation while a breaker is OPEN."""

