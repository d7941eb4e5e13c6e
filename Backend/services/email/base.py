"""
Abstract base class for email providers.

Providers send single messages (`send_email`) and newsletter batches
(`send_batch`). Batches go out as BCC chunks; each chunk runs through the
provider's circuit breaker and retry policy.
"""

from __future__ import annotations

import asyncio
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from app.core.logging import get_logger
from services.circuit_breaker import CircuitBreaker
from services.errors import CircuitOpenError
from services.retry_service import RetryConfig, error_status, with_retry

logger = get_logger()

BCC_CHUNK_SIZE = 50
CHUNK_RETRY_CONFIG = RetryConfig(max_attempts=3, initial_delay=3.0, backoff_multiplier=2.0, max_delay=30.0)

_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")


def html_to_text(html: str) -> str:
    """Rough plain-text fallback for providers that need one."""
    return _WS_RE.sub(" ", _TAG_RE.sub(" ", html or "")).strip()


def chunk_pause_seconds(chunk_index: int) -> float:
    """Progressive pause before chunk `chunk_index` (0-based): 2 s, 4 s, then capped at 5 s."""
    return min(5.0, 2.0 * chunk_index)


@dataclass
class BatchSendResult:
    """
    `total_sent` counts a prefix of the batch in send order. `refused` lists
    recipients the server turned down inside that prefix; everything after it
    was never sent.
    """

    success: bool
    total_sent: int = 0
    total_failed: int = 0
    error: Optional[str] = None
    status_code: Optional[int] = None
    refused: List[str] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return self.total_sent + len(self.refused)


class EmailProvider(ABC):
    """
    Abstract base class for email providers.

    All email providers must implement this interface to ensure
    consistent behavior across different email services.
    """

    name = "base"

    def __init__(
        self,
        from_email: Optional[str] = None,
        from_name: str = "Newsletter",
        *,
        reply_to: Optional[str] = None,
        unsubscribe_url: str = "",
        breaker: Optional[CircuitBreaker] = None,
        retry_config: RetryConfig = CHUNK_RETRY_CONFIG,
        chunk_size: int = BCC_CHUNK_SIZE,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Args:
            from_email: Sender email address
            from_name: Sender display name
            reply_to: Optional Reply-To address
            unsubscribe_url: Target of the List-Unsubscribe header
            breaker: Circuit breaker shared by every chunk of this provider
            retry_config: Retry policy per chunk
            chunk_size: Maximum BCC recipients per message
            sleep: Awaitable sleep (injectable for tests)
        """
        self.from_email = from_email
        self.from_name = from_name
        self.reply_to = reply_to
        self.unsubscribe_url = unsubscribe_url
        self.breaker = breaker or CircuitBreaker(name=self.name, failure_threshold=3, reset_timeout=60.0)
        self.retry_config = retry_config
        self.chunk_size = max(1, chunk_size)
        self._sleep = sleep

    @abstractmethod
    async def send_email(
        self,
        to: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> str:
        """
        Send a single email.

        Returns:
            Message ID (string) for tracking purposes
        """

    @abstractmethod
    async def send_bcc_chunk(
        self,
        recipients: Sequence[str],
        subject: str,
        html_body: str,
        text_body: str,
        headers: Dict[str, str],
    ) -> List[str]:
        """
        Send one message with `recipients` in BCC.

        Returns:
            Recipients the server refused (empty when all were accepted)

        Raises:
            BatchSendError: carrying an HTTP-like status (5xx/429 transient,
            other 4xx permanent)
        """

    @abstractmethod
    def is_configured(self) -> bool:
        """True if configured and ready to send emails."""

    def list_headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if self.unsubscribe_url:
            headers["List-Unsubscribe"] = f"<{self.unsubscribe_url}>"
            headers["List-Unsubscribe-Post"] = "List-Unsubscribe=One-Click"
        return headers

    async def _send_chunk_guarded(
        self,
        chunk: Sequence[str],
        subject: str,
        html_body: str,
        text_body: str,
        headers: Dict[str, str],
    ) -> List[str]:
        """Breaker around retry around one chunk; raises when the retries are exhausted."""

        async def _attempt(attempt: int) -> List[str]:
            return await self.send_bcc_chunk(chunk, subject, html_body, text_body, headers)

        async def _retried() -> List[str]:
            outcome = await with_retry(_attempt, self.retry_config, sleep=self._sleep)
            return outcome.unwrap() or []

        return await self.breaker.execute(_retried)

    async def send_batch(
        self,
        recipients: Sequence[str],
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> BatchSendResult:
        """
        Send a newsletter to `recipients` as BCC chunks.

        Chunks are sent in order with a progressive pause between them. The
        first chunk that still fails after its retries (or is rejected by an
        open breaker) ends the batch: it and every later chunk are reported as
        failed without being sent, so `total_sent` always covers a prefix of
        `recipients`.
        """
        recipients = list(recipients)
        if not recipients:
            return BatchSendResult(success=True)

        if not self.is_configured():
            logger.warning("email_provider_not_configured", provider=self.name, recipient_count=len(recipients))
            return BatchSendResult(
                success=False,
                total_failed=len(recipients),
                error=f"{self.name} email provider is not configured",
                status_code=422,
            )

        text = text_body or html_to_text(html_body)
        chunks = [recipients[i:i + self.chunk_size] for i in range(0, len(recipients), self.chunk_size)]
        sent = 0
        refused_all: List[str] = []
        last_error: Optional[BaseException] = None

        for index, chunk in enumerate(chunks):
            if index > 0:
                await self._sleep(chunk_pause_seconds(index))

            headers = dict(self.list_headers())
            headers["X-Batch-Number"] = f"{index + 1}/{len(chunks)}"
            try:
                refused = await self._send_chunk_guarded(chunk, subject, html_body, text, headers)
            except Exception as exc:
                last_error = exc
                unsent = len(recipients) - sent - len(refused_all)
                logger.error(
                    "email_chunk_rejected_circuit_open" if isinstance(exc, CircuitOpenError) else "email_chunk_failed",
                    provider=self.name,
                    chunk=index + 1,
                    chunks=len(chunks),
                    recipient_count=len(chunk),
                    unsent=unsent,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                break

            refused_set = set(refused)
            chunk_refused = [r for r in chunk if r in refused_set]
            refused_all.extend(chunk_refused)
            sent += len(chunk) - len(chunk_refused)
            logger.info(
                "email_chunk_sent",
                provider=self.name,
                chunk=index + 1,
                chunks=len(chunks),
                accepted=len(chunk) - len(chunk_refused),
                refused=len(chunk_refused),
            )

        failed = len(recipients) - sent
        return BatchSendResult(
            success=failed == 0,
            total_sent=sent,
            total_failed=failed,
            error=str(last_error) if last_error else None,
            status_code=error_status(last_error) if last_error else None,
            refused=refused_all,
        )
