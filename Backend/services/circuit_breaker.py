# Backend/services/circuit_breaker.py
"""
In-memory circuit breaker for provider-level operations.

One instance per provider connection class, created at the start of an
invocation; state is not persisted across invocations.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from app.core.logging import get_logger
from services.errors import CircuitOpenError

logger = get_logger()

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    def __init__(
        self,
        *,
        name: str = "default",
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Args:
            name: Label used in log events
            failure_threshold: Consecutive failures that open the circuit
            reset_timeout: Seconds the circuit stays OPEN before a trial call
            clock: Monotonic time source in seconds
        """
        self.name = name
        self.failure_threshold = max(1, failure_threshold)
        self.reset_timeout = reset_timeout
        self._clock = clock
        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.next_attempt_at: float = clock()

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        if self.state == CircuitState.OPEN:
            if self._clock() < self.next_attempt_at:
                raise CircuitOpenError(f"Circuit breaker '{self.name}' is OPEN")
            self.state = CircuitState.HALF_OPEN
            logger.info("circuit_breaker_half_open", breaker=self.name)

        try:
            result = await fn()
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def _on_success(self) -> None:
        self.consecutive_failures = 0
        if self.state == CircuitState.HALF_OPEN:
            self.state = CircuitState.CLOSED
            logger.info("circuit_breaker_closed", breaker=self.name)

    def _on_failure(self) -> None:
        self.consecutive_failures += 1
        if self.state == CircuitState.HALF_OPEN or self.consecutive_failures >= self.failure_threshold:
            self.state = CircuitState.OPEN
            self.next_attempt_at = self._clock() + self.reset_timeout
            logger.error(
                "circuit_breaker_opened",
                breaker=self.name,
                consecutive_failures=self.consecutive_failures,
                reset_timeout_s=self.reset_timeout,
            )

    def reset(self) -> None:
        self.consecutive_failures = 0
        self.state = CircuitState.CLOSED
        self.next_attempt_at = self._clock()
