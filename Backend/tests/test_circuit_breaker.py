from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from services.circuit_breaker import CircuitBreaker, CircuitState
from services.errors import CircuitOpenError


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


async def _fail():
    raise RuntimeError("provider down")


@pytest.mark.asyncio
async def test_opens_after_threshold_and_rejects_without_calling():
    clock = _Clock()
    breaker = CircuitBreaker(name="test", failure_threshold=2, reset_timeout=60, clock=clock)

    for _ in range(2):
        with pytest.raises(RuntimeError):
            await breaker.execute(_fail)

    assert breaker.state == CircuitState.OPEN
    fn = AsyncMock(return_value="ok")
    with pytest.raises(CircuitOpenError):
        await breaker.execute(fn)
    fn.assert_not_awaited()


@pytest.mark.asyncio
async def test_success_resets_consecutive_failures():
    breaker = CircuitBreaker(failure_threshold=2, clock=_Clock())

    with pytest.raises(RuntimeError):
        await breaker.execute(_fail)
    assert await breaker.execute(AsyncMock(return_value=1)) == 1
    with pytest.raises(RuntimeError):
        await breaker.execute(_fail)

    assert breaker.state == CircuitState.CLOSED
    assert breaker.consecutive_failures == 1


@pytest.mark.asyncio
async def test_half_open_trial_success_closes():
    clock = _Clock()
    breaker = CircuitBreaker(failure_threshold=1, reset_timeout=60, clock=clock)
    with pytest.raises(RuntimeError):
        await breaker.execute(_fail)

    clock.now += 60
    result = await breaker.execute(AsyncMock(return_value="ok"))

    assert result == "ok"
    assert breaker.state == CircuitState.CLOSED
    assert breaker.consecutive_failures == 0


@pytest.mark.asyncio
async def test_half_open_trial_failure_reopens():
    clock = _Clock()
    breaker = CircuitBreaker(failure_threshold=3, reset_timeout=30, clock=clock)
    for _ in range(3):
        with pytest.raises(RuntimeError):
            await breaker.execute(_fail)

    clock.now += 31
    with pytest.raises(RuntimeError):
        await breaker.execute(_fail)

    assert breaker.state == CircuitState.OPEN
    assert breaker.next_attempt_at == clock.now + 30


@pytest.mark.asyncio
async def test_reset_closes_circuit():
    breaker = CircuitBreaker(failure_threshold=1, clock=_Clock())
    with pytest.raises(RuntimeError):
        await breaker.execute(_fail)

    breaker.reset()

    assert not breaker.is_open
    assert await breaker.execute(AsyncMock(return_value=2)) == 2
