from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest

from encore.config import AppConfig
from encore.errors import CircuitOpenError, ProviderNotFoundError, ProviderTransientError
from encore.integrations.circuit_breaker import CircuitBreaker, CircuitState
from encore.integrations.guard import build_provider_guard, breaker_snapshots
from encore.integrations.rate_limiter import RateLimiter
from tests.support.clock import FakeMonotonic


def _breaker(clock: FakeMonotonic) -> CircuitBreaker:
    return CircuitBreaker(
        "ticketmaster",
        failure_threshold=2,
        cooldown_seconds=10,
        max_cooldown_seconds=30,
        clock=clock,
    )


async def _fail() -> None:
    raise ProviderTransientError("ticketmaster", "503")


async def _missing() -> None:
    raise ProviderNotFoundError("ticketmaster", "no such attraction")


async def _ok() -> str:
    return "ok"


async def _trip(breaker: CircuitBreaker) -> None:
    for _ in range(breaker.failure_threshold):
        with pytest.raises(ProviderTransientError):
            await breaker.call(_fail)


@pytest.mark.asyncio()
async def test_consecutive_failures_open_the_circuit() -> None:
    clock = FakeMonotonic()
    breaker = _breaker(clock)

    await _trip(breaker)

    assert breaker.state is CircuitState.OPEN
    with pytest.raises(CircuitOpenError) as excinfo:
        await breaker.call(_ok)
    assert excinfo.value.retry_after_seconds == pytest.approx(10.0)


@pytest.mark.asyncio()
async def test_successful_trial_call_closes_the_circuit() -> None:
    clock = FakeMonotonic()
    breaker = _breaker(clock)
    await _trip(breaker)

    clock.advance(10)
    assert await breaker.call(_ok) == "ok"

    assert breaker.state is CircuitState.CLOSED
    assert breaker.consecutive_failures == 0
    assert breaker.snapshot()["cooldown_s"] == 10.0


@pytest.mark.asyncio()
async def test_failed_trial_call_reopens_with_longer_cooldown() -> None:
    clock = FakeMonotonic()
    breaker = _breaker(clock)
    await _trip(breaker)

    clock.advance(10)
    with pytest.raises(ProviderTransientError):
        await breaker.call(_fail)
    assert breaker.state is CircuitState.OPEN
    assert breaker.snapshot()["retry_in_s"] == pytest.approx(20.0)

    clock.advance(20)
    with pytest.raises(ProviderTransientError):
        await breaker.call(_fail)
    # capped at max_cooldown_seconds
    assert breaker.snapshot()["retry_in_s"] == pytest.approx(30.0)


@pytest.mark.asyncio()
async def test_not_found_answers_do_not_trip_the_breaker() -> None:
    clock = FakeMonotonic()
    breaker = _breaker(clock)

    for _ in range(5):
        with pytest.raises(ProviderNotFoundError):
            await breaker.call(_missing)

    assert breaker.state is CircuitState.CLOSED
    assert breaker.consecutive_failures == 0


@pytest.mark.asyncio()
async def test_success_resets_the_failure_streak() -> None:
    clock = FakeMonotonic()
    breaker = _breaker(clock)

    with pytest.raises(ProviderTransientError):
        await breaker.call(_fail)
    await breaker.call(_ok)
    with pytest.raises(ProviderTransientError):
        await breaker.call(_fail)

    assert breaker.state is CircuitState.CLOSED
    assert breaker.consecutive_failures == 1


@pytest.mark.asyncio()
async def test_guard_fails_fast_without_spending_tokens(config: AppConfig) -> None:
    clock = FakeMonotonic()
    settings = replace(
        config.provider("ticketmaster"),
        breaker_threshold=1,
        rate_capacity=5,
    )
    limiter = RateLimiter()
    guard = build_provider_guard(settings, limiter, clock=clock, sleep=clock.sleep)

    with pytest.raises(ProviderTransientError):
        await guard.call(_fail)
    assert limiter.bucket("ticketmaster").available == 4

    with pytest.raises(CircuitOpenError):
        await guard.call(_ok)
    assert limiter.bucket("ticketmaster").available == 4
    assert breaker_snapshots({"ticketmaster": guard})[0]["state"] == "open"


@pytest.mark.asyncio()
async def test_concurrent_callers_after_cooldown_admit_a_single_trial_call() -> None:
    clock = FakeMonotonic()
    breaker = _breaker(clock)
    await _trip(breaker)
    clock.advance(10)
    gate = asyncio.Event()
    calls = 0

    async def slow() -> str:
        nonlocal calls
        calls += 1
        await gate.wait()
        return "ok"

    tasks = [asyncio.create_task(breaker.call(slow)) for _ in range(5)]
    for _ in range(3):
        await asyncio.sleep(0)
    gate.set()
    results = await asyncio.gather(*tasks, return_exceptions=True)

    assert calls == 1
    assert results[0] == "ok"
    assert all(isinstance(result, CircuitOpenError) for result in results[1:])
    assert breaker.state is CircuitState.CLOSED
