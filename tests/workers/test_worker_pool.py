from __future__ import annotations

import asyncio
from dataclasses import replace
import random

import pytest

from encore.config import DEFAULT_QUEUE_SETTINGS, QueueSettings, WorkerConfig
from encore.errors import JobValidationError, ProviderRateLimitedError, ProviderTransientError
from encore.models import JobState
from encore.queues import QueueName
from encore.workers.job_store import JobRecord, JobStore
from encore.workers.worker_pool import JobContext, WorkerPool
from tests.support.clock import FakeClock


def _settings(**overrides: object) -> QueueSettings:
    base = replace(
        DEFAULT_QUEUE_SETTINGS[QueueName.CATALOG_SYNC],
        max_attempts=3,
        backoff="exponential",
        backoff_base_ms=1000,
        backoff_max_ms=10_000,
        jitter_pct=0.0,
        rate_limit_max=0,
    )
    return replace(base, **overrides)


def _workers() -> WorkerConfig:
    return WorkerConfig(enabled=True, poll_interval_ms=10, heartbeat_s=0.05, cleanup_interval_s=60)


@pytest.mark.asyncio()
async def test_successful_job_is_completed_with_result(clock: FakeClock) -> None:
    store = JobStore(clock=clock)
    seen: list[dict] = []

    async def handler(ctx: JobContext) -> dict:
        seen.append(ctx.payload)
        await ctx.update_progress(50)
        return {"stored": 3}

    pool = WorkerPool(_settings(), handler, store, workers=_workers())
    job = store.enqueue("catalog-sync", {"artist_id": 7}, max_attempts=3)

    leased = await pool.process_next()

    assert leased is not None and leased.id == job.id
    assert seen == [{"artist_id": 7}]
    record = store.get(job.id)
    assert record is not None
    assert record.state is JobState.COMPLETED
    assert record.result == {"stored": 3}
    assert record.progress == 100.0


@pytest.mark.asyncio()
async def test_retryable_failure_is_rescheduled_with_exponential_backoff(clock: FakeClock) -> None:
    store = JobStore(clock=clock)
    attempts: list[int] = []

    async def handler(ctx: JobContext) -> None:
        attempts.append(ctx.attempt)
        if ctx.attempt < 3:
            raise ProviderTransientError("spotify", "bad gateway", status_code=502)
        return None

    pool = WorkerPool(_settings(), handler, store, workers=_workers())
    job = store.enqueue("catalog-sync", {}, max_attempts=3)

    await pool.process_next()
    first = store.get(job.id)
    assert first is not None
    assert first.state is JobState.DELAYED
    assert (first.delay_until - clock.current).total_seconds() == pytest.approx(1.0)

    clock.advance(1)
    await pool.process_next()
    second = store.get(job.id)
    assert second is not None
    assert (second.delay_until - clock.current).total_seconds() == pytest.approx(2.0)

    clock.advance(2)
    await pool.process_next()

    final = store.get(job.id)
    assert final is not None
    assert final.state is JobState.COMPLETED
    assert attempts == [1, 2, 3]


@pytest.mark.asyncio()
async def test_exhausted_job_fails_and_calls_hook(clock: FakeClock) -> None:
    store = JobStore(clock=clock)
    exhausted: list[tuple[int, str]] = []

    async def handler(ctx: JobContext) -> None:
        raise ProviderTransientError("ticketmaster", "down")

    async def on_exhausted(job: JobRecord, exc: BaseException) -> None:
        exhausted.append((job.id, type(exc).__name__))

    pool = WorkerPool(
        _settings(max_attempts=2), handler, store, workers=_workers(), on_exhausted=on_exhausted
    )
    job = store.enqueue("catalog-sync", {}, max_attempts=2)

    await pool.process_next()
    clock.advance(60)
    await pool.process_next()

    record = store.get(job.id)
    assert record is not None
    assert record.state is JobState.FAILED
    assert record.last_error == "ProviderTransientError: down"
    assert exhausted == [(job.id, "ProviderTransientError")]


@pytest.mark.asyncio()
async def test_non_retryable_error_fails_on_first_attempt(clock: FakeClock) -> None:
    store = JobStore(clock=clock)
    exhausted: list[int] = []

    async def handler(ctx: JobContext) -> None:
        raise JobValidationError("catalog-sync", "missing spotify_id")

    async def on_exhausted(job: JobRecord, exc: BaseException) -> None:
        exhausted.append(job.id)

    pool = WorkerPool(_settings(), handler, store, workers=_workers(), on_exhausted=on_exhausted)
    job = store.enqueue("catalog-sync", {}, max_attempts=3)

    await pool.process_next()

    record = store.get(job.id)
    assert record is not None
    assert record.state is JobState.FAILED
    assert record.attempts == 1
    assert exhausted == [job.id]


@pytest.mark.asyncio()
async def test_retry_honours_provider_retry_after(clock: FakeClock) -> None:
    store = JobStore(clock=clock)

    async def handler(ctx: JobContext) -> None:
        raise ProviderRateLimitedError("spotify", "slow down", retry_after_ms=30_000)

    pool = WorkerPool(_settings(), handler, store, workers=_workers())
    job = store.enqueue("catalog-sync", {}, max_attempts=3)

    await pool.process_next()

    record = store.get(job.id)
    assert record is not None
    assert record.state is JobState.DELAYED
    assert (record.delay_until - clock.current).total_seconds() == pytest.approx(30.0)


@pytest.mark.asyncio()
async def test_handler_exceeding_timeout_is_retried(clock: FakeClock) -> None:
    store = JobStore(clock=clock)

    async def handler(ctx: JobContext) -> None:
        await asyncio.sleep(1)

    pool = WorkerPool(_settings(job_timeout_seconds=0.05), handler, store, workers=_workers())
    job = store.enqueue("catalog-sync", {}, max_attempts=3)

    await pool.process_next()

    record = store.get(job.id)
    assert record is not None
    assert record.state is JobState.DELAYED
    assert record.last_error is not None
    assert record.last_error.startswith("JobTimeoutError")


def test_retry_delay_is_capped_and_non_decreasing(clock: FakeClock) -> None:
    store = JobStore(clock=clock)

    async def handler(ctx: JobContext) -> None:
        return None

    pool = WorkerPool(
        _settings(backoff_base_ms=1000, backoff_max_ms=5000, jitter_pct=0.5),
        handler,
        store,
        workers=_workers(),
        rng=random.Random(7),
    )
    job = store.enqueue("catalog-sync", {}, max_attempts=10)
    record = store.get(job.id)
    assert record is not None

    delays = []
    for attempt in range(1, 8):
        record.attempts = attempt
        delays.append(pool.retry_delay(record, RuntimeError("x")))

    assert all(later >= earlier for earlier, later in zip(delays, delays[1:]))
    assert max(delays) == 5.0


@pytest.mark.asyncio()
async def test_started_pool_processes_jobs_and_stops(clock: FakeClock) -> None:
    store = JobStore()
    done = asyncio.Event()
    processed: list[int] = []

    async def handler(ctx: JobContext) -> None:
        processed.append(ctx.job.id)
        if len(processed) == 3:
            done.set()
        return None

    pool = WorkerPool(_settings(concurrency=2), handler, store, workers=_workers())
    for _ in range(3):
        store.enqueue("catalog-sync", {}, max_attempts=3)

    pool.start()
    assert pool.running
    await asyncio.wait_for(done.wait(), timeout=5)
    await pool.stop(timeout=2)

    assert sorted(processed) == sorted(set(processed))
    assert len(processed) == 3
    assert not pool.running
    assert store.counts("catalog-sync")["completed"] == 3
