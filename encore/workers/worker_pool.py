"""Async worker pool executing the jobs of one named queue."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
import contextlib
from dataclasses import dataclass
import logging
import random
import time
from typing import Any
import uuid

from encore.config import QueueSettings, WorkerConfig
from encore.errors import is_retryable, retry_after_seconds
from encore.integrations.rate_limiter import TokenBucket
from encore.logging import get_logger
from encore.logging_events import log_event
from encore.utils.retry import compute_backoff_seconds
from encore.workers.job_store import ABANDONED_ERROR, JobRecord, JobStore

logger = get_logger(__name__)


class JobTimeoutError(Exception):
    """Raised when a handler exceeded the queue's job timeout."""

    def __init__(self, queue: str, timeout: float) -> None:
        super().__init__(f"{queue} job exceeded {timeout:.1f}s")
        self.queue = queue
        self.timeout = timeout


class JobAbandonedError(Exception):
    """Reported to ``on_exhausted`` for jobs whose worker vanished on the final attempt."""

    def __init__(self, job: JobRecord) -> None:
        super().__init__(job.last_error or ABANDONED_ERROR)
        self.job_id = job.id


@dataclass(slots=True)
class JobContext:
    """Handle passed to queue handlers for the job being executed."""

    job: JobRecord
    store: JobStore
    owner: str

    @property
    def payload(self) -> dict[str, Any]:
        return self.job.payload

    @property
    def attempt(self) -> int:
        return self.job.attempts

    async def update_progress(self, progress: float) -> bool:
        return await asyncio.to_thread(
            self.store.update_progress, self.job.id, owner=self.owner, progress=progress
        )


JobHandler = Callable[[JobContext], Awaitable[Mapping[str, Any] | None]]
ExhaustedHook = Callable[[JobRecord, BaseException], Awaitable[None]]


def _truncate_error(message: str, limit: int = 512) -> str:
    text = message.strip()
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def _describe_error(exc: BaseException) -> str:
    detail = str(exc).strip()
    name = type(exc).__name__
    return _truncate_error(f"{name}: {detail}" if detail else name)


class WorkerPool:
    """``settings.concurrency`` worker tasks leasing and executing jobs of one queue.

    Each worker holds at most one lease. A leased job first waits for the
    optional queue-level rate limiter, then runs with a heartbeat task keeping
    the lease alive and a hard timeout. Success completes the job; a failure
    is rescheduled with the queue's backoff while attempts remain and the
    error is retryable, otherwise the job fails permanently and
    ``on_exhausted`` is awaited.
    """

    def __init__(
        self,
        settings: QueueSettings,
        handler: JobHandler,
        store: JobStore,
        *,
        workers: WorkerConfig | None = None,
        on_exhausted: ExhaustedHook | None = None,
        limiter: TokenBucket | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings
        self.queue = settings.name
        self._handler = handler
        self._store = store
        self._workers = workers or WorkerConfig.from_env({})
        self._on_exhausted = on_exhausted
        self._limiter = limiter
        self._rng = rng or random.Random()
        self._instance = uuid.uuid4().hex[:8]
        self._tasks: set[asyncio.Task[None]] = set()
        self._stop_event: asyncio.Event | None = None
        self._resume_event: asyncio.Event | None = None
        self._paused = False

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    @property
    def paused(self) -> bool:
        return self._paused

    def _owner(self, worker_index: int) -> str:
        return f"{self.queue}:{self._instance}:{worker_index}"

    # lifecycle ---------------------------------------------------------------

    def start(self) -> None:
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._resume_event = asyncio.Event()
        if not self._paused:
            self._resume_event.set()
        for index in range(max(1, int(self.settings.concurrency))):
            self._spawn(self._worker_loop(index), f"{self.queue}-worker-{index}")
        self._spawn(self._cleanup_loop(), f"{self.queue}-cleanup")
        log_event(
            logger,
            "worker.pool",
            component="worker_pool",
            queue=self.queue,
            status="started",
            concurrency=self.settings.concurrency,
        )

    def _spawn(self, coro: Awaitable[None], name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def stop(self, *, timeout: float = 10.0) -> None:
        """Stop leasing and wait up to ``timeout`` seconds for running jobs."""

        if self._stop_event is not None:
            self._stop_event.set()
        if self._resume_event is not None:
            self._resume_event.set()
        tasks = list(self._tasks)
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=max(0.0, timeout))
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()
        log_event(logger, "worker.pool", component="worker_pool", queue=self.queue, status="stopped")

    def pause(self) -> None:
        self._paused = True
        if self._resume_event is not None:
            self._resume_event.clear()
        log_event(logger, "worker.pool", component="worker_pool", queue=self.queue, status="paused")

    def resume(self) -> None:
        self._paused = False
        if self._resume_event is not None:
            self._resume_event.set()
        log_event(logger, "worker.pool", component="worker_pool", queue=self.queue, status="resumed")

    def _stopping(self) -> bool:
        return self._stop_event is not None and self._stop_event.is_set()

    async def _idle(self, seconds: float) -> None:
        if self._stop_event is None:
            await asyncio.sleep(seconds)
            return
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=max(0.0, seconds))

    async def _worker_loop(self, index: int) -> None:
        owner = self._owner(index)
        while not self._stopping():
            if self._paused and self._resume_event is not None:
                await self._resume_event.wait()
                continue
            try:
                job = await self._run_once(owner)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    "Worker loop iteration failed",
                    extra={"event": "worker.loop_error", "queue": self.queue},
                )
                job = None
            if job is None:
                await self._idle(self._workers.poll_interval_seconds)

    async def _cleanup_loop(self) -> None:
        interval = max(1.0, float(self._workers.cleanup_interval_s))
        while not self._stopping():
            await self._idle(interval)
            if self._stopping():
                return
            try:
                await asyncio.to_thread(self._store.purge_expired, self.queue)
            except Exception:
                logger.exception(
                    "Purging expired jobs failed",
                    extra={"event": "worker.cleanup_error", "queue": self.queue},
                )

    # execution ---------------------------------------------------------------

    async def process_next(self, *, owner: str | None = None) -> JobRecord | None:
        """Lease and execute a single job in the calling task.

        Returns the leased job (as it was when leased) or ``None`` when the
        queue had nothing eligible.
        """

        return await self._run_once(owner or self._owner(0))

    async def _run_once(self, owner: str) -> JobRecord | None:
        abandoned = await asyncio.to_thread(self._store.reap_abandoned, self.queue)
        for record in abandoned:
            await self._notify_exhausted(record, JobAbandonedError(record))
        job = await asyncio.to_thread(
            self._store.lease_next,
            self.queue,
            owner=owner,
            lease_seconds=self.settings.lease_seconds,
        )
        if job is None:
            return None
        await self._execute(job, owner)
        return job

    async def _execute(self, job: JobRecord, owner: str) -> None:
        start = time.perf_counter()
        log_event(
            logger,
            "worker.dispatch",
            level=logging.DEBUG,
            component="worker_pool",
            queue=self.queue,
            job_id=job.id,
            status="started",
            attempts=job.attempts,
        )
        context = JobContext(job=job, store=self._store, owner=owner)
        stop_heartbeat = asyncio.Event()
        lease_lost = asyncio.Event()
        heartbeat_task = asyncio.create_task(
            self._maintain_heartbeat(job, owner, stop_heartbeat, lease_lost)
        )
        handler_task = asyncio.create_task(self._invoke(context))
        lease_wait_task = asyncio.create_task(lease_lost.wait())
        try:
            done, _ = await asyncio.wait(
                {handler_task, lease_wait_task}, return_when=asyncio.FIRST_COMPLETED
            )
            if handler_task not in done:
                handler_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await handler_task
                log_event(
                    logger,
                    "worker.dispatch",
                    level=logging.WARNING,
                    component="worker_pool",
                    queue=self.queue,
                    job_id=job.id,
                    status="lease_lost",
                )
                return
            try:
                result = handler_task.result()
            except Exception as exc:
                stop_heartbeat.set()
                await self._handle_failure(job, owner, exc, start)
            else:
                stop_heartbeat.set()
                await self._handle_success(job, owner, result, start)
        except asyncio.CancelledError:
            handler_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await handler_task
            raise
        finally:
            stop_heartbeat.set()
            lease_wait_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await lease_wait_task
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat_task

    async def _invoke(self, context: JobContext) -> Mapping[str, Any] | None:
        if self._limiter is not None:
            await self._limiter.acquire()
        timeout = float(self.settings.job_timeout_seconds)
        try:
            return await asyncio.wait_for(self._handler(context), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise JobTimeoutError(self.queue, timeout) from exc

    async def _handle_success(
        self,
        job: JobRecord,
        owner: str,
        result: Mapping[str, Any] | None,
        start: float,
    ) -> None:
        duration_ms = int((time.perf_counter() - start) * 1000)
        completed = await asyncio.to_thread(
            self._store.complete,
            job.id,
            owner=owner,
            result=dict(result) if result is not None else None,
            keep_seconds=self.settings.keep_completed_seconds,
        )
        log_event(
            logger,
            "worker.commit",
            component="worker_pool",
            queue=self.queue,
            job_id=job.id,
            status="succeeded" if completed else "lease_lost",
            attempts=job.attempts,
            duration_ms=duration_ms,
        )

    def retry_delay(self, job: JobRecord, exc: BaseException) -> float:
        delay = compute_backoff_seconds(
            job.attempts,
            base_seconds=self.settings.backoff_base_seconds,
            max_seconds=self.settings.backoff_max_seconds,
            kind=self.settings.backoff,
            jitter_pct=self.settings.jitter_pct,
            rng=self._rng,
        )
        advertised = retry_after_seconds(exc)
        if advertised is not None:
            delay = max(delay, advertised)
        return delay

    async def _handle_failure(
        self, job: JobRecord, owner: str, exc: Exception, start: float
    ) -> None:
        duration_ms = int((time.perf_counter() - start) * 1000)
        message = _describe_error(exc)
        retryable = is_retryable(exc)
        if retryable and job.attempts_left > 0:
            delay = self.retry_delay(job, exc)
            rescheduled = await asyncio.to_thread(
                self._store.fail, job.id, owner=owner, error=message, retry_in=delay
            )
            log_event(
                logger,
                "worker.retry",
                level=logging.WARNING,
                component="worker_pool",
                queue=self.queue,
                job_id=job.id,
                status="retry" if rescheduled else "lease_lost",
                attempts=job.attempts,
                max_attempts=job.max_attempts,
                retry_in_ms=int(delay * 1000),
                duration_ms=duration_ms,
                error=message,
            )
            return

        failed = await asyncio.to_thread(
            self._store.fail,
            job.id,
            owner=owner,
            error=message,
            keep_seconds=self.settings.keep_failed_seconds,
        )
        log_event(
            logger,
            "worker.failed",
            level=logging.ERROR,
            component="worker_pool",
            queue=self.queue,
            job_id=job.id,
            status="failed" if failed else "lease_lost",
            stop_reason="max_attempts" if retryable else "non_retryable",
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            duration_ms=duration_ms,
            error=message,
        )
        if failed:
            await self._notify_exhausted(job, exc)

    async def _notify_exhausted(self, job: JobRecord, exc: BaseException) -> None:
        if self._on_exhausted is None:
            return
        try:
            await self._on_exhausted(job, exc)
        except Exception:
            logger.exception(
                "Exhaustion hook failed",
                extra={"event": "worker.exhausted_hook_error", "queue": self.queue},
            )

    async def _maintain_heartbeat(
        self,
        job: JobRecord,
        owner: str,
        stop_signal: asyncio.Event,
        lease_lost: asyncio.Event,
    ) -> None:
        interval = self._heartbeat_interval()
        while True:
            try:
                await asyncio.wait_for(stop_signal.wait(), timeout=interval)
                return
            except asyncio.TimeoutError:
                ok = await asyncio.to_thread(
                    self._store.heartbeat,
                    job.id,
                    owner=owner,
                    lease_seconds=self.settings.lease_seconds,
                )
                if not ok:
                    lease_lost.set()
                    return

    def _heartbeat_interval(self) -> float:
        lease = max(1.0, float(self.settings.lease_seconds))
        return max(0.5, min(float(self._workers.heartbeat_s), lease * 0.5))


__all__ = [
    "ExhaustedHook",
    "JobAbandonedError",
    "JobContext",
    "JobHandler",
    "JobTimeoutError",
    "WorkerPool",
]
