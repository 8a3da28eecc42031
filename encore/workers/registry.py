"""Explicitly constructed registry of the named queues and their worker pools."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
import random
from typing import Any

from encore.config import AppConfig, QueueSettings
from encore.integrations.rate_limiter import TokenBucket
from encore.logging import get_logger
from encore.logging_events import log_event
from encore.queues import QueueName, resolve_queue_name
from encore.utils.priority import JobPriority, parse_priority
from encore.workers.job_store import JobRecord, JobStore
from encore.workers.worker_pool import ExhaustedHook, JobHandler, WorkerPool

logger = get_logger(__name__)


class UnknownQueueError(KeyError):
    """Raised when an operation names a queue without a registered handler."""

    def __init__(self, queue: str) -> None:
        super().__init__(queue)
        self.queue = queue

    def __str__(self) -> str:
        return f"queue {self.queue!r} is not registered"


class QueueRegistry:
    """Owns one :class:`WorkerPool` per registered queue.

    Enqueueing applies the queue's configured defaults (priority and attempt
    budget). Handlers must be registered before :meth:`start`; :meth:`close`
    stops every pool and is idempotent.
    """

    def __init__(
        self,
        config: AppConfig,
        store: JobStore,
        *,
        rng: random.Random | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._rng = rng
        self._pools: dict[QueueName, WorkerPool] = {}
        self._started = False
        self._closed = False

    @property
    def store(self) -> JobStore:
        return self._store

    @property
    def started(self) -> bool:
        return self._started

    def settings(self, queue: QueueName | str) -> QueueSettings:
        return self._config.queue(resolve_queue_name(queue))

    def register(
        self,
        queue: QueueName | str,
        handler: JobHandler,
        *,
        on_exhausted: ExhaustedHook | None = None,
    ) -> WorkerPool:
        name = resolve_queue_name(queue)
        settings = self._config.queue(name)
        limiter = None
        if settings.rate_limited:
            limiter = TokenBucket(
                f"queue:{name.value}",
                capacity=settings.rate_limit_max,
                window_seconds=settings.rate_limit_window_ms / 1000.0,
            )
        pool = WorkerPool(
            settings,
            handler,
            self._store,
            workers=self._config.workers,
            on_exhausted=on_exhausted,
            limiter=limiter,
            rng=self._rng,
        )
        self._pools[name] = pool
        if self._started:
            pool.start()
        return pool

    def pool(self, queue: QueueName | str) -> WorkerPool:
        name = resolve_queue_name(queue)
        try:
            return self._pools[name]
        except KeyError:
            raise UnknownQueueError(name.value) from None

    def queues(self) -> list[QueueName]:
        return list(self._pools)

    async def enqueue(
        self,
        queue: QueueName | str,
        payload: Mapping[str, Any],
        *,
        priority: JobPriority | int | None = None,
        delay_seconds: float = 0.0,
        dedup_key: str | None = None,
    ) -> JobRecord:
        return await asyncio.to_thread(
            self.enqueue_sync,
            queue,
            payload,
            priority=priority,
            delay_seconds=delay_seconds,
            dedup_key=dedup_key,
        )

    def enqueue_sync(
        self,
        queue: QueueName | str,
        payload: Mapping[str, Any],
        *,
        priority: JobPriority | int | None = None,
        delay_seconds: float = 0.0,
        dedup_key: str | None = None,
    ) -> JobRecord:
        name = resolve_queue_name(queue)
        settings = self._config.queue(name)
        return self._store.enqueue(
            name.value,
            payload,
            priority=parse_priority(priority, default=settings.priority),
            delay_seconds=delay_seconds,
            max_attempts=settings.max_attempts,
            dedup_key=dedup_key,
        )

    # lifecycle ---------------------------------------------------------------

    def start(self) -> None:
        if self._closed:
            raise RuntimeError("queue registry is closed")
        if self._started:
            return
        for pool in self._pools.values():
            pool.start()
        self._started = True
        log_event(
            logger,
            "worker.registry",
            component="queue_registry",
            status="started",
            queues=",".join(name.value for name in self._pools),
        )

    async def close(self, *, timeout: float = 10.0) -> None:
        if self._closed:
            return
        self._closed = True
        if self._pools:
            await asyncio.gather(*(pool.stop(timeout=timeout) for pool in self._pools.values()))
        self._started = False
        log_event(logger, "worker.registry", component="queue_registry", status="closed")

    async def __aenter__(self) -> QueueRegistry:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def pause(self, queue: QueueName | str) -> None:
        self.pool(queue).pause()

    def resume(self, queue: QueueName | str) -> None:
        self.pool(queue).resume()

    # introspection -----------------------------------------------------------

    async def counts(self, queue: QueueName | str) -> dict[str, int]:
        name = resolve_queue_name(queue)
        return await asyncio.to_thread(self._store.counts, name.value)

    async def all_counts(self) -> dict[str, dict[str, int]]:
        result: dict[str, dict[str, int]] = {}
        for name in QueueName:
            result[name.value] = await self.counts(name)
        return result

    async def requeue_failed(
        self, queue: QueueName | str, job_ids: Sequence[int] | None = None
    ) -> int:
        name = resolve_queue_name(queue)
        return await asyncio.to_thread(self._store.requeue_failed, name.value, job_ids)

    async def clean(self, queue: QueueName | str) -> int:
        name = resolve_queue_name(queue)
        return await asyncio.to_thread(self._store.purge_expired, name.value)

    async def get_job(self, job_id: int) -> JobRecord | None:
        return await asyncio.to_thread(self._store.get, job_id)

    async def list_jobs(
        self, queue: QueueName | str, *, state: str | None = None, limit: int = 50
    ) -> list[JobRecord]:
        name = resolve_queue_name(queue)
        return await asyncio.to_thread(self._store.list_jobs, name.value, state=state, limit=limit)

    def is_paused(self, queue: QueueName | str) -> bool:
        return self.pool(queue).paused

    # synchronous driving -----------------------------------------------------

    async def process_next(self, queue: QueueName | str) -> JobRecord | None:
        return await self.pool(queue).process_next()

    async def drain(self, *, max_jobs: int = 1000) -> int:
        """Execute eligible jobs of every registered queue until none is left.

        Returns the number of jobs executed. Delayed jobs whose delay has not
        elapsed are left alone.
        """

        executed = 0
        while executed < max_jobs:
            progressed = False
            for pool in list(self._pools.values()):
                if pool.paused:
                    continue
                job = await pool.process_next()
                if job is not None:
                    executed += 1
                    progressed = True
            if not progressed:
                break
        return executed


__all__ = ["QueueRegistry", "UnknownQueueError"]
