"""Persistent job queues, worker pools and the queue registry."""

from encore.workers.job_store import JobRecord, JobStore
from encore.workers.registry import QueueRegistry, UnknownQueueError
from encore.workers.worker_pool import JobContext, JobHandler, WorkerPool

__all__ = [
    "JobContext",
    "JobHandler",
    "JobRecord",
    "JobStore",
    "QueueRegistry",
    "UnknownQueueError",
    "WorkerPool",
]
