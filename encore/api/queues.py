"""Queue introspection and operator controls."""

from __future__ import annotations

from fastapi import APIRouter, Body, Depends, Query
from fastapi.responses import JSONResponse

from encore.api.dependencies import get_registry, get_runtime
from encore.api.errors import NotFoundError, ValidationAppError
from encore.api.schemas import RequeueRequest
from encore.integrations.guard import breaker_snapshots
from encore.logging import get_logger
from encore.logging_events import log_event
from encore.models import JobState
from encore.queues import QueueName, resolve_queue_name
from encore.runtime import EncoreRuntime
from encore.workers.registry import QueueRegistry

logger = get_logger(__name__)

router = APIRouter(prefix="/queues", tags=["Queues"])


def _queue_or_404(queue: str) -> QueueName:
    try:
        return resolve_queue_name(queue)
    except ValueError:
        raise NotFoundError(f"unknown queue {queue!r}") from None


def _ok(data: object) -> JSONResponse:
    return JSONResponse(content={"ok": True, "data": data, "error": None})


@router.get("")
async def list_queues(runtime: EncoreRuntime = Depends(get_runtime)) -> JSONResponse:
    counts = await runtime.registry.all_counts()
    registered = set(runtime.registry.queues())
    queues = [
        {
            "name": name,
            "counts": queue_counts,
            "paused": runtime.registry.is_paused(name)
            if QueueName(name) in registered
            else None,
        }
        for name, queue_counts in counts.items()
    ]
    return _ok({"queues": queues, "providers": breaker_snapshots(runtime.guards)})


@router.get("/{queue}")
async def get_queue(
    queue: str,
    state: str | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    registry: QueueRegistry = Depends(get_registry),
) -> JSONResponse:
    name = _queue_or_404(queue)
    if state is not None and state not in {member.value for member in JobState}:
        raise ValidationAppError(f"unknown job state {state!r}")
    counts = await registry.counts(name)
    jobs = await registry.list_jobs(name, state=state, limit=limit)
    settings = registry.settings(name)
    return _ok(
        {
            "name": name.value,
            "counts": counts,
            "paused": registry.is_paused(name),
            "settings": {
                "concurrency": settings.concurrency,
                "max_attempts": settings.max_attempts,
                "backoff": settings.backoff,
                "priority": int(settings.priority),
            },
            "jobs": [job.to_dict() for job in jobs],
        }
    )


@router.post("/{queue}/requeue")
async def requeue_failed(
    queue: str,
    body: RequeueRequest | None = Body(None),
    registry: QueueRegistry = Depends(get_registry),
) -> JSONResponse:
    name = _queue_or_404(queue)
    job_ids = body.job_ids if body is not None else None
    requeued = await registry.requeue_failed(name, job_ids)
    log_event(
        logger,
        "api.queue",
        component="router.queues",
        status="requeued",
        queue=name.value,
        count=requeued,
    )
    return _ok({"name": name.value, "requeued": requeued})


@router.post("/{queue}/pause")
async def pause_queue(
    queue: str, registry: QueueRegistry = Depends(get_registry)
) -> JSONResponse:
    name = _queue_or_404(queue)
    registry.pause(name)
    log_event(logger, "api.queue", component="router.queues", status="paused", queue=name.value)
    return _ok({"name": name.value, "paused": True})


@router.post("/{queue}/resume")
async def resume_queue(
    queue: str, registry: QueueRegistry = Depends(get_registry)
) -> JSONResponse:
    name = _queue_or_404(queue)
    registry.resume(name)
    log_event(logger, "api.queue", component="router.queues", status="resumed", queue=name.value)
    return _ok({"name": name.value, "paused": False})


__all__ = ["router"]
