"""Health endpoints exposing liveness and readiness status."""

from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from encore.api.dependencies import get_runtime
from encore.db import session_scope
from encore.integrations.guard import breaker_snapshots
from encore.logging import get_logger
from encore.runtime import EncoreRuntime

logger = get_logger(__name__)

router = APIRouter(prefix="/health", tags=["Health"], include_in_schema=False)


def _database_ok() -> bool:
    try:
        with session_scope() as session:
            session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.warning("Database readiness probe failed", exc_info=True)
        return False
    return True


@router.get("/live")
async def live() -> dict[str, str]:
    """Return a lightweight liveness response without dependency checks."""

    return {"status": "ok"}


@router.get("/ready")
async def ready(runtime: EncoreRuntime = Depends(get_runtime)) -> Response:
    database = await asyncio.to_thread(_database_ok)
    workers = {queue.value: runtime.registry.pool(queue).running for queue in runtime.registry.queues()}
    payload = {
        "ok": database,
        "data": {
            "database": "up" if database else "down",
            "workers_started": runtime.registry.started,
            "workers": workers,
            "providers": breaker_snapshots(runtime.guards),
        },
        "error": None,
    }
    status_code = status.HTTP_200_OK if database else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=status_code, content=payload)


__all__ = ["router"]
