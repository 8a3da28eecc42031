"""Endpoints starting artist imports and reporting their progress."""

from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse

from encore.api.dependencies import get_orchestrator
from encore.api.errors import NotFoundError
from encore.api.schemas import ImportRequest
from encore.logging import get_logger
from encore.logging_events import log_event
from encore.orchestrator.importer import ImportOrchestrator
from encore.utils.time import utcnow_naive

logger = get_logger(__name__)

router = APIRouter(prefix="/imports", tags=["Imports"])


@router.post("")
async def create_import(
    body: ImportRequest,
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    handle = await orchestrator.import_artist(
        body.attraction_id,
        priority=body.priority,
        is_admin_import=body.is_admin_import,
        name_hint=body.name_hint,
        force_refresh=body.force_refresh,
    )
    log_event(
        logger,
        "api.import",
        component="router.imports",
        status="queued" if handle.started else "running",
        entity_id=handle.key,
        job_id=handle.job_id,
    )
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content={"ok": True, "data": handle.to_dict(), "error": None},
    )


@router.get("")
async def list_active_imports(
    limit: int = Query(50, ge=1, le=200),
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    snapshots = await asyncio.to_thread(orchestrator.deps.tracker.active_imports, limit=limit)
    return JSONResponse(
        content={
            "ok": True,
            "data": {"items": [snapshot.to_dict() for snapshot in snapshots]},
            "error": None,
        }
    )


@router.get("/{key}")
async def get_import_status(
    key: str,
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    snapshot = await asyncio.to_thread(orchestrator.get_import_status, key)
    if snapshot is None:
        raise NotFoundError(f"no import recorded for {key!r}")
    data = snapshot.to_dict()
    data["estimated_seconds_remaining"] = snapshot.estimated_seconds_remaining(utcnow_naive())
    return JSONResponse(content={"ok": True, "data": data, "error": None})


__all__ = ["router"]
