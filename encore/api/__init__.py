"""Operational HTTP API: import control, progress and queue introspection."""

from __future__ import annotations

from fastapi import APIRouter, FastAPI

from . import health, imports, queues
from .errors import setup_exception_handlers

API_BASE_PATH = "/api/v1"

_ROUTERS: tuple[APIRouter, ...] = (imports.router, queues.router)


def register_routers(app: FastAPI, *, base_path: str = API_BASE_PATH) -> None:
    """Mount the domain routers under ``base_path`` and health at the root."""

    for router in _ROUTERS:
        app.include_router(router, prefix=base_path)
    app.include_router(health.router)


__all__ = [
    "API_BASE_PATH",
    "health",
    "imports",
    "queues",
    "register_routers",
    "setup_exception_handlers",
]
