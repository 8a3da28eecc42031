"""FastAPI dependencies resolving the runtime attached to the application."""

from __future__ import annotations

from fastapi import Request

from encore.orchestrator.importer import ImportOrchestrator
from encore.runtime import EncoreRuntime
from encore.workers.registry import QueueRegistry


def get_runtime(request: Request) -> EncoreRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if not isinstance(runtime, EncoreRuntime):
        raise RuntimeError("Encore runtime is not available")
    return runtime


def get_orchestrator(request: Request) -> ImportOrchestrator:
    return get_runtime(request).orchestrator


def get_registry(request: Request) -> QueueRegistry:
    return get_runtime(request).registry


__all__ = ["get_orchestrator", "get_registry", "get_runtime"]
