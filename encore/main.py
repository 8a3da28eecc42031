"""FastAPI application exposing the import pipeline."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from encore import __version__
from encore.api import register_routers, setup_exception_handlers
from encore.config import AppConfig, load_config
from encore.db import init_db
from encore.logging import configure_logging, get_logger
from encore.runtime import EncoreRuntime, build_runtime

logger = get_logger(__name__)


def create_app(
    runtime: EncoreRuntime | None = None,
    *,
    config: AppConfig | None = None,
) -> FastAPI:
    """Build the application.

    A pre-built ``runtime`` is used as is and its workers are left to the
    caller; otherwise the lifespan builds one, starts its workers and closes
    it on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        resolved = runtime.config if runtime is not None else (config or load_config())
        configure_logging(resolved.logging.level, resolved.logging.log_file)
        init_db()

        owned: EncoreRuntime | None = None
        if runtime is None:
            owned = build_runtime(resolved)
            app.state.runtime = owned
            workers_started = owned.start_workers()
            logger.info("Encore application started (workers=%s)", workers_started)
        try:
            yield
        finally:
            if owned is not None:
                await owned.close()
                logger.info("Encore application stopped")

    app = FastAPI(title="Encore Import Pipeline", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime
    setup_exception_handlers(app)
    register_routers(app)
    return app


__all__ = ["create_app"]
