"""Collaborators shared by the import stage handlers."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date
from typing import Any, TypeVar

from encore.config import AppConfig, ImportConfig
from encore.integrations.contracts import CatalogProvider, EventsProvider, SetlistProvider
from encore.models import ImportStage
from encore.orchestrator.payloads import StagePayload
from encore.orchestrator.progress import ProgressTracker, StageFlag
from encore.queues import QueueName
from encore.services.cache import ResponseCache
from encore.services.entity_store import EntityStore
from encore.utils.idempotency import make_dedup_key
from encore.utils.time import today_utc
from encore.workers.registry import QueueRegistry

T = TypeVar("T")


@dataclass(slots=True)
class StageDeps:
    """Resolved dependencies of the stage handlers."""

    config: AppConfig
    registry: QueueRegistry
    entities: EntityStore
    tracker: ProgressTracker
    catalog: CatalogProvider
    events: EventsProvider
    setlists: SetlistProvider | None = None
    cache: ResponseCache | None = None
    today: Callable[[], date] = field(default=today_utc)

    @property
    def imports(self) -> ImportConfig:
        return self.config.imports

    async def run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run blocking store work off the event loop."""

        return await asyncio.to_thread(func, *args, **kwargs)

    async def report(
        self,
        payload: StagePayload,
        stage: ImportStage,
        percent: float,
        message: str | None = None,
        *,
        artist_name: str | None = None,
    ) -> None:
        await self.run(
            self.tracker.report_progress,
            payload.key,
            stage,
            percent,
            message,
            run_id=payload.run_id,
            artist_name=artist_name,
        )

    async def stage_done(self, payload: StagePayload, flag: StageFlag) -> bool:
        """Set the run's flag and enqueue finalize when this call completed the pair."""

        claimed = await self.run(
            self.tracker.mark_stage_done, payload.key, flag, run_id=payload.run_id
        )
        if claimed:
            await self.registry.enqueue(
                QueueName.IMPORT_FINALIZE,
                {
                    "artist_id": payload.artist_id,
                    "key": payload.key,
                    "run_id": payload.run_id,
                    "is_admin_import": payload.is_admin_import,
                    "force_refresh": payload.force_refresh,
                },
                dedup_key=make_dedup_key(QueueName.IMPORT_FINALIZE.value, payload.run_id),
            )
        return claimed


__all__ = ["StageDeps"]
