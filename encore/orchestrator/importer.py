"""Entry point of the artist import pipeline."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from functools import partial
import threading
from typing import Any

from encore.errors import StoreConflictError, ValidationError
from encore.logging import get_logger
from encore.logging_events import log_event
from encore.models import Artist
from encore.orchestrator.catalog_stage import handle_catalog_sync, handle_deep_catalog
from encore.orchestrator.deps import StageDeps
from encore.orchestrator.events_stage import handle_events_sync
from encore.orchestrator.finalize_stage import handle_import_finalize
from encore.orchestrator.profile_stage import handle_profile_sync
from encore.orchestrator.progress import ImportStatusSnapshot
from encore.orchestrator.setlist_stage import handle_setlist_sync
from encore.queues import QueueName
from encore.utils.idempotency import make_dedup_key
from encore.utils.priority import JobPriority
from encore.workers.job_store import JobRecord

logger = get_logger(__name__)

_LOG_COMPONENT = "orchestrator.importer"

STAGE_HANDLERS = {
    QueueName.PROFILE_SYNC: handle_profile_sync,
    QueueName.CATALOG_SYNC: handle_catalog_sync,
    QueueName.DEEP_CATALOG: handle_deep_catalog,
    QueueName.EVENTS_SYNC: handle_events_sync,
    QueueName.IMPORT_FINALIZE: handle_import_finalize,
    QueueName.SETLIST_SYNC: handle_setlist_sync,
}


@dataclass(slots=True, frozen=True)
class ImportHandle:
    entity_id: int
    slug: str
    key: str
    run_id: str
    job_id: int | None = None
    started: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "slug": self.slug,
            "key": self.key,
            "run_id": self.run_id,
            "job_id": self.job_id,
            "started": self.started,
        }


def _describe(exc: BaseException) -> str:
    detail = str(exc).strip()
    return f"{type(exc).__name__}: {detail}" if detail else type(exc).__name__


class ImportOrchestrator:
    """Starts import runs and wires the stage handlers into the queue registry.

    ``import_artist`` only creates the artist placeholder, records a new run
    and enqueues profile-sync; the stages do the rest in the background.
    """

    def __init__(self, deps: StageDeps, *, stale_after: timedelta = timedelta(hours=1)) -> None:
        self.deps = deps
        self._stale_after = stale_after
        self._lock = threading.Lock()

    def register_handlers(self) -> None:
        for queue, handler in STAGE_HANDLERS.items():
            self.deps.registry.register(
                queue,
                partial(handler, deps=self.deps),
                on_exhausted=self._on_exhausted,
            )

    async def import_artist(
        self,
        provider_attraction_id: str,
        *,
        priority: JobPriority | int | None = None,
        is_admin_import: bool = False,
        name_hint: str | None = None,
        force_refresh: bool = False,
    ) -> ImportHandle:
        return await asyncio.to_thread(
            self.import_artist_sync,
            provider_attraction_id,
            priority=priority,
            is_admin_import=is_admin_import,
            name_hint=name_hint,
            force_refresh=force_refresh,
        )

    def import_artist_sync(
        self,
        provider_attraction_id: str,
        *,
        priority: JobPriority | int | None = None,
        is_admin_import: bool = False,
        name_hint: str | None = None,
        force_refresh: bool = False,
    ) -> ImportHandle:
        attraction_id = (provider_attraction_id or "").strip()
        if not attraction_id:
            raise ValidationError("provider_attraction_id must be provided")

        artist = self._ensure_artist(attraction_id, name_hint)
        key = str(artist.id)
        tracker = self.deps.tracker

        with self._lock:
            running = tracker.active_run(key, stale_after=self._stale_after)
            if running is not None:
                log_event(
                    logger,
                    "import.stage",
                    component=_LOG_COMPONENT,
                    status="already_running",
                    key=key,
                    run_id=running.run_id,
                )
                return ImportHandle(
                    entity_id=int(artist.id),
                    slug=str(artist.slug),
                    key=key,
                    run_id=running.run_id,
                    job_id=running.job_id,
                    started=False,
                )

            snapshot = tracker.start(key, artist_id=int(artist.id), artist_name=artist.name)
            if priority is None and is_admin_import:
                priority = JobPriority.CRITICAL
            job = self.deps.registry.enqueue_sync(
                QueueName.PROFILE_SYNC,
                {
                    "artist_id": int(artist.id),
                    "key": key,
                    "run_id": snapshot.run_id,
                    "attraction_id": attraction_id,
                    "is_admin_import": is_admin_import,
                    "force_refresh": force_refresh,
                },
                priority=priority,
                dedup_key=make_dedup_key(
                    QueueName.PROFILE_SYNC.value, attraction_id, snapshot.run_id
                ),
            )
            tracker.attach_job(key, job.id, run_id=snapshot.run_id)

        log_event(
            logger,
            "import.stage",
            component=_LOG_COMPONENT,
            status="queued",
            key=key,
            run_id=snapshot.run_id,
            job_id=job.id,
            priority=job.priority,
            is_admin_import=is_admin_import,
        )
        return ImportHandle(
            entity_id=int(artist.id),
            slug=str(artist.slug),
            key=key,
            run_id=snapshot.run_id,
            job_id=job.id,
        )

    def _ensure_artist(self, attraction_id: str, name_hint: str | None) -> Artist:
        entities = self.deps.entities
        existing = entities.find_by_provider_id(Artist, "tm_attraction_id", attraction_id)
        if existing is not None:
            return existing
        name = (name_hint or "").strip() or attraction_id
        for _attempt in range(2):
            fields = {
                "name": name,
                "slug": entities.unique_slug(name),
                "import_status": "pending",
            }
            try:
                outcome = entities.insert_if_absent(
                    Artist, "tm_attraction_id", attraction_id, fields
                )
            except StoreConflictError:
                # the slug was taken concurrently; pick the next free one
                continue
            artist = entities.find_by_id(Artist, outcome.id)
            if artist is not None:
                return artist
        raise StoreConflictError("artists", "tm_attraction_id", attraction_id)

    def get_import_status(self, key: str) -> ImportStatusSnapshot | None:
        """Return the run tracked under the artist key ``key``.

        ``job:<id>`` looks the run up by the id of its profile job. A bare
        numeric key that matches no artist falls back to the same lookup.
        """

        tracker = self.deps.tracker
        key = str(key).strip()
        if key.startswith("job:"):
            job_ref = key[len("job:"):]
        else:
            snapshot = tracker.get(key)
            if snapshot is not None:
                return snapshot
            job_ref = key
        if not job_ref.isdigit():
            return None
        return tracker.get_by_job_id(int(job_ref))

    async def _on_exhausted(self, job: JobRecord, exc: BaseException) -> None:
        key = job.payload.get("key")
        if not key:
            return
        error = f"{job.queue}: {_describe(exc)}"
        await asyncio.to_thread(
            self.deps.tracker.mark_failed, str(key), error, run_id=job.payload.get("run_id")
        )
        log_event(
            logger,
            "import.stage",
            component=_LOG_COMPONENT,
            status="failed",
            key=str(key),
            queue=job.queue,
            job_id=job.id,
            error=error,
        )


__all__ = ["ImportHandle", "ImportOrchestrator", "STAGE_HANDLERS"]
