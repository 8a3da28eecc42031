"""import-finalize: predicted setlists, totals, cache invalidation, completion."""

from __future__ import annotations

from collections.abc import Mapping
from time import perf_counter
from typing import Any

from encore.errors import JobValidationError
from encore.logging import get_logger
from encore.logging_events import log_event
from encore.models import Artist, ImportStage
from encore.orchestrator.deps import StageDeps
from encore.orchestrator.payloads import FinalizePayload
from encore.queues import QueueName
from encore.services.cache import artist_cache_patterns
from encore.utils.idempotency import make_dedup_key
from encore.utils.time import utcnow_naive
from encore.workers.worker_pool import JobContext

logger = get_logger(__name__)

_LOG_COMPONENT = "orchestrator.import_finalize"


def create_predicted_setlists(deps: StageDeps, artist_id: int) -> int:
    """Give every upcoming show without one a setlist of the most popular songs."""

    limit = deps.imports.max_setlist_shows
    if limit <= 0:
        return 0
    songs = deps.entities.top_songs(artist_id, limit=deps.imports.setlist_size)
    if not songs:
        return 0
    shows = deps.entities.upcoming_shows_without_setlist(
        artist_id, today=deps.today(), limit=limit
    )
    created = 0
    for show_id, _name in shows:
        outcome = deps.entities.create_setlist(
            show_id=show_id,
            artist_id=artist_id,
            name="Predicted Setlist",
            songs=[(song_id, title) for song_id, title in songs],
        )
        created += int(outcome.created)
    return created


async def handle_import_finalize(ctx: JobContext, deps: StageDeps) -> Mapping[str, Any]:
    payload = FinalizePayload.from_payload(ctx.payload)
    started = perf_counter()

    artist = await deps.run(deps.entities.find_by_id, Artist, payload.artist_id)
    if artist is None:
        raise JobValidationError(
            QueueName.IMPORT_FINALIZE.value, f"artist {payload.artist_id} vanished"
        )

    await deps.report(
        payload,
        ImportStage.CREATING_SETLISTS,
        95,
        "Creating initial setlists for upcoming shows",
    )
    setlists = await deps.run(create_predicted_setlists, deps, payload.artist_id)
    await ctx.update_progress(50)

    await deps.report(payload, ImportStage.FINALIZING, 98, "Finalizing import")
    totals = await deps.run(deps.entities.artist_totals, payload.artist_id, today=deps.today())
    now = utcnow_naive()
    await deps.run(
        deps.entities.update_artist,
        payload.artist_id,
        {
            "total_songs": totals["songs"],
            "total_albums": totals["albums"],
            "total_shows": totals["shows"],
            "upcoming_shows": totals["upcoming_shows"],
            "import_status": "completed",
            "last_full_sync_at": now,
            "last_synced_at": now,
        },
    )
    await deps.run(
        deps.tracker.record_totals,
        payload.key,
        songs=totals["songs"],
        shows=totals["shows"],
        venues=totals["venues"],
        run_id=payload.run_id,
    )

    invalidated = 0
    if deps.cache is not None and (payload.is_admin_import or payload.force_refresh):
        for pattern in artist_cache_patterns(payload.artist_id, artist.slug):
            invalidated += await deps.cache.invalidate_pattern(
                pattern, reason="import_completed", entity_id=str(payload.artist_id)
            )

    await deps.report(payload, ImportStage.COMPLETED, 100, "Import completed successfully")

    setlist_job_id: int | None = None
    if deps.imports.historical_setlists and deps.setlists is not None:
        job = await deps.registry.enqueue(
            QueueName.SETLIST_SYNC,
            {"artist_id": payload.artist_id, "artist_name": artist.name, "mbid": artist.mbid},
            dedup_key=make_dedup_key(QueueName.SETLIST_SYNC.value, payload.artist_id),
        )
        setlist_job_id = job.id

    duration_ms = (perf_counter() - started) * 1000
    log_event(
        logger,
        "import.stage",
        component=_LOG_COMPONENT,
        status="completed",
        key=payload.key,
        artist_id=payload.artist_id,
        songs=totals["songs"],
        shows=totals["shows"],
        venues=totals["venues"],
        setlists=setlists,
        cache_invalidated=invalidated,
        duration_ms=round(duration_ms, 3),
    )
    return {
        "totals": totals,
        "setlists_created": setlists,
        "cache_invalidated": invalidated,
        "setlist_job_id": setlist_job_id,
    }


__all__ = ["create_predicted_setlists", "handle_import_finalize"]
