"""setlist-sync: historical setlists of the artist in the background."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import date
from time import perf_counter
from typing import Any

from encore.integrations.contracts import ProviderSetlist
from encore.logging import get_logger
from encore.logging_events import log_event
from encore.models import Setlist, Show, ShowStatus, Venue
from encore.orchestrator.deps import StageDeps
from encore.orchestrator.events_stage import venue_fields
from encore.orchestrator.payloads import SetlistSyncPayload
from encore.orchestrator.results import ItemResult, SkipReason, StageSummary
from encore.utils.normalize import slugify, title_key
from encore.workers.worker_pool import JobContext

logger = get_logger(__name__)

_LOG_COMPONENT = "orchestrator.setlist_sync"


def _store_setlist(
    deps: StageDeps,
    payload: SetlistSyncPayload,
    setlist: ProviderSetlist,
    titles: Mapping[str, int],
    today: date,
) -> ItemResult:
    if setlist.event_date is None:
        return ItemResult.skip(setlist.id, SkipReason.MISSING_DATE)
    if not setlist.songs:
        return ItemResult.skip(setlist.id, SkipReason.INVALID, "no songs")
    if deps.entities.find_by_provider_id(Setlist, "setlistfm_id", setlist.id) is not None:
        return ItemResult.skip(setlist.id, SkipReason.ALREADY_EXISTS)

    venue_id: int | None = None
    venue_name: str | None = None
    if setlist.venue is not None and setlist.venue.id and setlist.venue.name:
        venue_id = deps.entities.upsert_by_provider_id(
            Venue, "setlistfm_id", setlist.venue.id, venue_fields(setlist.venue)
        ).id
        venue_name = setlist.venue.name

    name = f"{payload.artist_name} at {venue_name}" if venue_name else payload.artist_name
    status = ShowStatus.COMPLETED if setlist.event_date <= today else ShowStatus.UPCOMING
    show = deps.entities.upsert_by_provider_id(
        Show,
        "setlistfm_id",
        setlist.id,
        {
            "name": name,
            "slug": slugify(
                " ".join(
                    part
                    for part in (payload.artist_name, venue_name, setlist.event_date.isoformat())
                    if part
                )
            ),
            "date": setlist.event_date,
            "status": status.value,
            "venue_id": venue_id,
            "headliner_artist_id": payload.artist_id,
            "ticket_url": setlist.url,
        },
    )
    deps.entities.link_artist_show(payload.artist_id, show.id, is_headliner=True)
    outcome = deps.entities.create_setlist(
        show_id=show.id,
        artist_id=payload.artist_id,
        name=setlist.tour_name or "Setlist",
        songs=[(titles.get(title_key(title)), title) for title in setlist.songs],
        kind="actual",
        source="setlistfm",
        setlistfm_id=setlist.id,
    )
    if not outcome.created:
        return ItemResult.skip(setlist.id, SkipReason.ALREADY_EXISTS)
    return ItemResult.success(setlist.id, created=True)


async def handle_setlist_sync(ctx: JobContext, deps: StageDeps) -> Mapping[str, Any]:
    payload = SetlistSyncPayload.from_payload(ctx.payload)
    if deps.setlists is None:
        return {"skipped": True, "reason": "provider_disabled"}
    started = perf_counter()

    setlists = await deps.setlists.search_setlists(
        artist_name=None if payload.mbid else payload.artist_name,
        artist_mbid=payload.mbid,
        max_pages=deps.imports.historical_max_pages,
    )
    await ctx.update_progress(30)

    titles = await deps.run(deps.entities.song_title_index, payload.artist_id)
    today = deps.today()
    summary = StageSummary()
    for setlist in setlists:
        summary.add(await deps.run(_store_setlist, deps, payload, setlist, titles, today))

    totals = await deps.run(deps.entities.artist_totals, payload.artist_id, today=today)
    await deps.run(
        deps.entities.update_artist,
        payload.artist_id,
        {"total_shows": totals["shows"], "upcoming_shows": totals["upcoming_shows"]},
    )

    duration_ms = (perf_counter() - started) * 1000
    log_event(
        logger,
        "import.stage",
        component=_LOG_COMPONENT,
        status="done",
        artist_id=payload.artist_id,
        setlists=len(setlists),
        setlists_created=summary.created,
        skipped=summary.skipped,
        duration_ms=round(duration_ms, 3),
    )
    return {"setlists": summary.as_dict(), "totals": totals}


__all__ = ["handle_setlist_sync"]
