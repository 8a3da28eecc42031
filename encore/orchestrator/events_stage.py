"""events-sync: shows and venues of the artist from the events provider."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import date
from time import perf_counter
from typing import Any

from encore.errors import JobValidationError, ProviderError
from encore.integrations.contracts import ProviderEvent, ProviderVenue
from encore.logging import get_logger
from encore.logging_events import log_event
from encore.models import Artist, ImportStage, Show, ShowStatus, Venue
from encore.orchestrator.deps import StageDeps
from encore.orchestrator.payloads import EventsSyncPayload
from encore.orchestrator.results import ItemResult, SkipReason, StageSummary
from encore.queues import QueueName
from encore.utils.normalize import is_name_match, slugify
from encore.utils.time import utcnow_naive
from encore.workers.worker_pool import JobContext

logger = get_logger(__name__)

_LOG_COMPONENT = "orchestrator.events_sync"

_EVENTS_START = 60
_EVENTS_END = 75
_CANCELLED_CODES = {"cancelled", "canceled"}


def show_status(event: ProviderEvent, today: date) -> ShowStatus:
    if (event.status or "").strip().lower() in _CANCELLED_CODES:
        return ShowStatus.CANCELLED
    if event.date is not None and event.date < today:
        return ShowStatus.COMPLETED
    return ShowStatus.UPCOMING


def venue_fields(venue: ProviderVenue) -> dict[str, Any]:
    return {
        "name": venue.name,
        "slug": slugify(" ".join(part for part in (venue.name, venue.city) if part)) or None,
        "city": venue.city,
        "state": venue.state,
        "country": venue.country,
        "timezone": venue.timezone,
        "address": venue.address,
        "postal_code": venue.postal_code,
        "latitude": venue.latitude,
        "longitude": venue.longitude,
        "capacity": venue.capacity,
    }


def merge_events(*batches: Iterable[ProviderEvent]) -> list[ProviderEvent]:
    """Concatenate batches keeping the first occurrence of every event id."""

    merged: dict[str, ProviderEvent] = {}
    for batch in batches:
        for event in batch:
            if event.id and event.id not in merged:
                merged[event.id] = event
    return list(merged.values())


def _store_event(
    deps: StageDeps,
    artist_id: int,
    artist_name: str,
    attraction_id: str,
    event: ProviderEvent,
    today: date,
) -> ItemResult:
    if event.date is None:
        return ItemResult.skip(event.id, SkipReason.MISSING_DATE)

    venue_id: int | None = None
    venue_name: str | None = None
    if event.venue is not None and event.venue.id and event.venue.name:
        venue_id = deps.entities.upsert_by_provider_id(
            Venue, "tm_venue_id", event.venue.id, venue_fields(event.venue)
        ).id
        venue_name = event.venue.name

    if attraction_id in event.attraction_ids:
        order_index = event.attraction_ids.index(attraction_id)
    else:
        order_index = 0
    is_headliner = order_index == 0

    outcome = deps.entities.upsert_by_provider_id(
        Show,
        "tm_event_id",
        event.id,
        {
            "name": event.name or artist_name,
            "slug": slugify(
                " ".join(
                    part for part in (artist_name, venue_name, event.date.isoformat()) if part
                )
            ),
            "date": event.date,
            "start_time": event.start_time,
            "status": show_status(event, today).value,
            "venue_id": venue_id,
            "headliner_artist_id": artist_id if is_headliner else None,
            "ticket_url": event.url,
            "min_price": event.min_price,
            "max_price": event.max_price,
            "currency": event.currency,
        },
    )
    deps.entities.link_artist_show(
        artist_id, outcome.id, is_headliner=is_headliner, order_index=order_index
    )
    return ItemResult.success(event.id, created=outcome.created)


async def _keyword_events(
    deps: StageDeps, payload: EventsSyncPayload, artist_name: str
) -> tuple[list[ProviderEvent], list[ItemResult]]:
    try:
        found = await deps.events.search_events(
            keyword=artist_name,
            page_size=deps.imports.events_page_size,
            max_pages=1,
        )
    except ProviderError as exc:
        log_event(
            logger,
            "import.stage",
            component=_LOG_COMPONENT,
            status="keyword_search_failed",
            key=payload.key,
            error=type(exc).__name__,
        )
        return [], [ItemResult.skip(f"keyword:{artist_name}", SkipReason.FAILED, str(exc))]
    kept: list[ProviderEvent] = []
    skipped: list[ItemResult] = []
    for event in found:
        if payload.attraction_id in event.attraction_ids or is_name_match(artist_name, event.name):
            kept.append(event)
        else:
            skipped.append(ItemResult.skip(event.id, SkipReason.NAME_MISMATCH))
    return kept, skipped


async def handle_events_sync(ctx: JobContext, deps: StageDeps) -> Mapping[str, Any]:
    payload = EventsSyncPayload.from_payload(ctx.payload)
    started = perf_counter()
    await deps.report(payload, ImportStage.IMPORTING_SHOWS, _EVENTS_START, "Importing shows")

    # profile-sync may have renamed the artist after this job was enqueued
    artist = await deps.run(deps.entities.find_by_id, Artist, payload.artist_id)
    if artist is None:
        raise JobValidationError(QueueName.EVENTS_SYNC.value, f"artist {payload.artist_id} vanished")
    artist_name = str(artist.name)

    by_attraction = await deps.events.search_events(
        attraction_id=payload.attraction_id,
        page_size=deps.imports.events_page_size,
        max_pages=deps.imports.events_max_pages,
    )
    by_keyword, summary_skips = await _keyword_events(deps, payload, artist_name)
    events = merge_events(by_attraction, by_keyword)
    await ctx.update_progress(30)

    summary = StageSummary().extend(summary_skips)
    today = deps.today()
    total = len(events)
    for index, event in enumerate(events, start=1):
        summary.add(
            await deps.run(
                _store_event,
                deps,
                payload.artist_id,
                artist_name,
                payload.attraction_id,
                event,
                today,
            )
        )
        if index % 10 == 0 or index == total:
            percent = _EVENTS_START + (_EVENTS_END - _EVENTS_START) * index / total
            await deps.report(payload, ImportStage.IMPORTING_SHOWS, percent)

    totals = await deps.run(deps.entities.artist_totals, payload.artist_id, today=today)
    await deps.run(
        deps.entities.update_artist,
        payload.artist_id,
        {
            "total_shows": totals["shows"],
            "upcoming_shows": totals["upcoming_shows"],
            "shows_synced_at": utcnow_naive(),
        },
    )
    await deps.run(
        deps.tracker.record_totals,
        payload.key,
        shows=totals["shows"],
        venues=totals["venues"],
        run_id=payload.run_id,
    )
    await deps.report(
        payload,
        ImportStage.IMPORTING_SHOWS,
        _EVENTS_END,
        f"Imported {totals['shows']} shows and {totals['venues']} venues",
    )
    finalize = await deps.stage_done(payload, "events")

    duration_ms = (perf_counter() - started) * 1000
    log_event(
        logger,
        "import.stage",
        component=_LOG_COMPONENT,
        status="done",
        key=payload.key,
        artist_id=payload.artist_id,
        events=total,
        shows=totals["shows"],
        venues=totals["venues"],
        duration_ms=round(duration_ms, 3),
        meta={"skip_reasons": summary.skip_reasons},
    )
    return {"events": summary.as_dict(), "totals": totals, "finalize_enqueued": finalize}


__all__ = ["handle_events_sync", "merge_events", "show_status", "venue_fields"]
