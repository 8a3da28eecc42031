"""catalog-sync (top tracks, album listing) and deep-catalog (every album's tracks)."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from time import perf_counter
from typing import Any

from encore.errors import ProviderError
from encore.integrations.contracts import ProviderAlbum, ProviderTrack
from encore.logging import get_logger
from encore.logging_events import log_event
from encore.models import Album, ImportStage, Song
from encore.orchestrator.deps import StageDeps
from encore.orchestrator.payloads import CatalogSyncPayload, DeepCatalogPayload
from encore.orchestrator.results import ItemResult, SkipReason, StageSummary
from encore.queues import QueueName
from encore.services.dedup import dedupe_tracks, filter_live_tracks, is_live_album
from encore.utils.idempotency import make_dedup_key
from encore.utils.normalize import is_live_track, is_remix_track
from encore.utils.time import utcnow_naive
from encore.workers.worker_pool import JobContext

logger = get_logger(__name__)

_LOG_COMPONENT = "orchestrator.catalog_sync"

_DEEP_START = 70
_DEEP_END = 90


def _album_fields(artist_id: int, album: ProviderAlbum) -> dict[str, Any]:
    return {
        "artist_id": artist_id,
        "name": album.name or None,
        "album_type": album.album_type,
        "release_date": album.release_date,
        "total_tracks": album.total_tracks,
        "image_url": album.image_url,
    }


def _song_fields(
    track: ProviderTrack,
    *,
    album_id: int | None,
    album_name: str | None,
    live_album: bool,
) -> dict[str, Any]:
    return {
        "name": track.name,
        "album_id": album_id,
        "album_name": album_name or None,
        "track_number": track.track_number,
        "disc_number": track.disc_number,
        "duration_ms": track.duration_ms,
        "popularity": track.popularity,
        "preview_url": track.preview_url,
        "is_explicit": track.explicit,
        "is_live": live_album or is_live_track(track.name),
        "is_remix": is_remix_track(track.name),
    }


def _store_track(
    deps: StageDeps,
    artist_id: int,
    track: ProviderTrack,
    *,
    album_id: int | None,
    album_name: str | None,
    live_album: bool = False,
) -> ItemResult:
    if not track.id or not track.name:
        return ItemResult.skip(track.id or "?", SkipReason.INVALID)
    outcome = deps.entities.upsert_by_provider_id(
        Song,
        "spotify_id",
        track.id,
        _song_fields(track, album_id=album_id, album_name=album_name, live_album=live_album),
    )
    deps.entities.link_artist_song(artist_id, outcome.id)
    return ItemResult.success(track.id, created=outcome.created)


def _store_top_tracks(
    deps: StageDeps, artist_id: int, tracks: Sequence[ProviderTrack]
) -> list[ItemResult]:
    results: list[ItemResult] = []
    album_ids: dict[str, int] = {}
    for track in tracks:
        album = track.album
        local_album_id: int | None = None
        if album is not None and album.id and album.name:
            local_album_id = album_ids.get(album.id)
            if local_album_id is None:
                local_album_id = deps.entities.upsert_by_provider_id(
                    Album, "spotify_id", album.id, _album_fields(artist_id, album)
                ).id
                album_ids[album.id] = local_album_id
        results.append(
            _store_track(
                deps,
                artist_id,
                track,
                album_id=local_album_id,
                album_name=album.name if album else None,
            )
        )
    return results


def _store_albums(
    deps: StageDeps, artist_id: int, albums: Sequence[ProviderAlbum]
) -> list[ItemResult]:
    results: list[ItemResult] = []
    for album in albums:
        if not album.id or not album.name:
            results.append(ItemResult.skip(album.id or "?", SkipReason.INVALID))
            continue
        outcome = deps.entities.upsert_by_provider_id(
            Album, "spotify_id", album.id, _album_fields(artist_id, album)
        )
        results.append(ItemResult.success(album.id, created=outcome.created))
    return results


async def handle_catalog_sync(ctx: JobContext, deps: StageDeps) -> Mapping[str, Any]:
    """Fast path: top tracks now, the exhaustive album walk later at lower priority."""

    payload = CatalogSyncPayload.from_payload(ctx.payload)
    started = perf_counter()
    await deps.report(payload, ImportStage.IMPORTING_SONGS, 40, "Importing top tracks")

    top_tracks = await deps.catalog.get_top_tracks(payload.spotify_id, market=deps.imports.market)
    unique, duplicates = dedupe_tracks(top_tracks[: deps.imports.top_songs_limit], set())
    summary = StageSummary().extend(duplicates)
    summary.extend(await deps.run(_store_top_tracks, deps, payload.artist_id, unique))
    await ctx.update_progress(40)

    albums = await deps.catalog.list_albums(payload.spotify_id, market=deps.imports.market)
    album_summary = StageSummary().extend(
        await deps.run(_store_albums, deps, payload.artist_id, albums)
    )
    await ctx.update_progress(80)

    await deps.report(
        payload,
        ImportStage.IMPORTING_SONGS,
        55,
        f"Imported {summary.processed} top tracks; {len(albums)} albums queued",
    )
    await deps.registry.enqueue(
        QueueName.DEEP_CATALOG,
        {
            "artist_id": payload.artist_id,
            "key": payload.key,
            "run_id": payload.run_id,
            "is_admin_import": payload.is_admin_import,
            "force_refresh": payload.force_refresh,
            "spotify_id": payload.spotify_id,
            "album_ids": [album.id for album in albums if album.id],
            "known_track_ids": [track.id for track in unique],
        },
        delay_seconds=deps.imports.deep_catalog_delay_seconds,
        dedup_key=make_dedup_key(QueueName.DEEP_CATALOG.value, payload.run_id),
    )

    duration_ms = (perf_counter() - started) * 1000
    log_event(
        logger,
        "import.stage",
        component=_LOG_COMPONENT,
        status="done",
        key=payload.key,
        artist_id=payload.artist_id,
        tracks=summary.processed,
        albums=len(albums),
        duration_ms=round(duration_ms, 3),
    )
    return {"tracks": summary.as_dict(), "albums": album_summary.as_dict()}


def _store_album_tracks(
    deps: StageDeps,
    artist_id: int,
    album_spotify_id: str,
    listing: Sequence[ProviderTrack],
    seen: set[str],
) -> list[ItemResult]:
    local = deps.entities.find_by_provider_id(Album, "spotify_id", album_spotify_id)
    if local is None:
        return [ItemResult.skip(album_spotify_id, SkipReason.NOT_FOUND, "album not stored")]
    album = ProviderAlbum(
        id=album_spotify_id,
        name=str(local.name),
        album_type=local.album_type,
        total_tracks=len(listing),
    )
    unique, results = dedupe_tracks(listing, seen)
    kept, live_skips = filter_live_tracks(unique, album)
    results.extend(live_skips)
    live_album = is_live_album(album)
    deps.entities.upsert_by_provider_id(
        Album, "spotify_id", album_spotify_id, {"total_tracks": len(listing)}
    )
    for track in kept:
        results.append(
            _store_track(
                deps,
                artist_id,
                track,
                album_id=int(local.id),
                album_name=album.name,
                live_album=live_album,
            )
        )
    return results


async def handle_deep_catalog(ctx: JobContext, deps: StageDeps) -> Mapping[str, Any]:
    """Walk every album; a failing album is skipped, the rest continue."""

    payload = DeepCatalogPayload.from_payload(ctx.payload)
    started = perf_counter()
    total = len(payload.album_ids)
    await deps.report(
        payload, ImportStage.IMPORTING_SONGS, _DEEP_START, f"Importing {total} albums"
    )

    seen: set[str] = set(payload.known_track_ids)
    summary = StageSummary()
    albums = StageSummary()
    for index, album_id in enumerate(payload.album_ids, start=1):
        try:
            listing = await deps.catalog.list_album_tracks(album_id)
        except ProviderError as exc:
            albums.add(ItemResult.skip(album_id, SkipReason.FAILED, type(exc).__name__))
            log_event(
                logger,
                "import.stage",
                component=_LOG_COMPONENT,
                status="album_skipped",
                key=payload.key,
                album_id=album_id,
                error=type(exc).__name__,
            )
            continue
        results = await deps.run(
            _store_album_tracks, deps, payload.artist_id, album_id, listing, seen
        )
        summary.extend(results)
        albums.add(ItemResult.success(album_id))
        percent = _DEEP_START + (_DEEP_END - _DEEP_START) * index / max(total, 1)
        await deps.report(payload, ImportStage.IMPORTING_SONGS, percent)
        await ctx.update_progress(100.0 * index / max(total, 1))

    totals = await deps.run(deps.entities.artist_totals, payload.artist_id, today=deps.today())
    await deps.run(
        deps.entities.update_artist,
        payload.artist_id,
        {
            "total_songs": totals["songs"],
            "total_albums": totals["albums"],
            "song_catalog_synced_at": utcnow_naive(),
        },
    )
    await deps.run(
        deps.tracker.record_totals, payload.key, songs=totals["songs"], run_id=payload.run_id
    )
    await deps.report(
        payload,
        ImportStage.IMPORTING_SONGS,
        _DEEP_END,
        f"Imported {totals['songs']} songs from {totals['albums']} albums",
    )
    finalize = await deps.stage_done(payload, "catalog")

    duration_ms = (perf_counter() - started) * 1000
    log_event(
        logger,
        "import.stage",
        component=_LOG_COMPONENT,
        status="deep_done",
        key=payload.key,
        artist_id=payload.artist_id,
        albums=albums.processed,
        albums_failed=albums.skipped,
        songs=totals["songs"],
        duration_ms=round(duration_ms, 3),
        meta={"skip_reasons": summary.skip_reasons},
    )
    return {
        "tracks": summary.as_dict(),
        "albums": albums.as_dict(),
        "totals": totals,
        "finalize_enqueued": finalize,
    }


__all__ = ["handle_catalog_sync", "handle_deep_catalog"]
