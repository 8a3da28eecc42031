"""profile-sync: resolve the artist on both providers and fan out the import."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from time import perf_counter
from typing import Any

from encore.errors import JobValidationError, ProviderNotFoundError, ProviderValidationError
from encore.integrations.contracts import ProviderArtistProfile, ProviderAttraction
from encore.logging import get_logger
from encore.logging_events import log_event
from encore.models import Artist, ImportStage
from encore.orchestrator.deps import StageDeps
from encore.orchestrator.payloads import ProfileSyncPayload
from encore.queues import QueueName
from encore.utils.idempotency import make_dedup_key
from encore.utils.normalize import is_name_match, normalize_genres, normalize_text, slugify
from encore.utils.time import utcnow_naive
from encore.workers.worker_pool import JobContext

logger = get_logger(__name__)

_LOG_COMPONENT = "orchestrator.profile_sync"


def select_catalog_match(
    name: str, candidates: Sequence[ProviderArtistProfile]
) -> ProviderArtistProfile | None:
    """Prefer an exact (normalised) name match, then the first fuzzy match."""

    wanted = normalize_text(name)
    for candidate in candidates:
        if normalize_text(candidate.name) == wanted:
            return candidate
    for candidate in candidates:
        if is_name_match(name, candidate.name):
            return candidate
    return None


def _first(values: Sequence[str], index: int) -> str | None:
    return values[index] if len(values) > index else None


def _artist_fields(
    attraction: ProviderAttraction, profile: ProviderArtistProfile | None
) -> dict[str, Any]:
    profile_images: Sequence[str] = profile.images if profile else ()
    external_urls: dict[str, str] = {}
    if attraction.url:
        external_urls["ticketmaster"] = attraction.url
    if profile is not None:
        external_urls.update(
            {key: value for key, value in profile.external_urls.items() if value}
        )
    genres = normalize_genres([*attraction.genres, *(profile.genres if profile else ())])
    return {
        "name": attraction.name,
        "spotify_id": profile.id if profile else None,
        "image_url": _first(attraction.images, 0) or _first(profile_images, 0),
        "small_image_url": _first(attraction.images, 1) or _first(profile_images, 1),
        "genres": genres or None,
        "popularity": profile.popularity if profile else None,
        "followers": profile.followers if profile else None,
        "external_urls": external_urls or None,
        "import_status": "in_progress",
        "last_synced_at": utcnow_naive(),
    }


async def _find_catalog_profile(
    deps: StageDeps, name: str, artist_id: int
) -> ProviderArtistProfile | None:
    try:
        candidates = await deps.catalog.search_artists(name, limit=5)
    except (ProviderNotFoundError, ProviderValidationError) as exc:
        log_event(
            logger,
            "import.stage",
            component=_LOG_COMPONENT,
            status="catalog_unavailable",
            artist_id=artist_id,
            error=type(exc).__name__,
        )
        return None
    profile = select_catalog_match(name, candidates)
    if profile is None:
        return None
    owner = await deps.run(
        deps.entities.find_by_provider_id, Artist, "spotify_id", profile.id
    )
    if owner is not None and owner.id != artist_id:
        log_event(
            logger,
            "import.stage",
            component=_LOG_COMPONENT,
            status="catalog_claimed",
            artist_id=artist_id,
            owner_id=int(owner.id),
            spotify_id=profile.id,
        )
        return None
    return profile


async def handle_profile_sync(ctx: JobContext, deps: StageDeps) -> Mapping[str, Any]:
    payload = ProfileSyncPayload.from_payload(ctx.payload)
    started = perf_counter()
    await deps.report(payload, ImportStage.SYNCING_IDENTIFIERS, 10, "Fetching artist profile")

    attraction = await deps.events.get_attraction(payload.attraction_id)
    await ctx.update_progress(30)

    artist = await deps.run(deps.entities.find_by_id, Artist, payload.artist_id)
    if artist is None:
        raise JobValidationError(QueueName.PROFILE_SYNC.value, f"artist {payload.artist_id} vanished")

    profile = await _find_catalog_profile(deps, attraction.name, payload.artist_id)
    fields = _artist_fields(attraction, profile)

    base_slug = slugify(attraction.name)
    current = str(artist.slug or "")
    if base_slug and current != base_slug and not current.startswith(f"{base_slug}-"):
        fields["slug"] = await deps.run(
            deps.entities.unique_slug, attraction.name, exclude_id=payload.artist_id
        )
    await deps.run(deps.entities.update_artist, payload.artist_id, fields)
    await ctx.update_progress(70)

    await deps.report(
        payload,
        ImportStage.SYNCING_IDENTIFIERS,
        25,
        f"Resolved {attraction.name}" + (" on both providers" if profile else ""),
        artist_name=attraction.name,
    )

    common = {
        "artist_id": payload.artist_id,
        "key": payload.key,
        "run_id": payload.run_id,
        "is_admin_import": payload.is_admin_import,
        "force_refresh": payload.force_refresh,
    }
    await deps.registry.enqueue(
        QueueName.EVENTS_SYNC,
        {**common, "attraction_id": payload.attraction_id},
        dedup_key=make_dedup_key(QueueName.EVENTS_SYNC.value, payload.run_id),
    )
    if profile is not None:
        await deps.registry.enqueue(
            QueueName.CATALOG_SYNC,
            {**common, "spotify_id": profile.id},
            dedup_key=make_dedup_key(QueueName.CATALOG_SYNC.value, payload.run_id),
        )
    else:
        await deps.stage_done(payload, "catalog")

    duration_ms = (perf_counter() - started) * 1000
    log_event(
        logger,
        "import.stage",
        component=_LOG_COMPONENT,
        status="done",
        key=payload.key,
        artist_id=payload.artist_id,
        spotify_id=profile.id if profile else None,
        duration_ms=round(duration_ms, 3),
    )
    return {
        "artist_id": payload.artist_id,
        "name": attraction.name,
        "slug": fields.get("slug", current),
        "spotify_id": profile.id if profile else None,
        "catalog": profile is not None,
    }


__all__ = ["handle_profile_sync", "select_catalog_match"]
