"""Deduplication of harvested catalog listings before they reach the store."""

from __future__ import annotations

from collections.abc import Iterable, MutableSet

from encore.integrations.contracts import ProviderAlbum, ProviderTrack
from encore.orchestrator.results import ItemResult, SkipReason
from encore.utils.normalize import is_live_track, normalize_text

_LIVE_ALBUM_MARKERS = ("live at", "live from", "live in", "unplugged", "in concert")


def is_live_album(album: ProviderAlbum | None) -> bool:
    if album is None:
        return False
    name = normalize_text(album.name)
    if any(marker in name for marker in _LIVE_ALBUM_MARKERS):
        return True
    return name.startswith("live ") or name.endswith(" live") or name == "live"


def dedupe_tracks(
    listings: Iterable[ProviderTrack], seen: MutableSet[str]
) -> tuple[list[ProviderTrack], list[ItemResult]]:
    """Keep the first listing of every provider track id.

    ``seen`` is updated in place so consecutive calls (one per album) share
    the same view; duplicates come back as ``DUPLICATE`` skips.
    """

    unique: list[ProviderTrack] = []
    skipped: list[ItemResult] = []
    for track in listings:
        if track.id in seen:
            skipped.append(ItemResult.skip(track.id, SkipReason.DUPLICATE))
            continue
        seen.add(track.id)
        unique.append(track)
    return unique, skipped


def filter_live_tracks(
    tracks: Iterable[ProviderTrack], album: ProviderAlbum | None
) -> tuple[list[ProviderTrack], list[ItemResult]]:
    """Drop live versions from studio albums; live albums are kept whole."""

    if is_live_album(album):
        return list(tracks), []
    kept: list[ProviderTrack] = []
    skipped: list[ItemResult] = []
    for track in tracks:
        if is_live_track(track.name):
            skipped.append(ItemResult.skip(track.id, SkipReason.LIVE_TRACK))
        else:
            kept.append(track)
    return kept, skipped


__all__ = ["dedupe_tracks", "filter_live_tracks", "is_live_album"]
