"""Normalised provider payloads and the adapter protocols stage processors depend on."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date
from typing import Protocol


@dataclass(slots=True, frozen=True)
class ProviderAttraction:
    """Artist as known by the events provider."""

    id: str
    name: str
    url: str | None = None
    genres: tuple[str, ...] = ()
    images: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class ProviderArtistProfile:
    """Artist profile returned by the catalog provider."""

    id: str
    name: str
    popularity: int | None = None
    followers: int | None = None
    genres: tuple[str, ...] = ()
    images: tuple[str, ...] = ()
    external_urls: Mapping[str, str] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class ProviderAlbum:
    id: str
    name: str
    album_type: str | None = None
    release_date: str | None = None
    total_tracks: int | None = None
    image_url: str | None = None


@dataclass(slots=True, frozen=True)
class ProviderTrack:
    id: str
    name: str
    album: ProviderAlbum | None = None
    track_number: int | None = None
    disc_number: int | None = None
    duration_ms: int | None = None
    popularity: int | None = None
    preview_url: str | None = None
    explicit: bool | None = None


@dataclass(slots=True, frozen=True)
class ProviderVenue:
    id: str
    name: str
    city: str | None = None
    state: str | None = None
    country: str | None = None
    timezone: str | None = None
    address: str | None = None
    postal_code: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    capacity: int | None = None


@dataclass(slots=True, frozen=True)
class ProviderEvent:
    id: str
    name: str
    date: date | None = None
    start_time: str | None = None
    status: str | None = None
    url: str | None = None
    venue: ProviderVenue | None = None
    attraction_ids: tuple[str, ...] = ()
    min_price: float | None = None
    max_price: float | None = None
    currency: str | None = None


@dataclass(slots=True, frozen=True)
class ProviderSetlist:
    """Historical setlist of a past show."""

    id: str
    event_date: date | None
    artist_name: str
    artist_mbid: str | None = None
    venue: ProviderVenue | None = None
    tour_name: str | None = None
    songs: tuple[str, ...] = ()
    url: str | None = None


class CatalogProvider(Protocol):
    """Profile/catalog provider operations used by the import stages."""

    name: str

    async def search_artists(self, name: str, *, limit: int = 5) -> list[ProviderArtistProfile]:
        """Return artist candidates for ``name``."""

    async def get_artist(self, artist_id: str) -> ProviderArtistProfile:
        """Return the artist profile or raise ``ProviderNotFoundError``."""

    async def get_top_tracks(self, artist_id: str, *, market: str = "US") -> list[ProviderTrack]:
        """Return the artist's most popular tracks."""

    async def list_albums(self, artist_id: str, *, market: str = "US") -> list[ProviderAlbum]:
        """Return every album and single of the artist."""

    async def list_album_tracks(self, album_id: str) -> list[ProviderTrack]:
        """Return the full track listing of an album."""


class EventsProvider(Protocol):
    """Events/venues provider operations used by the import stages."""

    name: str

    async def get_attraction(self, attraction_id: str) -> ProviderAttraction:
        """Return the attraction or raise ``ProviderNotFoundError``."""

    async def search_events(
        self,
        *,
        attraction_id: str | None = None,
        keyword: str | None = None,
        page_size: int = 50,
        max_pages: int = 1,
    ) -> list[ProviderEvent]:
        """Return events for an attraction id or a keyword."""

    async def get_venue(self, venue_id: str) -> ProviderVenue:
        """Return the venue or raise ``ProviderNotFoundError``."""


class SetlistProvider(Protocol):
    """Historical-setlist provider operations used by the setlist stage."""

    name: str

    async def search_setlists(
        self,
        *,
        artist_name: str | None = None,
        artist_mbid: str | None = None,
        max_pages: int = 1,
    ) -> list[ProviderSetlist]:
        """Return historical setlists, newest first."""


__all__ = [
    "CatalogProvider",
    "EventsProvider",
    "ProviderAlbum",
    "ProviderArtistProfile",
    "ProviderAttraction",
    "ProviderEvent",
    "ProviderSetlist",
    "ProviderTrack",
    "ProviderVenue",
    "SetlistProvider",
]
