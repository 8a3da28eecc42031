"""Historical setlist adapter for the setlist.fm API."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import date, datetime
from typing import Any

import httpx

from encore.config import ProviderSettings
from encore.errors import ProviderAuthError, ProviderNotFoundError
from encore.integrations.contracts import ProviderSetlist, ProviderVenue
from encore.integrations.guard import ProviderGuard
from encore.integrations.http import ProviderHttpClient, as_float, as_int, first_str


class SetlistFmClient(ProviderHttpClient):
    def __init__(
        self,
        settings: ProviderSettings,
        *,
        guard: ProviderGuard | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            settings.name,
            settings.base_url,
            guard=guard,
            timeout_ms=settings.timeout_ms,
            transport=transport,
        )
        self._api_key = settings.api_key

    def _default_headers(self) -> dict[str, str]:
        if not self._api_key:
            raise ProviderAuthError(self.name, "setlist.fm api key is not configured")
        headers = super()._default_headers()
        headers["x-api-key"] = self._api_key
        return headers

    async def search_setlists(
        self,
        *,
        artist_name: str | None = None,
        artist_mbid: str | None = None,
        max_pages: int = 1,
    ) -> list[ProviderSetlist]:
        if not artist_name and not artist_mbid:
            raise ValueError("search_setlists requires an artist name or mbid")
        setlists: list[ProviderSetlist] = []
        for page in range(1, max(1, int(max_pages)) + 1):
            try:
                payload = await self.get_json(
                    "/search/setlists",
                    params={
                        "artistMbid": artist_mbid,
                        "artistName": artist_name if not artist_mbid else None,
                        "p": page,
                    },
                )
            except ProviderNotFoundError:
                # setlist.fm answers 404 for a search without results.
                break
            if not isinstance(payload, Mapping):
                break
            items = payload.get("setlist") or []
            for item in items:
                setlist = _parse_setlist(item)
                if setlist is not None:
                    setlists.append(setlist)
            total = as_int(payload.get("total")) or 0
            per_page = as_int(payload.get("itemsPerPage")) or len(items)
            if not items or page * max(per_page, 1) >= total:
                break
        return setlists


def _parse_event_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return datetime.strptime(value, "%d-%m-%Y").date()
    except ValueError:
        return None


def _parse_venue(payload: Any) -> ProviderVenue | None:
    if not isinstance(payload, Mapping):
        return None
    venue_id = first_str(payload, "id")
    name = first_str(payload, "name")
    if venue_id is None or name is None:
        return None
    city = payload.get("city")
    city = city if isinstance(city, Mapping) else {}
    country = city.get("country")
    coords = city.get("coords")
    coords = coords if isinstance(coords, Mapping) else {}
    return ProviderVenue(
        id=venue_id,
        name=name,
        city=first_str(city, "name"),
        state=first_str(city, "stateCode", "state"),
        country=first_str(country, "code") if isinstance(country, Mapping) else None,
        latitude=as_float(coords.get("lat")),
        longitude=as_float(coords.get("long")),
    )


def _song_titles(payload: Mapping[str, Any]) -> tuple[str, ...]:
    sets = payload.get("sets")
    blocks = sets.get("set") if isinstance(sets, Mapping) else None
    titles: list[str] = []
    for block in blocks or []:
        if not isinstance(block, Mapping):
            continue
        for song in block.get("song") or []:
            title = first_str(song, "name")
            if title is not None:
                titles.append(title)
    return tuple(titles)


def _parse_setlist(payload: Any) -> ProviderSetlist | None:
    if not isinstance(payload, Mapping):
        return None
    setlist_id = first_str(payload, "id")
    if setlist_id is None:
        return None
    artist = payload.get("artist")
    artist = artist if isinstance(artist, Mapping) else {}
    tour = payload.get("tour")
    return ProviderSetlist(
        id=setlist_id,
        event_date=_parse_event_date(first_str(payload, "eventDate")),
        artist_name=first_str(artist, "name") or "",
        artist_mbid=first_str(artist, "mbid"),
        venue=_parse_venue(payload.get("venue")),
        tour_name=first_str(tour, "name") if isinstance(tour, Mapping) else None,
        songs=_song_titles(payload),
        url=first_str(payload, "url"),
    )


__all__ = ["SetlistFmClient"]
