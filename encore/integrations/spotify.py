"""Catalog provider adapter for the Spotify Web API."""

from __future__ import annotations

from collections.abc import Callable, Mapping
import time
from typing import Any

import httpx

from encore.config import ProviderSettings
from encore.errors import ProviderAuthError, ProviderValidationError
from encore.integrations.contracts import ProviderAlbum, ProviderArtistProfile, ProviderTrack
from encore.integrations.guard import ProviderGuard
from encore.integrations.http import ProviderHttpClient, as_int, first_str
from encore.utils.normalize import normalize_genres

_PAGE_LIMIT = 50
_MAX_PAGES = 20
_TOKEN_EXPIRY_MARGIN_S = 30.0


class SpotifyCatalogClient(ProviderHttpClient):
    """Client-credentials authenticated catalog client.

    The access token is cached until shortly before it expires. A 401 on a
    catalog call drops the cached token and retries the call exactly once.
    """

    def __init__(
        self,
        settings: ProviderSettings,
        *,
        guard: ProviderGuard | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(
            settings.name,
            settings.base_url,
            guard=guard,
            timeout_ms=settings.timeout_ms,
            transport=transport,
        )
        self.auth_url = settings.auth_url or "https://accounts.spotify.com/api/token"
        self._client_id = settings.client_id
        self._client_secret = settings.client_secret
        self._clock = clock
        self._token: str | None = None
        self._token_expires_at = 0.0

    async def _access_token(self) -> str:
        if self._token and self._clock() < self._token_expires_at:
            return self._token
        if not self._client_id or not self._client_secret:
            raise ProviderAuthError(self.name, "spotify client credentials are not configured")
        payload = await self.request_json(
            "POST",
            self.auth_url,
            data={"grant_type": "client_credentials"},
            auth=(self._client_id, self._client_secret),
        )
        token = first_str(payload, "access_token")
        if token is None:
            raise ProviderValidationError(self.name, "spotify token response had no access_token")
        expires_in = as_int(payload.get("expires_in")) or 3600
        self._token = token
        self._token_expires_at = self._clock() + max(0.0, expires_in - _TOKEN_EXPIRY_MARGIN_S)
        return token

    def invalidate_token(self) -> None:
        self._token = None
        self._token_expires_at = 0.0

    async def _get(self, path: str, params: Mapping[str, Any] | None = None) -> Any:
        token = await self._access_token()
        try:
            return await self.get_json(
                path, params=params, headers={"Authorization": f"Bearer {token}"}
            )
        except ProviderAuthError:
            self.invalidate_token()
            token = await self._access_token()
            return await self.get_json(
                path, params=params, headers={"Authorization": f"Bearer {token}"}
            )

    async def search_artists(self, name: str, *, limit: int = 5) -> list[ProviderArtistProfile]:
        payload = await self._get("/search", {"q": name, "type": "artist", "limit": limit})
        artists = payload.get("artists") if isinstance(payload, Mapping) else None
        items = artists.get("items") if isinstance(artists, Mapping) else None
        return [
            profile
            for profile in (_parse_artist(item) for item in items or [])
            if profile is not None
        ]

    async def get_artist(self, artist_id: str) -> ProviderArtistProfile:
        payload = await self._get(f"/artists/{artist_id}")
        profile = _parse_artist(payload)
        if profile is None:
            raise ProviderValidationError(self.name, f"artist payload for {artist_id} is invalid")
        return profile

    async def get_top_tracks(self, artist_id: str, *, market: str = "US") -> list[ProviderTrack]:
        payload = await self._get(f"/artists/{artist_id}/top-tracks", {"market": market})
        items = payload.get("tracks") if isinstance(payload, Mapping) else None
        return [track for track in (_parse_track(item) for item in items or []) if track]

    async def list_albums(self, artist_id: str, *, market: str = "US") -> list[ProviderAlbum]:
        albums: list[ProviderAlbum] = []
        seen: set[str] = set()
        items = await self._collect_pages(
            f"/artists/{artist_id}/albums",
            {"include_groups": "album,single", "market": market},
        )
        for item in items:
            album = _parse_album(item)
            if album is not None and album.id not in seen:
                seen.add(album.id)
                albums.append(album)
        return albums

    async def list_album_tracks(self, album_id: str) -> list[ProviderTrack]:
        album = ProviderAlbum(id=album_id, name="")
        items = await self._collect_pages(f"/albums/{album_id}/tracks", {})
        return [track for track in (_parse_track(item, album=album) for item in items) if track]

    async def _collect_pages(self, path: str, params: Mapping[str, Any]) -> list[Any]:
        collected: list[Any] = []
        offset = 0
        for _ in range(_MAX_PAGES):
            payload = await self._get(path, {**params, "limit": _PAGE_LIMIT, "offset": offset})
            if not isinstance(payload, Mapping):
                break
            items = list(payload.get("items") or [])
            collected.extend(items)
            offset += len(items)
            if not items or not payload.get("next"):
                break
        return collected


def _image_urls(payload: Mapping[str, Any]) -> tuple[str, ...]:
    images = payload.get("images")
    if not isinstance(images, list):
        return ()
    return tuple(
        image["url"]
        for image in images
        if isinstance(image, Mapping) and isinstance(image.get("url"), str)
    )


def _parse_artist(payload: Any) -> ProviderArtistProfile | None:
    if not isinstance(payload, Mapping):
        return None
    artist_id = first_str(payload, "id")
    name = first_str(payload, "name")
    if artist_id is None or name is None:
        return None
    followers = payload.get("followers")
    external = payload.get("external_urls")
    return ProviderArtistProfile(
        id=artist_id,
        name=name,
        popularity=as_int(payload.get("popularity")),
        followers=as_int(followers.get("total")) if isinstance(followers, Mapping) else None,
        genres=tuple(normalize_genres(payload.get("genres") or [], limit=10)),
        images=_image_urls(payload),
        external_urls=(
            {str(key): str(value) for key, value in external.items()}
            if isinstance(external, Mapping)
            else {}
        ),
    )


def _parse_album(payload: Any) -> ProviderAlbum | None:
    if not isinstance(payload, Mapping):
        return None
    album_id = first_str(payload, "id")
    if album_id is None:
        return None
    images = _image_urls(payload)
    return ProviderAlbum(
        id=album_id,
        name=first_str(payload, "name") or "",
        album_type=first_str(payload, "album_type", "album_group"),
        release_date=first_str(payload, "release_date"),
        total_tracks=as_int(payload.get("total_tracks")),
        image_url=images[0] if images else None,
    )


def _parse_track(payload: Any, *, album: ProviderAlbum | None = None) -> ProviderTrack | None:
    if not isinstance(payload, Mapping):
        return None
    track_id = first_str(payload, "id")
    name = first_str(payload, "name")
    if track_id is None or name is None:
        return None
    explicit = payload.get("explicit")
    return ProviderTrack(
        id=track_id,
        name=name,
        album=_parse_album(payload.get("album")) or album,
        track_number=as_int(payload.get("track_number")),
        disc_number=as_int(payload.get("disc_number")),
        duration_ms=as_int(payload.get("duration_ms")),
        popularity=as_int(payload.get("popularity")),
        preview_url=first_str(payload, "preview_url"),
        explicit=explicit if isinstance(explicit, bool) else None,
    )


__all__ = ["SpotifyCatalogClient"]
