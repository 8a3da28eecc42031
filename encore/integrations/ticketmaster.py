"""Events provider adapter for the Ticketmaster Discovery API."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import date
from typing import Any

import httpx

from encore.config import ProviderSettings
from encore.errors import ProviderAuthError, ProviderValidationError
from encore.integrations.contracts import ProviderAttraction, ProviderEvent, ProviderVenue
from encore.integrations.guard import ProviderGuard
from encore.integrations.http import ProviderHttpClient, as_float, as_int, first_str

_MAX_PAGE_SIZE = 200


class TicketmasterClient(ProviderHttpClient):
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

    def _default_params(self) -> dict[str, Any]:
        if not self._api_key:
            raise ProviderAuthError(self.name, "ticketmaster api key is not configured")
        return {"apikey": self._api_key}

    async def get_attraction(self, attraction_id: str) -> ProviderAttraction:
        payload = await self.get_json(f"/attractions/{attraction_id}.json")
        attraction = _parse_attraction(payload)
        if attraction is None:
            raise ProviderValidationError(
                self.name, f"attraction payload for {attraction_id} is invalid"
            )
        return attraction

    async def search_events(
        self,
        *,
        attraction_id: str | None = None,
        keyword: str | None = None,
        page_size: int = 50,
        max_pages: int = 1,
    ) -> list[ProviderEvent]:
        if not attraction_id and not keyword:
            raise ValueError("search_events requires an attraction_id or a keyword")
        size = max(1, min(_MAX_PAGE_SIZE, int(page_size)))
        events: list[ProviderEvent] = []
        for page in range(max(1, int(max_pages))):
            payload = await self.get_json(
                "/events.json",
                params={
                    "attractionId": attraction_id,
                    "keyword": keyword if not attraction_id else None,
                    "size": size,
                    "page": page,
                    "sort": "date,asc",
                },
            )
            if not isinstance(payload, Mapping):
                break
            embedded = payload.get("_embedded")
            items = embedded.get("events") if isinstance(embedded, Mapping) else None
            for item in items or []:
                event = _parse_event(item)
                if event is not None:
                    events.append(event)
            page_info = payload.get("page")
            total_pages = (
                as_int(page_info.get("totalPages")) if isinstance(page_info, Mapping) else None
            )
            if not items or total_pages is None or page + 1 >= total_pages:
                break
        return events

    async def get_venue(self, venue_id: str) -> ProviderVenue:
        payload = await self.get_json(f"/venues/{venue_id}.json")
        venue = _parse_venue(payload)
        if venue is None:
            raise ProviderValidationError(self.name, f"venue payload for {venue_id} is invalid")
        return venue


def _nested_str(payload: Mapping[str, Any], key: str, *inner: str) -> str | None:
    value = payload.get(key)
    if isinstance(value, Mapping):
        return first_str(value, *inner)
    return None


def _parse_attraction(payload: Any) -> ProviderAttraction | None:
    if not isinstance(payload, Mapping):
        return None
    attraction_id = first_str(payload, "id")
    name = first_str(payload, "name")
    if attraction_id is None or name is None:
        return None
    genres: list[str] = []
    for classification in payload.get("classifications") or []:
        if not isinstance(classification, Mapping):
            continue
        for key in ("genre", "subGenre"):
            genre = _nested_str(classification, key, "name")
            if genre and genre.lower() != "undefined":
                genres.append(genre)
    images = tuple(
        image["url"]
        for image in payload.get("images") or []
        if isinstance(image, Mapping) and isinstance(image.get("url"), str)
    )
    return ProviderAttraction(
        id=attraction_id,
        name=name,
        url=first_str(payload, "url"),
        genres=tuple(genres),
        images=images,
    )


def _parse_venue(payload: Any) -> ProviderVenue | None:
    if not isinstance(payload, Mapping):
        return None
    venue_id = first_str(payload, "id")
    name = first_str(payload, "name")
    if venue_id is None or name is None:
        return None
    location = payload.get("location")
    location = location if isinstance(location, Mapping) else {}
    return ProviderVenue(
        id=venue_id,
        name=name,
        city=_nested_str(payload, "city", "name"),
        state=_nested_str(payload, "state", "stateCode", "name"),
        country=_nested_str(payload, "country", "countryCode", "name"),
        timezone=first_str(payload, "timezone"),
        address=_nested_str(payload, "address", "line1"),
        postal_code=first_str(payload, "postalCode"),
        latitude=as_float(location.get("latitude")),
        longitude=as_float(location.get("longitude")),
        capacity=as_int(payload.get("capacity")),
    )


def _parse_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def _parse_event(payload: Any) -> ProviderEvent | None:
    if not isinstance(payload, Mapping):
        return None
    event_id = first_str(payload, "id")
    name = first_str(payload, "name")
    if event_id is None or name is None:
        return None
    dates = payload.get("dates")
    dates = dates if isinstance(dates, Mapping) else {}
    start = dates.get("start")
    start = start if isinstance(start, Mapping) else {}
    embedded = payload.get("_embedded")
    embedded = embedded if isinstance(embedded, Mapping) else {}
    venues = [venue for venue in (_parse_venue(item) for item in embedded.get("venues") or []) if venue]
    attraction_ids = tuple(
        item["id"]
        for item in embedded.get("attractions") or []
        if isinstance(item, Mapping) and isinstance(item.get("id"), str)
    )
    min_price = max_price = None
    currency = None
    for price in payload.get("priceRanges") or []:
        if not isinstance(price, Mapping):
            continue
        low = as_float(price.get("min"))
        high = as_float(price.get("max"))
        if low is not None:
            min_price = low if min_price is None else min(min_price, low)
        if high is not None:
            max_price = high if max_price is None else max(max_price, high)
        currency = currency or first_str(price, "currency")
    return ProviderEvent(
        id=event_id,
        name=name,
        date=_parse_date(first_str(start, "localDate", "dateTime")),
        start_time=first_str(start, "localTime"),
        status=_nested_str(dates, "status", "code"),
        url=first_str(payload, "url"),
        venue=venues[0] if venues else None,
        attraction_ids=attraction_ids,
        min_price=min_price,
        max_price=max_price,
        currency=currency,
    )


__all__ = ["TicketmasterClient"]
