from __future__ import annotations

from dataclasses import replace
from datetime import date

import httpx
import pytest

from encore.config import AppConfig
from encore.errors import ProviderAuthError, ProviderNotFoundError
from encore.integrations.ticketmaster import TicketmasterClient


def _event(event_id: str, local_date: str | None) -> dict:
    start = {"localDate": local_date, "localTime": "19:30:00"} if local_date else {}
    return {
        "id": event_id,
        "name": "The Midnight Echo",
        "url": f"https://tickets.example/{event_id}",
        "dates": {"start": start, "status": {"code": "onsale"}},
        "priceRanges": [
            {"min": 40.0, "max": 90.0, "currency": "USD"},
            {"min": 25.5, "max": 150.0, "currency": "USD"},
        ],
        "_embedded": {
            "venues": [
                {
                    "id": "KovZpZA7AAEA",
                    "name": "Echo Hall",
                    "city": {"name": "Chicago"},
                    "state": {"stateCode": "IL"},
                    "country": {"countryCode": "US"},
                    "timezone": "America/Chicago",
                    "location": {"latitude": "41.88", "longitude": "-87.63"},
                }
            ],
            "attractions": [{"id": "K8vZ917Gku7"}],
        },
    }


def _handler(request: httpx.Request) -> httpx.Response:
    assert request.url.params["apikey"] == "tm-key"
    path = request.url.path
    if path.endswith("/attractions/K8vZ917Gku7.json"):
        return httpx.Response(
            200,
            json={
                "id": "K8vZ917Gku7",
                "name": "The Midnight Echo",
                "url": "https://tickets.example/artist",
                "classifications": [
                    {"genre": {"name": "Rock"}, "subGenre": {"name": "Undefined"}}
                ],
                "images": [{"url": "https://tm.example/a.jpg"}],
            },
        )
    if path.endswith("/attractions/unknown.json"):
        return httpx.Response(404)
    if path.endswith("/events.json"):
        page = int(request.url.params["page"])
        events = [_event("evt-1", "2026-05-01")] if page == 0 else [_event("evt-2", None)]
        return httpx.Response(
            200,
            json={"_embedded": {"events": events}, "page": {"number": page, "totalPages": 2}},
        )
    return httpx.Response(500)


def _client(config: AppConfig) -> TicketmasterClient:
    return TicketmasterClient(config.provider("ticketmaster"), transport=httpx.MockTransport(_handler))


@pytest.mark.asyncio()
async def test_attraction_is_parsed_without_undefined_genres(config: AppConfig) -> None:
    attraction = await _client(config).get_attraction("K8vZ917Gku7")

    assert attraction.name == "The Midnight Echo"
    assert attraction.genres == ("Rock",)
    assert attraction.images == ("https://tm.example/a.jpg",)


@pytest.mark.asyncio()
async def test_unknown_attraction_raises_not_found(config: AppConfig) -> None:
    with pytest.raises(ProviderNotFoundError):
        await _client(config).get_attraction("unknown")


@pytest.mark.asyncio()
async def test_events_are_paged_and_normalised(config: AppConfig) -> None:
    events = await _client(config).search_events(attraction_id="K8vZ917Gku7", max_pages=5)

    assert [event.id for event in events] == ["evt-1", "evt-2"]
    first = events[0]
    assert first.date == date(2026, 5, 1)
    assert first.start_time == "19:30:00"
    assert first.status == "onsale"
    assert first.min_price == 25.5
    assert first.max_price == 150.0
    assert first.attraction_ids == ("K8vZ917Gku7",)
    assert first.venue is not None
    assert first.venue.state == "IL"
    assert first.venue.latitude == pytest.approx(41.88)
    assert events[1].date is None


@pytest.mark.asyncio()
async def test_single_page_search_stops_after_first_page(config: AppConfig) -> None:
    events = await _client(config).search_events(keyword="The Midnight Echo")

    assert [event.id for event in events] == ["evt-1"]


@pytest.mark.asyncio()
async def test_search_requires_attraction_or_keyword(config: AppConfig) -> None:
    with pytest.raises(ValueError):
        await _client(config).search_events()


@pytest.mark.asyncio()
async def test_missing_api_key_raises_auth_error(config: AppConfig) -> None:
    client = TicketmasterClient(
        replace(config.provider("ticketmaster"), api_key=None),
        transport=httpx.MockTransport(_handler),
    )

    with pytest.raises(ProviderAuthError):
        await client.get_attraction("K8vZ917Gku7")
