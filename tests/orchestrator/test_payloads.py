from __future__ import annotations

import pytest

from encore.errors import JobValidationError
from encore.orchestrator.payloads import (
    DeepCatalogPayload,
    FinalizePayload,
    ProfileSyncPayload,
    SetlistSyncPayload,
)


def test_profile_payload_round_trips_and_coerces_flags() -> None:
    payload = ProfileSyncPayload.from_payload(
        {
            "artist_id": "12",
            "key": "12",
            "run_id": "abc",
            "attraction_id": " K8vZ917Gku7 ",
            "is_admin_import": "yes",
        }
    )

    assert payload.artist_id == 12
    assert payload.attraction_id == "K8vZ917Gku7"
    assert payload.is_admin_import is True
    assert payload.force_refresh is False
    assert payload.to_payload()["attraction_id"] == "K8vZ917Gku7"


def test_deep_catalog_lists_are_cleaned() -> None:
    payload = DeepCatalogPayload.from_payload(
        {
            "artist_id": 1,
            "key": "1",
            "run_id": "r",
            "spotify_id": "sp",
            "album_ids": ["a", "", "b", "a"],
            "known_track_ids": "not-a-list",
        }
    )

    assert payload.album_ids == ["a", "b"]
    assert payload.known_track_ids == []


@pytest.mark.parametrize(
    "raw",
    [
        {"key": "1", "run_id": "r"},
        {"artist_id": True, "key": "1", "run_id": "r"},
        {"artist_id": 1, "key": " ", "run_id": "r"},
        {"artist_id": 1, "key": "1"},
    ],
)
def test_invalid_stage_payloads_are_rejected(raw: dict) -> None:
    with pytest.raises(JobValidationError) as excinfo:
        FinalizePayload.from_payload(raw)

    assert excinfo.value.retryable is False
    assert excinfo.value.queue == "import-finalize"


def test_setlist_payload_requires_artist_name() -> None:
    with pytest.raises(JobValidationError):
        SetlistSyncPayload.from_payload({"artist_id": 3})

    payload = SetlistSyncPayload.from_payload({"artist_id": 3, "artist_name": "Echo", "mbid": ""})
    assert payload.mbid is None
