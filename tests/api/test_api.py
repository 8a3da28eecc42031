from __future__ import annotations

from collections.abc import Iterator

from fastapi.testclient import TestClient
import pytest

from encore.config import AppConfig
from encore.main import create_app
from encore.queues import QueueName
from encore.runtime import EncoreRuntime, build_runtime
from encore.utils.time import today_utc
from tests.support.providers import (
    ATTRACTION_ID,
    StubEvents,
    build_catalog_world,
    build_events_world,
)

API = "/api/v1"


@pytest.fixture()
def runtime(config: AppConfig) -> EncoreRuntime:
    return build_runtime(
        config,
        catalog=build_catalog_world(),
        events=build_events_world(today_utc()),
    )


@pytest.fixture()
def client(runtime: EncoreRuntime) -> Iterator[TestClient]:
    with TestClient(create_app(runtime)) as test_client:
        yield test_client


def test_create_import_returns_accepted_handle(client: TestClient) -> None:
    response = client.post(f"{API}/imports", json={"attraction_id": ATTRACTION_ID})

    assert response.status_code == 202
    payload = response.json()
    assert payload["ok"] is True
    assert payload["error"] is None
    data = payload["data"]
    assert data["started"] is True
    assert data["key"] == str(data["entity_id"])
    assert data["job_id"] is not None

    again = client.post(f"{API}/imports", json={"attraction_id": ATTRACTION_ID})
    assert again.status_code == 202
    assert again.json()["data"]["started"] is False
    assert again.json()["data"]["run_id"] == data["run_id"]


def test_import_status_and_active_listing(client: TestClient) -> None:
    created = client.post(f"{API}/imports", json={"attraction_id": ATTRACTION_ID}).json()["data"]

    status = client.get(f"{API}/imports/{created['key']}")
    active = client.get(f"{API}/imports")

    assert status.status_code == 200
    data = status.json()["data"]
    assert data["run_id"] == created["run_id"]
    assert data["stage"] == "initializing"
    assert data["progress"] == 0
    assert "estimated_seconds_remaining" in data
    assert [item["key"] for item in active.json()["data"]["items"]] == [created["key"]]


def test_import_status_completes_after_drain(client: TestClient, runtime: EncoreRuntime) -> None:
    created = client.post(f"{API}/imports", json={"attraction_id": ATTRACTION_ID}).json()["data"]

    client.portal.call(runtime.registry.drain)
    data = client.get(f"{API}/imports/{created['key']}").json()["data"]

    assert data["stage"] == "completed"
    assert data["progress"] == 100
    assert data["totals"]["shows"] == 2
    assert client.get(f"{API}/imports").json()["data"]["items"] == []


def test_unknown_import_key_is_not_found(client: TestClient) -> None:
    response = client.get(f"{API}/imports/404")

    assert response.status_code == 404
    payload = response.json()
    assert payload["ok"] is False
    assert payload["error"]["code"] == "NOT_FOUND"
    assert response.headers["X-Debug-Id"]


@pytest.mark.parametrize(
    "body",
    [
        {},
        {"attraction_id": ""},
        {"attraction_id": ATTRACTION_ID, "priority": 9},
        {"attraction_id": ATTRACTION_ID, "unexpected": True},
    ],
)
def test_invalid_import_bodies_are_rejected(client: TestClient, body: dict) -> None:
    response = client.post(f"{API}/imports", json=body)

    assert response.status_code == 422
    error = response.json()["error"]
    assert error["code"] == "VALIDATION_ERROR"
    assert error["meta"]["fields"]


def test_blank_attraction_id_maps_to_validation_error(client: TestClient) -> None:
    response = client.post(f"{API}/imports", json={"attraction_id": "   "})

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


def test_queue_overview_lists_every_queue(client: TestClient) -> None:
    client.post(f"{API}/imports", json={"attraction_id": ATTRACTION_ID})

    data = client.get(f"{API}/queues").json()["data"]

    names = [queue["name"] for queue in data["queues"]]
    assert names == [queue.value for queue in QueueName]
    profile = next(q for q in data["queues"] if q["name"] == QueueName.PROFILE_SYNC.value)
    assert profile["counts"]["waiting"] == 1
    assert profile["paused"] is False
    assert {entry["provider"] for entry in data["providers"]} == {
        "spotify",
        "ticketmaster",
        "setlistfm",
    }


def test_queue_detail_lists_jobs_and_settings(client: TestClient) -> None:
    client.post(f"{API}/imports", json={"attraction_id": ATTRACTION_ID})

    response = client.get(f"{API}/queues/{QueueName.PROFILE_SYNC.value}", params={"state": "waiting"})

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["settings"]["priority"] == 1
    assert len(data["jobs"]) == 1
    assert data["jobs"][0]["payload"]["attraction_id"] == ATTRACTION_ID


def test_queue_detail_rejects_unknown_queue_and_state(client: TestClient) -> None:
    missing = client.get(f"{API}/queues/not-a-queue")
    bad_state = client.get(f"{API}/queues/{QueueName.EVENTS_SYNC.value}", params={"state": "bogus"})

    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "NOT_FOUND"
    assert bad_state.status_code == 400
    assert bad_state.json()["error"]["code"] == "VALIDATION_ERROR"


def test_pause_and_resume_queue(client: TestClient, runtime: EncoreRuntime) -> None:
    queue = QueueName.CATALOG_SYNC.value

    paused = client.post(f"{API}/queues/{queue}/pause")
    assert paused.json()["data"] == {"name": queue, "paused": True}
    assert runtime.registry.is_paused(queue) is True

    resumed = client.post(f"{API}/queues/{queue}/resume")
    assert resumed.json()["data"] == {"name": queue, "paused": False}
    assert runtime.registry.is_paused(queue) is False


def test_requeue_failed_jobs(config: AppConfig) -> None:
    runtime = build_runtime(config, catalog=build_catalog_world(), events=StubEvents())
    queue = QueueName.PROFILE_SYNC.value

    with TestClient(create_app(runtime)) as client:
        client.post(f"{API}/imports", json={"attraction_id": ATTRACTION_ID})
        client.portal.call(runtime.registry.drain)
        assert client.get(f"{API}/queues/{queue}").json()["data"]["counts"]["failed"] == 1

        response = client.post(f"{API}/queues/{queue}/requeue")

        assert response.status_code == 200
        assert response.json()["data"] == {"name": queue, "requeued": 1}
        counts = client.get(f"{API}/queues/{queue}").json()["data"]["counts"]
        assert counts["failed"] == 0
        assert counts["waiting"] == 1


def test_health_endpoints(client: TestClient) -> None:
    live = client.get("/health/live")
    ready = client.get("/health/ready")

    assert live.json() == {"status": "ok"}
    assert ready.status_code == 200
    data = ready.json()["data"]
    assert data["database"] == "up"
    assert data["workers_started"] is False
    assert set(data["workers"]) == {queue.value for queue in QueueName}
