from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import func, select, update

from encore.config import AppConfig
from encore.db import session_scope
from encore.errors import ValidationError
from encore.integrations.contracts import ProviderSetlist, ProviderVenue
from encore.models import (
    Album,
    Artist,
    ArtistSong,
    ImportStage,
    JobState,
    QueueJob,
    Setlist,
    SetlistSong,
    Show,
    Song,
    Venue,
)
from encore.queues import QueueName
from encore.runtime import EncoreRuntime, build_runtime
from encore.services.cache import ResponseCache
from encore.utils.time import today_utc, utcnow_naive
from encore.workers.job_store import ABANDONED_ERROR
from tests.support.providers import (
    ARTIST_NAME,
    ATTRACTION_ID,
    SPOTIFY_ARTIST_ID,
    StubEvents,
    StubSetlists,
    build_catalog_world,
    build_events_world,
)


def _count(model: type) -> int:
    with session_scope() as session:
        return int(session.execute(select(func.count()).select_from(model)).scalar_one())


def _runtime(config: AppConfig, **overrides) -> EncoreRuntime:
    overrides.setdefault("catalog", build_catalog_world())
    overrides.setdefault("events", build_events_world(today_utc()))
    return build_runtime(config, **overrides)


@pytest.mark.asyncio()
async def test_full_import_builds_catalog_shows_and_setlists(config: AppConfig) -> None:
    runtime = _runtime(config)

    handle = await runtime.orchestrator.import_artist(ATTRACTION_ID, name_hint=ARTIST_NAME)
    executed = await runtime.registry.drain()

    assert handle.started is True
    # profile, catalog, deep-catalog, events and finalize
    assert executed == 5
    assert _count(Artist) == 1
    assert _count(Song) == 35
    assert _count(ArtistSong) == 35
    assert _count(Album) == 3
    assert _count(Show) == 2
    assert _count(Venue) == 1
    assert _count(Setlist) == 2
    assert _count(SetlistSong) == 2 * config.imports.setlist_size

    snapshot = runtime.orchestrator.get_import_status(handle.key)
    assert snapshot is not None
    assert snapshot.stage is ImportStage.COMPLETED
    assert snapshot.progress == 100
    assert snapshot.total_songs == 35
    assert snapshot.total_shows == 2
    assert snapshot.total_venues == 1
    assert snapshot.catalog_done and snapshot.events_done

    artist = runtime.entities.find_by_id(Artist, handle.entity_id)
    assert artist is not None
    assert artist.name == ARTIST_NAME
    assert artist.slug == "the-midnight-echo"
    assert artist.spotify_id == SPOTIFY_ARTIST_ID
    assert artist.import_status == "completed"
    assert artist.total_songs == 35
    assert artist.upcoming_shows == 2
    assert artist.genres == ["Rock", "Alternative", "synthwave", "indie"]

    for queue in QueueName:
        counts = await runtime.registry.counts(queue)
        assert counts["failed"] == 0


@pytest.mark.asyncio()
async def test_second_request_while_running_returns_existing_run(config: AppConfig) -> None:
    runtime = _runtime(config)

    first = await runtime.orchestrator.import_artist(ATTRACTION_ID)
    second = await runtime.orchestrator.import_artist(ATTRACTION_ID)

    assert second.started is False
    assert second.run_id == first.run_id
    assert second.job_id == first.job_id
    assert second.entity_id == first.entity_id
    assert (await runtime.registry.counts(QueueName.PROFILE_SYNC))["total"] == 1


@pytest.mark.asyncio()
async def test_reimport_does_not_duplicate_entities(config: AppConfig) -> None:
    runtime = _runtime(config)

    first = await runtime.orchestrator.import_artist(ATTRACTION_ID)
    await runtime.registry.drain()
    second = await runtime.orchestrator.import_artist(ATTRACTION_ID, force_refresh=True)
    await runtime.registry.drain()

    assert second.started is True
    assert second.run_id != first.run_id
    assert second.entity_id == first.entity_id
    assert _count(Artist) == 1
    assert _count(Song) == 35
    assert _count(ArtistSong) == 35
    assert _count(Show) == 2
    assert _count(Setlist) == 2
    snapshot = runtime.orchestrator.get_import_status(second.key)
    assert snapshot is not None
    assert snapshot.run_id == second.run_id
    assert snapshot.stage is ImportStage.COMPLETED


@pytest.mark.asyncio()
async def test_failing_album_does_not_fail_the_import(config: AppConfig) -> None:
    catalog = build_catalog_world(album_sizes=(1,) * 20, top_count=0)
    catalog.failing_albums.add("album-7")
    runtime = _runtime(config, catalog=catalog)

    handle = await runtime.orchestrator.import_artist(ATTRACTION_ID)
    await runtime.registry.drain()

    assert _count(Song) == 19
    assert _count(Album) == 20
    snapshot = runtime.orchestrator.get_import_status(handle.key)
    assert snapshot is not None
    assert snapshot.stage is ImportStage.COMPLETED
    assert snapshot.total_songs == 19
    deep_jobs = await runtime.registry.list_jobs(QueueName.DEEP_CATALOG)
    assert deep_jobs[0].result is not None
    assert deep_jobs[0].result["albums"]["skipped"] == 1


@pytest.mark.asyncio()
async def test_unknown_catalog_artist_still_completes_with_shows(config: AppConfig) -> None:
    catalog = build_catalog_world()
    catalog.artists.clear()
    runtime = _runtime(config, catalog=catalog)

    handle = await runtime.orchestrator.import_artist(ATTRACTION_ID)
    await runtime.registry.drain()

    snapshot = runtime.orchestrator.get_import_status(handle.key)
    assert snapshot is not None
    assert snapshot.stage is ImportStage.COMPLETED
    assert _count(Song) == 0
    assert _count(Show) == 2
    # no songs means no predicted setlists
    assert _count(Setlist) == 0
    assert (await runtime.registry.counts(QueueName.CATALOG_SYNC))["total"] == 0


@pytest.mark.asyncio()
async def test_unknown_attraction_fails_the_run(config: AppConfig) -> None:
    runtime = _runtime(config, events=StubEvents())

    handle = await runtime.orchestrator.import_artist(ATTRACTION_ID)
    await runtime.registry.drain()

    snapshot = runtime.orchestrator.get_import_status(handle.key)
    assert snapshot is not None
    assert snapshot.stage is ImportStage.FAILED
    assert snapshot.error is not None
    assert snapshot.error.startswith("profile-sync: ProviderNotFoundError")
    artist = runtime.entities.find_by_id(Artist, handle.entity_id)
    assert artist is not None
    assert artist.import_status == "failed"
    failed = await runtime.registry.list_jobs(QueueName.PROFILE_SYNC, state=JobState.FAILED.value)
    assert len(failed) == 1
    assert failed[0].attempts == 1


@pytest.mark.asyncio()
async def test_blank_attraction_id_is_rejected(config: AppConfig) -> None:
    runtime = _runtime(config)

    with pytest.raises(ValidationError):
        await runtime.orchestrator.import_artist("  ")


@pytest.mark.asyncio()
async def test_admin_import_uses_critical_priority(config: AppConfig) -> None:
    runtime = _runtime(config)

    handle = await runtime.orchestrator.import_artist(ATTRACTION_ID, is_admin_import=True)

    job = await runtime.registry.get_job(handle.job_id)
    assert job is not None
    assert job.priority == 1
    assert job.payload["is_admin_import"] is True


@pytest.mark.asyncio()
async def test_historical_setlists_are_imported_after_completion(config: AppConfig) -> None:
    today = today_utc()
    setlists = StubSetlists(
        setlists=[
            ProviderSetlist(
                id="63de4613",
                event_date=today - timedelta(days=100),
                artist_name=ARTIST_NAME,
                venue=ProviderVenue(id="6bd6ca6e", name="Old Theatre", city="Detroit"),
                tour_name="Afterglow Tour",
                songs=("Song 1.1", "Unreleased Jam"),
            ),
            ProviderSetlist(id="no-date", event_date=None, artist_name=ARTIST_NAME, songs=("x",)),
        ]
    )
    runtime = _runtime(config, setlists=setlists)

    await runtime.orchestrator.import_artist(ATTRACTION_ID)
    await runtime.registry.drain()

    assert setlists.calls == [{"artist_name": ARTIST_NAME, "artist_mbid": None}]
    assert _count(Show) == 3
    assert _count(Venue) == 2
    assert _count(Setlist) == 3
    with session_scope() as session:
        actual = session.execute(
            select(Setlist).where(Setlist.setlistfm_id == "63de4613")
        ).scalar_one()
        rows = session.execute(
            select(SetlistSong.title, SetlistSong.song_id)
            .where(SetlistSong.setlist_id == actual.id)
            .order_by(SetlistSong.position)
        ).all()
        matched = session.execute(
            select(Song.id).where(Song.spotify_id == "track-1-1")
        ).scalar_one()
    assert actual.kind == "actual"
    assert [title for title, _ in rows] == ["Song 1.1", "Unreleased Jam"]
    assert rows[0][1] == matched
    assert rows[1][1] is None


@pytest.mark.asyncio()
async def test_job_abandoned_on_final_attempt_fails_the_run(config: AppConfig) -> None:
    runtime = _runtime(config)
    handle = await runtime.orchestrator.import_artist(ATTRACTION_ID)
    leased = runtime.registry.store.lease_next(
        QueueName.PROFILE_SYNC.value, owner="crashed-worker", lease_seconds=30
    )
    assert leased is not None
    with session_scope() as session:
        session.execute(
            update(QueueJob)
            .where(QueueJob.id == leased.id)
            .values(
                attempts=leased.max_attempts,
                lease_expires_at=utcnow_naive() - timedelta(minutes=5),
            )
        )

    assert await runtime.registry.process_next(QueueName.PROFILE_SYNC) is None

    job = await runtime.registry.get_job(leased.id)
    assert job is not None
    assert job.state is JobState.FAILED
    snapshot = runtime.orchestrator.get_import_status(handle.key)
    assert snapshot is not None
    assert snapshot.stage is ImportStage.FAILED
    assert snapshot.error == f"profile-sync: JobAbandonedError: {ABANDONED_ERROR}"
    artist = runtime.entities.find_by_id(Artist, handle.entity_id)
    assert artist is not None
    assert artist.import_status == "failed"


@pytest.mark.asyncio()
async def test_slug_taken_between_lookup_and_insert_picks_the_next_one(
    config: AppConfig, monkeypatch: pytest.MonkeyPatch
) -> None:
    runtime = _runtime(config)
    runtime.entities.insert_if_absent(
        Artist, "tm_attraction_id", "K-other", {"name": "Echo", "slug": "echo"}
    )
    stale = iter(["echo"])
    real_unique_slug = runtime.entities.unique_slug
    monkeypatch.setattr(
        runtime.entities,
        "unique_slug",
        lambda value, **kwargs: next(stale, None) or real_unique_slug(value, **kwargs),
    )

    handle = await runtime.orchestrator.import_artist("K-echo", name_hint="Echo")

    assert handle.started is True
    assert handle.slug == "echo-2"
    assert _count(Artist) == 2


@pytest.mark.asyncio()
async def test_admin_import_evicts_cached_artist_responses(config: AppConfig) -> None:
    cache = ResponseCache()
    runtime = _runtime(config, cache=cache)
    handle = await runtime.orchestrator.import_artist(
        ATTRACTION_ID, name_hint=ARTIST_NAME, is_admin_import=True
    )
    for key in (f"artist:{handle.entity_id}:profile", "search:artists:echo", "venue:1"):
        await cache.set(key, True)

    await runtime.registry.drain()

    assert cache.keys() == ["venue:1"]


@pytest.mark.asyncio()
async def test_import_status_resolves_by_profile_job_id(config: AppConfig) -> None:
    runtime = _runtime(config)
    runtime.entities.insert_if_absent(
        Artist, "tm_attraction_id", "K-other", {"name": "Other", "slug": "other"}
    )
    handle = await runtime.orchestrator.import_artist(ATTRACTION_ID, name_hint=ARTIST_NAME)
    assert handle.job_id is not None
    assert str(handle.job_id) != handle.key

    by_key = runtime.orchestrator.get_import_status(handle.key)
    by_job = runtime.orchestrator.get_import_status(f"job:{handle.job_id}")
    by_bare_id = runtime.orchestrator.get_import_status(str(handle.job_id))

    assert by_key is not None
    assert by_job == by_key
    assert by_bare_id == by_key
    assert runtime.orchestrator.get_import_status("job:999") is None
    assert runtime.orchestrator.get_import_status("unknown") is None
