from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

from encore.models import Artist, ImportStage
from encore.orchestrator.progress import ProgressTracker
from encore.services.entity_store import EntityStore
from tests.support.clock import FakeClock


def _tracker(clock: FakeClock) -> ProgressTracker:
    return ProgressTracker(clock=clock)


def test_start_resets_run_state(clock: FakeClock) -> None:
    tracker = _tracker(clock)
    first = tracker.start("7")
    tracker.report_progress("7", ImportStage.IMPORTING_SONGS, 60, run_id=first.run_id)

    second = tracker.start("7", artist_name="The Midnight Echo")

    assert second.run_id != first.run_id
    assert second.stage is ImportStage.INITIALIZING
    assert second.progress == 0
    assert second.artist_name == "The Midnight Echo"


def test_progress_never_decreases_within_a_run(clock: FakeClock) -> None:
    tracker = _tracker(clock)
    run = tracker.start("7")

    tracker.report_progress("7", ImportStage.IMPORTING_SONGS, 55, "songs", run_id=run.run_id)
    snapshot = tracker.report_progress(
        "7", ImportStage.IMPORTING_SHOWS, 40, "shows", run_id=run.run_id
    )

    assert snapshot is not None
    assert snapshot.progress == 55
    assert snapshot.stage is ImportStage.IMPORTING_SHOWS
    assert snapshot.message == "shows"


def test_updates_from_superseded_runs_are_ignored(clock: FakeClock) -> None:
    tracker = _tracker(clock)
    stale = tracker.start("7")
    current = tracker.start("7")

    assert tracker.report_progress("7", ImportStage.FINALIZING, 98, run_id=stale.run_id) is None
    assert tracker.mark_stage_done("7", "catalog", run_id=stale.run_id) is False

    snapshot = tracker.get("7")
    assert snapshot is not None
    assert snapshot.run_id == current.run_id
    assert snapshot.progress == 0
    assert snapshot.catalog_done is False


def test_terminal_runs_do_not_change(clock: FakeClock) -> None:
    tracker = _tracker(clock)
    run = tracker.start("7")
    tracker.report_progress("7", ImportStage.COMPLETED, 100, "done", run_id=run.run_id)

    assert tracker.report_progress("7", ImportStage.IMPORTING_SONGS, 100, run_id=run.run_id) is None
    assert tracker.mark_failed("7", "late failure", run_id=run.run_id) is None
    snapshot = tracker.get("7")
    assert snapshot is not None
    assert snapshot.stage is ImportStage.COMPLETED
    assert snapshot.completed_at == clock.current


def test_phase_timings_record_first_entry_into_each_stage(clock: FakeClock) -> None:
    tracker = _tracker(clock)
    run = tracker.start("7")

    clock.advance(2)
    tracker.report_progress("7", ImportStage.SYNCING_IDENTIFIERS, 10, run_id=run.run_id)
    clock.advance(3)
    tracker.report_progress("7", ImportStage.IMPORTING_SONGS, 40, run_id=run.run_id)
    clock.advance(1)
    snapshot = tracker.report_progress("7", ImportStage.SYNCING_IDENTIFIERS, 45, run_id=run.run_id)

    assert snapshot is not None
    assert snapshot.phase_timings == {
        "initializing": 0.0,
        "syncing-identifiers": 2.0,
        "importing-songs": 5.0,
    }


def test_mark_stage_done_claims_finalize_exactly_once(clock: FakeClock) -> None:
    tracker = _tracker(clock)
    run = tracker.start("7")

    assert tracker.mark_stage_done("7", "catalog", run_id=run.run_id) is False
    assert tracker.mark_stage_done("7", "events", run_id=run.run_id) is True
    assert tracker.mark_stage_done("7", "events", run_id=run.run_id) is False
    assert tracker.mark_stage_done("7", "catalog", run_id=run.run_id) is False


def test_concurrent_stage_completion_claims_once() -> None:
    tracker = ProgressTracker()
    run = tracker.start("9")
    flags = ["catalog", "events"] * 4

    with ThreadPoolExecutor(max_workers=4) as executor:
        outcomes = list(
            executor.map(lambda flag: tracker.mark_stage_done("9", flag, run_id=run.run_id), flags)
        )

    assert outcomes.count(True) == 1


def test_mark_failed_flags_the_artist(clock: FakeClock) -> None:
    entities = EntityStore()
    artist_id = entities.upsert_by_provider_id(
        Artist, "tm_attraction_id", "K8vZ917Gku7", {"name": "Echo", "slug": "echo"}
    ).id
    tracker = _tracker(clock)
    run = tracker.start(str(artist_id), artist_id=artist_id)

    snapshot = tracker.mark_failed(str(artist_id), "events-sync: boom", run_id=run.run_id)

    assert snapshot is not None
    assert snapshot.stage is ImportStage.FAILED
    assert snapshot.error == "events-sync: boom"
    artist = entities.find_by_id(Artist, artist_id)
    assert artist is not None
    assert artist.import_status == "failed"


def test_active_run_and_estimate(clock: FakeClock) -> None:
    tracker = _tracker(clock)
    run = tracker.start("7")
    clock.advance(10)
    snapshot = tracker.report_progress("7", ImportStage.IMPORTING_SONGS, 25, run_id=run.run_id)

    assert snapshot is not None
    assert snapshot.estimated_seconds_remaining(clock.current) == 30.0
    assert tracker.active_run("7") is not None
    assert [item.key for item in tracker.active_imports()] == ["7"]

    clock.advance(3600)
    assert tracker.active_run("7", stale_after=timedelta(hours=1)) is None
    assert tracker.active_run("missing") is None
