from __future__ import annotations

from encore.models import JobState
from encore.utils.priority import JobPriority
from encore.workers.job_store import ABANDONED_ERROR, JobStore
from tests.support.clock import FakeClock


def _store(clock: FakeClock) -> JobStore:
    return JobStore(clock=clock, retention_completed_seconds=60, retention_failed_seconds=120)


def test_enqueue_returns_open_job_for_same_dedup_key(clock: FakeClock) -> None:
    store = _store(clock)

    first = store.enqueue("profile-sync", {"artist_id": 1}, dedup_key="abc")
    second = store.enqueue("profile-sync", {"artist_id": 2}, dedup_key="abc")

    assert second.id == first.id
    assert second.deduped is True
    assert second.payload == {"artist_id": 1}
    assert store.counts("profile-sync")["total"] == 1


def test_dedup_key_is_released_once_job_finished(clock: FakeClock) -> None:
    store = _store(clock)
    first = store.enqueue("profile-sync", {}, dedup_key="abc")
    leased = store.lease_next("profile-sync", owner="w1")
    assert leased is not None and leased.id == first.id
    assert store.complete(first.id, owner="w1") is True

    again = store.enqueue("profile-sync", {}, dedup_key="abc")

    assert again.id != first.id
    assert again.deduped is False


def test_lease_orders_by_priority_then_eligible_time(clock: FakeClock) -> None:
    store = _store(clock)
    low = store.enqueue("catalog-sync", {"n": "low"}, priority=JobPriority.LOW)
    clock.advance(1)
    critical = store.enqueue("catalog-sync", {"n": "critical"}, priority=JobPriority.CRITICAL)
    clock.advance(1)
    normal_late = store.enqueue("catalog-sync", {"n": "normal"}, priority=JobPriority.NORMAL)

    order = []
    for _ in range(3):
        job = store.lease_next("catalog-sync", owner="w1")
        assert job is not None
        order.append(job.id)
        store.complete(job.id, owner="w1")

    assert order == [critical.id, normal_late.id, low.id]


def test_delayed_job_is_not_leased_before_its_time(clock: FakeClock) -> None:
    store = _store(clock)
    job = store.enqueue("deep-catalog", {}, delay_seconds=5)
    assert job.state is JobState.DELAYED

    assert store.lease_next("deep-catalog", owner="w1") is None
    clock.advance(5)
    leased = store.lease_next("deep-catalog", owner="w1")

    assert leased is not None
    assert leased.id == job.id
    assert leased.state is JobState.ACTIVE
    assert leased.attempts == 1


def test_job_is_leased_by_one_worker_only(clock: FakeClock) -> None:
    store = _store(clock)
    store.enqueue("events-sync", {})

    first = store.lease_next("events-sync", owner="w1")
    second = store.lease_next("events-sync", owner="w2")

    assert first is not None
    assert second is None


def test_expired_lease_is_reclaimed_by_another_worker(clock: FakeClock) -> None:
    store = _store(clock)
    job = store.enqueue("events-sync", {}, max_attempts=3)
    assert store.lease_next("events-sync", owner="w1", lease_seconds=10) is not None

    clock.advance(11)
    reclaimed = store.lease_next("events-sync", owner="w2", lease_seconds=10)

    assert reclaimed is not None
    assert reclaimed.id == job.id
    assert reclaimed.lease_owner == "w2"
    assert reclaimed.attempts == 2
    # the original owner can no longer complete it
    assert store.complete(job.id, owner="w1") is False
    assert store.complete(job.id, owner="w2") is True


def test_expired_lease_on_final_attempt_is_reaped_once(clock: FakeClock) -> None:
    store = _store(clock)
    job = store.enqueue("events-sync", {}, max_attempts=1)
    assert store.lease_next("events-sync", owner="w1", lease_seconds=5) is not None

    clock.advance(6)
    assert store.lease_next("events-sync", owner="w2") is None
    reaped = store.reap_abandoned("events-sync")

    assert [record.id for record in reaped] == [job.id]
    assert reaped[0].state is JobState.FAILED
    assert reaped[0].last_error == ABANDONED_ERROR
    assert store.reap_abandoned("events-sync") == []
    record = store.get(job.id)
    assert record is not None
    assert record.state is JobState.FAILED


def test_heartbeat_extends_lease(clock: FakeClock) -> None:
    store = _store(clock)
    job = store.enqueue("catalog-sync", {})
    store.lease_next("catalog-sync", owner="w1", lease_seconds=10)

    clock.advance(8)
    assert store.heartbeat(job.id, owner="w1", lease_seconds=10) is True
    clock.advance(8)

    assert store.lease_next("catalog-sync", owner="w2") is None
    assert store.heartbeat(job.id, owner="w2") is False


def test_fail_with_retry_delays_and_without_fails_permanently(clock: FakeClock) -> None:
    store = _store(clock)
    job = store.enqueue("catalog-sync", {}, max_attempts=2)
    store.lease_next("catalog-sync", owner="w1")

    assert store.fail(job.id, owner="w1", error="boom", retry_in=30) is True
    delayed = store.get(job.id)
    assert delayed is not None
    assert delayed.state is JobState.DELAYED
    assert delayed.last_error == "boom"

    clock.advance(30)
    store.lease_next("catalog-sync", owner="w1")
    assert store.fail(job.id, owner="w1", error="boom again") is True

    failed = store.get(job.id)
    assert failed is not None
    assert failed.state is JobState.FAILED
    assert failed.attempts == 2
    assert failed.finished_at == clock.current


def test_requeue_failed_resets_attempts(clock: FakeClock) -> None:
    store = _store(clock)
    job = store.enqueue("setlist-sync", {}, max_attempts=1)
    store.lease_next("setlist-sync", owner="w1")
    store.fail(job.id, owner="w1", error="nope")

    assert store.requeue_failed("setlist-sync", [job.id]) == 1
    record = store.get(job.id)
    assert record is not None
    assert record.state is JobState.WAITING
    assert record.attempts == 0
    assert store.requeue_failed("setlist-sync", []) == 0


def test_purge_expired_honours_retention(clock: FakeClock) -> None:
    store = _store(clock)
    done = store.enqueue("import-finalize", {})
    store.lease_next("import-finalize", owner="w1")
    store.complete(done.id, owner="w1")

    clock.advance(59)
    assert store.purge_expired("import-finalize") == 0
    clock.advance(1)
    assert store.purge_expired("import-finalize") == 1
    assert store.get(done.id) is None


def test_counts_and_listing(clock: FakeClock) -> None:
    store = _store(clock)
    store.enqueue("profile-sync", {"n": 1})
    store.enqueue("profile-sync", {"n": 2}, delay_seconds=10)
    store.enqueue("catalog-sync", {"n": 3})

    counts = store.counts("profile-sync")

    assert counts["waiting"] == 1
    assert counts["delayed"] == 1
    assert counts["total"] == 2
    delayed = store.list_jobs("profile-sync", state="delayed")
    assert [job.payload for job in delayed] == [{"n": 2}]
    assert store.list_jobs("profile-sync", limit=1)[0].payload == {"n": 2}
