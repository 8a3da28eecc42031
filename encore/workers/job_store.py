"""Persistence layer of the named job queues backed by the ``queue_jobs`` table."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from contextlib import AbstractContextManager
from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
import threading
from typing import Any

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.orm import Session

from encore.db import SessionFactory, session_scope
from encore.logging import get_logger
from encore.logging_events import log_event
from encore.models import JobState, QueueJob
from encore.utils.priority import JobPriority, parse_priority
from encore.utils.time import Clock, utcnow_naive

logger = get_logger(__name__)


DEFAULT_RETENTION_COMPLETED_S = 3600
DEFAULT_RETENTION_FAILED_S = 86_400
ABANDONED_ERROR = "lease expired after final attempt"
_MAX_ERROR_LENGTH = 2000
_LEASE_CANDIDATES = 8

_OPEN_STATES = (JobState.WAITING.value, JobState.DELAYED.value, JobState.ACTIVE.value)
_TERMINAL_STATES = (JobState.COMPLETED.value, JobState.FAILED.value)


@dataclass(slots=True)
class JobRecord:
    """Detached snapshot of a queue job."""

    id: int
    queue: str
    state: JobState
    payload: dict[str, Any]
    priority: int
    attempts: int
    max_attempts: int
    progress: float
    delay_until: datetime | None
    lease_owner: str | None
    lease_expires_at: datetime | None
    dedup_key: str | None
    last_error: str | None
    result: dict[str, Any] | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    remove_after: datetime | None = None
    deduped: bool = False

    @property
    def attempts_left(self) -> int:
        return max(0, self.max_attempts - self.attempts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "queue": self.queue,
            "state": self.state.value,
            "priority": self.priority,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "progress": self.progress,
            "delay_until": _isoformat(self.delay_until),
            "lease_owner": self.lease_owner,
            "lease_expires_at": _isoformat(self.lease_expires_at),
            "dedup_key": self.dedup_key,
            "last_error": self.last_error,
            "payload": dict(self.payload),
            "result": dict(self.result) if self.result is not None else None,
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
            "started_at": _isoformat(self.started_at),
            "finished_at": _isoformat(self.finished_at),
        }


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _to_record(row: QueueJob, *, deduped: bool = False) -> JobRecord:
    return JobRecord(
        id=int(row.id),
        queue=str(row.queue),
        state=JobState(row.state),
        payload=dict(row.payload or {}),
        priority=int(row.priority),
        attempts=int(row.attempts or 0),
        max_attempts=int(row.max_attempts or 1),
        progress=float(row.progress or 0.0),
        delay_until=row.delay_until,
        lease_owner=row.lease_owner,
        lease_expires_at=row.lease_expires_at,
        dedup_key=row.dedup_key,
        last_error=row.last_error,
        result=dict(row.result) if row.result is not None else None,
        created_at=row.created_at,
        updated_at=row.updated_at,
        started_at=row.started_at,
        finished_at=row.finished_at,
        remove_after=row.remove_after,
        deduped=deduped,
    )


def _truncate_error(message: str | None) -> str | None:
    if message is None:
        return None
    if len(message) <= _MAX_ERROR_LENGTH:
        return message
    return message[: _MAX_ERROR_LENGTH - 3] + "..."


def _emit_job_event(job: JobRecord, status: str, *, level: int = logging.INFO, **extra: Any) -> None:
    payload: dict[str, Any] = {
        "component": "queue.job_store",
        "job_id": job.id,
        "queue": job.queue,
        "status": status,
        "attempts": job.attempts,
        "priority": job.priority,
    }
    payload.update({key: value for key, value in extra.items() if value is not None})
    log_event(logger, "queue.job", level=level, **payload)


class JobStore:
    """Durable job queue operations.

    Every state transition is a conditional ``UPDATE`` whose ``WHERE`` clause
    encodes the expected prior state (and lease owner where relevant); a
    transition that matched no row lost a race and reports ``False``.
    Timestamps are computed from ``clock`` so the store behaves identically on
    SQLite and PostgreSQL and can be driven by a fake clock in tests.
    """

    def __init__(
        self,
        *,
        clock: Clock = utcnow_naive,
        session_factory: SessionFactory = session_scope,
        retention_completed_seconds: int = DEFAULT_RETENTION_COMPLETED_S,
        retention_failed_seconds: int = DEFAULT_RETENTION_FAILED_S,
    ) -> None:
        self._clock = clock
        self._session_factory = session_factory
        self.retention_completed = timedelta(seconds=max(0, retention_completed_seconds))
        self.retention_failed = timedelta(seconds=max(0, retention_failed_seconds))
        self._enqueue_lock = threading.Lock()

    def now(self) -> datetime:
        return self._clock()

    def _session(self) -> AbstractContextManager[Session]:
        return self._session_factory()

    # enqueue -----------------------------------------------------------------

    def enqueue(
        self,
        queue: str,
        payload: Mapping[str, Any],
        *,
        priority: JobPriority | int | None = None,
        delay_seconds: float = 0.0,
        max_attempts: int = 3,
        dedup_key: str | None = None,
    ) -> JobRecord:
        """Append a job; an open job with the same ``dedup_key`` is returned instead."""

        resolved_priority = int(parse_priority(priority))
        now = self._clock()
        delay = max(0.0, float(delay_seconds or 0.0))
        with self._enqueue_lock, self._session() as session:
            if dedup_key:
                existing = (
                    session.execute(
                        select(QueueJob)
                        .where(
                            QueueJob.queue == queue,
                            QueueJob.dedup_key == dedup_key,
                            QueueJob.state.in_(_OPEN_STATES),
                        )
                        .order_by(QueueJob.id.asc())
                        .limit(1)
                    )
                    .scalars()
                    .first()
                )
                if existing is not None:
                    record = _to_record(existing, deduped=True)
                    _emit_job_event(record, "deduped", level=logging.DEBUG)
                    return record

            job = QueueJob(
                queue=queue,
                state=JobState.DELAYED.value if delay > 0 else JobState.WAITING.value,
                payload=dict(payload),
                priority=resolved_priority,
                attempts=0,
                max_attempts=max(1, int(max_attempts)),
                progress=0.0,
                delay_until=now + timedelta(seconds=delay) if delay > 0 else None,
                dedup_key=dedup_key,
                created_at=now,
                updated_at=now,
            )
            session.add(job)
            session.flush()
            record = _to_record(job)
        _emit_job_event(record, "enqueued", delay_ms=int(delay * 1000) or None)
        return record

    # leasing -----------------------------------------------------------------

    def _eligible_clause(self, now: datetime):
        return or_(
            QueueJob.state == JobState.WAITING.value,
            and_(
                QueueJob.state == JobState.DELAYED.value,
                or_(QueueJob.delay_until.is_(None), QueueJob.delay_until <= now),
            ),
            and_(
                QueueJob.state == JobState.ACTIVE.value,
                QueueJob.lease_expires_at.is_not(None),
                QueueJob.lease_expires_at <= now,
                QueueJob.attempts < QueueJob.max_attempts,
            ),
        )

    def reap_abandoned(self, queue: str) -> list[JobRecord]:
        """Fail active jobs whose lease expired after their final attempt.

        Returns the jobs this call moved to ``failed`` so the caller can run
        its exhaustion handling for them.
        """

        now = self._clock()
        reaped: list[JobRecord] = []
        with self._session() as session:
            abandoned = (
                session.execute(
                    select(QueueJob).where(
                        QueueJob.queue == queue,
                        QueueJob.state == JobState.ACTIVE.value,
                        QueueJob.lease_expires_at.is_not(None),
                        QueueJob.lease_expires_at <= now,
                        QueueJob.attempts >= QueueJob.max_attempts,
                    )
                )
                .scalars()
                .all()
            )
            for job in abandoned:
                result = session.execute(
                    update(QueueJob)
                    .where(
                        QueueJob.id == job.id,
                        QueueJob.state == JobState.ACTIVE.value,
                        QueueJob.lease_expires_at <= now,
                    )
                    .values(
                        state=JobState.FAILED.value,
                        lease_owner=None,
                        lease_expires_at=None,
                        last_error=job.last_error or ABANDONED_ERROR,
                        finished_at=now,
                        updated_at=now,
                        remove_after=now + self.retention_failed,
                    )
                )
                if result.rowcount:
                    session.refresh(job)
                    record = _to_record(job)
                    _emit_job_event(record, "abandoned", level=logging.WARNING)
                    reaped.append(record)
        return reaped

    def lease_next(self, queue: str, *, owner: str, lease_seconds: float = 60.0) -> JobRecord | None:
        """Lease the best eligible job of ``queue`` for ``owner``.

        Candidates are ordered by priority, eligible time and id. Each is
        claimed with a conditional update; losing a race moves on to the next
        candidate.
        """

        now = self._clock()
        lease_until = now + timedelta(seconds=max(1.0, float(lease_seconds)))
        with self._session() as session:
            eligible_at = func.coalesce(QueueJob.delay_until, QueueJob.created_at)
            candidate_ids = (
                session.execute(
                    select(QueueJob.id)
                    .where(QueueJob.queue == queue, self._eligible_clause(now))
                    .order_by(QueueJob.priority.asc(), eligible_at.asc(), QueueJob.id.asc())
                    .limit(_LEASE_CANDIDATES)
                )
                .scalars()
                .all()
            )
            for job_id in candidate_ids:
                result = session.execute(
                    update(QueueJob)
                    .where(QueueJob.id == job_id, self._eligible_clause(now))
                    .values(
                        state=JobState.ACTIVE.value,
                        attempts=QueueJob.attempts + 1,
                        lease_owner=owner,
                        lease_expires_at=lease_until,
                        delay_until=None,
                        started_at=func.coalesce(QueueJob.started_at, now),
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    continue
                job = session.get(QueueJob, job_id)
                if job is None:
                    continue
                session.refresh(job)
                record = _to_record(job)
                _emit_job_event(
                    record, "leased", level=logging.DEBUG, owner=owner, lease_s=lease_seconds
                )
                return record
        return None

    def heartbeat(self, job_id: int, *, owner: str, lease_seconds: float = 60.0) -> bool:
        now = self._clock()
        with self._session() as session:
            result = session.execute(
                update(QueueJob)
                .where(
                    QueueJob.id == job_id,
                    QueueJob.state == JobState.ACTIVE.value,
                    QueueJob.lease_owner == owner,
                )
                .values(
                    lease_expires_at=now + timedelta(seconds=max(1.0, float(lease_seconds))),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            return bool(result.rowcount)

    def update_progress(self, job_id: int, *, owner: str, progress: float) -> bool:
        value = max(0.0, min(100.0, float(progress)))
        with self._session() as session:
            result = session.execute(
                update(QueueJob)
                .where(
                    QueueJob.id == job_id,
                    QueueJob.state == JobState.ACTIVE.value,
                    QueueJob.lease_owner == owner,
                )
                .values(progress=value, updated_at=self._clock())
                .execution_options(synchronize_session=False)
            )
            return bool(result.rowcount)

    # outcomes ----------------------------------------------------------------

    def complete(
        self,
        job_id: int,
        *,
        owner: str,
        result: Mapping[str, Any] | None = None,
        keep_seconds: float | None = None,
    ) -> bool:
        now = self._clock()
        retention = (
            timedelta(seconds=max(0.0, keep_seconds))
            if keep_seconds is not None
            else self.retention_completed
        )
        with self._session() as session:
            outcome = session.execute(
                update(QueueJob)
                .where(
                    QueueJob.id == job_id,
                    QueueJob.state == JobState.ACTIVE.value,
                    QueueJob.lease_owner == owner,
                )
                .values(
                    state=JobState.COMPLETED.value,
                    progress=100.0,
                    result=dict(result) if result is not None else None,
                    last_error=None,
                    lease_owner=None,
                    lease_expires_at=None,
                    finished_at=now,
                    updated_at=now,
                    remove_after=now + retention,
                )
                .execution_options(synchronize_session=False)
            )
            if not outcome.rowcount:
                return False
            job = session.get(QueueJob, job_id)
            record = _to_record(job) if job is not None else None
        if record is not None:
            _emit_job_event(record, "completed")
        return True

    def fail(
        self,
        job_id: int,
        *,
        owner: str,
        error: str | None,
        retry_in: float | None = None,
        keep_seconds: float | None = None,
    ) -> bool:
        """Reschedule the job after ``retry_in`` seconds or fail it permanently."""

        now = self._clock()
        retention = (
            timedelta(seconds=max(0.0, keep_seconds))
            if keep_seconds is not None
            else self.retention_failed
        )
        values: dict[str, Any] = {
            "last_error": _truncate_error(error),
            "lease_owner": None,
            "lease_expires_at": None,
            "updated_at": now,
        }
        if retry_in is not None:
            values["state"] = JobState.DELAYED.value
            values["delay_until"] = now + timedelta(seconds=max(0.0, float(retry_in)))
        else:
            values["state"] = JobState.FAILED.value
            values["finished_at"] = now
            values["remove_after"] = now + retention
        with self._session() as session:
            outcome = session.execute(
                update(QueueJob)
                .where(
                    QueueJob.id == job_id,
                    QueueJob.state == JobState.ACTIVE.value,
                    QueueJob.lease_owner == owner,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if not outcome.rowcount:
                return False
            job = session.get(QueueJob, job_id)
            record = _to_record(job) if job is not None else None
        if record is not None:
            status = "retry_scheduled" if retry_in is not None else "failed"
            _emit_job_event(
                record,
                status,
                level=logging.WARNING if retry_in is None else logging.INFO,
                retry_in_ms=int(retry_in * 1000) if retry_in is not None else None,
                error=record.last_error,
            )
        return True

    def mark_failed(self, job_id: int, reason: str) -> bool:
        """Fail a job that has not finished yet, regardless of its lease."""

        now = self._clock()
        with self._session() as session:
            outcome = session.execute(
                update(QueueJob)
                .where(QueueJob.id == job_id, QueueJob.state.in_(_OPEN_STATES))
                .values(
                    state=JobState.FAILED.value,
                    last_error=_truncate_error(reason),
                    lease_owner=None,
                    lease_expires_at=None,
                    finished_at=now,
                    updated_at=now,
                    remove_after=now + self.retention_failed,
                )
                .execution_options(synchronize_session=False)
            )
            if not outcome.rowcount:
                return False
            job = session.get(QueueJob, job_id)
            record = _to_record(job) if job is not None else None
        if record is not None:
            _emit_job_event(record, "cancelled", level=logging.WARNING, error=reason)
        return True

    def requeue_failed(self, queue: str, job_ids: Sequence[int] | None = None) -> int:
        """Move failed jobs back to ``waiting`` with a fresh attempt budget."""

        now = self._clock()
        conditions = [QueueJob.queue == queue, QueueJob.state == JobState.FAILED.value]
        if job_ids is not None:
            if not job_ids:
                return 0
            conditions.append(QueueJob.id.in_([int(job_id) for job_id in job_ids]))
        with self._session() as session:
            outcome = session.execute(
                update(QueueJob)
                .where(*conditions)
                .values(
                    state=JobState.WAITING.value,
                    attempts=0,
                    progress=0.0,
                    delay_until=None,
                    finished_at=None,
                    remove_after=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            count = int(outcome.rowcount or 0)
        log_event(
            logger,
            "queue.job",
            component="queue.job_store",
            queue=queue,
            status="requeued",
            count=count,
        )
        return count

    def purge_expired(self, queue: str | None = None) -> int:
        """Delete completed and failed jobs whose retention elapsed."""

        now = self._clock()
        conditions = [
            QueueJob.state.in_(_TERMINAL_STATES),
            QueueJob.remove_after.is_not(None),
            QueueJob.remove_after <= now,
        ]
        if queue is not None:
            conditions.append(QueueJob.queue == queue)
        with self._session() as session:
            outcome = session.execute(
                delete(QueueJob).where(*conditions).execution_options(synchronize_session=False)
            )
            count = int(outcome.rowcount or 0)
        if count:
            log_event(
                logger,
                "queue.job",
                level=logging.DEBUG,
                component="queue.job_store",
                queue=queue,
                status="purged",
                count=count,
            )
        return count

    # introspection -----------------------------------------------------------

    def get(self, job_id: int) -> JobRecord | None:
        with self._session() as session:
            job = session.get(QueueJob, job_id)
            return _to_record(job) if job is not None else None

    def list_jobs(
        self, queue: str, *, state: JobState | str | None = None, limit: int = 50
    ) -> list[JobRecord]:
        stmt = select(QueueJob).where(QueueJob.queue == queue)
        if state is not None:
            stmt = stmt.where(QueueJob.state == JobState(state).value)
        stmt = stmt.order_by(QueueJob.id.desc()).limit(max(1, int(limit)))
        with self._session() as session:
            return [_to_record(job) for job in session.execute(stmt).scalars().all()]

    def counts(self, queue: str) -> dict[str, int]:
        counts = {state.value: 0 for state in JobState}
        with self._session() as session:
            rows = session.execute(
                select(QueueJob.state, func.count())
                .where(QueueJob.queue == queue)
                .group_by(QueueJob.state)
            ).all()
        for state, count in rows:
            counts[str(state)] = int(count)
        counts["total"] = sum(counts[state.value] for state in JobState)
        return counts


__all__ = [
    "ABANDONED_ERROR",
    "DEFAULT_RETENTION_COMPLETED_S",
    "DEFAULT_RETENTION_FAILED_S",
    "JobRecord",
    "JobStore",
]
