"""Persistent progress of artist import runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
from typing import Any, Literal
import uuid

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from encore.db import SessionFactory, session_scope
from encore.logging import get_logger
from encore.logging_events import log_event
from encore.models import Artist, ImportStage, ImportStatusRecord
from encore.utils.time import Clock, utcnow_naive

logger = get_logger(__name__)

StageFlag = Literal["catalog", "events"]

_TERMINAL_VALUES = (ImportStage.COMPLETED.value, ImportStage.FAILED.value)


@dataclass(slots=True, frozen=True)
class ImportStatusSnapshot:
    key: str
    run_id: str
    stage: ImportStage
    progress: int
    artist_id: int | None = None
    artist_name: str | None = None
    job_id: int | None = None
    message: str | None = None
    error: str | None = None
    total_songs: int | None = None
    total_shows: int | None = None
    total_venues: int | None = None
    catalog_done: bool = False
    events_done: bool = False
    phase_timings: dict[str, float] = field(default_factory=dict)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.stage.is_terminal

    def estimated_seconds_remaining(self, now: datetime) -> float | None:
        """Linear extrapolation of the elapsed time; ``None`` when unknown."""

        if self.is_terminal or self.started_at is None or self.progress <= 0:
            return None
        elapsed = max(0.0, (now - self.started_at).total_seconds())
        total = elapsed / (self.progress / 100.0)
        return round(max(0.0, total - elapsed), 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "run_id": self.run_id,
            "artist_id": self.artist_id,
            "artist_name": self.artist_name,
            "job_id": self.job_id,
            "stage": self.stage.value,
            "progress": self.progress,
            "message": self.message,
            "error": self.error,
            "totals": {
                "songs": self.total_songs,
                "shows": self.total_shows,
                "venues": self.total_venues,
            },
            "catalog_done": self.catalog_done,
            "events_done": self.events_done,
            "phase_timings": dict(self.phase_timings),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


def _snapshot(record: ImportStatusRecord) -> ImportStatusSnapshot:
    return ImportStatusSnapshot(
        key=record.key,
        run_id=record.run_id,
        stage=ImportStage(record.stage),
        progress=int(record.progress or 0),
        artist_id=record.artist_id,
        artist_name=record.artist_name,
        job_id=record.job_id,
        message=record.message,
        error=record.error,
        total_songs=record.total_songs,
        total_shows=record.total_shows,
        total_venues=record.total_venues,
        catalog_done=bool(record.catalog_done),
        events_done=bool(record.events_done),
        phase_timings=dict(record.phase_timings or {}),
        started_at=record.started_at,
        completed_at=record.completed_at,
        updated_at=record.updated_at,
    )


def _clamp(percent: float) -> int:
    return max(0, min(100, int(round(percent))))


class ProgressTracker:
    """Records stage and percentage of import runs in ``import_status``.

    Within one run the percentage never decreases and nothing changes once
    the run reached ``completed`` or ``failed``. Updates carrying the
    ``run_id`` of a superseded run are ignored.
    """

    def __init__(
        self,
        *,
        session_factory: SessionFactory = session_scope,
        clock: Clock = utcnow_naive,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def _load(self, session: Session, key: str) -> ImportStatusRecord | None:
        return session.execute(
            select(ImportStatusRecord).where(ImportStatusRecord.key == key)
        ).scalars().first()

    def start(
        self,
        key: str,
        *,
        artist_id: int | None = None,
        artist_name: str | None = None,
        job_id: int | None = None,
    ) -> ImportStatusSnapshot:
        """Begin a new run for ``key``, superseding any previous one."""

        run_id = uuid.uuid4().hex
        now = self.now()
        values = {
            "run_id": run_id,
            "artist_id": artist_id,
            "artist_name": artist_name,
            "job_id": job_id,
            "stage": ImportStage.INITIALIZING.value,
            "progress": 0,
            "message": "Import queued",
            "error": None,
            "total_songs": None,
            "total_shows": None,
            "total_venues": None,
            "catalog_done": False,
            "events_done": False,
            "finalize_claimed": False,
            "phase_timings": {ImportStage.INITIALIZING.value: 0.0},
            "started_at": now,
            "completed_at": None,
            "updated_at": now,
        }
        try:
            with self._session_factory() as session:
                record = self._load(session, key)
                if record is None:
                    record = ImportStatusRecord(key=key, **values)
                    session.add(record)
                else:
                    for name, value in values.items():
                        setattr(record, name, value)
                session.flush()
                snapshot = _snapshot(record)
        except IntegrityError:
            # A concurrent start inserted the row first; take it over.
            with self._session_factory() as session:
                record = self._load(session, key)
                if record is None:
                    raise
                for name, value in values.items():
                    setattr(record, name, value)
                snapshot = _snapshot(record)
        log_event(
            logger,
            "import.stage",
            component="progress_tracker",
            key=key,
            run_id=run_id,
            stage=snapshot.stage.value,
            status="started",
        )
        return snapshot

    def attach_job(self, key: str, job_id: int, *, run_id: str | None = None) -> None:
        stmt = update(ImportStatusRecord).where(ImportStatusRecord.key == key)
        if run_id is not None:
            stmt = stmt.where(ImportStatusRecord.run_id == run_id)
        with self._session_factory() as session:
            session.execute(stmt.values(job_id=job_id).execution_options(synchronize_session=False))

    def report_progress(
        self,
        key: str,
        stage: ImportStage | str,
        percent: float,
        message: str | None = None,
        *,
        run_id: str | None = None,
        artist_name: str | None = None,
    ) -> ImportStatusSnapshot | None:
        """Record progress; returns the new snapshot or ``None`` when ignored."""

        target = ImportStage(stage)
        with self._session_factory() as session:
            record = self._load(session, key)
            if record is None:
                return None
            if run_id is not None and record.run_id != run_id:
                self._log_ignored(key, target, reason="stale_run")
                return None
            if ImportStage(record.stage).is_terminal:
                self._log_ignored(key, target, reason="terminal")
                return None

            now = self.now()
            previous = record.stage
            record.progress = max(int(record.progress or 0), _clamp(percent))
            record.stage = target.value
            if message is not None:
                record.message = message
            if artist_name:
                record.artist_name = artist_name
            if target is ImportStage.FAILED:
                record.error = message
            if target.is_terminal:
                record.completed_at = now
            if previous != target.value:
                timings = dict(record.phase_timings or {})
                if target.value not in timings and record.started_at is not None:
                    timings[target.value] = round(
                        (now - record.started_at).total_seconds(), 3
                    )
                record.phase_timings = timings
            record.updated_at = now
            snapshot = _snapshot(record)

        log_event(
            logger,
            "import.progress",
            level=logging.DEBUG,
            component="progress_tracker",
            key=key,
            run_id=snapshot.run_id,
            stage=snapshot.stage.value,
            progress=snapshot.progress,
            detail=message,
        )
        if previous != snapshot.stage.value:
            log_event(
                logger,
                "import.stage",
                component="progress_tracker",
                key=key,
                run_id=snapshot.run_id,
                stage=snapshot.stage.value,
                previous=previous,
                progress=snapshot.progress,
            )
        return snapshot

    def mark_failed(
        self, key: str, error: str, *, run_id: str | None = None
    ) -> ImportStatusSnapshot | None:
        snapshot = self.report_progress(
            key, ImportStage.FAILED, 0, f"Import failed: {error}", run_id=run_id
        )
        if snapshot is None:
            return None
        with self._session_factory() as session:
            record = self._load(session, key)
            if record is not None:
                record.error = error
            if snapshot.artist_id is not None:
                artist = session.get(Artist, snapshot.artist_id)
                if artist is not None:
                    artist.import_status = "failed"
        return self.get(key)

    def record_totals(
        self,
        key: str,
        *,
        songs: int | None = None,
        shows: int | None = None,
        venues: int | None = None,
        run_id: str | None = None,
    ) -> None:
        values = {
            name: value
            for name, value in (
                ("total_songs", songs),
                ("total_shows", shows),
                ("total_venues", venues),
            )
            if value is not None
        }
        if not values:
            return
        stmt = update(ImportStatusRecord).where(
            ImportStatusRecord.key == key,
            ImportStatusRecord.stage.not_in(_TERMINAL_VALUES),
        )
        if run_id is not None:
            stmt = stmt.where(ImportStatusRecord.run_id == run_id)
        with self._session_factory() as session:
            session.execute(
                stmt.values(**values, updated_at=self.now()).execution_options(
                    synchronize_session=False
                )
            )

    def mark_stage_done(self, key: str, flag: StageFlag, *, run_id: str) -> bool:
        """Set the ``catalog``/``events`` flag of the run.

        Returns ``True`` for exactly one caller: the one whose update made
        both flags set and claimed the right to finalize the run.
        """

        column = {"catalog": "catalog_done", "events": "events_done"}[flag]
        now = self.now()
        with self._session_factory() as session:
            session.execute(
                update(ImportStatusRecord)
                .where(ImportStatusRecord.key == key, ImportStatusRecord.run_id == run_id)
                .values(**{column: True}, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            claimed = session.execute(
                update(ImportStatusRecord)
                .where(
                    ImportStatusRecord.key == key,
                    ImportStatusRecord.run_id == run_id,
                    ImportStatusRecord.catalog_done.is_(True),
                    ImportStatusRecord.events_done.is_(True),
                    ImportStatusRecord.finalize_claimed.is_(False),
                    ImportStatusRecord.stage.not_in(_TERMINAL_VALUES),
                )
                .values(finalize_claimed=True, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            won = claimed.rowcount == 1
        log_event(
            logger,
            "import.stage",
            component="progress_tracker",
            key=key,
            run_id=run_id,
            flag=flag,
            status="finalize_claimed" if won else "flag_set",
        )
        return won

    def get(self, key: str) -> ImportStatusSnapshot | None:
        with self._session_factory() as session:
            record = self._load(session, key)
            return _snapshot(record) if record is not None else None

    def get_by_job_id(self, job_id: int) -> ImportStatusSnapshot | None:
        """Return the run whose profile job is ``job_id``."""

        with self._session_factory() as session:
            record = session.execute(
                select(ImportStatusRecord)
                .where(ImportStatusRecord.job_id == job_id)
                .order_by(ImportStatusRecord.updated_at.desc())
            ).scalars().first()
            return _snapshot(record) if record is not None else None

    def active_run(
        self, key: str, *, stale_after: timedelta | None = None
    ) -> ImportStatusSnapshot | None:
        """Return the non-terminal run of ``key`` that is still alive, if any.

        With ``stale_after`` a run without updates for that long counts as
        abandoned.
        """

        snapshot = self.get(key)
        if snapshot is None or snapshot.is_terminal:
            return None
        if stale_after is not None and snapshot.updated_at is not None:
            if self.now() - snapshot.updated_at >= stale_after:
                return None
        return snapshot

    def active_imports(self, *, limit: int = 50) -> list[ImportStatusSnapshot]:
        with self._session_factory() as session:
            records = session.execute(
                select(ImportStatusRecord)
                .where(ImportStatusRecord.stage.not_in(_TERMINAL_VALUES))
                .order_by(ImportStatusRecord.started_at.desc())
                .limit(max(1, int(limit)))
            ).scalars()
            return [_snapshot(record) for record in records]

    def _log_ignored(self, key: str, stage: ImportStage, *, reason: str) -> None:
        log_event(
            logger,
            "import.progress",
            level=logging.DEBUG,
            component="progress_tracker",
            key=key,
            stage=stage.value,
            status="ignored",
            reason=reason,
        )


__all__ = ["ImportStatusSnapshot", "ProgressTracker", "StageFlag"]
