"""Database models for Encore.

All timestamps are stored as naive UTC datetimes.
"""

from __future__ import annotations

from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from encore.db import Base
from encore.utils.time import utcnow_naive


class JobState(str, Enum):
    """Lifecycle states of queue jobs."""

    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class ImportStage(str, Enum):
    INITIALIZING = "initializing"
    SYNCING_IDENTIFIERS = "syncing-identifiers"
    IMPORTING_SHOWS = "importing-shows"
    IMPORTING_SONGS = "importing-songs"
    CREATING_SETLISTS = "creating-setlists"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {ImportStage.COMPLETED, ImportStage.FAILED}


class ShowStatus(str, Enum):
    UPCOMING = "upcoming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class QueueJob(Base):
    __tablename__ = "queue_jobs"
    __table_args__ = (
        CheckConstraint("priority BETWEEN 1 AND 5", name="ck_queue_jobs_priority_range"),
        CheckConstraint("attempts >= 0", name="ck_queue_jobs_attempts_non_negative"),
        CheckConstraint(
            "state IN ('waiting','delayed','active','completed','failed')",
            name="ck_queue_jobs_state_valid",
        ),
        Index("ix_queue_jobs_queue_state_priority", "queue", "state", "priority", "delay_until"),
        Index("ix_queue_jobs_lease_expires_at", "lease_expires_at"),
        Index("ix_queue_jobs_queue_dedup_key", "queue", "dedup_key"),
        Index("ix_queue_jobs_remove_after", "remove_after"),
    )

    id = Column(Integer, primary_key=True, index=True)
    queue = Column(String(64), nullable=False, index=True)
    state = Column(String(16), nullable=False, default=JobState.WAITING.value)
    payload = Column("payload_json", JSON, nullable=False, default=dict)
    priority = Column(Integer, nullable=False, default=3)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    progress = Column(Float, nullable=False, default=0.0)
    delay_until = Column(DateTime, nullable=True)
    lease_owner = Column(String(128), nullable=True)
    lease_expires_at = Column(DateTime, nullable=True)
    dedup_key = Column(String(128), nullable=True)
    last_error = Column(Text, nullable=True)
    result = Column("result_json", JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow_naive)
    updated_at = Column(DateTime, nullable=False, default=utcnow_naive, onupdate=utcnow_naive)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    remove_after = Column(DateTime, nullable=True)


class ImportStatusRecord(Base):
    __tablename__ = "import_status"
    __table_args__ = (
        CheckConstraint("progress BETWEEN 0 AND 100", name="ck_import_status_progress_range"),
    )

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String(128), nullable=False, unique=True)
    run_id = Column(String(64), nullable=False)
    artist_id = Column(Integer, ForeignKey("artists.id", ondelete="CASCADE"), nullable=True)
    artist_name = Column(String(512), nullable=True)
    job_id = Column(Integer, nullable=True)
    stage = Column(String(32), nullable=False, default=ImportStage.INITIALIZING.value)
    progress = Column(Integer, nullable=False, default=0)
    message = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    total_songs = Column(Integer, nullable=True)
    total_shows = Column(Integer, nullable=True)
    total_venues = Column(Integer, nullable=True)
    catalog_done = Column(Boolean, nullable=False, default=False)
    events_done = Column(Boolean, nullable=False, default=False)
    finalize_claimed = Column(Boolean, nullable=False, default=False)
    phase_timings = Column(JSON, nullable=False, default=dict)
    started_at = Column(DateTime, nullable=False, default=utcnow_naive)
    completed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow_naive, onupdate=utcnow_naive)


class Artist(Base):
    __tablename__ = "artists"

    id = Column(Integer, primary_key=True, index=True)
    tm_attraction_id = Column(String(64), nullable=True, unique=True)
    spotify_id = Column(String(64), nullable=True, unique=True)
    mbid = Column(String(64), nullable=True, unique=True)
    name = Column(String(512), nullable=False)
    slug = Column(String(255), nullable=False, unique=True)
    image_url = Column(Text, nullable=True)
    small_image_url = Column(Text, nullable=True)
    genres = Column(JSON, nullable=True)
    popularity = Column(Integer, nullable=True)
    followers = Column(Integer, nullable=True)
    external_urls = Column(JSON, nullable=True)
    verified = Column(Boolean, nullable=False, default=False)
    import_status = Column(String(32), nullable=False, default="pending")
    total_songs = Column(Integer, nullable=False, default=0)
    total_albums = Column(Integer, nullable=False, default=0)
    total_shows = Column(Integer, nullable=False, default=0)
    upcoming_shows = Column(Integer, nullable=False, default=0)
    last_synced_at = Column(DateTime, nullable=True)
    song_catalog_synced_at = Column(DateTime, nullable=True)
    shows_synced_at = Column(DateTime, nullable=True)
    last_full_sync_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow_naive)
    updated_at = Column(DateTime, nullable=False, default=utcnow_naive, onupdate=utcnow_naive)


class Venue(Base):
    __tablename__ = "venues"

    id = Column(Integer, primary_key=True, index=True)
    tm_venue_id = Column(String(64), nullable=True, unique=True)
    setlistfm_id = Column(String(64), nullable=True, unique=True)
    name = Column(String(512), nullable=False)
    slug = Column(String(255), nullable=True)
    city = Column(String(255), nullable=True)
    state = Column(String(64), nullable=True)
    country = Column(String(64), nullable=True)
    timezone = Column(String(64), nullable=True)
    address = Column(Text, nullable=True)
    postal_code = Column(String(32), nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    capacity = Column(Integer, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow_naive)
    updated_at = Column(DateTime, nullable=False, default=utcnow_naive, onupdate=utcnow_naive)


class Show(Base):
    __tablename__ = "shows"
    __table_args__ = (
        Index("ix_shows_headliner_date", "headliner_artist_id", "date"),
        Index("ix_shows_venue_id", "venue_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tm_event_id = Column(String(64), nullable=True, unique=True)
    setlistfm_id = Column(String(64), nullable=True, unique=True)
    name = Column(String(512), nullable=False)
    slug = Column(String(255), nullable=True)
    date = Column(Date, nullable=True)
    start_time = Column(String(16), nullable=True)
    status = Column(String(16), nullable=False, default=ShowStatus.UPCOMING.value)
    venue_id = Column(Integer, ForeignKey("venues.id", ondelete="SET NULL"), nullable=True)
    headliner_artist_id = Column(
        Integer, ForeignKey("artists.id", ondelete="SET NULL"), nullable=True
    )
    ticket_url = Column(Text, nullable=True)
    min_price = Column(Float, nullable=True)
    max_price = Column(Float, nullable=True)
    currency = Column(String(8), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow_naive)
    updated_at = Column(DateTime, nullable=False, default=utcnow_naive, onupdate=utcnow_naive)


class ArtistShow(Base):
    __tablename__ = "artist_shows"

    artist_id = Column(Integer, ForeignKey("artists.id", ondelete="CASCADE"), primary_key=True)
    show_id = Column(Integer, ForeignKey("shows.id", ondelete="CASCADE"), primary_key=True)
    is_headliner = Column(Boolean, nullable=False, default=False)
    order_index = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow_naive)


class Album(Base):
    __tablename__ = "albums"

    id = Column(Integer, primary_key=True, index=True)
    spotify_id = Column(String(64), nullable=False, unique=True)
    artist_id = Column(
        Integer, ForeignKey("artists.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name = Column(String(512), nullable=False)
    album_type = Column(String(32), nullable=True)
    release_date = Column(String(16), nullable=True)
    total_tracks = Column(Integer, nullable=True)
    image_url = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow_naive)
    updated_at = Column(DateTime, nullable=False, default=utcnow_naive, onupdate=utcnow_naive)


class Song(Base):
    __tablename__ = "songs"

    id = Column(Integer, primary_key=True, index=True)
    spotify_id = Column(String(64), nullable=False, unique=True)
    name = Column(String(512), nullable=False)
    album_id = Column(Integer, ForeignKey("albums.id", ondelete="SET NULL"), nullable=True)
    album_name = Column(String(512), nullable=True)
    track_number = Column(Integer, nullable=True)
    disc_number = Column(Integer, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    popularity = Column(Integer, nullable=True)
    preview_url = Column(Text, nullable=True)
    is_explicit = Column(Boolean, nullable=True)
    is_live = Column(Boolean, nullable=True)
    is_remix = Column(Boolean, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow_naive)
    updated_at = Column(DateTime, nullable=False, default=utcnow_naive, onupdate=utcnow_naive)


class ArtistSong(Base):
    __tablename__ = "artist_songs"

    artist_id = Column(Integer, ForeignKey("artists.id", ondelete="CASCADE"), primary_key=True)
    song_id = Column(Integer, ForeignKey("songs.id", ondelete="CASCADE"), primary_key=True)
    is_primary_artist = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow_naive)


class Setlist(Base):
    __tablename__ = "setlists"
    __table_args__ = (Index("ix_setlists_show_id", "show_id"),)

    id = Column(Integer, primary_key=True, index=True)
    show_id = Column(Integer, ForeignKey("shows.id", ondelete="CASCADE"), nullable=False)
    artist_id = Column(Integer, ForeignKey("artists.id", ondelete="CASCADE"), nullable=False)
    kind = Column(String(16), nullable=False, default="predicted")
    name = Column(String(512), nullable=False)
    source = Column(String(32), nullable=False, default="auto-generated")
    setlistfm_id = Column(String(64), nullable=True, unique=True)
    created_at = Column(DateTime, nullable=False, default=utcnow_naive)


class SetlistSong(Base):
    __tablename__ = "setlist_songs"
    __table_args__ = (
        UniqueConstraint("setlist_id", "position", name="uq_setlist_songs_position"),
    )

    id = Column(Integer, primary_key=True, index=True)
    setlist_id = Column(
        Integer, ForeignKey("setlists.id", ondelete="CASCADE"), nullable=False, index=True
    )
    song_id = Column(Integer, ForeignKey("songs.id", ondelete="SET NULL"), nullable=True)
    title = Column(String(512), nullable=False)
    position = Column(Integer, nullable=False)


__all__ = [
    "Album",
    "Artist",
    "ArtistShow",
    "ArtistSong",
    "ImportStage",
    "ImportStatusRecord",
    "JobState",
    "QueueJob",
    "Setlist",
    "SetlistSong",
    "Show",
    "ShowStatus",
    "Song",
    "Venue",
]
