"""Idempotent persistence of harvested artists, venues, shows, albums and songs."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from contextlib import AbstractContextManager
from dataclasses import dataclass
from datetime import date
import logging
from typing import Any, TypeVar

from sqlalchemy import distinct, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from encore.db import Base, SessionFactory, session_scope
from encore.errors import StoreConflictError
from encore.logging import get_logger
from encore.logging_events import log_event
from encore.models import (
    Album,
    Artist,
    ArtistShow,
    ArtistSong,
    Setlist,
    SetlistSong,
    Show,
    ShowStatus,
    Song,
)
from encore.utils.normalize import slugify, title_key

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=Base)

_MAX_SLUG_LENGTH = 200


@dataclass(slots=True, frozen=True)
class UpsertOutcome:
    id: int
    created: bool


def _coalesce(row: Base, fields: Mapping[str, Any]) -> bool:
    """Apply every non-``None`` field to ``row``; return whether anything changed."""

    changed = False
    for key, value in fields.items():
        if value is None:
            continue
        if getattr(row, key) != value:
            setattr(row, key, value)
            changed = True
    return changed


def _non_null(fields: Mapping[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in fields.items() if value is not None}


class EntityStore:
    """Find and upsert entities keyed by their provider identifiers.

    A provider id maps to at most one row. Upserts coalesce: a ``None`` value
    never overwrites stored data. Inserts losing a unique-constraint race are
    resolved by re-reading the winner's row and updating it.
    """

    def __init__(self, *, session_factory: SessionFactory = session_scope) -> None:
        self._session_factory = session_factory

    def _session(self) -> AbstractContextManager[Session]:
        return self._session_factory()

    # generic lookups ---------------------------------------------------------

    def find_by_id(self, model: type[ModelT], entity_id: int) -> ModelT | None:
        with self._session() as session:
            return session.get(model, entity_id)

    def find_by_provider_id(
        self, model: type[ModelT], field: str, value: str
    ) -> ModelT | None:
        column = getattr(model, field)
        with self._session() as session:
            return session.execute(select(model).where(column == value)).scalars().first()

    # upserts -----------------------------------------------------------------

    def upsert_by_provider_id(
        self,
        model: type[ModelT],
        field: str,
        provider_id: str,
        fields: Mapping[str, Any],
    ) -> UpsertOutcome:
        if not provider_id:
            raise ValueError(f"{model.__tablename__}.{field} requires a provider id")
        column = getattr(model, field)
        with self._session() as session:
            existing = session.execute(select(model).where(column == provider_id)).scalars().first()
            if existing is not None:
                _coalesce(existing, fields)
                outcome = UpsertOutcome(id=int(existing.id), created=False)
        if existing is not None:
            self._log_upsert(model, outcome)
            return outcome

        try:
            with self._session() as session:
                row = model(**{field: provider_id}, **_non_null(fields))
                session.add(row)
                session.flush()
                outcome = UpsertOutcome(id=int(row.id), created=True)
        except IntegrityError as exc:
            outcome = self._resolve_conflict(model, field, provider_id, fields, exc)
        self._log_upsert(model, outcome)
        return outcome

    def insert_if_absent(
        self,
        model: type[ModelT],
        field: str,
        provider_id: str,
        fields: Mapping[str, Any],
    ) -> UpsertOutcome:
        """Return the existing row for ``provider_id`` untouched, or insert one."""

        existing = self.find_by_provider_id(model, field, provider_id)
        if existing is not None:
            return UpsertOutcome(id=int(existing.id), created=False)
        try:
            with self._session() as session:
                row = model(**{field: provider_id}, **_non_null(fields))
                session.add(row)
                session.flush()
                outcome = UpsertOutcome(id=int(row.id), created=True)
        except IntegrityError as exc:
            winner = self.find_by_provider_id(model, field, provider_id)
            if winner is None:
                raise StoreConflictError(model.__tablename__, field, provider_id) from exc
            outcome = UpsertOutcome(id=int(winner.id), created=False)
        self._log_upsert(model, outcome)
        return outcome

    def _resolve_conflict(
        self,
        model: type[ModelT],
        field: str,
        provider_id: str,
        fields: Mapping[str, Any],
        exc: IntegrityError,
    ) -> UpsertOutcome:
        column = getattr(model, field)
        with self._session() as session:
            winner = session.execute(select(model).where(column == provider_id)).scalars().first()
            if winner is None:
                raise StoreConflictError(model.__tablename__, field, provider_id) from exc
            _coalesce(winner, fields)
            return UpsertOutcome(id=int(winner.id), created=False)

    def _log_upsert(self, model: type[Base], outcome: UpsertOutcome) -> None:
        log_event(
            logger,
            "entity.upsert",
            level=logging.DEBUG,
            component="entity_store",
            entity=model.__tablename__,
            entity_id=outcome.id,
            status="created" if outcome.created else "updated",
        )

    def update_artist(self, artist_id: int, fields: Mapping[str, Any]) -> bool:
        with self._session() as session:
            artist = session.get(Artist, artist_id)
            if artist is None:
                return False
            return _coalesce(artist, fields)

    def unique_slug(self, value: str, *, exclude_id: int | None = None) -> str:
        """Return ``slugify(value)`` or the first free ``-<n>`` variant of it."""

        base = slugify(value)[:_MAX_SLUG_LENGTH] or "artist"
        stmt = select(Artist.slug).where((Artist.slug == base) | Artist.slug.like(f"{base}-%"))
        if exclude_id is not None:
            stmt = stmt.where(Artist.id != exclude_id)
        with self._session() as session:
            taken = set(session.execute(stmt).scalars())
        if base not in taken:
            return base
        suffix = 2
        while f"{base}-{suffix}" in taken:
            suffix += 1
        return f"{base}-{suffix}"

    # relationships -----------------------------------------------------------

    def _insert_link(self, row: Base, model: type[Base], key: Mapping[str, int]) -> bool:
        with self._session() as session:
            if session.get(model, tuple(key.values())) is not None:
                return False
        try:
            with self._session() as session:
                session.add(row)
        except IntegrityError:
            return False
        return True

    def link_artist_show(
        self,
        artist_id: int,
        show_id: int,
        *,
        is_headliner: bool = True,
        order_index: int = 0,
    ) -> bool:
        """Insert the junction row; an existing one is left untouched."""

        return self._insert_link(
            ArtistShow(
                artist_id=artist_id,
                show_id=show_id,
                is_headliner=is_headliner,
                order_index=order_index,
            ),
            ArtistShow,
            {"artist_id": artist_id, "show_id": show_id},
        )

    def link_artist_song(
        self, artist_id: int, song_id: int, *, is_primary_artist: bool = True
    ) -> bool:
        return self._insert_link(
            ArtistSong(artist_id=artist_id, song_id=song_id, is_primary_artist=is_primary_artist),
            ArtistSong,
            {"artist_id": artist_id, "song_id": song_id},
        )

    # aggregates --------------------------------------------------------------

    def artist_totals(self, artist_id: int, *, today: date) -> dict[str, int]:
        with self._session() as session:
            songs = session.execute(
                select(func.count()).select_from(ArtistSong).where(ArtistSong.artist_id == artist_id)
            ).scalar_one()
            albums = session.execute(
                select(func.count()).select_from(Album).where(Album.artist_id == artist_id)
            ).scalar_one()
            shows = session.execute(
                select(func.count()).select_from(ArtistShow).where(ArtistShow.artist_id == artist_id)
            ).scalar_one()
            upcoming = session.execute(
                select(func.count())
                .select_from(ArtistShow)
                .join(Show, Show.id == ArtistShow.show_id)
                .where(
                    ArtistShow.artist_id == artist_id,
                    Show.status == ShowStatus.UPCOMING.value,
                    Show.date >= today,
                )
            ).scalar_one()
            venues = session.execute(
                select(func.count(distinct(Show.venue_id)))
                .select_from(ArtistShow)
                .join(Show, Show.id == ArtistShow.show_id)
                .where(ArtistShow.artist_id == artist_id, Show.venue_id.is_not(None))
            ).scalar_one()
        return {
            "songs": int(songs or 0),
            "albums": int(albums or 0),
            "shows": int(shows or 0),
            "upcoming_shows": int(upcoming or 0),
            "venues": int(venues or 0),
        }

    def top_songs(self, artist_id: int, *, limit: int) -> list[tuple[int, str]]:
        """Return ``(song_id, name)`` ordered by popularity, most popular first."""

        with self._session() as session:
            rows = session.execute(
                select(Song.id, Song.name)
                .join(ArtistSong, ArtistSong.song_id == Song.id)
                .where(ArtistSong.artist_id == artist_id)
                .order_by(
                    func.coalesce(Song.popularity, -1).desc(),
                    Song.id.asc(),
                )
                .limit(max(0, int(limit)))
            ).all()
        return [(int(song_id), str(name)) for song_id, name in rows]

    def song_title_index(self, artist_id: int) -> dict[str, int]:
        """Map normalised song titles of the artist to song ids (most popular wins)."""

        index: dict[str, int] = {}
        for song_id, name in self.top_songs(artist_id, limit=10_000):
            index.setdefault(title_key(name), song_id)
        return index

    def upcoming_shows_without_setlist(
        self, artist_id: int, *, today: date, limit: int
    ) -> list[tuple[int, str]]:
        """Return ``(show_id, name)`` of upcoming shows lacking a predicted setlist."""

        has_setlist = (
            select(Setlist.id)
            .where(Setlist.show_id == Show.id, Setlist.artist_id == artist_id)
            .exists()
        )
        with self._session() as session:
            rows = session.execute(
                select(Show.id, Show.name)
                .join(ArtistShow, ArtistShow.show_id == Show.id)
                .where(
                    ArtistShow.artist_id == artist_id,
                    Show.status == ShowStatus.UPCOMING.value,
                    Show.date >= today,
                    ~has_setlist,
                )
                .order_by(Show.date.asc(), Show.id.asc())
                .limit(max(0, int(limit)))
            ).all()
        return [(int(show_id), str(name)) for show_id, name in rows]

    def create_setlist(
        self,
        *,
        show_id: int,
        artist_id: int,
        name: str,
        songs: Sequence[tuple[int | None, str]],
        kind: str = "predicted",
        source: str = "auto-generated",
        setlistfm_id: str | None = None,
    ) -> UpsertOutcome:
        """Create a setlist with its ordered songs.

        A setlist already imported under ``setlistfm_id`` is returned as is.
        """

        if setlistfm_id:
            existing = self.find_by_provider_id(Setlist, "setlistfm_id", setlistfm_id)
            if existing is not None:
                return UpsertOutcome(id=int(existing.id), created=False)
        try:
            with self._session() as session:
                setlist = Setlist(
                    show_id=show_id,
                    artist_id=artist_id,
                    name=name,
                    kind=kind,
                    source=source,
                    setlistfm_id=setlistfm_id,
                )
                session.add(setlist)
                session.flush()
                for position, (song_id, title) in enumerate(songs, start=1):
                    session.add(
                        SetlistSong(
                            setlist_id=setlist.id,
                            song_id=song_id,
                            title=title,
                            position=position,
                        )
                    )
                outcome = UpsertOutcome(id=int(setlist.id), created=True)
        except IntegrityError as exc:
            if not setlistfm_id:
                raise
            winner = self.find_by_provider_id(Setlist, "setlistfm_id", setlistfm_id)
            if winner is None:
                raise StoreConflictError("setlists", "setlistfm_id", setlistfm_id) from exc
            outcome = UpsertOutcome(id=int(winner.id), created=False)
        self._log_upsert(Setlist, outcome)
        return outcome

    def setlist_songs(self, setlist_id: int) -> list[tuple[int | None, str]]:
        with self._session() as session:
            rows = session.execute(
                select(SetlistSong.song_id, SetlistSong.title)
                .where(SetlistSong.setlist_id == setlist_id)
                .order_by(SetlistSong.position.asc())
            ).all()
        return [(song_id, title) for song_id, title in rows]


__all__ = ["EntityStore", "UpsertOutcome"]
