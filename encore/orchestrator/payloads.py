"""Typed payloads of the import pipeline queues."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass, field
from typing import Any, TypeVar

from encore.errors import JobValidationError
from encore.queues import QueueName

PayloadT = TypeVar("PayloadT", bound="StagePayload")


def _coerce_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return default


def _required_str(queue: QueueName, payload: Mapping[str, Any], name: str) -> str:
    text = str(payload.get(name) or "").strip()
    if not text:
        raise JobValidationError(queue.value, f"missing {name}")
    return text


def _optional_str(payload: Mapping[str, Any], name: str) -> str | None:
    text = str(payload.get(name) or "").strip()
    return text or None


def _required_int(queue: QueueName, payload: Mapping[str, Any], name: str) -> int:
    value = payload.get(name)
    if isinstance(value, bool):
        raise JobValidationError(queue.value, f"invalid {name}")
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise JobValidationError(queue.value, f"missing or invalid {name}") from None


def _str_list(payload: Mapping[str, Any], name: str) -> list[str]:
    values = payload.get(name)
    if values is None:
        return []
    if isinstance(values, (str, bytes)) or not isinstance(values, Sequence):
        return []
    result: list[str] = []
    for value in values:
        text = str(value).strip()
        if text and text not in result:
            result.append(text)
    return result


@dataclass(slots=True, frozen=True)
class StagePayload:
    """Fields shared by every stage of one import run."""

    artist_id: int
    key: str
    run_id: str
    is_admin_import: bool = False
    force_refresh: bool = False

    QUEUE = QueueName.PROFILE_SYNC

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def _common(cls, payload: Mapping[str, Any]) -> dict[str, Any]:
        return {
            "artist_id": _required_int(cls.QUEUE, payload, "artist_id"),
            "key": _required_str(cls.QUEUE, payload, "key"),
            "run_id": _required_str(cls.QUEUE, payload, "run_id"),
            "is_admin_import": _coerce_bool(payload.get("is_admin_import")),
            "force_refresh": _coerce_bool(payload.get("force_refresh")),
        }

    @classmethod
    def from_payload(cls: type[PayloadT], payload: Mapping[str, Any]) -> PayloadT:
        return cls(**cls._common(payload))


@dataclass(slots=True, frozen=True)
class ProfileSyncPayload(StagePayload):
    attraction_id: str = ""

    QUEUE = QueueName.PROFILE_SYNC

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> ProfileSyncPayload:
        return cls(
            **cls._common(payload),
            attraction_id=_required_str(cls.QUEUE, payload, "attraction_id"),
        )


@dataclass(slots=True, frozen=True)
class CatalogSyncPayload(StagePayload):
    spotify_id: str = ""

    QUEUE = QueueName.CATALOG_SYNC

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> CatalogSyncPayload:
        return cls(
            **cls._common(payload),
            spotify_id=_required_str(cls.QUEUE, payload, "spotify_id"),
        )


@dataclass(slots=True, frozen=True)
class DeepCatalogPayload(StagePayload):
    spotify_id: str = ""
    album_ids: list[str] = field(default_factory=list)
    known_track_ids: list[str] = field(default_factory=list)

    QUEUE = QueueName.DEEP_CATALOG

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> DeepCatalogPayload:
        return cls(
            **cls._common(payload),
            spotify_id=_required_str(cls.QUEUE, payload, "spotify_id"),
            album_ids=_str_list(payload, "album_ids"),
            known_track_ids=_str_list(payload, "known_track_ids"),
        )


@dataclass(slots=True, frozen=True)
class EventsSyncPayload(StagePayload):
    attraction_id: str = ""

    QUEUE = QueueName.EVENTS_SYNC

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> EventsSyncPayload:
        return cls(
            **cls._common(payload),
            attraction_id=_required_str(cls.QUEUE, payload, "attraction_id"),
        )


@dataclass(slots=True, frozen=True)
class FinalizePayload(StagePayload):
    QUEUE = QueueName.IMPORT_FINALIZE


@dataclass(slots=True, frozen=True)
class SetlistSyncPayload:
    """Historical setlists run outside the import status bookkeeping."""

    artist_id: int
    artist_name: str
    mbid: str | None = None

    QUEUE = QueueName.SETLIST_SYNC

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> SetlistSyncPayload:
        return cls(
            artist_id=_required_int(cls.QUEUE, payload, "artist_id"),
            artist_name=_required_str(cls.QUEUE, payload, "artist_name"),
            mbid=_optional_str(payload, "mbid"),
        )


__all__ = [
    "CatalogSyncPayload",
    "DeepCatalogPayload",
    "EventsSyncPayload",
    "FinalizePayload",
    "ProfileSyncPayload",
    "SetlistSyncPayload",
    "StagePayload",
]
