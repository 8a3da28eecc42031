"""Names of the queues that make up the artist import pipeline."""

from __future__ import annotations

from enum import Enum


class QueueName(str, Enum):
    PROFILE_SYNC = "profile-sync"
    CATALOG_SYNC = "catalog-sync"
    DEEP_CATALOG = "deep-catalog"
    EVENTS_SYNC = "events-sync"
    IMPORT_FINALIZE = "import-finalize"
    SETLIST_SYNC = "setlist-sync"

    @property
    def env_prefix(self) -> str:
        return "QUEUE_" + self.value.upper().replace("-", "_")


def resolve_queue_name(value: str | QueueName) -> QueueName:
    """Return the :class:`QueueName` for ``value`` or raise ``ValueError``."""

    if isinstance(value, QueueName):
        return value
    try:
        return QueueName(str(value).strip().lower())
    except ValueError as exc:
        raise ValueError(f"unknown queue: {value!r}") from exc


__all__ = ["QueueName", "resolve_queue_name"]
