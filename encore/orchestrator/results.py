"""Per-item outcomes of stage processors and their aggregation."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class SkipReason(str, Enum):
    DUPLICATE = "duplicate"
    LIVE_TRACK = "live-track"
    NAME_MISMATCH = "name-mismatch"
    NOT_FOUND = "not-found"
    INVALID = "invalid"
    MISSING_DATE = "missing-date"
    ALREADY_EXISTS = "already-exists"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class ItemResult:
    """Outcome of processing one sub-item (an album, an event, a setlist...)."""

    item_id: str
    ok: bool
    reason: SkipReason | None = None
    error: str | None = None
    created: bool = False

    @classmethod
    def success(cls, item_id: str, *, created: bool = False) -> ItemResult:
        return cls(item_id=item_id, ok=True, created=created)

    @classmethod
    def skip(cls, item_id: str, reason: SkipReason, error: str | None = None) -> ItemResult:
        return cls(item_id=item_id, ok=False, reason=reason, error=error)


@dataclass(slots=True)
class StageSummary:
    processed: int = 0
    created: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    skip_reasons: dict[str, int] = field(default_factory=dict)

    def add(self, result: ItemResult) -> None:
        if result.ok:
            self.processed += 1
            if result.created:
                self.created += 1
            return
        self.skipped += 1
        reason = (result.reason or SkipReason.FAILED).value
        self.skip_reasons[reason] = self.skip_reasons.get(reason, 0) + 1
        if result.error:
            self.errors.append(f"{result.item_id}: {result.error}")

    def extend(self, results: Iterable[ItemResult]) -> StageSummary:
        for result in results:
            self.add(result)
        return self

    def as_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "created": self.created,
            "skipped": self.skipped,
            "errors": list(self.errors[:20]),
            "skip_reasons": dict(self.skip_reasons),
        }


__all__ = ["ItemResult", "SkipReason", "StageSummary"]
