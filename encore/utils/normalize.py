"""Helpers for normalising names, slugs and track titles."""

from __future__ import annotations

import re
import unicodedata
from typing import Iterable

_SLUG_INVALID = re.compile(r"[^a-z0-9]+")
_MATCH_INVALID = re.compile(r"[^a-z0-9]")
_LIVE_PATTERNS = tuple(
    re.compile(pattern, flags=re.IGNORECASE)
    for pattern in (
        r"\(live\b[^)]*\)",
        r"\[live\b[^\]]*\]",
        r"\s-\s+live\b",
        r"\blive\s+(version|recording)\b",
        r"\bconcert\s+recording\b",
        r"\bunplugged\b",
        r"\bmtv\s+live\b",
        r"\bbbc\s+session",
    )
)
_REMIX_PATTERNS = tuple(
    re.compile(pattern, flags=re.IGNORECASE)
    for pattern in (r"\bremix\b", r"\bradio\s+edit\b", r"\brework\b")
)


def normalize_text(value: str | None) -> str:
    """Return a lowercase, accent-free representation of *value*."""

    if not value:
        return ""
    text = unicodedata.normalize("NFKD", value)
    without_accents = "".join(char for char in text if not unicodedata.combining(char))
    return without_accents.casefold().strip()


def slugify(value: str | None) -> str:
    """Return a URL slug: lowercase alphanumerics joined by single dashes."""

    text = normalize_text(value)
    return _SLUG_INVALID.sub("-", text).strip("-")


def _match_key(value: str | None) -> str:
    return _MATCH_INVALID.sub("", normalize_text(value))


def is_name_match(left: str | None, right: str | None) -> bool:
    """Return ``True`` when two artist names refer to the same act.

    Names are reduced to lowercase alphanumerics; equality or containment in
    either direction counts as a match.
    """

    first = _match_key(left)
    second = _match_key(right)
    if not first or not second:
        return False
    return first == second or first in second or second in first


def title_key(value: str | None) -> str:
    """Key used to match setlist song titles against catalog songs."""

    return _match_key(value)


def is_live_track(name: str | None) -> bool:
    if not name:
        return False
    return any(pattern.search(name) for pattern in _LIVE_PATTERNS)


def is_remix_track(name: str | None) -> bool:
    if not name:
        return False
    return any(pattern.search(name) for pattern in _REMIX_PATTERNS)


def normalize_genres(genres: Iterable[str | None], *, limit: int = 5) -> list[str]:
    """Return unique, trimmed genres preserving input order."""

    result: list[str] = []
    seen: set[str] = set()
    for genre in genres:
        if not genre:
            continue
        cleaned = str(genre).strip()
        if not cleaned:
            continue
        key = cleaned.casefold()
        if key in seen:
            continue
        seen.add(key)
        result.append(cleaned)
        if len(result) >= limit:
            break
    return result


__all__ = [
    "is_live_track",
    "is_name_match",
    "is_remix_track",
    "normalize_genres",
    "normalize_text",
    "slugify",
    "title_key",
]
