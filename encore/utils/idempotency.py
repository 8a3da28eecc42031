"""Idempotency helpers providing stable hash keys."""

from __future__ import annotations

import hashlib

__all__ = ["make_dedup_key"]

_Part = str | bytes | int


def _normalise_part(part: _Part) -> bytes:
    if isinstance(part, bytes):
        return part
    if isinstance(part, bool):
        raise TypeError("dedup key parts must not be booleans")
    if isinstance(part, int):
        return str(part).encode("ascii")
    if isinstance(part, str):
        return part.encode("utf-8")
    msg = "dedup key parts must be str, bytes or int"
    raise TypeError(msg)


def make_dedup_key(*parts: _Part) -> str:
    """Return a stable 32 character SHA256 based key for job deduplication."""

    if not parts:
        raise ValueError("at least one part must be provided")
    digest = hashlib.sha256()
    for part in parts:
        data = _normalise_part(part)
        digest.update(len(data).to_bytes(4, "big"))
        digest.update(data)
    return digest.hexdigest()[:32]
