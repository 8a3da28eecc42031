"""Backoff helpers for queue retries."""

from __future__ import annotations

import random
from typing import Literal

BackoffKind = Literal["exponential", "fixed"]

__all__ = ["BackoffKind", "compute_backoff_seconds"]


def compute_backoff_seconds(
    attempt: int,
    *,
    base_seconds: float,
    max_seconds: float,
    kind: BackoffKind = "exponential",
    jitter_pct: float = 0.0,
    rng: random.Random | None = None,
) -> float:
    """Return the delay before retrying after failed attempt number ``attempt``.

    ``attempt`` is 1-based. Exponential backoff doubles ``base_seconds`` per
    failed attempt and adds up to ``jitter_pct`` on top; with the cap applied
    last the sequence is non-decreasing for jitter up to 100%. Fixed backoff
    always waits exactly ``base_seconds`` (capped) and ignores jitter.
    """

    base = max(0.0, float(base_seconds))
    index = max(0, int(attempt) - 1)
    if kind == "fixed":
        delay = base
    else:
        # 2**62 already exceeds any sensible cap.
        delay = base * (2 ** min(index, 62))
        pct = min(1.0, max(0.0, float(jitter_pct)))
        if pct > 0 and delay > 0:
            generator = rng or random
            delay += delay * pct * generator.random()
    cap = max(0.0, float(max_seconds))
    if cap > 0:
        delay = min(delay, cap)
    return delay
