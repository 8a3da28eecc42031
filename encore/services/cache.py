"""Response cache shared with the host application and invalidated by import runs."""

from __future__ import annotations

import asyncio
from collections import OrderedDict
import fnmatch
import re
from typing import Any

from encore.logging import get_logger
from encore.logging_events import log_event

logger = get_logger(__name__)


def _compile_pattern(pattern: str) -> re.Pattern[str]:
    """Compile a glob (``artist:*``) into an anchored regular expression."""

    return re.compile(fnmatch.translate(pattern))


class ResponseCache:
    """Bounded key/value store whose entries are dropped by glob pattern.

    The embedding application writes rendered responses with :meth:`set`;
    import runs only ever call :meth:`invalidate_pattern`. ``fail_open`` turns
    internal errors into a no-op so that a broken cache never fails an import.
    """

    def __init__(self, *, max_items: int = 1024, fail_open: bool = True) -> None:
        if max_items <= 0:
            raise ValueError("max_items must be positive")
        self._max_items = max_items
        self._fail_open = fail_open
        self._cache: OrderedDict[str, Any] = OrderedDict()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._cache)

    def keys(self) -> list[str]:
        return list(self._cache)

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            self._cache.pop(key, None)
            self._cache[key] = value
            while len(self._cache) > self._max_items:
                self._cache.popitem(last=False)

    async def invalidate_pattern(
        self,
        pattern: str,
        *,
        reason: str | None = None,
        entity_id: str | None = None,
    ) -> int:
        """Drop every key matching the glob ``pattern`` and return how many."""

        try:
            compiled = _compile_pattern(pattern)
            async with self._lock:
                keys = [key for key in self._cache if compiled.match(key)]
                for key in keys:
                    self._cache.pop(key, None)
        except Exception:
            if not self._fail_open:
                raise
            log_event(
                logger,
                "cache.error",
                component="service.cache",
                operation="invalidate",
                status="error",
                pattern=pattern,
            )
            return 0
        payload = {"reason": reason, "entity_id": entity_id}
        log_event(
            logger,
            "cache.invalidate",
            component="service.cache",
            operation="invalidate",
            status="evicted" if keys else "noop",
            pattern=pattern,
            count=len(keys),
            **{key: value for key, value in payload.items() if value is not None},
        )
        return len(keys)


def artist_cache_patterns(artist_id: int, slug: str | None = None) -> list[str]:
    """Cache key globs touched by a change to one artist."""

    patterns = [f"artist:{artist_id}:*", f"shows:artist:{artist_id}:*", "search:artists:*", "trending:*"]
    if slug:
        patterns.append(f"artist:slug:{slug}*")
    return patterns


__all__ = ["ResponseCache", "artist_cache_patterns"]
