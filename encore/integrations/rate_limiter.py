"""Token bucket rate limiting for outbound provider calls."""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
import logging
import threading
import time

from encore.errors import RateLimitTimeoutError
from encore.logging import get_logger
from encore.logging_events import log_event

logger = get_logger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]


@dataclass(slots=True, frozen=True)
class RateLimitDecision:
    """Outcome of a non-blocking acquisition: a grant or the wait until the next one."""

    granted: bool
    wait_seconds: float = 0.0


class TokenBucket:
    """Bucket of ``capacity`` tokens where each spent token returns one window later.

    Returning tokens per grant (instead of refilling at a constant rate) keeps
    every sliding window of ``window_seconds`` at ``capacity`` grants or fewer.
    Blocking acquisitions are served in FIFO order.
    """

    def __init__(
        self,
        name: str,
        *,
        capacity: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.name = name
        self.capacity = int(capacity)
        self.window_seconds = float(window_seconds)
        self._clock = clock
        self._sleep = sleep
        self._grants: deque[float] = deque()
        self._state_lock = threading.Lock()
        self._waiters: asyncio.Lock | None = None

    @property
    def available(self) -> int:
        with self._state_lock:
            self._expire(self._clock())
            return self.capacity - len(self._grants)

    def _expire(self, now: float) -> None:
        while self._grants and self._grants[0] + self.window_seconds <= now:
            self._grants.popleft()

    def try_acquire(self) -> RateLimitDecision:
        with self._state_lock:
            now = self._clock()
            self._expire(now)
            if len(self._grants) < self.capacity:
                self._grants.append(now)
                return RateLimitDecision(granted=True)
            wait = self._grants[0] + self.window_seconds - now
            return RateLimitDecision(granted=False, wait_seconds=max(0.0, wait))

    def _waiter_lock(self) -> asyncio.Lock:
        if self._waiters is None:
            self._waiters = asyncio.Lock()
        return self._waiters

    async def acquire(self, timeout: float | None = None) -> float:
        """Block until a token is granted and return the seconds spent waiting.

        Raises :class:`RateLimitTimeoutError` when the token cannot be granted
        within ``timeout`` seconds.
        """

        started = self._clock()
        lock = self._waiter_lock()
        if timeout is None:
            await lock.acquire()
        else:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=max(0.0, timeout))
            except asyncio.TimeoutError:
                raise RateLimitTimeoutError(
                    self.name, timeout, self.next_grant_in()
                ) from None
        try:
            while True:
                decision = self.try_acquire()
                if decision.granted:
                    waited = self._clock() - started
                    if waited > 0:
                        log_event(
                            logger,
                            "provider.rate_limit",
                            level=logging.DEBUG,
                            component="rate_limiter",
                            key=self.name,
                            status="granted",
                            waited_ms=int(waited * 1000),
                        )
                    return waited
                if timeout is not None:
                    elapsed = self._clock() - started
                    if elapsed + decision.wait_seconds > timeout:
                        log_event(
                            logger,
                            "provider.rate_limit",
                            level=logging.WARNING,
                            component="rate_limiter",
                            key=self.name,
                            status="timeout",
                            wait_ms=int(decision.wait_seconds * 1000),
                        )
                        raise RateLimitTimeoutError(self.name, timeout, decision.wait_seconds)
                await self._sleep(decision.wait_seconds)
        finally:
            lock.release()

    def next_grant_in(self) -> float:
        with self._state_lock:
            now = self._clock()
            self._expire(now)
            if len(self._grants) < self.capacity:
                return 0.0
            return max(0.0, self._grants[0] + self.window_seconds - now)


class RateLimiter:
    """Per-key token buckets shared by every worker calling the same provider."""

    def __init__(self, buckets: Mapping[str, TokenBucket] | None = None) -> None:
        self._buckets: dict[str, TokenBucket] = dict(buckets or {})

    def configure(
        self,
        key: str,
        *,
        capacity: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: SleepFunc = asyncio.sleep,
    ) -> TokenBucket:
        bucket = TokenBucket(
            key,
            capacity=capacity,
            window_seconds=window_seconds,
            clock=clock,
            sleep=sleep,
        )
        self._buckets[key] = bucket
        return bucket

    def bucket(self, key: str) -> TokenBucket:
        try:
            return self._buckets[key]
        except KeyError:
            raise ValueError(f"no rate limit configured for {key!r}") from None

    def try_acquire(self, key: str) -> RateLimitDecision:
        return self.bucket(key).try_acquire()

    async def acquire(self, key: str, timeout: float | None = None) -> float:
        return await self.bucket(key).acquire(timeout=timeout)

    def keys(self) -> list[str]:
        return sorted(self._buckets)


__all__ = ["RateLimitDecision", "RateLimiter", "TokenBucket"]
