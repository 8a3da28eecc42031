"""Circuit breaker guarding calls to a flaky provider."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from enum import Enum
import logging
import threading
import time
from typing import Any, TypeVar

from encore.errors import CircuitOpenError, EncoreError, ProviderTransientError
from encore.logging import get_logger
from encore.logging_events import log_event

logger = get_logger(__name__)

T = TypeVar("T")

FailurePredicate = Callable[[BaseException], bool]


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


def counts_as_provider_failure(exc: BaseException) -> bool:
    """Transient provider failures and unexpected errors trip the breaker.

    Not-found and validation answers prove that the provider is reachable.
    """

    if isinstance(exc, ProviderTransientError):
        return True
    if isinstance(exc, EncoreError):
        return False
    return isinstance(exc, Exception)


class CircuitBreaker:
    """Closed/open/half-open breaker shared by every caller of one provider.

    ``failure_threshold`` consecutive counted failures open the circuit for
    the current cooldown. Once it elapses a single probe call is admitted:
    success closes the circuit and resets the cooldown, failure re-opens it
    with the cooldown multiplied by ``cooldown_multiplier`` (capped at
    ``max_cooldown_seconds``). State transitions happen under a lock and never
    span an ``await``.
    """

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int,
        cooldown_seconds: float,
        max_cooldown_seconds: float | None = None,
        cooldown_multiplier: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
        counts_as_failure: FailurePredicate = counts_as_provider_failure,
    ) -> None:
        if failure_threshold <= 0:
            raise ValueError("failure_threshold must be positive")
        if cooldown_seconds <= 0:
            raise ValueError("cooldown_seconds must be positive")
        self.name = name
        self.failure_threshold = int(failure_threshold)
        self.base_cooldown = float(cooldown_seconds)
        self.max_cooldown = max(
            self.base_cooldown,
            float(max_cooldown_seconds) if max_cooldown_seconds is not None else self.base_cooldown,
        )
        self.cooldown_multiplier = max(1.0, float(cooldown_multiplier))
        self._clock = clock
        self._counts_as_failure = counts_as_failure
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._cooldown = self.base_cooldown
        self._opened_until = 0.0
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._failures

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            retry_in = 0.0
            if self._state is CircuitState.OPEN:
                retry_in = max(0.0, self._opened_until - self._clock())
            return {
                "provider": self.name,
                "state": self._state.value,
                "failures": self._failures,
                "cooldown_s": self._cooldown,
                "retry_in_s": round(retry_in, 3),
            }

    def check(self) -> None:
        """Raise :class:`CircuitOpenError` if a call would be rejected right now."""

        with self._lock:
            if self._state is CircuitState.OPEN:
                remaining = self._opened_until - self._clock()
                if remaining > 0:
                    raise CircuitOpenError(self.name, remaining)
            elif self._state is CircuitState.HALF_OPEN and self._probe_in_flight:
                raise CircuitOpenError(self.name, 0.0)

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        probe = self._admit()
        try:
            result = await func(*args, **kwargs)
        except BaseException as exc:
            if self._counts_as_failure(exc):
                self._record_failure(probe, exc)
            else:
                self._record_neutral(probe, exc)
            raise
        self._record_success(probe)
        return result

    def _admit(self) -> bool:
        with self._lock:
            if self._state is CircuitState.CLOSED:
                return False
            if self._state is CircuitState.OPEN:
                remaining = self._opened_until - self._clock()
                if remaining > 0:
                    raise CircuitOpenError(self.name, remaining)
                self._state = CircuitState.HALF_OPEN
                self._probe_in_flight = True
                self._emit("half_open")
                return True
            if self._probe_in_flight:
                raise CircuitOpenError(self.name, 0.0)
            self._probe_in_flight = True
            return True

    def _record_success(self, probe: bool) -> None:
        with self._lock:
            self._failures = 0
            if probe:
                self._probe_in_flight = False
                self._state = CircuitState.CLOSED
                self._cooldown = self.base_cooldown
                self._emit("closed")

    def _record_neutral(self, probe: bool, exc: BaseException) -> None:
        with self._lock:
            if not probe:
                return
            self._probe_in_flight = False
            if isinstance(exc, Exception):
                # The provider answered; it is healthy even if the item is missing.
                self._failures = 0
                self._state = CircuitState.CLOSED
                self._cooldown = self.base_cooldown
                self._emit("closed")

    def _record_failure(self, probe: bool, exc: BaseException) -> None:
        with self._lock:
            now = self._clock()
            if probe:
                self._probe_in_flight = False
                self._cooldown = min(self.max_cooldown, self._cooldown * self.cooldown_multiplier)
                self._state = CircuitState.OPEN
                self._opened_until = now + self._cooldown
                self._emit("reopened", error=type(exc).__name__)
                return
            if self._state is not CircuitState.CLOSED:
                return
            self._failures += 1
            if self._failures >= self.failure_threshold:
                self._state = CircuitState.OPEN
                self._cooldown = self.base_cooldown
                self._opened_until = now + self._cooldown
                self._emit("opened", error=type(exc).__name__)

    def _emit(self, status: str, *, error: str | None = None) -> None:
        level = logging.WARNING if status in {"opened", "reopened"} else logging.INFO
        log_event(
            logger,
            "provider.circuit",
            level=level,
            component="circuit_breaker",
            provider=self.name,
            status=status,
            failures=self._failures,
            cooldown_ms=int(self._cooldown * 1000),
            error=error,
        )


__all__ = ["CircuitBreaker", "CircuitState", "counts_as_provider_failure"]
