"""Per-provider guard composing the rate limiter and the circuit breaker."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, TypeVar

from encore.config import AppConfig, ProviderSettings
from encore.integrations.circuit_breaker import CircuitBreaker
from encore.integrations.rate_limiter import RateLimiter, SleepFunc

T = TypeVar("T")


@dataclass(slots=True)
class ProviderGuard:
    """Every outbound call of a provider goes through :meth:`call`.

    An open circuit fails fast before a rate-limit token is spent; the token
    is acquired before the probe slot of a half-open circuit is claimed.
    """

    name: str
    limiter: RateLimiter
    breaker: CircuitBreaker
    acquire_timeout: float | None = None

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        self.breaker.check()
        await self.limiter.acquire(self.name, timeout=self.acquire_timeout)
        return await self.breaker.call(func, *args, **kwargs)


def build_provider_guard(
    settings: ProviderSettings,
    limiter: RateLimiter,
    *,
    clock: Callable[[], float] | None = None,
    sleep: SleepFunc | None = None,
) -> ProviderGuard:
    bucket_kwargs: dict[str, Any] = {}
    breaker_kwargs: dict[str, Any] = {}
    if clock is not None:
        bucket_kwargs["clock"] = clock
        breaker_kwargs["clock"] = clock
    if sleep is not None:
        bucket_kwargs["sleep"] = sleep
    limiter.configure(
        settings.name,
        capacity=settings.rate_capacity,
        window_seconds=settings.rate_window_seconds,
        **bucket_kwargs,
    )
    breaker = CircuitBreaker(
        settings.name,
        failure_threshold=settings.breaker_threshold,
        cooldown_seconds=settings.breaker_cooldown_seconds,
        max_cooldown_seconds=settings.breaker_max_cooldown_seconds,
        **breaker_kwargs,
    )
    return ProviderGuard(
        name=settings.name,
        limiter=limiter,
        breaker=breaker,
        acquire_timeout=settings.acquire_timeout_seconds,
    )


def build_provider_guards(
    config: AppConfig,
    *,
    limiter: RateLimiter | None = None,
    clock: Callable[[], float] | None = None,
    sleep: SleepFunc | None = None,
) -> dict[str, ProviderGuard]:
    """Return one guard per configured provider sharing ``limiter``."""

    shared = limiter or RateLimiter()
    guards: dict[str, ProviderGuard] = {}
    for name, settings in config.providers.items():
        guards[name] = build_provider_guard(settings, shared, clock=clock, sleep=sleep)
    return guards


def breaker_snapshots(guards: Mapping[str, ProviderGuard]) -> list[dict[str, Any]]:
    return [guards[name].breaker.snapshot() for name in sorted(guards)]


__all__ = [
    "ProviderGuard",
    "breaker_snapshots",
    "build_provider_guard",
    "build_provider_guards",
]
