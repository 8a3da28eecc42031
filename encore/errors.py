"""Error taxonomy shared by provider adapters, stage processors and the worker pool.

Every error carries a ``retryable`` flag. The worker pool consults it to decide
between rescheduling a job with backoff and failing it permanently.
Exceptions outside this hierarchy are treated as retryable.
"""

from __future__ import annotations


class EncoreError(Exception):
    """Base class for pipeline errors."""

    retryable: bool = False


class ValidationError(EncoreError):
    """Raised when a payload is malformed; retrying cannot help."""


class JobValidationError(ValidationError):
    """Raised when a job payload is missing required fields."""

    def __init__(self, queue: str, message: str) -> None:
        super().__init__(f"{queue}: {message}")
        self.queue = queue


class StoreConflictError(EncoreError):
    """Raised when a unique constraint race could not be resolved by re-reading."""

    def __init__(self, table: str, key: str, value: object) -> None:
        super().__init__(f"conflicting {table} row for {key}={value!r}")
        self.table = table
        self.key = key
        self.value = value


class ProviderError(EncoreError):
    """Base exception raised when a provider request fails."""

    def __init__(
        self,
        provider: str,
        message: str,
        *,
        status_code: int | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.cause = cause


class ProviderNotFoundError(ProviderError):
    """Raised when the provider has no resource for the requested identifier."""


class ProviderValidationError(ProviderError, ValidationError):
    """Raised when the provider rejected the request or answered with an unusable body."""


class ProviderAuthError(ProviderValidationError):
    """Raised when the provider rejected our credentials (401/403)."""


class ProviderTransientError(ProviderError):
    """Raised for 5xx responses, timeouts and network failures."""

    retryable = True


class ProviderTimeoutError(ProviderTransientError):
    """Raised when the provider did not respond within the configured timeout."""

    def __init__(self, provider: str, timeout_ms: int, *, cause: Exception | None = None) -> None:
        super().__init__(provider, f"{provider} timed out after {timeout_ms}ms", cause=cause)
        self.timeout_ms = timeout_ms


class ProviderRateLimitedError(ProviderTransientError):
    """Raised when the provider answered 429."""

    def __init__(
        self,
        provider: str,
        message: str,
        *,
        retry_after_ms: int | None = None,
        status_code: int | None = 429,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(provider, message, status_code=status_code, cause=cause)
        self.retry_after_ms = retry_after_ms


class RateLimitTimeoutError(EncoreError):
    """Raised when a rate limiter token was not granted within the caller's timeout."""

    retryable = True

    def __init__(self, key: str, timeout: float, wait_seconds: float) -> None:
        super().__init__(
            f"rate limit token for {key!r} not available within {timeout:.3f}s "
            f"(next grant in {wait_seconds:.3f}s)"
        )
        self.key = key
        self.timeout = timeout
        self.wait_seconds = wait_seconds


class CircuitOpenError(EncoreError):
    """Raised when a provider's circuit breaker rejects a call."""

    retryable = True

    def __init__(self, provider: str, retry_after_seconds: float) -> None:
        super().__init__(
            f"circuit for {provider!r} is open; retry in {retry_after_seconds:.3f}s"
        )
        self.provider = provider
        self.retry_after_seconds = retry_after_seconds


def is_retryable(exc: BaseException) -> bool:
    """Return whether a job that raised ``exc`` should be attempted again."""

    if isinstance(exc, EncoreError):
        return exc.retryable
    return True


def retry_after_seconds(exc: BaseException) -> float | None:
    """Return the minimum delay advertised by ``exc``, if any."""

    if isinstance(exc, CircuitOpenError):
        return max(0.0, exc.retry_after_seconds)
    if isinstance(exc, RateLimitTimeoutError):
        return max(0.0, exc.wait_seconds)
    if isinstance(exc, ProviderRateLimitedError) and exc.retry_after_ms is not None:
        return max(0.0, exc.retry_after_ms / 1000.0)
    return None


__all__ = [
    "CircuitOpenError",
    "EncoreError",
    "JobValidationError",
    "ProviderAuthError",
    "ProviderError",
    "ProviderNotFoundError",
    "ProviderRateLimitedError",
    "ProviderTimeoutError",
    "ProviderTransientError",
    "ProviderValidationError",
    "RateLimitTimeoutError",
    "StoreConflictError",
    "ValidationError",
    "is_retryable",
    "retry_after_seconds",
]
