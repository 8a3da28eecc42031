"""HTTPX base client shared by the provider adapters."""

from __future__ import annotations

from collections.abc import Mapping
import logging
import time
from typing import Any

import httpx

from encore.errors import (
    ProviderAuthError,
    ProviderError,
    ProviderNotFoundError,
    ProviderRateLimitedError,
    ProviderTimeoutError,
    ProviderTransientError,
    ProviderValidationError,
)
from encore.integrations.guard import ProviderGuard
from encore.logging import get_logger
from encore.logging_events import log_event

logger = get_logger(__name__)


class ProviderHttpClient:
    """Performs guarded JSON requests and maps failures to the error taxonomy.

    Retries are not attempted here; a failed call fails the stage job and the
    worker pool reschedules it with the queue's backoff.
    """

    def __init__(
        self,
        name: str,
        base_url: str,
        *,
        guard: ProviderGuard | None = None,
        timeout_ms: int = 10_000,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.guard = guard
        self.timeout_ms = timeout_ms
        self.transport = transport

    def _default_headers(self) -> dict[str, str]:
        return {"Accept": "application/json"}

    def _default_params(self) -> dict[str, Any]:
        return {}

    async def get_json(
        self,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        return await self.request_json("GET", path, params=params, headers=headers)

    async def request_json(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        data: Mapping[str, Any] | None = None,
        auth: httpx.Auth | tuple[str, str] | None = None,
    ) -> Any:
        async def _perform() -> Any:
            return await self._send(
                method,
                path,
                params=params,
                headers=headers,
                data=data,
                auth=auth,
            )

        if self.guard is None:
            return await _perform()
        return await self.guard.call(_perform)

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None,
        headers: Mapping[str, str] | None,
        data: Mapping[str, Any] | None,
        auth: httpx.Auth | tuple[str, str] | None,
    ) -> Any:
        merged_headers = self._default_headers()
        if headers:
            merged_headers.update(headers)
        merged_params = self._default_params()
        if params:
            merged_params.update({key: value for key, value in params.items() if value is not None})

        started = time.perf_counter()
        status_code: int | None = None
        try:
            try:
                async with httpx.AsyncClient(
                    base_url=self.base_url,
                    timeout=_build_timeout(self.timeout_ms),
                    headers=merged_headers,
                    transport=self.transport,
                ) as client:
                    request_kwargs: dict[str, Any] = {"params": merged_params or None}
                    if data is not None:
                        request_kwargs["data"] = dict(data)
                    if auth is not None:
                        request_kwargs["auth"] = auth
                    response = await client.request(method, path, **request_kwargs)
            except httpx.TimeoutException as exc:
                raise ProviderTimeoutError(self.name, self.timeout_ms, cause=exc) from exc
            except httpx.HTTPError as exc:
                raise ProviderTransientError(
                    self.name, f"{self.name} request failed: {exc}", cause=exc
                ) from exc

            status_code = response.status_code
            self._raise_for_status(response)
            payload = _decode_json(self.name, response)
        except ProviderError as exc:
            self._log_call(method, path, started, status="error", status_code=status_code, exc=exc)
            raise
        self._log_call(method, path, started, status="ok", status_code=status_code)
        return payload

    def _raise_for_status(self, response: httpx.Response) -> None:
        status_code = response.status_code
        if 200 <= status_code < 300:
            return
        body_preview = response.text[:200]
        if status_code == httpx.codes.NOT_FOUND:
            raise ProviderNotFoundError(
                self.name, f"{self.name} resource not found", status_code=status_code
            )
        if status_code == httpx.codes.TOO_MANY_REQUESTS:
            raise ProviderRateLimitedError(
                self.name,
                f"{self.name} rate limited the request",
                retry_after_ms=_parse_retry_after_ms(response.headers),
            )
        if status_code in {httpx.codes.UNAUTHORIZED, httpx.codes.FORBIDDEN}:
            raise ProviderAuthError(
                self.name, f"{self.name} rejected credentials", status_code=status_code
            )
        if 500 <= status_code < 600:
            raise ProviderTransientError(
                self.name,
                f"{self.name} returned a server error: {body_preview}",
                status_code=status_code,
            )
        if 400 <= status_code < 500:
            raise ProviderValidationError(
                self.name,
                f"{self.name} rejected the request: {body_preview}",
                status_code=status_code,
            )
        raise ProviderTransientError(
            self.name,
            f"{self.name} responded with an unexpected status",
            status_code=status_code,
        )

    def _log_call(
        self,
        method: str,
        path: str,
        started: float,
        *,
        status: str,
        status_code: int | None,
        exc: ProviderError | None = None,
    ) -> None:
        duration_ms = int((time.perf_counter() - started) * 1000)
        level = logging.DEBUG if status == "ok" else logging.WARNING
        log_event(
            logger,
            "provider.call",
            level=level,
            component="provider_http",
            provider=self.name,
            method=method,
            path=path,
            status=status,
            status_code=status_code,
            duration_ms=duration_ms,
            error=type(exc).__name__ if exc is not None else None,
        )


def _decode_json(provider: str, response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError as exc:
        raise ProviderValidationError(
            provider,
            f"{provider} returned invalid JSON",
            status_code=response.status_code,
            cause=exc,
        ) from exc


def _build_timeout(timeout_ms: int) -> httpx.Timeout:
    timeout_seconds = max(timeout_ms, 100) / 1000
    connect_timeout = min(timeout_seconds, 5.0)
    return httpx.Timeout(
        timeout_seconds,
        connect=connect_timeout,
        read=timeout_seconds,
        write=timeout_seconds,
    )


def _parse_retry_after_ms(headers: Mapping[str, Any]) -> int | None:
    value = headers.get("Retry-After")
    if value is None:
        return None
    try:
        numeric = float(str(value).strip())
    except (TypeError, ValueError):
        return None
    return max(0, int(numeric * 1000))


def first_str(payload: Mapping[str, Any] | None, *keys: str) -> str | None:
    """Return the first non-empty string value found under ``keys``."""

    if not isinstance(payload, Mapping):
        return None
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


def as_float(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


__all__ = ["ProviderHttpClient", "as_float", "as_int", "first_str"]
