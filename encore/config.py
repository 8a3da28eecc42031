"""Application configuration utilities for Encore."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
import os
from pathlib import Path
from typing import Any

from encore.queues import QueueName
from encore.utils.priority import JobPriority, parse_priority
from encore.utils.retry import BackoffKind

_RUNTIME_ENV_CACHE: dict[str, str] | None = None

DEFAULT_DATABASE_URL = "sqlite+pysqlite:///./data/encore.db"
DEFAULT_LOG_LEVEL = "INFO"

DEFAULT_WORKERS_ENABLED = True
DEFAULT_WORKER_POLL_INTERVAL_MS = 500
DEFAULT_WORKER_HEARTBEAT_S = 15
DEFAULT_WORKER_CLEANUP_INTERVAL_S = 300

DEFAULT_KEEP_COMPLETED_S = 3600
DEFAULT_KEEP_FAILED_S = 86400

DEFAULT_DEEP_CATALOG_DELAY_MS = 5000
DEFAULT_SETLIST_SIZE = 10
DEFAULT_MAX_SETLIST_SHOWS = 10
DEFAULT_TOP_SONGS_LIMIT = 25
DEFAULT_EVENTS_PAGE_SIZE = 50
DEFAULT_EVENTS_MAX_PAGES = 4
DEFAULT_HISTORICAL_MAX_PAGES = 2
DEFAULT_MARKET = "US"


def _load_env_file(path: Path) -> dict[str, str]:
    try:
        contents = path.read_text(encoding="utf-8")
    except OSError:
        return {}
    env_values: dict[str, str] = {}
    for line in contents.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        key, sep, value = stripped.partition("=")
        if not sep:
            continue
        env_values[key.strip()] = value.strip().strip('"').strip("'")
    return env_values


def load_runtime_env(
    *,
    env_file: str | os.PathLike[str] | None = None,
    base_env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Load runtime environment values applying .env before explicit environment."""

    env: dict[str, str] = {}
    source = dict(base_env if base_env is not None else os.environ)

    path = Path(env_file) if env_file is not None else Path(".env")
    if path.exists() and path.is_file():
        env.update(_load_env_file(path))

    env.update({key: str(value) for key, value in source.items() if value is not None})
    return env


def get_runtime_env() -> Mapping[str, str]:
    """Return the cached runtime environment mapping."""

    global _RUNTIME_ENV_CACHE
    if _RUNTIME_ENV_CACHE is None:
        _RUNTIME_ENV_CACHE = load_runtime_env()
    return _RUNTIME_ENV_CACHE


def override_runtime_env(runtime_env: Mapping[str, str] | None) -> None:
    """Override the cached runtime environment (primarily for testing)."""

    global _RUNTIME_ENV_CACHE
    if runtime_env is None:
        _RUNTIME_ENV_CACHE = None
    else:
        _RUNTIME_ENV_CACHE = dict(runtime_env)


def _as_bool(value: Any, *, default: bool = False) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _coerce_int(value: Any, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _bounded_int(
    value: Any,
    *,
    default: int,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    resolved = _coerce_int(value, default=default)
    if minimum is not None:
        resolved = max(minimum, resolved)
    if maximum is not None:
        resolved = min(maximum, resolved)
    return resolved


def _bounded_float(
    value: Any,
    *,
    default: float,
    minimum: float | None = None,
    maximum: float | None = None,
) -> float:
    try:
        resolved = float(value)
    except (TypeError, ValueError):
        resolved = default
    if minimum is not None:
        resolved = max(minimum, resolved)
    if maximum is not None:
        resolved = min(maximum, resolved)
    return resolved


def _parse_jitter_value(value: Any, *, default_pct: float) -> float:
    resolved = default_pct
    if value is not None:
        try:
            resolved = float(value)
        except (TypeError, ValueError):
            resolved = default_pct
    if resolved < 0:
        return 0.0
    if resolved <= 1:
        return resolved
    return min(1.0, resolved / 100.0)


def _parse_backoff_kind(value: Any, *, default: BackoffKind) -> BackoffKind:
    if value is None:
        return default
    text = str(value).strip().lower()
    if text == "fixed":
        return "fixed"
    if text == "exponential":
        return "exponential"
    return default


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(slots=True, frozen=True)
class DatabaseConfig:
    url: str

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> DatabaseConfig:
        url = _optional_str(env.get("DATABASE_URL")) or DEFAULT_DATABASE_URL
        return cls(url=url)


@dataclass(slots=True, frozen=True)
class LoggingConfig:
    level: str
    log_file: str | None = None

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> LoggingConfig:
        level = (_optional_str(env.get("LOG_LEVEL")) or DEFAULT_LOG_LEVEL).upper()
        return cls(level=level, log_file=_optional_str(env.get("LOG_FILE")))


@dataclass(slots=True, frozen=True)
class WorkerConfig:
    enabled: bool
    poll_interval_ms: int
    heartbeat_s: float
    cleanup_interval_s: float

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000.0

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> WorkerConfig:
        enabled = _as_bool(env.get("WORKERS_ENABLED"), default=DEFAULT_WORKERS_ENABLED)
        poll_interval = _bounded_int(
            env.get("WORKER_POLL_INTERVAL_MS"),
            default=DEFAULT_WORKER_POLL_INTERVAL_MS,
            minimum=1,
        )
        heartbeat = _bounded_float(
            env.get("WORKER_HEARTBEAT_S"),
            default=DEFAULT_WORKER_HEARTBEAT_S,
            minimum=0.05,
        )
        cleanup = _bounded_float(
            env.get("WORKER_CLEANUP_INTERVAL_S"),
            default=DEFAULT_WORKER_CLEANUP_INTERVAL_S,
            minimum=1.0,
        )
        return cls(
            enabled=enabled,
            poll_interval_ms=poll_interval,
            heartbeat_s=heartbeat,
            cleanup_interval_s=cleanup,
        )


@dataclass(slots=True, frozen=True)
class QueueSettings:
    """Execution and retry policy of one named queue."""

    name: str
    concurrency: int
    max_attempts: int
    backoff: BackoffKind
    backoff_base_ms: int
    backoff_max_ms: int
    priority: JobPriority
    rate_limit_max: int = 0
    rate_limit_window_ms: int = 1000
    jitter_pct: float = 0.0
    lease_seconds: int = 60
    job_timeout_seconds: float = 300.0
    keep_completed_seconds: int = DEFAULT_KEEP_COMPLETED_S
    keep_failed_seconds: int = DEFAULT_KEEP_FAILED_S

    @property
    def backoff_base_seconds(self) -> float:
        return self.backoff_base_ms / 1000.0

    @property
    def backoff_max_seconds(self) -> float:
        return self.backoff_max_ms / 1000.0

    @property
    def rate_limited(self) -> bool:
        return self.rate_limit_max > 0

    def with_env(self, env: Mapping[str, Any]) -> QueueSettings:
        """Return a copy with ``QUEUE_<NAME>_*`` overrides from ``env`` applied."""

        prefix = QueueName(self.name).env_prefix
        return replace(
            self,
            concurrency=_bounded_int(
                env.get(f"{prefix}_CONCURRENCY"), default=self.concurrency, minimum=1
            ),
            max_attempts=_bounded_int(
                env.get(f"{prefix}_MAX_ATTEMPTS"), default=self.max_attempts, minimum=1
            ),
            backoff=_parse_backoff_kind(env.get(f"{prefix}_BACKOFF"), default=self.backoff),
            backoff_base_ms=_bounded_int(
                env.get(f"{prefix}_BACKOFF_BASE_MS"), default=self.backoff_base_ms, minimum=0
            ),
            backoff_max_ms=_bounded_int(
                env.get(f"{prefix}_BACKOFF_MAX_MS"), default=self.backoff_max_ms, minimum=0
            ),
            jitter_pct=_parse_jitter_value(
                env.get(f"{prefix}_JITTER_PCT"), default_pct=self.jitter_pct
            ),
            priority=parse_priority(env.get(f"{prefix}_PRIORITY"), default=self.priority),
            rate_limit_max=_bounded_int(
                env.get(f"{prefix}_RATE_MAX"), default=self.rate_limit_max, minimum=0
            ),
            rate_limit_window_ms=_bounded_int(
                env.get(f"{prefix}_RATE_WINDOW_MS"),
                default=self.rate_limit_window_ms,
                minimum=1,
            ),
            lease_seconds=_bounded_int(
                env.get(f"{prefix}_LEASE_S"), default=self.lease_seconds, minimum=1
            ),
            job_timeout_seconds=_bounded_float(
                env.get(f"{prefix}_JOB_TIMEOUT_S"),
                default=self.job_timeout_seconds,
                minimum=0.1,
            ),
            keep_completed_seconds=_bounded_int(
                env.get(f"{prefix}_KEEP_COMPLETED_S"),
                default=self.keep_completed_seconds,
                minimum=0,
            ),
            keep_failed_seconds=_bounded_int(
                env.get(f"{prefix}_KEEP_FAILED_S"),
                default=self.keep_failed_seconds,
                minimum=0,
            ),
        )


DEFAULT_QUEUE_SETTINGS: dict[QueueName, QueueSettings] = {
    QueueName.PROFILE_SYNC: QueueSettings(
        name=QueueName.PROFILE_SYNC.value,
        concurrency=5,
        max_attempts=3,
        backoff="exponential",
        backoff_base_ms=2000,
        backoff_max_ms=60_000,
        priority=JobPriority.CRITICAL,
    ),
    QueueName.CATALOG_SYNC: QueueSettings(
        name=QueueName.CATALOG_SYNC.value,
        concurrency=3,
        max_attempts=5,
        backoff="exponential",
        backoff_base_ms=3000,
        backoff_max_ms=120_000,
        priority=JobPriority.NORMAL,
        rate_limit_max=30,
        rate_limit_window_ms=1000,
    ),
    QueueName.DEEP_CATALOG: QueueSettings(
        name=QueueName.DEEP_CATALOG.value,
        concurrency=2,
        max_attempts=3,
        backoff="exponential",
        backoff_base_ms=5000,
        backoff_max_ms=300_000,
        priority=JobPriority.LOW,
        rate_limit_max=20,
        rate_limit_window_ms=1000,
        job_timeout_seconds=900.0,
    ),
    QueueName.EVENTS_SYNC: QueueSettings(
        name=QueueName.EVENTS_SYNC.value,
        concurrency=3,
        max_attempts=3,
        backoff="fixed",
        backoff_base_ms=2000,
        backoff_max_ms=2000,
        priority=JobPriority.HIGH,
        rate_limit_max=200,
        rate_limit_window_ms=1000,
    ),
    QueueName.IMPORT_FINALIZE: QueueSettings(
        name=QueueName.IMPORT_FINALIZE.value,
        concurrency=2,
        max_attempts=3,
        backoff="exponential",
        backoff_base_ms=2000,
        backoff_max_ms=60_000,
        priority=JobPriority.HIGH,
    ),
    QueueName.SETLIST_SYNC: QueueSettings(
        name=QueueName.SETLIST_SYNC.value,
        concurrency=2,
        max_attempts=3,
        backoff="exponential",
        backoff_base_ms=5000,
        backoff_max_ms=600_000,
        priority=JobPriority.BACKGROUND,
        rate_limit_max=60,
        rate_limit_window_ms=60_000,
        job_timeout_seconds=900.0,
    ),
}


@dataclass(slots=True, frozen=True)
class ProviderSettings:
    """Connection, rate-limit and circuit-breaker settings of one provider."""

    name: str
    base_url: str
    timeout_ms: int
    rate_capacity: int
    rate_window_ms: int
    acquire_timeout_ms: int
    breaker_threshold: int
    breaker_cooldown_ms: int
    breaker_max_cooldown_ms: int
    auth_url: str | None = None
    api_key: str | None = field(default=None, repr=False)
    client_id: str | None = field(default=None, repr=False)
    client_secret: str | None = field(default=None, repr=False)

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0

    @property
    def rate_window_seconds(self) -> float:
        return self.rate_window_ms / 1000.0

    @property
    def acquire_timeout_seconds(self) -> float:
        return self.acquire_timeout_ms / 1000.0

    @property
    def breaker_cooldown_seconds(self) -> float:
        return self.breaker_cooldown_ms / 1000.0

    @property
    def breaker_max_cooldown_seconds(self) -> float:
        return self.breaker_max_cooldown_ms / 1000.0

    def with_env(self, env: Mapping[str, Any]) -> ProviderSettings:
        prefix = f"PROVIDER_{self.name.upper()}"
        cooldown = _bounded_int(
            env.get(f"{prefix}_BREAKER_COOLDOWN_MS"),
            default=self.breaker_cooldown_ms,
            minimum=1,
        )
        return replace(
            self,
            base_url=_optional_str(env.get(f"{prefix}_BASE_URL")) or self.base_url,
            auth_url=_optional_str(env.get(f"{prefix}_AUTH_URL")) or self.auth_url,
            timeout_ms=_bounded_int(
                env.get(f"{prefix}_TIMEOUT_MS"), default=self.timeout_ms, minimum=100
            ),
            rate_capacity=_bounded_int(
                env.get(f"{prefix}_RATE_CAPACITY"), default=self.rate_capacity, minimum=1
            ),
            rate_window_ms=_bounded_int(
                env.get(f"{prefix}_RATE_WINDOW_MS"), default=self.rate_window_ms, minimum=1
            ),
            acquire_timeout_ms=_bounded_int(
                env.get(f"{prefix}_ACQUIRE_TIMEOUT_MS"),
                default=self.acquire_timeout_ms,
                minimum=0,
            ),
            breaker_threshold=_bounded_int(
                env.get(f"{prefix}_BREAKER_THRESHOLD"),
                default=self.breaker_threshold,
                minimum=1,
            ),
            breaker_cooldown_ms=cooldown,
            breaker_max_cooldown_ms=_bounded_int(
                env.get(f"{prefix}_BREAKER_MAX_COOLDOWN_MS"),
                default=self.breaker_max_cooldown_ms,
                minimum=cooldown,
            ),
        )


SPOTIFY = "spotify"
TICKETMASTER = "ticketmaster"
SETLISTFM = "setlistfm"

DEFAULT_PROVIDER_SETTINGS: dict[str, ProviderSettings] = {
    SPOTIFY: ProviderSettings(
        name=SPOTIFY,
        base_url="https://api.spotify.com/v1",
        auth_url="https://accounts.spotify.com/api/token",
        timeout_ms=10_000,
        rate_capacity=30,
        rate_window_ms=1000,
        acquire_timeout_ms=30_000,
        breaker_threshold=5,
        breaker_cooldown_ms=30_000,
        breaker_max_cooldown_ms=300_000,
    ),
    TICKETMASTER: ProviderSettings(
        name=TICKETMASTER,
        base_url="https://app.ticketmaster.com/discovery/v2",
        timeout_ms=10_000,
        rate_capacity=20,
        rate_window_ms=1000,
        acquire_timeout_ms=30_000,
        breaker_threshold=5,
        breaker_cooldown_ms=30_000,
        breaker_max_cooldown_ms=300_000,
    ),
    SETLISTFM: ProviderSettings(
        name=SETLISTFM,
        base_url="https://api.setlist.fm/rest/1.0",
        timeout_ms=15_000,
        rate_capacity=10,
        rate_window_ms=60_000,
        acquire_timeout_ms=120_000,
        breaker_threshold=3,
        breaker_cooldown_ms=60_000,
        breaker_max_cooldown_ms=900_000,
    ),
}


def _load_provider_settings(env: Mapping[str, Any]) -> dict[str, ProviderSettings]:
    providers = {
        name: defaults.with_env(env) for name, defaults in DEFAULT_PROVIDER_SETTINGS.items()
    }
    providers[SPOTIFY] = replace(
        providers[SPOTIFY],
        client_id=_optional_str(env.get("SPOTIFY_CLIENT_ID")),
        client_secret=_optional_str(env.get("SPOTIFY_CLIENT_SECRET")),
    )
    providers[TICKETMASTER] = replace(
        providers[TICKETMASTER],
        api_key=_optional_str(env.get("TICKETMASTER_API_KEY")),
    )
    providers[SETLISTFM] = replace(
        providers[SETLISTFM],
        api_key=_optional_str(env.get("SETLISTFM_API_KEY")),
    )
    return providers


@dataclass(slots=True, frozen=True)
class ImportConfig:
    deep_catalog_delay_ms: int
    setlist_size: int
    max_setlist_shows: int
    top_songs_limit: int
    events_page_size: int
    events_max_pages: int
    historical_setlists: bool
    historical_max_pages: int
    market: str

    @property
    def deep_catalog_delay_seconds(self) -> float:
        return self.deep_catalog_delay_ms / 1000.0

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> ImportConfig:
        return cls(
            deep_catalog_delay_ms=_bounded_int(
                env.get("IMPORT_DEEP_CATALOG_DELAY_MS"),
                default=DEFAULT_DEEP_CATALOG_DELAY_MS,
                minimum=0,
            ),
            setlist_size=_bounded_int(
                env.get("IMPORT_SETLIST_SIZE"),
                default=DEFAULT_SETLIST_SIZE,
                minimum=1,
                maximum=50,
            ),
            max_setlist_shows=_bounded_int(
                env.get("IMPORT_MAX_SETLIST_SHOWS"),
                default=DEFAULT_MAX_SETLIST_SHOWS,
                minimum=0,
            ),
            top_songs_limit=_bounded_int(
                env.get("IMPORT_TOP_SONGS_LIMIT"),
                default=DEFAULT_TOP_SONGS_LIMIT,
                minimum=1,
            ),
            events_page_size=_bounded_int(
                env.get("IMPORT_EVENTS_PAGE_SIZE"),
                default=DEFAULT_EVENTS_PAGE_SIZE,
                minimum=1,
                maximum=200,
            ),
            events_max_pages=_bounded_int(
                env.get("IMPORT_EVENTS_MAX_PAGES"),
                default=DEFAULT_EVENTS_MAX_PAGES,
                minimum=1,
            ),
            historical_setlists=_as_bool(env.get("IMPORT_HISTORICAL_SETLISTS"), default=True),
            historical_max_pages=_bounded_int(
                env.get("IMPORT_HISTORICAL_MAX_PAGES"),
                default=DEFAULT_HISTORICAL_MAX_PAGES,
                minimum=1,
            ),
            market=_optional_str(env.get("IMPORT_MARKET")) or DEFAULT_MARKET,
        )


@dataclass(slots=True, frozen=True)
class AppConfig:
    database: DatabaseConfig
    logging: LoggingConfig
    workers: WorkerConfig
    queues: Mapping[QueueName, QueueSettings]
    providers: Mapping[str, ProviderSettings]
    imports: ImportConfig

    def queue(self, name: QueueName | str) -> QueueSettings:
        return self.queues[QueueName(name)]

    def provider(self, name: str) -> ProviderSettings:
        return self.providers[name]


def load_config(runtime_env: Mapping[str, Any] | None = None) -> AppConfig:
    """Assemble the application configuration from the runtime environment."""

    env = runtime_env if runtime_env is not None else get_runtime_env()
    queues = {name: defaults.with_env(env) for name, defaults in DEFAULT_QUEUE_SETTINGS.items()}
    return AppConfig(
        database=DatabaseConfig.from_env(env),
        logging=LoggingConfig.from_env(env),
        workers=WorkerConfig.from_env(env),
        queues=queues,
        providers=_load_provider_settings(env),
        imports=ImportConfig.from_env(env),
    )


def config_summary(config: AppConfig) -> dict[str, Any]:
    """Return a secret free summary suitable for the ``config.loaded`` event."""

    return {
        "workers": {
            "enabled": config.workers.enabled,
            "poll_interval_ms": config.workers.poll_interval_ms,
        },
        "queues": {
            name.value: {
                "concurrency": settings.concurrency,
                "max_attempts": settings.max_attempts,
                "backoff": settings.backoff,
                "backoff_base_ms": settings.backoff_base_ms,
                "priority": int(settings.priority),
                "rate_limit_max": settings.rate_limit_max,
            }
            for name, settings in config.queues.items()
        },
        "providers": {
            name: {
                "timeout_ms": settings.timeout_ms,
                "rate_capacity": settings.rate_capacity,
                "rate_window_ms": settings.rate_window_ms,
                "breaker_threshold": settings.breaker_threshold,
                "credentials": bool(settings.api_key or settings.client_id),
            }
            for name, settings in config.providers.items()
        },
    }


__all__ = [
    "AppConfig",
    "DEFAULT_PROVIDER_SETTINGS",
    "DEFAULT_QUEUE_SETTINGS",
    "DatabaseConfig",
    "ImportConfig",
    "LoggingConfig",
    "ProviderSettings",
    "QueueSettings",
    "SETLISTFM",
    "SPOTIFY",
    "TICKETMASTER",
    "WorkerConfig",
    "config_summary",
    "get_runtime_env",
    "load_config",
    "load_runtime_env",
    "override_runtime_env",
]
