from __future__ import annotations

from pathlib import Path

from encore.config import (
    DEFAULT_QUEUE_SETTINGS,
    SETLISTFM,
    SPOTIFY,
    TICKETMASTER,
    config_summary,
    load_config,
    load_runtime_env,
)
from encore.queues import QueueName
from encore.utils.priority import JobPriority, parse_priority


def test_defaults_without_environment() -> None:
    config = load_config({})

    assert config.workers.enabled is True
    assert config.workers.poll_interval_ms == 500
    assert config.database.url.startswith("sqlite")
    assert config.imports.deep_catalog_delay_ms == 5000
    assert config.imports.historical_setlists is True
    assert config.imports.market == "US"
    assert config.queue(QueueName.PROFILE_SYNC).priority is JobPriority.CRITICAL
    assert config.queue("setlist-sync").priority is JobPriority.BACKGROUND
    assert config.provider(SETLISTFM).api_key is None
    assert dict(config.queues) == DEFAULT_QUEUE_SETTINGS


def test_queue_overrides_are_applied_and_bounded() -> None:
    config = load_config(
        {
            "QUEUE_CATALOG_SYNC_CONCURRENCY": "7",
            "QUEUE_CATALOG_SYNC_BACKOFF": "FIXED",
            "QUEUE_CATALOG_SYNC_JITTER_PCT": "25",
            "QUEUE_CATALOG_SYNC_PRIORITY": "high",
            "QUEUE_DEEP_CATALOG_MAX_ATTEMPTS": "0",
            "QUEUE_EVENTS_SYNC_BACKOFF": "linear",
            "QUEUE_IMPORT_FINALIZE_PRIORITY": "42",
        }
    )

    catalog = config.queue(QueueName.CATALOG_SYNC)
    assert catalog.concurrency == 7
    assert catalog.backoff == "fixed"
    assert catalog.jitter_pct == 0.25
    assert catalog.priority is JobPriority.HIGH
    assert config.queue(QueueName.DEEP_CATALOG).max_attempts == 1
    assert config.queue(QueueName.EVENTS_SYNC).backoff == "fixed"
    assert config.queue(QueueName.IMPORT_FINALIZE).priority is JobPriority.BACKGROUND


def test_provider_and_import_overrides() -> None:
    config = load_config(
        {
            "PROVIDER_SPOTIFY_RATE_CAPACITY": "5",
            "PROVIDER_SETLISTFM_BREAKER_COOLDOWN_MS": "90000",
            "PROVIDER_SETLISTFM_BREAKER_MAX_COOLDOWN_MS": "1000",
            "SETLISTFM_API_KEY": "  sfm  ",
            "TICKETMASTER_API_KEY": "",
            "IMPORT_SETLIST_SIZE": "500",
            "IMPORT_HISTORICAL_SETLISTS": "off",
            "WORKERS_ENABLED": "no",
        }
    )

    assert config.provider(SPOTIFY).rate_capacity == 5
    setlistfm = config.provider(SETLISTFM)
    assert setlistfm.breaker_cooldown_ms == 90_000
    assert setlistfm.breaker_max_cooldown_ms == 90_000
    assert setlistfm.api_key == "sfm"
    assert config.provider(TICKETMASTER).api_key is None
    assert config.imports.setlist_size == 50
    assert config.imports.historical_setlists is False
    assert config.workers.enabled is False


def test_summary_never_contains_credentials() -> None:
    config = load_config({"SPOTIFY_CLIENT_SECRET": "very-secret", "SPOTIFY_CLIENT_ID": "client"})

    summary = config_summary(config)

    assert summary["providers"][SPOTIFY]["credentials"] is True
    assert summary["providers"][SETLISTFM]["credentials"] is False
    assert "very-secret" not in repr(summary)
    assert "very-secret" not in repr(config.provider(SPOTIFY))


def test_environment_wins_over_env_file(tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text(
        "# local overrides\nLOG_LEVEL=debug\nIMPORT_MARKET='DE'\nbroken-line\n",
        encoding="utf-8",
    )

    env = load_runtime_env(env_file=env_file, base_env={"LOG_LEVEL": "warning"})
    config = load_config(env)

    assert config.logging.level == "WARNING"
    assert config.imports.market == "DE"


def test_parse_priority_accepts_names_and_numbers() -> None:
    assert parse_priority("critical") is JobPriority.CRITICAL
    assert parse_priority(" 4 ") is JobPriority.LOW
    assert parse_priority(0) is JobPriority.CRITICAL
    assert parse_priority("urgent", default=JobPriority.HIGH) is JobPriority.HIGH
    assert parse_priority(None) is JobPriority.NORMAL
