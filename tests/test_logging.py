from __future__ import annotations

import logging

import pytest

from encore.logging import LOG_FORMAT, EventFormatter, get_logger
from encore.logging_events import log_event


def test_log_event_attaches_fields_to_the_record(caplog: pytest.LogCaptureFixture) -> None:
    logger = get_logger("encore.tests.events")

    with caplog.at_level(logging.INFO, logger="encore.tests.events"):
        log_event(logger, "worker.job", queue="catalog-sync", job_id=7, meta={"attempts": [1, 2]})

    record = caplog.records[-1]
    assert record.getMessage() == "worker.job"
    assert record.event == "worker.job"
    assert record.queue == "catalog-sync"
    assert record.job_id == 7
    assert record.meta == {"attempts": [1, 2]}


def test_log_event_rejects_nested_and_reserved_fields() -> None:
    logger = get_logger("encore.tests.events")

    with pytest.raises(TypeError):
        log_event(logger, "worker.job", payload={"artist_id": 1})
    with pytest.raises(ValueError):
        log_event(logger, "worker.job", name="profile-sync")
    with pytest.raises(ValueError):
        log_event(logger, " ")


def test_formatter_appends_event_fields() -> None:
    record = logging.LogRecord("encore.worker", logging.INFO, __file__, 1, "worker.job", None, None)
    record.event = "worker.job"
    record.queue = "catalog-sync"
    record.status = "retry scheduled"

    line = EventFormatter(LOG_FORMAT).format(record)

    assert line.endswith("encore.worker: worker.job queue=catalog-sync status='retry scheduled'")
