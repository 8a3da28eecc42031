"""Process logging setup for the worker service.

Records emitted through :func:`encore.logging_events.log_event` carry their
payload as record attributes. :class:`EventFormatter` appends those
attributes to the line as ``key=value`` pairs so that queue, stage and
provider fields survive into plain-text logs.
"""

from __future__ import annotations

import logging
import sys
from typing import Any, Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Attributes every LogRecord has; anything else came in through ``extra``.
RESERVED_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime"}

# Chatty third-party loggers and the level they are capped at.
_QUIET_LOGGERS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
}


class EventFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = {
            key: value
            for key, value in vars(record).items()
            if key not in RESERVED_RECORD_ATTRS and key != "event"
        }
        if not fields:
            return line
        return f"{line} " + " ".join(f"{key}={_render(value)}" for key, value in fields.items())


def _render(value: Any) -> str:
    text = str(value)
    return repr(text) if " " in text or not text else text


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure process wide logging handlers."""
    formatter = EventFormatter(LOG_FORMAT)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    for handler in handlers:
        handler.setFormatter(formatter)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        handlers=handlers,
        force=True,
    )
    for name, cap in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(cap)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
