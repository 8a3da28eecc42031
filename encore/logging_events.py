"""``log_event``: one structured record per queue, stage, provider or cache event.

The event name doubles as the log message; the remaining keywords become
record attributes that :class:`encore.logging.EventFormatter` renders.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from encore.logging import RESERVED_RECORD_ATTRS

_JSON_PRIMITIVES = (str, int, float, bool, type(None))


def _check_field(name: str, value: Any) -> None:
    if name in RESERVED_RECORD_ATTRS:
        raise ValueError(f"Field '{name}' clashes with a LogRecord attribute")
    if not isinstance(value, _JSON_PRIMITIVES):
        raise TypeError(f"Field '{name}' must be a flat JSON-compatible value")


def _check_meta(value: Any, *, path: str = "meta") -> None:
    if isinstance(value, _JSON_PRIMITIVES):
        return
    if isinstance(value, Mapping):
        for key, nested in value.items():
            if not isinstance(key, str):
                raise TypeError(f"Keys in '{path}' must be strings")
            _check_meta(nested, path=f"{path}.{key}")
        return
    if isinstance(value, (list, tuple)):
        for index, nested in enumerate(value):
            _check_meta(nested, path=f"{path}[{index}]")
        return
    raise TypeError(f"Unsupported value in '{path}': {type(value).__name__}")


def log_event(logger: Any, event: str, /, *, level: int = logging.INFO, **fields: Any) -> None:
    """Emit ``event`` at ``level`` with ``fields`` attached to the record.

    Every keyword except ``meta`` must be a flat JSON primitive and must not
    shadow a standard LogRecord attribute such as ``name`` or ``msg``.
    ``meta`` may hold nested mappings and lists.
    """

    if not isinstance(event, str) or not event.strip():
        raise ValueError("event must be a non-empty string")

    meta = fields.pop("meta", None)
    extra: dict[str, Any] = {"event": event}
    for name, value in fields.items():
        _check_field(name, value)
        extra[name] = value
    if meta is not None:
        if not isinstance(meta, Mapping):
            raise TypeError("meta must be a mapping if provided")
        _check_meta(meta)
        extra["meta"] = dict(meta)

    if logger.isEnabledFor(level):
        logger.log(level, event, extra=extra)
