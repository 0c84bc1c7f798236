"""strmarket logging configuration.

Call ``configure_logging()`` once at process startup (``__main__`` does);
modules log through ``logging.getLogger(__name__)``.

``LOG_LEVEL`` (DEBUG | INFO | WARNING | ERROR, default INFO) and
``LOG_FORMAT`` (text | json, default text) are read at call time when no
explicit value is passed.

Every record carries a correlation id from :data:`CORRELATION_ID_CTX`: the
batch id while a batch refresh runs, the job id prefix while the result
consumer handles a message, ``"-"`` otherwise.  In JSON mode the id and the
structured ``event`` name (see :mod:`strmarket.core.events`) are top-level
fields so job and batch histories can be filtered directly.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any, Final

__all__ = [
    "configure_logging",
    "JsonFormatter",
    "CORRELATION_ID_CTX",
    "CorrelationFilter",
]

CORRELATION_ID_CTX: ContextVar[str] = ContextVar("correlation_id", default="-")

_VALID_LEVELS: Final = ("DEBUG", "INFO", "WARNING", "ERROR")
_VALID_FORMATS: Final = ("text", "json")

_TEXT_FORMAT: Final = "%(asctime)s %(levelname)-8s [%(correlation_id)s] %(name)s: %(message)s"
_DATE_FORMAT: Final = "%Y-%m-%d %H:%M:%S"

# httpx logs every broker poll at INFO; aiosqlite logs every statement at DEBUG.
_CHATTY_LIBRARIES: Final = ("httpx", "httpcore", "aiosqlite")

# Attributes every LogRecord has; anything else was passed via ``extra``.
_RECORD_ATTRS: Final = frozenset(vars(logging.makeLogRecord({}))) | {
    "message",
    "asctime",
    "correlation_id",
    "event",
}


class CorrelationFilter(logging.Filter):
    """Stamp ``record.correlation_id`` from :data:`CORRELATION_ID_CTX`."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        record.correlation_id = CORRELATION_ID_CTX.get()
        return True


def _resolve(value: str | None, env_var: str, default: str, allowed: tuple[str, ...]) -> str:
    resolved = value or os.environ.get(env_var, default)
    resolved = resolved.upper() if env_var == "LOG_LEVEL" else resolved.lower()
    if resolved not in allowed:
        raise ValueError(f"Unknown {env_var} {resolved!r}. Must be one of: {', '.join(allowed)}")
    return resolved


def configure_logging(
    level: str | None = None,
    fmt: str | None = None,
    *,
    force: bool = False,
) -> None:
    """Install one stderr handler on the root logger.

    When the root logger already has handlers and *force* is false only the
    level is updated.

    Raises:
        ValueError: Unrecognised level or format.
    """
    resolved_level = _resolve(level, "LOG_LEVEL", "INFO", _VALID_LEVELS)
    resolved_fmt = _resolve(fmt, "LOG_FORMAT", "text", _VALID_FORMATS)

    root = logging.getLogger()
    root.setLevel(resolved_level)
    if root.handlers and not force:
        return

    root.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    handler.addFilter(CorrelationFilter())
    if resolved_fmt == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(fmt=_TEXT_FORMAT, datefmt=_DATE_FORMAT))
    root.addHandler(handler)

    library_level = logging.DEBUG if resolved_level == "DEBUG" else logging.WARNING
    for name in _CHATTY_LIBRARIES:
        logging.getLogger(name).setLevel(library_level)


class JsonFormatter(logging.Formatter):
    """One JSON object per record.

    Shape::

        {"ts": "2026-10-19T12:34:56.789Z", "level": "INFO",
         "logger": "strmarket.orchestrator.service", "message": "...",
         "event": "JOB_STARTED", "correlation_id": "3f9a1c2e",
         "extra": {...}}

    ``event`` is ``null`` for records logged without one.  Extras that are not
    JSON types (UUIDs, Decimals, datetimes) are written with ``str()``.
    """

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        created = datetime.fromtimestamp(record.created, tz=UTC)
        payload: dict[str, Any] = {
            "ts": created.strftime("%Y-%m-%dT%H:%M:%S.") + f"{int(record.msecs):03d}Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "event": getattr(record, "event", None),
            "correlation_id": getattr(record, "correlation_id", CORRELATION_ID_CTX.get()),
            "extra": {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS},
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        elif record.exc_text:
            payload["exc_info"] = record.exc_text
        if record.stack_info:
            payload["stack_info"] = self.formatStack(record.stack_info)
        return json.dumps(payload, default=str)
