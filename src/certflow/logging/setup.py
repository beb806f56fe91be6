"""Structured logging configuration for certflow.

Provides JSON and text formatters, a context filter that stamps every
record with the order and user being worked on (plus the Flask request
id inside a request), and a one-call :func:`configure_logging`.

Usage::

    with log_context(order_id=order.id, user_id=order.user_id):
        log.info("Generating DNS challenge")
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator

    from certflow.config.settings import LoggingSettings

_order_id: ContextVar[int | None] = ContextVar("certflow_order_id", default=None)
_user_id: ContextVar[int | None] = ContextVar("certflow_user_id", default=None)

# Attributes that are part of the standard LogRecord; anything else is
# an "extra" and is copied into structured output.
_STANDARD_ATTRS = frozenset(
    {
        "args",
        "created",
        "exc_info",
        "exc_text",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "message",
        "module",
        "msecs",
        "msg",
        "name",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "taskName",
        "thread",
        "threadName",
        "request_id",
        "order_id",
        "user_id",
    }
)


@contextmanager
def log_context(*, order_id: int | None = None, user_id: int | None = None) -> Iterator[None]:
    """Attach *order_id* / *user_id* to every record logged inside the block."""
    order_token = _order_id.set(order_id) if order_id is not None else None
    user_token = _user_id.set(user_id) if user_id is not None else None
    try:
        yield
    finally:
        if order_token is not None:
            _order_id.reset(order_token)
        if user_token is not None:
            _user_id.reset(user_token)


# ---------------------------------------------------------------------------
# Formatters
# ---------------------------------------------------------------------------


class StructuredFormatter(logging.Formatter):
    """JSON-lines formatter: one object per record, extras included."""

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()

        data: dict = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
        }
        for attr in ("request_id", "order_id", "user_id"):
            value = getattr(record, attr, None)
            if value is not None and value != "-":
                data[attr] = value

        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS and not key.startswith("_"):
                data.setdefault(key, value)

        if record.exc_info and record.exc_info[0] is not None:
            data["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            data["stack_info"] = self.formatStack(record.stack_info)

        return json.dumps(data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable formatter for the console."""

    _FMT = "%(asctime)s %(levelname)-8s [%(request_id)s] order=%(order_id)s %(name)s: %(message)s"

    def __init__(self) -> None:
        super().__init__(fmt=self._FMT, datefmt="%Y-%m-%d %H:%M:%S")


# ---------------------------------------------------------------------------
# Filter
# ---------------------------------------------------------------------------


class OrderContextFilter(logging.Filter):
    """Fill ``order_id``, ``user_id`` and ``request_id`` on every record.

    Explicit ``extra=`` values win over the context variables; records
    logged outside any context get ``-`` / ``None`` so formatters never
    miss an attribute.
    """

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        if getattr(record, "order_id", None) is None:
            record.order_id = _order_id.get()  # type: ignore[attr-defined]
        if getattr(record, "user_id", None) is None:
            record.user_id = _user_id.get()  # type: ignore[attr-defined]
        if not hasattr(record, "request_id"):
            record.request_id = "-"  # type: ignore[attr-defined]

        from flask import g, has_request_context  # noqa: PLC0415

        if has_request_context():
            record.request_id = getattr(g, "request_id", record.request_id)  # type: ignore[attr-defined]
        return True


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def configure_logging(settings: LoggingSettings) -> logging.Logger:
    """Configure the ``certflow`` logger hierarchy from settings.

    Replaces bootstrap handlers and attaches the audit file handler
    when ``settings.audit`` asks for one.  Returns the ``certflow``
    logger.
    """
    level = getattr(logging, settings.level.upper(), logging.INFO)

    root = logging.getLogger("certflow")
    root.setLevel(level)
    root.handlers.clear()
    root.propagate = False

    formatter: logging.Formatter
    formatter = StructuredFormatter() if settings.format == "json" else TextFormatter()
    ctx_filter = OrderContextFilter()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    console.addFilter(ctx_filter)
    root.addHandler(console)

    if settings.audit.enabled and settings.audit.file:
        from logging.handlers import RotatingFileHandler  # noqa: PLC0415

        audit = logging.getLogger("certflow.audit")
        audit.setLevel(logging.INFO)
        try:
            fh = RotatingFileHandler(
                settings.audit.file,
                maxBytes=settings.audit.max_file_size_bytes,
                backupCount=settings.audit.backup_count,
            )
        except OSError as exc:
            root.warning("Could not open audit log file %s: %s", settings.audit.file, exc)
        else:
            fh.setFormatter(StructuredFormatter())
            fh.addFilter(ctx_filter)
            audit.addHandler(fh)

    for lib in ("werkzeug", "gunicorn", "gunicorn.access", "gunicorn.error"):
        logging.getLogger(lib).setLevel(logging.WARNING)

    return root
