"""Structured logging configuration (JSON and text formatters)."""

from __future__ import annotations

import json
import logging
import sys
import traceback
from datetime import datetime, timezone

from poicache.services.request_context import get_location_key, get_operation_id

# Attributes present on every LogRecord — used by JSONFormatter to filter extras.
_STANDARD_RECORD_ATTRS: frozenset[str] = frozenset(
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
    }
)


def _timestamp(record: logging.LogRecord) -> datetime:
    return datetime.fromtimestamp(record.created, tz=timezone.utc)


def _format_exception(record: logging.LogRecord) -> str | None:
    if record.exc_info and record.exc_info[0] is not None:
        return "".join(traceback.format_exception(*record.exc_info))
    return None


class JSONFormatter(logging.Formatter):
    """Single-line JSON log output for log aggregators."""

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()
        entry: dict = {
            "timestamp": _timestamp(record).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
        }

        operation_id = get_operation_id()
        if operation_id:
            entry["operation_id"] = operation_id
        location_key = get_location_key()
        if location_key:
            entry["location_key"] = location_key

        # Include extra fields
        for key, value in record.__dict__.items():
            if key not in _STANDARD_RECORD_ATTRS and not key.startswith("_"):
                entry[key] = value

        exception = _format_exception(record)
        if exception:
            entry["exception"] = exception

        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable text format, prefixed with the short operation ID and
    location key when a lookup is in progress."""

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()
        ts = _timestamp(record).strftime("%Y-%m-%d %H:%M:%S")

        prefix = ""
        operation_id = get_operation_id()
        if operation_id:
            prefix += f"[{operation_id[:12]}] "
        location_key = get_location_key()
        if location_key:
            prefix += f"<{location_key}> "

        line = f"{ts} {record.levelname:<8} {prefix}{record.name} - {record.message}"

        exception = _format_exception(record)
        if exception:
            line += "\n" + exception

        return line


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "text",
    logger_name: str = "poicache",
) -> logging.Logger:
    """Attach a single stderr handler to the package logger.

    Only the ``poicache`` logger is touched by default so an embedding
    application keeps control of the root logger.
    """
    logger = logging.getLogger(logger_name)
    logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    # Remove existing handlers to avoid duplicate output on reconfiguration
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    if log_format.lower() == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(TextFormatter())

    logger.addHandler(handler)
    return logger
