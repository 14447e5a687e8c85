"""
Structured JSON logging for the resilience layer.

Every module logs through ``logging.getLogger(__name__)``. Applications that
ship logs to a collector can switch the package (or the root logger) to
single-line JSON records with ``configure_structured_logging``.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

PACKAGE_LOGGER = "resilient_client"

_STANDARD_ATTRS = {
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "taskName", "message",
}


def component_of(logger_name: str) -> str | None:
    """Return the package module a logger belongs to, or None outside the package."""
    if logger_name == PACKAGE_LOGGER:
        return "core"
    prefix = PACKAGE_LOGGER + "."
    if not logger_name.startswith(prefix):
        return None
    return logger_name[len(prefix):].split(".", 1)[0]


class StructuredJsonFormatter(logging.Formatter):
    """
    JSON formatter emitting one object per record.

    Fields: timestamp (ISO 8601, UTC), level, logger, component (the module
    inside the package, e.g. "queue" or "connectivity"), message, exception
    when present, and every ``extra`` attribute (request_id, method, url,
    online, ...).
    """

    def format(self, record: logging.LogRecord) -> str:
        log_obj: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        component = component_of(record.name)
        if component:
            log_obj["component"] = component

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _STANDARD_ATTRS or key.startswith("_"):
                continue
            try:
                json.dumps(value)
                log_obj[key] = value
            except (TypeError, ValueError):
                log_obj[key] = str(value)

        return json.dumps(log_obj, default=str)


def configure_structured_logging(
    level: int = logging.INFO,
    logger_name: str | None = PACKAGE_LOGGER,
    stream: Any = None,
) -> logging.Logger:
    """
    Route a logger's records to a stream as JSON lines.

    Args:
        level: Logging level (default: INFO)
        logger_name: Logger to configure (default: the package logger,
            None for the root logger)
        stream: Output stream (default: stdout)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)
    logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(StructuredJsonFormatter())

    logger.addHandler(handler)
    logger.setLevel(level)
    return logger


class RequestLoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter that stamps request context on every record.

    Used by the request queue so each replay, retry and abandonment line
    carries the request id, method and url.
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        extra = dict(self.extra or {})
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs
