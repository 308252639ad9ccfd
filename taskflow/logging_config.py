"""
Central logging configuration for the submission service.

Provides:
- Structured logging (JSON in production, human-readable in development)
- Correlation via contextvars (request id set by middleware, task id set
  by background submission processing)
- Environment-aware log levels

Usage:
    from taskflow.logging_config import get_logger
    logger = get_logger(__name__)
    logger.info("Rendering evidence", extra={"task_id": str(task.id)})
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Optional

# Set per HTTP request (X-Request-ID) or per background job ("task:<id>")
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_RESERVED_ATTRS = frozenset((
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "taskName", "correlation_id",
))


def get_correlation_id() -> Optional[str]:
    """Get the current correlation id from context, if set."""
    return correlation_id_var.get()


class CorrelationIdFilter(logging.Filter):
    """Filter that adds correlation_id to log records from context."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id() or "-"  # type: ignore[attr-defined]
        return True


class JsonFormatter(logging.Formatter):
    """Format log records as JSON for production log aggregators."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        corr_id = getattr(record, "correlation_id", None)
        if corr_id and corr_id != "-":
            log_obj["correlation_id"] = corr_id

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        # Fields passed via extra= in the log call
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or value is None:
                continue
            try:
                json.dumps(value)
                log_obj[key] = value
            except (TypeError, ValueError):
                log_obj[key] = str(value)

        return json.dumps(log_obj)


def _create_dev_formatter() -> logging.Formatter:
    return logging.Formatter(
        "%(asctime)s %(levelname)-5s [%(name)s] cid=%(correlation_id)s %(message)s",
        datefmt="%H:%M:%S",
    )


def configure_logging(
    *,
    log_level: str = "INFO",
    environment: str = "development",
    debug: bool = False,
) -> None:
    """
    Configure application-wide logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        environment: 'development' or 'production'
        debug: If True, use DEBUG level regardless of log_level
    """
    level = logging.DEBUG if debug else getattr(logging, log_level.upper(), logging.INFO)

    old_factory = logging.getLogRecordFactory()

    def record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
        record = old_factory(*args, **kwargs)
        if not hasattr(record, "correlation_id"):
            setattr(record, "correlation_id", "-")
        return record

    logging.setLogRecordFactory(record_factory)

    root = logging.getLogger()
    root.setLevel(level)

    # Remove existing handlers to avoid duplicates on reload
    for h in root.handlers[:]:
        root.removeHandler(h)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.addFilter(CorrelationIdFilter())

    if environment == "production":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(_create_dev_formatter())

    root.addHandler(handler)

    # Reduce noise from third-party loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for the given module name.

    Records carry correlation_id automatically once configure_logging ran.
    """
    return logging.getLogger(name)
