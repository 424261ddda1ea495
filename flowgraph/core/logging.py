"""Logging configuration for the workflow graph engine."""

import contextvars
import json
import logging
import sys
import traceback
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional


# Per-run context; concurrent runs execute on different threads and each
# thread sees only its own values.
_log_context: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "flowgraph_log_context", default={}
)


class StructuredFormatter(logging.Formatter):
    """Formatter that renders each record as one JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info)
            }

        if hasattr(record, "extra_fields"):
            log_entry.update(record.extra_fields)

        return json.dumps(log_entry, default=str)


class RunContextFilter(logging.Filter):
    """Attach the current run context (run id, node id, ...) to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = _log_context.get()
        if not hasattr(record, "extra_fields"):
            record.extra_fields = {}
        record.extra_fields.update(context)
        record.run_id = context.get("run_id", "-")
        return True


_context_filter = RunContextFilter()


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    structured: bool = False,
    max_size: int = 10 * 1024 * 1024,
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure logging for the engine and its HTTP adapter.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path for log output
        log_format: Custom log format string
        structured: Whether to use structured JSON logging
        max_size: Maximum log file size in bytes before rotation
        backup_count: Number of backup files to keep

    Returns:
        Root logger instance
    """
    if structured:
        formatter = StructuredFormatter()
    else:
        if log_format is None:
            log_format = "%(asctime)s - %(name)s - %(levelname)s - [run=%(run_id)s] - %(message)s"

        formatter = logging.Formatter(
            fmt=log_format,
            datefmt="%Y-%m-%d %H:%M:%S"
        )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(_context_filter)
    root_logger.addHandler(console_handler)

    if log_file:
        from logging.handlers import RotatingFileHandler

        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_size,
            backupCount=backup_count
        )
        file_handler.setFormatter(formatter)
        file_handler.addFilter(_context_filter)
        root_logger.addHandler(file_handler)

    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    logging.getLogger("flowgraph.core").setLevel(logging.DEBUG if level.upper() == "DEBUG" else logging.INFO)
    logging.getLogger("flowgraph.api").setLevel(logging.INFO)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for the given name."""
    return logging.getLogger(name)


def set_logging_context(**kwargs):
    """Merge fields into the logging context of the current thread/task."""
    _log_context.set({**_log_context.get(), **kwargs})


def clear_logging_context():
    """Clear the logging context of the current thread/task."""
    _log_context.set({})


@contextmanager
def logging_context(**kwargs):
    """Scope logging context fields to a ``with`` block."""
    token = _log_context.set({**_log_context.get(), **kwargs})
    try:
        yield
    finally:
        _log_context.reset(token)


def log_with_context(logger: logging.Logger, level: int, message: str, **context):
    """Log a message with additional context fields."""
    extra = {"extra_fields": context}
    logger.log(level, message, extra=extra)


class RetryLogger:
    """Logger for retried upstream operations."""

    def __init__(self, component_name: str):
        self.logger = get_logger(f"flowgraph.retry.{component_name}")
        self.component_name = component_name

    def log_retry_attempt(self, operation: str, error: Exception, attempt: int, max_attempts: int, delay: float):
        log_with_context(
            self.logger, logging.WARNING,
            f"Attempt {attempt}/{max_attempts} of {operation} failed, retrying in {delay:.2f}s: {error}",
            component=self.component_name,
            operation=operation,
            error_type=type(error).__name__,
            attempt=attempt,
            max_attempts=max_attempts
        )

    def log_recovery(self, operation: str, attempts_used: int):
        log_with_context(
            self.logger, logging.INFO,
            f"{operation} succeeded after {attempts_used} attempts",
            component=self.component_name,
            operation=operation,
            attempts_used=attempts_used
        )

    def log_exhausted(self, operation: str, final_error: Exception, attempts_used: int):
        log_with_context(
            self.logger, logging.ERROR,
            f"{operation} failed after {attempts_used} attempts: {final_error}",
            component=self.component_name,
            operation=operation,
            error_type=type(final_error).__name__,
            attempts_used=attempts_used
        )
