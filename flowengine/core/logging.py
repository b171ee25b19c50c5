"""Logging configuration for the workflow execution engine.

Every module logs through ``get_logger(__name__)``. Scheduling loops and
request handlers tag their thread with ``set_logging_context`` so that lines
carry the execution, workflow and request they belong to; the text format
appends those fields in brackets and the JSON format adds them as keys.
"""

import json
import logging
import sys
import threading
import traceback
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

from ..models.core import utcnow

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(module)s:%(funcName)s:%(lineno)d] - %(message)s"

# Third-party loggers kept quiet regardless of the configured level
_NOISY_LOGGERS = {
    "uvicorn": logging.INFO,
    "uvicorn.access": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "sqlalchemy.pool": logging.WARNING,
    "asyncio": logging.WARNING,
}


class StructuredFormatter(logging.Formatter):
    """Formatter emitting one JSON object per log record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": utcnow().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "thread": record.threadName,
        }
        entry.update(getattr(record, "extra_fields", {}))

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, exc_tb = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc_value),
                "traceback": traceback.format_exception(exc_type, exc_value, exc_tb),
            }

        return json.dumps(entry, default=str)


class ContextFormatter(logging.Formatter):
    """Plain text formatter that appends the context fields of the record."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = getattr(record, "extra_fields", None)
        if fields:
            line += " [" + " ".join(f"{key}={value}" for key, value in fields.items()) + "]"
        return line


class WorkflowContextFilter(logging.Filter):
    """Adds the calling thread's context fields (execution_id, workflow_id, request_id) to records."""

    def __init__(self):
        super().__init__()
        self._local = threading.local()

    def _fields(self) -> Dict[str, Any]:
        if not hasattr(self._local, "fields"):
            self._local.fields = {}
        return self._local.fields

    def set_context(self, **kwargs):
        self._fields().update(kwargs)

    def clear_context(self):
        self._fields().clear()

    def get_context(self) -> Dict[str, Any]:
        return dict(self._fields())

    def filter(self, record: logging.LogRecord) -> bool:
        fields = dict(self._fields())
        # Fields passed explicitly through log_with_context win
        fields.update(getattr(record, "extra_fields", {}))
        record.extra_fields = fields
        return True


_context_filter = WorkflowContextFilter()


def _build_formatter(structured: bool, log_format: Optional[str]) -> logging.Formatter:
    if structured:
        return StructuredFormatter()
    return ContextFormatter(fmt=log_format or DEFAULT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    structured: bool = False,
    max_size: int = 10 * 1024 * 1024,
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure the root logger for the engine.

    Replaces any handlers already installed, so calling it twice (CLI then
    application lifespan) does not duplicate output.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path; rotated at ``max_size`` bytes
        log_format: Custom format string for text output
        structured: Emit JSON lines instead of text
        max_size: Maximum log file size in bytes before rotation
        backup_count: Number of rotated files to keep

    Returns:
        The root logger
    """
    numeric_level = getattr(logging, level.upper())
    formatter = _build_formatter(structured, log_format)

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(log_file, maxBytes=max_size, backupCount=backup_count))

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(_context_filter)
        root_logger.addHandler(handler)

    for name, noisy_level in _NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(noisy_level)
    logging.getLogger("flowengine").setLevel(numeric_level)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def set_logging_context(**kwargs):
    """Set context fields for all subsequent log messages of this thread."""
    _context_filter.set_context(**kwargs)


def clear_logging_context():
    _context_filter.clear_context()


def get_logging_context() -> Dict[str, Any]:
    return _context_filter.get_context()


def log_with_context(logger: logging.Logger, level: int, message: str, **context):
    """Log a message with additional context fields."""
    logger.log(level, message, extra={"extra_fields": context})


class ErrorRecoveryLogger:
    """Reports the attempts of a retried operation (storage commits, handler retries)."""

    def __init__(self, component_name: str):
        self.logger = get_logger(f"flowengine.recovery.{component_name}")
        self.component_name = component_name

    def log_recovery_attempt(self, operation: str, error: Exception, attempt: int, max_attempts: int):
        log_with_context(
            self.logger, logging.WARNING,
            f"Attempt {attempt}/{max_attempts} of {operation} failed: {error}",
            component=self.component_name,
            error_type=type(error).__name__,
            attempt=attempt
        )

    def log_recovery_success(self, operation: str, attempts_used: int):
        log_with_context(
            self.logger, logging.INFO,
            f"{operation} succeeded after {attempts_used} attempts",
            component=self.component_name,
            attempts_used=attempts_used
        )

    def log_recovery_failure(self, operation: str, final_error: Exception, attempts_used: int):
        log_with_context(
            self.logger, logging.ERROR,
            f"{operation} gave up after {attempts_used} attempts: {final_error}",
            component=self.component_name,
            error_type=type(final_error).__name__,
            attempts_used=attempts_used
        )
