"""
Logging utilities for Bulk Import Orchestrator

Provides structured JSON logging, per-logger context (component) and per-task
context (job, worker) for the import pipeline.
"""

import logging
import sys
import json
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Dict, Optional
from pathlib import Path


PACKAGE_LOGGER = "bulk_import_orchestrator"

_RESERVED_ATTRS = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
    'filename', 'module', 'lineno', 'funcName', 'created',
    'msecs', 'relativeCreated', 'thread', 'threadName',
    'processName', 'process', 'message', 'exc_info', 'exc_text',
    'stack_info', 'taskName'
}

# fields of the job the current task is handling
_task_context: ContextVar[Dict[str, Any]] = ContextVar("bulk_import_log_context", default={})


class StructuredFormatter(logging.Formatter):
    """
    Formats log records as single-line JSON documents.

    Fields passed through ``extra={...}`` and context set with
    ``set_log_context`` are emitted under ``extra``.
    """

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
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
                "traceback": self.formatException(record.exc_info)
            }

        if self.include_extra:
            extra_fields = {
                key: value for key, value in record.__dict__.items()
                if key not in _RESERVED_ATTRS
            }
            if extra_fields:
                log_entry["extra"] = extra_fields

        return json.dumps(log_entry, default=str, ensure_ascii=False)


class JobContextFilter(logging.Filter):
    """Adds the logger's component and the current task's job context to every record."""

    def __init__(self):
        super().__init__()
        self.context = {}

    def set_context(self, **kwargs):
        """Set context variables for logging."""
        self.context.update(kwargs)

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in {**self.context, **_task_context.get()}.items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


def _context_filter(logger: logging.Logger) -> JobContextFilter:
    context_filter = getattr(logger, "context_filter", None)
    if context_filter is None:
        context_filter = JobContextFilter()
        logger.addFilter(context_filter)
        logger.context_filter = context_filter
    return context_filter


def setup_logger(
    name: str = PACKAGE_LOGGER,
    level: str = "INFO",
    structured: bool = True,
    log_file: Optional[str] = None
) -> logging.Logger:
    """
    Set up a logger with console (and optional file) handlers.

    Args:
        name: Logger name
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        structured: Whether to use structured JSON logging
        log_file: Optional log file path

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    _context_filter(logger)

    # Avoid adding handlers multiple times
    if any(not isinstance(h, logging.NullHandler) for h in logger.handlers):
        return logger

    log_level = getattr(logging, level.upper())
    logger.setLevel(log_level)

    if structured:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with a context filter attached."""
    logger = logging.getLogger(name)
    _context_filter(logger)
    return logger


def set_log_context(logger: logging.Logger, **kwargs):
    """Set context variables for a logger."""
    _context_filter(logger).set_context(**kwargs)


class LoggerContext:
    """
    Context manager adding fields to every record logged by the current task.

    The fields live in a ContextVar, so concurrent workers each log their own
    job, and a nested context unwinds to the enclosing one on exit.
    """

    def __init__(self, **kwargs):
        self.context = kwargs
        self._token = None

    def __enter__(self):
        self._token = _task_context.set({**_task_context.get(), **self.context})
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        _task_context.reset(self._token)
