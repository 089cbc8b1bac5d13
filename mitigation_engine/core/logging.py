"""Logging setup for the mitigation workflow engine.

Records can be rendered as plain text or as one JSON object per line. The
execution driver tags its thread with the execution id through
``set_logging_context`` so every record emitted while a step runs can be
traced back to its execution.
"""

import logging
import sys
import json
import threading
from logging.handlers import RotatingFileHandler
from typing import Optional, Dict, Any
from pathlib import Path

DEFAULT_FORMAT = "%(asctime)s %(levelname)-8s [%(threadName)s] %(name)s: %(message)s"
CONTEXT_ATTR = "context_fields"
QUIET_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool")


class StructuredFormatter(logging.Formatter):
    """Render a record, its context fields and any exception as a JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S%z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "thread": record.threadName,
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        entry.update(getattr(record, CONTEXT_ATTR, {}))
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }
        return json.dumps(entry, default=str)


class WorkflowContextFilter(logging.Filter):
    """Attach the current thread's execution context to each record.

    Context is thread-local: executions run on pool workers, and one
    execution's identifiers must not leak into another's records.
    """

    def __init__(self):
        super().__init__()
        self._local = threading.local()

    @property
    def _fields(self) -> Dict[str, Any]:
        fields = getattr(self._local, "fields", None)
        if fields is None:
            fields = self._local.fields = {}
        return fields

    def set_context(self, **fields):
        self._fields.update(fields)

    def clear_context(self):
        self._fields.clear()

    def get_context(self) -> Dict[str, Any]:
        return dict(self._fields)

    def filter(self, record: logging.LogRecord) -> bool:
        merged = dict(self._fields)
        # Fields passed explicitly on the call win over thread context.
        merged.update(getattr(record, CONTEXT_ATTR, {}))
        setattr(record, CONTEXT_ATTR, merged)
        return True


_context_filter = WorkflowContextFilter()


def _make_formatter(structured: bool, log_format: Optional[str]) -> logging.Formatter:
    if structured:
        return StructuredFormatter()
    return logging.Formatter(fmt=log_format or DEFAULT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")


def _make_file_handler(log_file: str, max_size: int, backup_count: int) -> logging.Handler:
    path = Path(log_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    return RotatingFileHandler(path, maxBytes=max_size, backupCount=backup_count)


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    structured: bool = False,
    max_size: int = 10 * 1024 * 1024,
    backup_count: int = 5
) -> logging.Logger:
    """Install console (and optionally rotating file) handlers on the root logger.

    Existing root handlers are replaced, so calling this twice does not
    duplicate output.

    Args:
        level: Name of the root log level, e.g. ``"INFO"``.
        log_file: Path of a rotating log file; ``None`` logs to stdout only.
        log_format: ``logging.Formatter`` format string for plain-text output.
        structured: Emit JSON lines instead of plain text.
        max_size: Bytes written before the log file rotates.
        backup_count: Rotated files kept.

    Returns:
        The configured root logger.
    """
    formatter = _make_formatter(structured, log_format)
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(_make_file_handler(log_file, max_size, backup_count))

    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(_context_filter)
        root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def set_logging_context(**fields):
    """Tag records emitted from the current thread with ``fields``."""
    _context_filter.set_context(**fields)


def clear_logging_context():
    _context_filter.clear_context()


def log_with_context(logger: logging.Logger, level: int, message: str, /, **fields):
    """Log ``message`` with ``fields`` attached as structured context."""
    logger.log(level, message, extra={CONTEXT_ATTR: fields})


class RetryEventLogger:
    """Logs retry and circuit-breaker events for one guarded operation."""

    def __init__(self, component: str):
        self.component = component
        self.logger = get_logger(f"mitigation_engine.recovery.{component}")

    def retrying(self, operation: str, error: Exception, attempt: int, max_attempts: int):
        log_with_context(
            self.logger, logging.WARNING,
            f"{operation} failed on attempt {attempt}/{max_attempts}, retrying: {error}",
            component=self.component, operation=operation, attempt=attempt,
            error_type=type(error).__name__
        )

    def recovered(self, operation: str, attempts: int):
        log_with_context(
            self.logger, logging.INFO,
            f"{operation} succeeded on attempt {attempts}",
            component=self.component, operation=operation, attempt=attempts
        )

    def gave_up(self, operation: str, error: Exception, attempts: int):
        log_with_context(
            self.logger, logging.ERROR,
            f"{operation} failed after {attempts} attempts: {error}",
            component=self.component, operation=operation, attempt=attempts,
            error_type=type(error).__name__
        )

    def circuit_opened(self, failures: int):
        log_with_context(
            self.logger, logging.ERROR,
            f"Circuit breaker '{self.component}' opened after {failures} consecutive failures",
            component=self.component, failures=failures
        )
