"""
Structured Logging Configuration Module

JSON log records for ledger operations. Records carry the caller, action and
resource they refer to, and every record emitted while a transfer runs on a
thread is stamped with that transfer's correlation id.
"""

import logging
import json
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional


TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

CONTEXT_FIELDS = ("correlation_id", "user_id", "action", "resource", "extra")

_context = threading.local()


def current_correlation_id() -> Optional[str]:
    """Correlation id of the operation running on this thread, if any"""
    return getattr(_context, "correlation_id", None)


@contextmanager
def correlation_scope(correlation_id: Optional[str] = None) -> Iterator[str]:
    """
    Bind a correlation id to the current thread for the duration of the block

    Nested scopes restore the outer id on exit.
    """
    previous = current_correlation_id()
    _context.correlation_id = correlation_id or str(uuid.uuid4())
    try:
        yield _context.correlation_id
    finally:
        _context.correlation_id = previous


class CorrelationFilter(logging.Filter):
    """Stamps records that have no correlation id with the thread's current one"""

    def filter(self, record):
        if getattr(record, "correlation_id", None) is None:
            correlation_id = current_correlation_id()
            if correlation_id:
                record.correlation_id = correlation_id
        return True


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "fintech_ledger",
                  log_format: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Setup structured logging for the ledger.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Name of the root ledger logger
        log_format: "json" for structured records, "text" for plain lines
        log_file: Optional file path; logs go to stderr when omitted

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    handler.addFilter(CorrelationFilter())
    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    return logger


def get_logger(name: str = "fintech_ledger") -> logging.Logger:
    """Get logger instance"""
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Log a ledger action with its context attached to the record.

    ``level`` is a level name (``"info"``, ``"critical"``). The correlation id
    defaults to the one bound by ``correlation_scope`` on this thread.
    """
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return

    record = logger.makeRecord(logger.name, levelno, __name__, 0, message, (), None)
    context = {
        "user_id": user_id,
        "action": action,
        "resource": resource,
        "correlation_id": correlation_id or current_correlation_id(),
        "extra": extra,
    }
    for name, value in context.items():
        if value:
            setattr(record, name, value)

    logger.handle(record)
