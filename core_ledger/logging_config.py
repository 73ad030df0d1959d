"""
Structured Logging Configuration Module

Provides JSON-formatted structured logging for all ledger operations. Records
emitted while a unit of work is open carry that unit's id as their
correlation_id, so a lock wait in the store and the engine's abort line can be
joined in the log stream.
"""

import contextvars
import logging
import json
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional


_correlation_id: contextvars.ContextVar = contextvars.ContextVar(
    "ledger_correlation_id", default=None
)


def current_correlation_id() -> Optional[str]:
    """Correlation id of the enclosing scope, if any"""
    return _correlation_id.get()


@contextmanager
def correlation_scope(correlation_id: str):
    """Tag every record logged inside the block with correlation_id"""
    token = _correlation_id.set(correlation_id)
    try:
        yield correlation_id
    finally:
        _correlation_id.reset(token)


def record_correlation_id(record: logging.LogRecord) -> Optional[str]:
    # An explicit correlation_id on the record wins over the ambient scope
    return getattr(record, 'correlation_id', None) or current_correlation_id()


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": record_correlation_id(record),
            "user_id": getattr(record, 'user_id', None),
            "action": getattr(record, 'action', None),
            "resource": getattr(record, 'resource', None),
            "extra": getattr(record, 'extra', None)
        }

        # Remove None values
        log_entry = {k: v for k, v in log_entry.items() if v is not None}

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        # Decimals and datetimes in extra render as strings
        return json.dumps(log_entry, default=str)


TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class TextFormatter(logging.Formatter):
    """Plain log lines, suffixed with the unit id when one is in scope"""

    def __init__(self):
        super().__init__(TEXT_FORMAT)

    def format(self, record):
        line = super().format(record)
        correlation_id = record_correlation_id(record)
        if correlation_id:
            line = f"{line} [unit={correlation_id}]"
        return line


def setup_logging(level: str = "INFO", log_format: str = "json",
                  logger_name: str = "ledger") -> logging.Logger:
    """
    Setup structured logging for the service.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: "json" for structured output, "text" for plain lines
        logger_name: Name of the root service logger

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    # Remove existing handlers to avoid duplicates
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    if log_format.lower() == "text":
        handler.setFormatter(TextFormatter())
    else:
        handler.setFormatter(JSONFormatter())

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    return logger


def get_logger(name: str = "ledger") -> logging.Logger:
    """Get logger instance"""
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Log a ledger operation with structured fields.

    Args:
        logger: Logger instance
        level: Log level (info, warning, error, etc.)
        message: Log message
        user_id: Account performing the action
        action: Engine operation or audit event name
        resource: "account:<id>" or "transaction:<reference>"
        correlation_id: Unit id; defaults to the enclosing correlation_scope
        extra: Additional structured data (amounts, stage, rejection reason)
    """
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return

    record = logger.makeRecord(
        logger.name, levelno, __name__, 0, message, (), None
    )

    if user_id:
        record.user_id = user_id
    if action:
        record.action = action
    if resource:
        record.resource = resource
    correlation_id = correlation_id or current_correlation_id()
    if correlation_id:
        record.correlation_id = correlation_id
    if extra:
        record.extra = extra

    logger.handle(record)
