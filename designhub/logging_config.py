import logging
import logging.config
import os
import re
import sys
import uuid
from datetime import datetime
from typing import Optional

import structlog

REDACTED = "[REDACTED]"

# Event fields (at any nesting depth) whose values are credentials
SECRET_FIELDS = frozenset({"key", "api_key", "token", "secret", "password", "authorization"})

# Trello authenticates with key/token query parameters
_SECRET_QUERY_PARAM = re.compile(r"\b(api_key|key|token)=[^&\s]+")


def _redact(value):
    if isinstance(value, dict):
        return {
            k: REDACTED if str(k).lower() in SECRET_FIELDS else _redact(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_redact(item) for item in value]
    if isinstance(value, str):
        return _SECRET_QUERY_PARAM.sub(lambda m: f"{m.group(1)}={REDACTED}", value)
    return value


def redact_secrets(logger, method_name, event_dict):
    """structlog processor masking Trello credentials before rendering."""
    for field in list(event_dict):
        if field.startswith("_"):
            continue
        if field.lower() in SECRET_FIELDS:
            event_dict[field] = REDACTED
        else:
            event_dict[field] = _redact(event_dict[field])
    return event_dict


# Applied to records from stdlib loggers (werkzeug, apscheduler) as well
_SHARED_PROCESSORS = [
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso"),
    redact_secrets,
]


def configure_logging(log_level: str = "INFO", log_file: Optional[str] = None):
    """
    Configure structured logging for the application.

    structlog events are handed to stdlib handlers: key=value lines on stdout,
    plus JSON lines in a rotating file when log_file is set. Context bound
    with structlog.contextvars (see SyncContext) is merged into every event.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional log file path. If None, logs to stdout only.
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            *_SHARED_PROCESSORS,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    def formatter(renderer):
        return {
            "()": structlog.stdlib.ProcessorFormatter,
            "foreign_pre_chain": _SHARED_PROCESSORS,
            "processors": [structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        }

    handlers = {
        "console": {
            "class": "logging.StreamHandler",
            "level": log_level,
            "formatter": "keyvalue",
            "stream": sys.stdout,
        }
    }
    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": log_level,
            "formatter": "json",
            "filename": log_file,
            "maxBytes": 10485760,  # 10MB
            "backupCount": 5,
        }

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "keyvalue": formatter(structlog.processors.KeyValueRenderer(
                key_order=["timestamp", "level", "logger", "event"], drop_missing=True
            )),
            "json": formatter(structlog.processors.JSONRenderer()),
        },
        "handlers": handlers,
        "root": {"level": log_level, "handlers": list(handlers)},
    })

    logger = structlog.get_logger("designhub")
    logger.info("Logging configured", level=log_level, file=log_file)
    return logger


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


class SyncContext:
    """
    Correlation scope for a batch sync run.

    operation_type and operation_id are bound as context variables for the
    duration of the block, so every event logged inside it (ledger, sync
    service, Trello client) carries them.
    """

    def __init__(self, operation_type: str, operation_id: Optional[str] = None):
        self.operation_type = operation_type
        self.operation_id = operation_id or uuid.uuid4().hex[:8]
        self.logger = get_logger("designhub.sync")
        self.start_time = None
        self._bound = None

    def __enter__(self):
        self._bound = structlog.contextvars.bound_contextvars(
            operation_type=self.operation_type,
            operation_id=self.operation_id,
        )
        self._bound.__enter__()
        self.start_time = datetime.utcnow()
        self.logger.info("Sync operation started", start_time=self.start_time.isoformat())
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = (datetime.utcnow() - self.start_time).total_seconds()
        try:
            if exc_type is None:
                self.logger.info("Sync operation completed", duration_seconds=duration, status="success")
            else:
                self.logger.error(
                    "Sync operation failed",
                    duration_seconds=duration,
                    status="error",
                    error_type=exc_type.__name__,
                    error_message=str(exc_val),
                )
        finally:
            self._bound.__exit__(None, None, None)
        return False
