# src/aipmstate/util/log.py: Structured JSON logger.
# Every module logs through get_logger(), which emits one JSON object per record
# on stderr. The name of the transaction currently in flight is kept in a
# contextvar and injected into each record, so a rollback warning and the lock
# messages around it can be correlated after the fact.

import contextvars
import json
import logging

operation_context = contextvars.ContextVar('operation_context', default=None)

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

_ROOT = "aipmstate"


class JsonFormatter(logging.Formatter):
    def format(self, record):
        log_record = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "operation": operation_context.get(),
        }
        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_record)


def _root_logger() -> logging.Logger:
    root = logging.getLogger(_ROOT)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(JsonFormatter())
        root.addHandler(handler)
        root.setLevel(logging.INFO)
    return root


def get_logger(name):
    """Returns a logger under the package root, installing the JSON handler once."""
    _root_logger()
    if not name.startswith(_ROOT):
        name = f"{_ROOT}.{name}"
    return logging.getLogger(name)


def set_log_level(level: str) -> None:
    """Applies a configured level name (debug, info, warn, error)."""
    _root_logger().setLevel(_LEVELS.get(level.lower(), logging.INFO))
