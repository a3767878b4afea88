"""JSON log lines for the reimburse service, tagged with request-scoped context."""

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

NAMESPACE = "reimburse"

_fields: dict[str, ContextVar] = {
    name: ContextVar(f"reimburse_{name}", default=None)
    for name in ("request_id", "actor_id", "expense_id")
}

# attributes every LogRecord carries; anything else came in through ``extra``
_RECORD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}


class LogContext:
    """Request, actor and expense ids stamped on every line logged while bound."""

    @staticmethod
    def get_all() -> dict[str, str]:
        return {name: var.get() for name, var in _fields.items() if var.get() is not None}

    @staticmethod
    @contextmanager
    def bind(**values: Any):
        tokens = [
            (_fields[name], _fields[name].set(str(value)))
            for name, value in values.items()
            if name in _fields and value is not None
        ]
        try:
            yield LogContext
        finally:
            for var, token in reversed(tokens):
                var.reset(token)


class JsonFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        line = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        line.update(LogContext.get_all())
        line.update((k, v) for k, v in vars(record).items() if k not in _RECORD_ATTRS and k not in line)
        if record.exc_info:
            line["exc_type"] = record.exc_info[0].__name__
            line["exc_message"] = str(record.exc_info[1])
            line["traceback"] = self.formatException(record.exc_info)
        return json.dumps(line, default=str)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{NAMESPACE}.{name}")


_configured = False


def configure_logging(*, level: int | str = logging.INFO, stream: Any = None,
                      handler: logging.Handler | None = None) -> None:
    """Attach one JSON handler to the ``reimburse`` logger. Later calls are no-ops."""
    global _configured
    if _configured:
        return
    _configured = True

    logger = logging.getLogger(NAMESPACE)
    logger.setLevel(level)
    logger.propagate = False
    handler = handler or logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JsonFormatter())
    logger.addHandler(handler)


def reset_logging() -> None:
    """Undo configure_logging (tests)."""
    global _configured
    _configured = False
    logger = logging.getLogger(NAMESPACE)
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)
    logger.propagate = True
