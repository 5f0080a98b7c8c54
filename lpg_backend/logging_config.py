"""JSON log lines for the ``lpg_backend`` logger tree.

Each record carries the request, user and tenant ids bound for the current
request plus whatever was passed through ``extra=``.
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

ROOT_LOGGER = "lpg_backend"

_context: ContextVar[dict[str, str]] = ContextVar("lpg_log_context", default={})

# attributes every LogRecord has; anything else came in through ``extra``
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "taskName"}


class LogContext:
    """Per-request fields stamped onto every record."""

    @staticmethod
    def set(**fields: str | None) -> None:
        bound = {**_context.get(), **{k: v for k, v in fields.items() if v is not None}}
        _context.set(bound)

    @staticmethod
    def get_all() -> dict[str, str]:
        return dict(_context.get())

    @staticmethod
    def clear() -> None:
        _context.set({})


def _json_default(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return repr(value)


class StructuredFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_context.get(),
        }
        for key, value in vars(record).items():
            if key not in _RECORD_ATTRS:
                line.setdefault(key, value)

        if record.exc_info and record.exc_info[1] is not None:
            error = record.exc_info[1]
            line["exc_type"] = type(error).__name__
            line["exc_message"] = str(error)
            code = getattr(error, "code", None)
            if code is not None:
                line["exc_code"] = code
            line["traceback"] = self.formatException(record.exc_info)
        return json.dumps(line, default=_json_default)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def configure_logging(*, level: int | str = logging.INFO, json_format: bool = True, stream: Any = None) -> None:
    """Attach one stream handler to the ``lpg_backend`` logger.

    Later calls are no-ops until ``reset_logging`` removes the handler again.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    if logger.handlers:
        return
    handler = logging.StreamHandler(stream or sys.stderr)
    if json_format:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False


def reset_logging() -> None:
    """Detach the handler so the next ``configure_logging`` call takes effect."""
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)
    logger.propagate = True
