"""Structured logging for the alert engine.

JSON output for production and colored console output for development.
Alert and user identifiers bound with ``log_context`` are attached to
every record emitted inside the block.
"""

import json
import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

_context_var: ContextVar[dict] = ContextVar("alert_engine_log_context", default={})

_CONTEXT_KEYS = ("alert_id", "user_id", "channel", "group_id")


def get_context_dict() -> dict[str, Any]:
    """Return the identifiers currently bound for log records."""
    return dict(_context_var.get())


@contextmanager
def log_context(**fields: Optional[str]) -> Iterator[None]:
    """Bind identifiers (alert_id, user_id, ...) for the duration of a block."""
    merged = dict(_context_var.get())
    merged.update({k: v for k, v in fields.items() if v is not None})
    token = _context_var.set(merged)
    try:
        yield
    finally:
        _context_var.reset(token)


def record_context(record: logging.LogRecord) -> dict[str, Any]:
    """Identifiers for ``record``: the bound context, overridden by ``extra=`` fields."""
    fields = get_context_dict()
    fields.update({key: getattr(record, key) for key in _CONTEXT_KEYS if hasattr(record, key)})
    return fields


class StructuredFormatter(logging.Formatter):
    """Renders each record as one JSON object carrying the alert context."""

    def __init__(self, service_name: str = "alert-engine", include_caller: bool = False):
        super().__init__()
        self.service_name = service_name
        self.include_caller = include_caller

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "service": self.service_name,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **record_context(record),
        }
        if self.include_caller:
            entry["caller"] = f"{record.module}.{record.funcName}:{record.lineno}"
        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc, _ = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc),
                "traceback": self.formatException(record.exc_info),
            }
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Single-line output for local runs; the level name is colored on a TTY."""

    LEVEL_COLORS = {
        logging.DEBUG: "36",
        logging.INFO: "32",
        logging.WARNING: "33",
        logging.ERROR: "31",
        logging.CRITICAL: "35",
    }

    def __init__(self, use_color: bool = True):
        super().__init__("%(asctime)s %(levelname)-8s %(name)s: %(message)s", datefmt="%H:%M:%S")
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        if self.use_color and record.levelno in self.LEVEL_COLORS:
            colored = f"\033[{self.LEVEL_COLORS[record.levelno]}m{record.levelname}\033[0m"
            line = line.replace(record.levelname, colored, 1)
        fields = record_context(record)
        if fields:
            head, sep, tail = line.partition("\n")
            pairs = " ".join(f"{key}={value}" for key, value in fields.items())
            line = f"{head} [{pairs}]{sep}{tail}"
        return line


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    """Configure the ``src.alert_engine`` logger hierarchy.

    Args:
        level: Log level name. ALERT_ENGINE_LOG_LEVEL overrides it.
        fmt: "json" or "console". ALERT_ENGINE_LOG_FORMAT overrides it.
    """
    level = os.environ.get("ALERT_ENGINE_LOG_LEVEL", level).upper()
    fmt = os.environ.get("ALERT_ENGINE_LOG_FORMAT", fmt).lower()

    handler = logging.StreamHandler(sys.stdout)
    if fmt == "console":
        handler.setFormatter(ConsoleFormatter(use_color=sys.stdout.isatty()))
    else:
        handler.setFormatter(StructuredFormatter())

    engine_logger = logging.getLogger("src.alert_engine")
    engine_logger.handlers.clear()
    engine_logger.addHandler(handler)
    engine_logger.setLevel(getattr(logging, level, logging.INFO))
    engine_logger.propagate = False
