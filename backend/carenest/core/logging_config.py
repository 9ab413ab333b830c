"""
logging_config.py — Structured logging for the API and the change-stream handlers.

Two kinds of work log here:

    • HTTP requests, tagged by the middleware with request_id, caller and
      endpoint
    • change-stream handlers, which run after the response has gone out
      and tag their records with the subject, location or alert they are
      processing

Both go through the same log context. ``set_request_context`` replaces
it at the start of a request, ``log_context`` layers entity ids on top
for the duration of a block, and ``ContextFilter`` copies whatever is
active onto every record so formatters see a flat set of attributes.

Usage:
    from backend.carenest.core.logging_config import log_context

    with log_context(subject_id=point.subject_id, location_id=point.location_id):
        logger.info("Evaluating %d geofence(s)", len(geofences))
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

from backend.carenest.core.config import Settings, settings as default_settings

_log_context: ContextVar[Dict[str, Any]] = ContextVar("carenest_log_context", default={})

# Entity ids, in the order the pretty formatter prints them
ENTITY_KEYS = (
    "subject_id", "guardian_id", "geofence_id", "location_id", "alert_id",
    "collection", "batch_size",
)
HTTP_KEYS = ("method", "endpoint", "status_code", "duration_ms")

_SHORT_NAMES = {
    "subject_id": "subject",
    "guardian_id": "guardian",
    "geofence_id": "geofence",
    "location_id": "location",
    "alert_id": "alert",
}


def set_request_context(**fields: Any) -> None:
    """Replace the log context (called by the middleware per request)."""
    _log_context.set({k: v for k, v in fields.items() if v is not None})


def get_request_context() -> Dict[str, Any]:
    return _log_context.get()


@contextmanager
def log_context(**fields: Any) -> Iterator[Dict[str, Any]]:
    """Add ``fields`` to the log context until the block exits."""
    merged = dict(_log_context.get())
    merged.update({k: v for k, v in fields.items() if v is not None})
    token = _log_context.set(merged)
    try:
        yield merged
    finally:
        _log_context.reset(token)


class ContextFilter(logging.Filter):
    """Copies the active log context onto each record.

    Values passed explicitly through ``extra=`` win over the context.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _log_context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


def _fields(record: logging.LogRecord, keys) -> Dict[str, Any]:
    return {
        key: getattr(record, key)
        for key in keys
        if getattr(record, key, None) is not None
    }


# ── JSON Formatter (Production) ──

class JSONFormatter(logging.Formatter):
    """One JSON object per line; entity ids are top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = getattr(record, "request_id", None)
        if request_id:
            entry["request_id"] = request_id
        entry.update(_fields(record, ENTITY_KEYS))
        entry.update(_fields(record, HTTP_KEYS))

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(entry, default=str)


# ── Pretty Formatter (Development) ──

class PrettyFormatter(logging.Formatter):
    """Coloured single-line output with the entity ids appended."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool = True) -> None:
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        color, reset = (
            (self.COLORS.get(record.levelname, self.RESET), self.RESET)
            if self.use_color else ("", "")
        )
        ts = self.formatTime(record, "%H:%M:%S")

        request_id = getattr(record, "request_id", None)
        rid = f" [{request_id[:8]}]" if request_id else ""

        tags = " ".join(
            f"{_SHORT_NAMES.get(key, key)}={value}"
            for key, value in _fields(record, ENTITY_KEYS).items()
        )

        line = f"{color}{ts} {record.levelname:8s}{reset}{rid} {record.name}: {record.getMessage()}"
        if tags:
            line += f"  ({tags})"
        if record.exc_info and record.exc_info[1]:
            line += f"\n  {type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
        return line


# ── Setup ──

def setup_logging(config: Optional[Settings] = None) -> logging.Handler:
    """Install the stdout handler on the root logger and return it."""
    config = config or default_settings
    root = logging.getLogger()
    root.setLevel(getattr(logging, config.LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ContextFilter())
    handler.setFormatter(
        JSONFormatter() if config.is_production
        else PrettyFormatter(use_color=sys.stdout.isatty())
    )
    root.addHandler(handler)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if config.DATABASE_ECHO else logging.WARNING
    )
    return handler


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
