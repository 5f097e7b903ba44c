"""
Structured logging configuration for the seed ingestion pipeline.
- JSON output, one object per line, on stderr (stdout is reserved for the run summary)
- run_id and topic propagation via contextvars
"""
from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from typing import Any, Dict

# Context variables for the current run and the topic being ingested
_run_id_var: ContextVar[str | None] = ContextVar("run_id", default=None)
_topic_var: ContextVar[str | None] = ContextVar("topic", default=None)

_EXTRA_KEYS = (
    "inserted",
    "updated",
    "unchanged",
    "deleted",
    "attempt",
    "delay",
    "record_key",
    "error_kind",
    "elapsed_seconds",
    "path",
    "records",
    "groups",
    "status",
)


def set_run_id(run_id: str | None) -> None:
    _run_id_var.set(run_id)


def get_run_id() -> str | None:
    return _run_id_var.get()


def set_topic(topic: str | None) -> None:
    _topic_var.set(topic)


def get_topic() -> str | None:
    return _topic_var.get()


class IngestionContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        setattr(record, "run_id", get_run_id() or "-")
        setattr(record, "topic", get_topic() or "-")
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        base: Dict[str, Any] = {
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "run_id": getattr(record, "run_id", "-"),
            "topic": getattr(record, "topic", "-"),
        }
        # Optional extras
        for key in _EXTRA_KEYS:
            if hasattr(record, key):
                base[key] = getattr(record, key)
        if record.exc_info:
            base["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(base, ensure_ascii=False, default=str)


def configure_logging(level: int | str = logging.INFO) -> None:
    handler = logging.StreamHandler(stream=sys.stderr)
    handler.setFormatter(JsonFormatter())
    handler.addFilter(IngestionContextFilter())

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)
    root.addHandler(handler)

    # SQLAlchemy echo is controlled by settings; keep its pool chatter down
    logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
