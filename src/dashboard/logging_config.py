"""Structured logging for the dashboard service.

Every line carries the correlation id of the request or submission that
produced it. Scraper credentials and session cookies pass through the
orchestrator, so structured ``extra_data`` is scrubbed before it is written.
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator

correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")

TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s cid=%(correlation_id)s %(message)s"

REDACTED = "***"
_SECRET_MARKERS = ("password", "cookie", "api_key", "apikey", "token", "secret", "encrypted")

# chatty at INFO: per-request lines from the HTTP client, per-run lines from the scheduler
_QUIET_LOGGERS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "apscheduler": logging.WARNING,
}


def get_correlation_id() -> str:
    cid = correlation_id.get()
    if not cid:
        cid = uuid.uuid4().hex[:12]
        correlation_id.set(cid)
    return cid


@contextmanager
def bind_correlation_id(value: str | None = None) -> Iterator[str]:
    """Scope ``value`` (or a fresh id) as the correlation id for the block."""
    cid = value or uuid.uuid4().hex[:12]
    token = correlation_id.set(cid)
    try:
        yield cid
    finally:
        correlation_id.reset(token)


def redact(data: Any) -> Any:
    if isinstance(data, dict):
        return {
            key: REDACTED if _is_secret(key) else redact(val)
            for key, val in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [redact(item) for item in data]
    return data


def _is_secret(key: Any) -> bool:
    name = str(key).lower()
    return any(marker in name for marker in _SECRET_MARKERS)


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry: dict[str, Any] = {
            "timestamp": stamp.isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": correlation_id.get(),
        }
        data = getattr(record, "extra_data", None)
        if data is not None:
            entry["data"] = redact(data)
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class CorrelationIdFilter(logging.Filter):
    """Expose the current correlation id to ``%``-style text formats."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id.get() or "-"
        return True


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(CorrelationIdFilter())
    handler.setFormatter(JSONFormatter() if fmt == "json" else logging.Formatter(TEXT_FORMAT))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name, quiet_level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)
