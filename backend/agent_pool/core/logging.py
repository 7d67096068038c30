"""Logging setup with text/JSON formatters and structured `extra` context."""

from __future__ import annotations

import json
import logging
import sys
import time
from datetime import UTC, datetime
from typing import Any

from agent_pool.core.config import settings

TRACE_LEVEL = 5
logging.addLevelName(TRACE_LEVEL, "TRACE")

# Attributes present on every LogRecord; anything else came in through `extra=`.
_RESERVED_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", None, None)).keys() | {"message", "asctime"},
)
_SECRET_FIELD_MARKERS = ("token", "password", "secret", "api_key", "env_value")


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    for key, value in vars(record).items():
        if key in _RESERVED_RECORD_ATTRS or key.startswith("_"):
            continue
        if any(marker in key.lower() for marker in _SECRET_FIELD_MARKERS):
            fields[key] = "***"
            continue
        fields[key] = value
    return fields


class JsonFormatter(logging.Formatter):
    """Render each record as a single JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }
        payload.update(_extra_fields(record))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable formatter that appends `extra` context as key=value pairs."""

    def __init__(self, *, use_utc: bool) -> None:
        super().__init__("%(asctime)s %(levelname)s %(name)s %(message)s")
        if use_utc:
            self.converter = time.gmtime

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        fields = _extra_fields(record)
        if not fields:
            return base
        rendered = " ".join(f"{key}={value}" for key, value in sorted(fields.items()))
        return f"{base} {rendered}"


def configure_logging() -> None:
    """Install the root handler according to configured level and format."""
    handler = logging.StreamHandler(sys.stdout)
    if settings.log_format.lower() == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(TextFormatter(use_utc=settings.log_use_utc))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    level_name = settings.log_level.upper()
    root.setLevel(TRACE_LEVEL if level_name == "TRACE" else level_name)
    # httpx logs every request at INFO; keep provider chatter out of pool logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
