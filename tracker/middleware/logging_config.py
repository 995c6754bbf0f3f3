"""
Logging setup for the tracker.

Service modules log through ``logging.getLogger(__name__)`` and attach the
workflow scope with ``extra={...}``. One stderr handler on the root logger
renders those records either as JSON lines (production) or as a short
readable line with the scope appended (development, tests).

Config:
    LOG_LEVEL   level name; DEBUG in development, INFO otherwise
    LOG_FORMAT  "json" or "readable"; JSON unless DEBUG or TESTING
"""

import json
import logging
import sys
from datetime import datetime, timezone

# Request fields set by the timing middleware
REQUEST_KEYS = ("request_id", "method", "path", "status", "duration_ms", "remote_addr")

# Workflow scope attached by the services
SCOPE_KEYS = (
    "tenant_id",
    "project_id",
    "item_id",
    "deliverable_id",
    "milestone_id",
    "variation_id",
    "entity_kind",
    "entity_id",
    "party",
    "completed",
    "event_type",
    "category",
    "action",
    "role",
)


def record_scope(record: logging.LogRecord, keys=REQUEST_KEYS + SCOPE_KEYS) -> dict:
    """The ``extra=`` values present on ``record``, in key order."""
    return {key: getattr(record, key) for key in keys if getattr(record, key, None) is not None}


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(record_scope(record))
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """``HH:MM:SS LEVEL logger: message (scope) [NNms]``"""

    LEVEL_COLORS = {"WARNING": "\033[33m", "ERROR": "\033[31m", "CRITICAL": "\033[35m"}
    RESET = "\033[0m"

    def __init__(self, color: bool = True):
        super().__init__()
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        level = f"{record.levelname:<8}"
        if self.color and record.levelname in self.LEVEL_COLORS:
            level = f"{self.LEVEL_COLORS[record.levelname]}{level}{self.RESET}"
        line = f"{datetime.fromtimestamp(record.created):%H:%M:%S} {level} {record.name}: {record.getMessage()}"
        scope = record_scope(record, SCOPE_KEYS)
        if scope:
            line += " (" + " ".join(f"{k}={v}" for k, v in scope.items()) + ")"
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            line += f" [{duration:.0f}ms]"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def build_formatter(app) -> logging.Formatter:
    fmt = (app.config.get("LOG_FORMAT") or "").lower()
    if not fmt:
        fmt = "readable" if app.config.get("DEBUG") or app.config.get("TESTING") else "json"
    if fmt == "json":
        return JSONFormatter()
    return ReadableFormatter(color=not app.config.get("TESTING", False))


def configure_logging(app):
    """Install the single stderr handler and set levels for ``app``."""
    default_level = "DEBUG" if app.config.get("DEBUG") else "INFO"
    level_name = (app.config.get("LOG_LEVEL") or default_level).upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(build_formatter(app))

    root = logging.getLogger()
    # Re-created apps (tests) must not stack handlers
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("werkzeug", "sqlalchemy.engine", "alembic"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    app.logger.setLevel(level)
