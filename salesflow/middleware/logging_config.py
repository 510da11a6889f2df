"""
Structured logging configuration.

- Development: human-readable colored lines with workflow context
- Production: one JSON object per line (log aggregator compatible)
- LOG_LEVEL sets the level, LOG_FORMAT=json|readable overrides the format

Workflow services attach context through ``extra=`` (``workflow_id``,
``step_number``, ``actor``...). ``RequestContextFilter`` adds the request id
and acting user to every record emitted while a request is active.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_request_context, request

# Record attributes copied into the JSON entry when present.
REQUEST_FIELDS = ("method", "path", "status", "duration_ms", "remote_addr", "request_id")
WORKFLOW_FIELDS = (
    "workflow_id",
    "project_id",
    "step_number",
    "external_module",
    "event_type",
    "target_module",
    "actor",
    "action",
    "attempts",
)


class RequestContextFilter(logging.Filter):
    """Stamp request id and acting user onto records logged inside a request."""

    def filter(self, record: logging.LogRecord) -> bool:
        if has_request_context():
            if getattr(record, "request_id", None) is None:
                record.request_id = g.get("request_id")
            if getattr(record, "actor", None) is None:
                record.actor = request.headers.get("X-User")
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "function": record.funcName,
            "line": record.lineno,
        }
        for key in REQUEST_FIELDS + WORKFLOW_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                entry[key] = val
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Colored single-line formatter for development."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        context = []
        wf = getattr(record, "workflow_id", None)
        if wf is not None:
            step = getattr(record, "step_number", None)
            context.append(f"wf={wf}" + (f"/{step}" if step is not None else ""))
        actor = getattr(record, "actor", None)
        if actor:
            context.append(f"by={actor}")
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            context.append(f"{duration:.0f}ms")
        suffix = f" [{' '.join(context)}]" if context else ""
        line = f"{color}{ts} {record.levelname:<8}{self.RESET} {record.name}: {record.getMessage()}{suffix}"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """
    Install a single stderr handler on the root logger.

    Production (not DEBUG, not TESTING) defaults to JSON at INFO; development
    and tests default to the readable format at DEBUG.
    """
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if is_prod else "DEBUG").upper()
    level = getattr(logging, level_name, logging.INFO)
    fmt = os.getenv("LOG_FORMAT", "json" if is_prod else "readable").lower()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if fmt == "json" else ReadableFormatter())
    handler.setLevel(level)
    handler.addFilter(RequestContextFilter())

    # Replaced, not appended: tests build the app more than once.
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("urllib3", "werkzeug", "sqlalchemy.engine", "alembic"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    app.logger.setLevel(level)
    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s", level_name, fmt)
