"""
Structured logging configuration.

- Development: one readable line per record, with the job context appended
- Production: one JSON object per record (log aggregator compatible)
- LOG_LEVEL sets the level, LOG_FORMAT=json forces JSON anywhere

Stage-engine log calls pass identifiers through ``extra={...}``.
Inside a request, RequestContextFilter fills request_id / tenant_id /
actor_id from ``flask.g`` for records that did not set them.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_request_context

# Record attributes lifted into the JSON payload, in output order
CONTEXT_KEYS = (
    "request_id",
    "tenant_id",
    "actor_id",
    "job_id",
    "stage_id",
    "audit_id",
    "reference",
)
REQUEST_KEYS = ("method", "path", "status", "duration_ms", "remote_addr")

# Short labels for the readable suffix
_READABLE_LABELS = {
    "tenant_id": "tenant",
    "job_id": "job",
    "stage_id": "stage",
    "reference": "ref",
}


class RequestContextFilter(logging.Filter):
    """Copy the caller context from ``g`` onto records logged during a request."""

    def filter(self, record: logging.LogRecord) -> bool:
        if has_request_context():
            for key in ("request_id", "tenant_id", "actor_id"):
                if getattr(record, key, None) is None:
                    setattr(record, key, getattr(g, key, None))
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in CONTEXT_KEYS + REQUEST_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Colored single-line format for development."""

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
        context = " ".join(
            f"{label}={getattr(record, key)}"
            for key, label in _READABLE_LABELS.items()
            if getattr(record, key, None) is not None
        )
        line = f"{color}{ts} {record.levelname:<8}{self.RESET} {record.name}: {record.getMessage()}"
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            line += f" [{duration:.0f}ms]"
        if context:
            line += f" ({context})"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """
    Install a single stderr handler on the root logger.

    Default level is DEBUG in development and INFO otherwise. Production
    (neither DEBUG nor TESTING) logs JSON.
    """
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if is_prod else "DEBUG").upper()
    level = getattr(logging, level_name, logging.INFO)
    use_json = is_prod or os.getenv("LOG_FORMAT", "").lower() == "json"

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if use_json else ReadableFormatter())
    handler.addFilter(RequestContextFilter())
    handler.setLevel(level)

    # Cleared first so repeated create_app() calls in tests don't stack handlers
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("werkzeug", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s",
                        level_name, "JSON" if use_json else "readable")
