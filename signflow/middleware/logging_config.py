"""
Structured logging configuration.

Every line carries the workflow context it was emitted in: the HTTP
request id when there is one, plus whatever document / record / provider
identifiers the caller passed through ``extra={...}``.

- LOG_FORMAT=json (default outside development): one JSON object per line
- LOG_FORMAT=readable (default in development and tests): colored text
- LOG_LEVEL: DEBUG in development, INFO otherwise
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_request_context, request

# Request-scoped fields, grouped under "http" in JSON lines
HTTP_FIELDS = ("method", "path", "status", "duration_ms", "remote_addr")

# Signature workflow identifiers, emitted at the top level of JSON lines
WORKFLOW_FIELDS = (
    "request_id",
    "document_id",
    "record_id",
    "signer_id",
    "correlation_id",
    "event_type",
    "operation",
    "job_name",
)

# Short labels for the readable suffix, in display order
_READABLE_LABELS = (
    ("document_id", "doc"),
    ("record_id", "rec"),
    ("correlation_id", "provider"),
    ("event_type", "event"),
    ("job_name", "job"),
)


class RequestContextFilter(logging.Filter):
    """Stamp records emitted inside a request with its ``request_id``.

    A value passed explicitly through ``extra`` wins. Outside a request
    context the record is left as is.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if has_request_context():
            if getattr(record, "request_id", None) is None:
                record.request_id = getattr(g, "request_id", None)
            if getattr(record, "document_id", None) is None and request.view_args:
                record.document_id = request.view_args.get("doc_id")
        return True


def workflow_context(record: logging.LogRecord) -> dict:
    """The workflow identifiers set on *record*, None values dropped."""
    return {
        key: getattr(record, key)
        for key in WORKFLOW_FIELDS
        if getattr(record, key, None) is not None
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per line for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        log_entry.update(workflow_context(record))
        http = {k: getattr(record, k) for k in HTTP_FIELDS if getattr(record, k, None) is not None}
        if http:
            log_entry["http"] = http
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, ensure_ascii=False, default=str)


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

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        color, reset = (self.COLORS.get(record.levelname, ""), self.RESET) if self.use_color else ("", "")
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        suffix = "".join(
            f" {label}={getattr(record, key)}"
            for key, label in _READABLE_LABELS
            if getattr(record, key, None) is not None
        )
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            suffix += f" [{duration:.0f}ms]"
        base = f"{color}{ts} {record.levelname:<8}{reset} {record.name}: {record.getMessage()}{suffix}"
        if record.exc_info and record.exc_info[0] is not None:
            base += "\n" + self.formatException(record.exc_info)
        return base


def build_formatter(app) -> logging.Formatter:
    """JSON or readable, from ``LOG_FORMAT`` or the environment."""
    is_dev = app.config.get("DEBUG", False) or app.config.get("TESTING", False)
    fmt = (app.config.get("LOG_FORMAT") or ("readable" if is_dev else "json")).lower()
    if fmt == "json":
        return JSONFormatter()
    return ReadableFormatter(use_color=sys.stderr.isatty())


def configure_logging(app):
    """
    Set up structured logging for the Flask app.

    One stderr handler on the root logger carrying the request context
    filter. Cleared first so repeated create_app() calls in tests don't stack.
    """
    is_testing = app.config.get("TESTING", False)
    is_dev = app.config.get("DEBUG", False) or is_testing

    level_name = (app.config.get("LOG_LEVEL") or os.getenv("LOG_LEVEL")
                  or ("DEBUG" if is_dev else "INFO"))
    level = getattr(logging, level_name.upper(), logging.INFO)
    formatter = build_formatter(app)

    root = logging.getLogger()
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    handler.addFilter(RequestContextFilter())
    handler.setLevel(level)
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("urllib3", "werkzeug", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s",
                        level_name, type(formatter).__name__)
