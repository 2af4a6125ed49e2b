"""
Logging configuration.

- Development: one coloured line per record, tagged with request and actor
- Production: JSON lines for the log aggregator
- LOG_LEVEL env variable sets the level

Every record emitted while a request is in flight is stamped with the
request id and the acting subject/role, so a lifecycle log line such as
"Task 12: in_review → released_to_client" can be traced to who did it.
"""

import json
import logging
import os
import sys
from datetime import UTC, datetime

from flask import g, has_request_context

CONTEXT_FIELDS = ("request_id", "subject_id", "role")
REQUEST_FIELDS = ("method", "path", "status", "duration_ms", "remote_addr")


class RequestContextFilter(logging.Filter):
    """Copy request id and acting identity from ``flask.g`` onto the record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not has_request_context():
            return True
        if getattr(record, "request_id", None) is None:
            record.request_id = g.get("request_id")
        if getattr(record, "subject_id", None) is None:
            record.subject_id = g.get("subject_id")
        if getattr(record, "role", None) is None:
            acting = g.get("acting")
            record.role = acting.role.value if acting is not None else None
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "line": record.lineno,
        }
        for key in CONTEXT_FIELDS + REQUEST_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                entry[key] = val
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
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
        ts = datetime.now().strftime("%H:%M:%S")

        tags = []
        request_id = getattr(record, "request_id", None)
        if request_id:
            tags.append(request_id)
        subject_id = getattr(record, "subject_id", None)
        if subject_id is not None:
            tags.append(f"{getattr(record, 'role', None) or '?'}#{subject_id}")
        tag_str = f" [{' '.join(tags)}]" if tags else ""

        duration = getattr(record, "duration_ms", None)
        dur_str = f" ({duration:.0f}ms)" if duration is not None else ""

        line = (f"{color}{ts} {record.levelname:<8}{self.RESET} "
                f"{record.name}{tag_str}: {record.getMessage()}{dur_str}")
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """
    Install one stderr handler on the root logger.

    Level defaults to DEBUG outside production and INFO in production.
    Tests keep the readable format and skip the startup line.
    """
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if is_prod else "DEBUG")
    level = getattr(logging, level_name.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if is_prod else ReadableFormatter())
    handler.addFilter(RequestContextFilter())
    handler.setLevel(level)

    root = logging.getLogger()
    # create_app may run more than once per process (tests, CLI)
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("werkzeug", "sqlalchemy.engine", "flask_limiter"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s",
                        level_name, "json" if is_prod else "readable")
