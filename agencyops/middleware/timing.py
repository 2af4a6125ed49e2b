"""
Access log and request correlation.

Each request gets an id (the caller's ``X-Request-ID`` when it is a sane
token, otherwise a fresh one) that the logging filter stamps on every
record. After the response the request is logged once; the duration
travels as ``duration_ms`` and is rendered by the formatter, not the message.
"""

import logging
import re
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

# Polled by load balancers
_QUIET_PATHS = frozenset({"/api/v1/health"})

SLOW_THRESHOLD_MS = 1000

# Inbound ids are echoed into headers and log lines
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


def _request_id() -> str:
    supplied = request.headers.get("X-Request-ID", "")
    if _REQUEST_ID_RE.match(supplied):
        return supplied
    return uuid.uuid4().hex[:12]


def _level_for(status: int, duration_ms: float) -> tuple[int, str]:
    if status >= 500:
        return logging.ERROR, "Server error"
    if duration_ms > SLOW_THRESHOLD_MS:
        return logging.WARNING, "Slow request"
    if status >= 400:
        return logging.INFO, "Refused"
    return logging.DEBUG, "Request"


def init_request_timing(app: Flask):
    """Register the request-id and access-log hooks."""

    @app.before_request
    def _begin():
        g.request_start = time.perf_counter()
        g.request_id = _request_id()

    @app.after_request
    def _access_log(response):
        start = g.get("request_start")
        if start is None:
            return response

        elapsed = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = g.request_id
        response.headers["X-Request-Duration-Ms"] = f"{elapsed:.1f}"

        # Streams stay open; their after_request time is meaningless
        if request.path in _QUIET_PATHS or response.mimetype == "text/event-stream":
            return response

        level, label = _level_for(response.status_code, elapsed)
        logger.log(
            level, "%s: %s %s %d", label, request.method, request.path, response.status_code,
            extra={
                "method": request.method,
                "path": request.path,
                "status": response.status_code,
                "duration_ms": elapsed,
                "remote_addr": request.remote_addr,
            },
        )
        return response
