"""Flask request hooks: request id, bearer-token check, access log."""

from __future__ import annotations

import hmac
import logging
import time
from uuid import uuid4

from flask import Flask, g, request
from werkzeug.exceptions import Unauthorized

log = logging.getLogger(__name__)
access_log = logging.getLogger("certflow.access")

_API_PREFIX = "/api/"


def register_request_hooks(app: Flask) -> None:
    """Register before/after request hooks."""

    @app.before_request
    def _before_request() -> None:
        g.request_id = request.headers.get("X-Request-ID") or uuid4().hex
        g.start_time = time.monotonic()

        settings = app.config.get("CERTFLOW_SETTINGS")
        token = settings.server.api_token if settings is not None else None
        if token and request.path.startswith(_API_PREFIX):
            header = request.headers.get("Authorization", "")
            scheme, _, supplied = header.partition(" ")
            if scheme.lower() != "bearer" or not hmac.compare_digest(supplied.strip().encode(), token.encode()):
                raise Unauthorized("A valid bearer token is required")

    @app.after_request
    def _after_request(response):
        response.headers["X-Content-Type-Options"] = "nosniff"
        request_id = getattr(g, "request_id", None)
        if request_id:
            response.headers["X-Request-ID"] = request_id

        status = response.status_code
        duration_ms = _elapsed_ms()
        level = logging.ERROR if status >= 500 else logging.WARNING if status >= 400 else logging.INFO
        access_log.log(
            level,
            "%s %s %s %.1fms",
            request.method,
            request.path,
            status,
            duration_ms,
            extra={
                "method": request.method,
                "path": request.path,
                "status": status,
                "duration_ms": round(duration_ms, 1),
            },
        )
        return response


def _elapsed_ms() -> float:
    start = getattr(g, "start_time", None)
    if start is None:
        return 0.0
    return (time.monotonic() - start) * 1000
