"""Problem-details rendering for the HTTP API.

:class:`~certflow.core.errors.CertflowError` already knows its code and
status; this module turns it (and any other exception reaching Flask)
into an ``application/problem+json`` response.
"""

from __future__ import annotations

import logging
from typing import Any

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

from certflow.core.errors import CertflowError

log = logging.getLogger(__name__)

PROBLEM_CONTENT_TYPE = "application/problem+json"

INTERNAL_ERROR_TYPE = "urn:certflow:error:internal"


def problem_response(body: dict[str, Any], status: int):
    """Build a Flask response carrying a problem-details *body*."""
    resp = jsonify(body)
    resp.status_code = status
    resp.headers["Content-Type"] = PROBLEM_CONTENT_TYPE
    resp.headers["Cache-Control"] = "no-store"
    return resp


def register_error_handlers(app: Flask) -> None:
    """Attach handlers that render every error as problem JSON."""

    @app.errorhandler(CertflowError)
    def _handle_certflow_error(exc: CertflowError):
        return problem_response(exc.to_dict(), exc.status)

    @app.errorhandler(HTTPException)
    def _handle_http_exception(exc: HTTPException):
        body = {
            "type": "about:blank",
            "title": exc.name,
            "detail": exc.description or "An error occurred",
            "status": exc.code or 500,
        }
        return problem_response(body, exc.code or 500)

    @app.errorhandler(Exception)
    def _handle_unhandled(exc: Exception):
        log.exception("Unhandled exception during request")
        body = {
            "type": INTERNAL_ERROR_TYPE,
            "code": "internal",
            "detail": "An unexpected internal error occurred",
            "status": 500,
        }
        return problem_response(body, 500)
