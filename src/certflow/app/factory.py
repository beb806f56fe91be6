"""Flask application factory for certflow.

Usage::

    from certflow.app import create_app
    from certflow.config import get_config
    from certflow.db import init_database

    db  = init_database(get_config().settings.database)
    app = create_app(config=get_config(), database=db)
"""

from __future__ import annotations

import atexit
import logging
from typing import TYPE_CHECKING

from flask import Flask, jsonify

if TYPE_CHECKING:
    from flask.typing import ResponseReturnValue
    from pypgkit import Database

    from certflow.app.context import Container
    from certflow.config.certflow_config import CertflowConfig

log = logging.getLogger(__name__)


def create_app(
    config: CertflowConfig | None = None,
    database: Database | None = None,
    *,
    container: Container | None = None,
    start_worker: bool | None = None,
) -> Flask:
    """Create and configure the certflow Flask application.

    Parameters
    ----------
    config:
        Loaded :class:`CertflowConfig`.  Falls back to :func:`get_config`
        when ``None``.
    database:
        Initialised :class:`Database`.  When provided (and no
        *container* is given) the dependency container is wired up.
    container:
        Pre-built container; takes precedence over *database*.
    start_worker:
        Run the background order worker inside this process.  Defaults
        to ``worker.enabled``.

    Returns
    -------
    Flask
        Fully configured WSGI application.

    """
    if config is None:
        from certflow.config import get_config  # noqa: PLC0415

        config = get_config()

    settings = config.settings

    app = Flask("certflow")
    app.config["CERTFLOW_SETTINGS"] = settings
    app.config["CERTFLOW_CONFIG"] = config

    from certflow.app.errors import register_error_handlers  # noqa: PLC0415
    from certflow.app.middleware import register_request_hooks  # noqa: PLC0415

    register_error_handlers(app)
    register_request_hooks(app)
    _register_health(app)

    if container is None and database is not None:
        from certflow.app.context import Container  # noqa: PLC0415

        container = Container(database, settings)

    if container is not None:
        app.extensions["container"] = container

        from certflow.app.routes import api_bp  # noqa: PLC0415

        app.register_blueprint(api_bp, url_prefix="/api")

        if start_worker is None:
            start_worker = settings.worker.enabled
        if start_worker:
            container.worker.start()
            atexit.register(container.worker.stop)

    log.info("Flask application created")
    return app


def _register_health(app: Flask) -> None:
    """Register ``/livez`` and ``/healthz`` probes."""
    from certflow import __version__  # noqa: PLC0415

    @app.route("/livez")
    def livez() -> ResponseReturnValue:
        return jsonify({"alive": True, "version": __version__}), 200

    @app.route("/healthz")
    def healthz() -> ResponseReturnValue:
        """Report database connectivity and worker liveness."""
        result: dict = {"status": "ok", "version": __version__}
        checks: dict = {}

        container = app.extensions.get("container")
        if container is not None:
            try:
                container.db.fetch_value("SELECT 1")
                checks["database"] = "connected"
            except Exception:  # noqa: BLE001
                checks["database"] = "disconnected"
                result["status"] = "degraded"

            if container.settings.worker.enabled:
                alive = container.worker.running
                checks["order_worker"] = "alive" if alive else "stopped"

        if checks:
            result["checks"] = checks
        code = 200 if result["status"] == "ok" else 503
        return jsonify(result), code
