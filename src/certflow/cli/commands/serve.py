"""Serve subcommand: start the HTTP API."""

from __future__ import annotations

import logging

log = logging.getLogger(__name__)


def run_serve(config, args) -> None:
    """Start the API, with the order worker unless ``--no-worker``."""
    from certflow.app import create_app
    from certflow.db import init_database

    db = init_database(config.settings.database)
    start_worker = config.settings.worker.enabled and not getattr(args, "no_worker", False)

    if getattr(args, "dev", False):
        app = create_app(config=config, database=db, start_worker=start_worker)
        log.info("Starting development server (not for production)")
        app.run(
            host=config.settings.server.bind,
            port=config.settings.server.port,
            debug=True,
            use_reloader=False,
        )
    else:
        from certflow.server.gunicorn_app import run_gunicorn

        app = create_app(config=config, database=db, start_worker=start_worker)
        run_gunicorn(app, config.settings.server)
