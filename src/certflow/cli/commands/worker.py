"""Worker and sweep subcommands: background order processing."""

from __future__ import annotations

import json
import logging
import signal
import sys

log = logging.getLogger(__name__)


def _container(config):
    from certflow.app.context import Container
    from certflow.db import init_database

    db = init_database(config.settings.database)
    return Container(db, config.settings)


def run_worker(config, args) -> None:  # noqa: ARG001
    """Run the order worker on this thread until SIGINT or SIGTERM."""
    container = _container(config)
    worker = container.worker

    def _stop(signum, frame) -> None:  # noqa: ARG001
        log.info("Received signal %d, stopping worker", signum)
        worker.stop()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)
    worker.run_forever()


def run_sweep(config, args) -> None:  # noqa: ARG001
    """Run a single sweep and print its report as JSON."""
    container = _container(config)
    report = container.processor.sweep()
    sys.stdout.write(json.dumps(report.as_dict(), indent=2) + "\n")
