"""certflow command-line entry point.

Usage::

    certflow -c /etc/certflow/config.yaml
    certflow -c config.yaml --validate-only
    certflow -c config.yaml serve --dev
    certflow -c config.yaml worker
    certflow -c config.yaml sweep
    certflow -c config.yaml db init
    certflow -c config.yaml db status
    certflow -c config.yaml inspect order 42
    certflow -c config.yaml quota add 123456789 5
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

log = logging.getLogger(__name__)


def _get_version() -> str:
    from certflow import __version__

    return __version__


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="certflow",
        description="certflow - chat-driven DNS-01 certificate orders",
    )
    parser.add_argument(
        "-c",
        "--config",
        required=True,
        metavar="PATH",
        help="Path to the configuration file (YAML or JSON).",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=False,
        help="Enable debug output (full tracebacks, verbose logging).",
    )
    parser.add_argument(
        "--validate-only",
        action="store_true",
        default=False,
        help="Validate the configuration file and exit.",
    )
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"%(prog)s {_get_version()}",
    )

    subparsers = parser.add_subparsers(dest="command")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the HTTP API")
    serve_parser.add_argument(
        "--dev",
        action="store_true",
        default=False,
        help="Use Flask's development server instead of gunicorn.",
    )
    serve_parser.add_argument(
        "--no-worker",
        action="store_true",
        default=False,
        help="Do not run the order worker inside the server process.",
    )

    # worker / sweep
    subparsers.add_parser("worker", help="Run the order worker in the foreground")
    subparsers.add_parser("sweep", help="Run one processing sweep and print the report")

    # db
    db_parser = subparsers.add_parser("db", help="Database management")
    db_sub = db_parser.add_subparsers(dest="db_command")
    db_sub.add_parser("init", help="Create tables from the bundled schema")
    db_sub.add_parser("status", help="Check connectivity and count orders by status")

    # inspect
    inspect_parser = subparsers.add_parser("inspect", help="Inspect stored records")
    inspect_sub = inspect_parser.add_subparsers(dest="inspect_command")
    order_parser = inspect_sub.add_parser("order", help="Inspect an order and its action log")
    order_parser.add_argument("order_id", type=int, help="The order id")

    # quota
    quota_parser = subparsers.add_parser("quota", help="User quota management")
    quota_sub = quota_parser.add_subparsers(dest="quota_command")
    add_parser = quota_sub.add_parser("add", help="Add to a user's certificate quota")
    add_parser.add_argument("external_id", help="Chat identity of the user")
    add_parser.add_argument("amount", type=int, help="Number of orders to add")

    return parser


def _print_error(message: str) -> None:
    """Print a user-facing error to stderr."""
    sys.stderr.write(f"error: {message}\n")


def main(argv: list[str] | None = None) -> None:
    """CLI entry point.  Parses arguments, loads config, runs a command."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    config_path = Path(args.config)
    if not config_path.is_file():
        _print_error(f"configuration file not found: {config_path}")
        sys.exit(1)

    # Plain stderr logging until the config says otherwise.
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(levelname)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        from certflow.config import CertflowConfig, ConfigValidationError

        config = CertflowConfig(config_file=str(config_path))
    except ConfigValidationError as exc:
        _print_error(str(exc))
        sys.exit(1)
    except Exception as exc:
        if args.debug:
            raise
        _print_error(f"failed to load configuration: {exc}")
        sys.exit(1)

    from certflow.logging import configure_logging

    configure_logging(config.settings.logging)

    if args.validate_only:
        _print_settings_summary(config)
        sys.exit(0)

    command = args.command
    try:
        if command == "db":
            from certflow.cli.commands.db import run_db

            run_db(config, args)
        elif command == "inspect":
            from certflow.cli.commands.inspect import run_inspect

            run_inspect(config, args)
        elif command == "quota":
            from certflow.cli.commands.quota import run_quota

            run_quota(config, args)
        elif command == "worker":
            from certflow.cli.commands.worker import run_worker

            run_worker(config, args)
        elif command == "sweep":
            from certflow.cli.commands.worker import run_sweep

            run_sweep(config, args)
        else:
            # No subcommand means serve.
            from certflow.cli.commands.serve import run_serve

            _print_settings_summary(config)
            run_serve(config, args)
    except Exception as exc:
        if args.debug:
            raise
        log.debug("Command %s failed", command, exc_info=True)
        _print_error(str(exc))
        sys.exit(1)


def _print_settings_summary(config) -> None:
    """Print a short summary of the loaded configuration."""
    s = config.settings
    lines = [
        f"certflow {_get_version()}",
        f"  server:   {s.server.bind}:{s.server.port} ({s.server.workers} workers)",
        f"  database: {s.database.user}@{s.database.host}:{s.database.port}/{s.database.database}",
        f"  acme.sh:  {s.acme.path} -> {s.acme.export_path}",
        f"  orders:   max_retries={s.order.max_retries} failed_ttl={s.order.failed_ttl_minutes}m",
        f"  worker:   {'enabled' if s.worker.enabled else 'disabled'} every {s.worker.poll_seconds}s",
    ]
    sys.stdout.write("\n".join(lines) + "\n")


if __name__ == "__main__":
    main()
