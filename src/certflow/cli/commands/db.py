"""Database management subcommands."""

from __future__ import annotations

import json
import logging
import sys

log = logging.getLogger(__name__)

_TABLES = ("users", "cert_orders", "action_logs")


def run_db(config, args) -> None:
    """Handle db subcommands."""
    if args.db_command == "init":
        _db_init(config)
    elif args.db_command == "status":
        _db_status(config)
    else:
        sys.stderr.write("usage: certflow db {init,status}\n")
        sys.exit(1)


def _db_init(config) -> None:
    """Apply the bundled schema."""
    from certflow.db import init_database

    init_database(config.settings.database, apply_schema=True)
    sys.stdout.write("schema applied\n")


def _db_status(config) -> None:
    """Check connectivity, table presence and order counts."""
    from certflow.db import init_database
    from certflow.repositories import OrderRepository

    db = init_database(config.settings.database)
    db.fetch_value("SELECT 1")
    present = db.fetch_value(
        "SELECT count(*) FROM information_schema.tables WHERE table_schema = 'public' AND table_name = ANY(%s)",
        (list(_TABLES),),
    )
    result = {"connected": True, "tables": f"{present}/{len(_TABLES)}"}
    if present == len(_TABLES):
        result["orders"] = OrderRepository(db).count_by_status()
    sys.stdout.write(json.dumps(result, indent=2) + "\n")
    if present != len(_TABLES):
        sys.exit(1)
