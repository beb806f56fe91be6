"""Inspect subcommand: print stored records for debugging.

Usage::

    certflow -c config.yaml inspect order 42
"""

from __future__ import annotations

import json
import sys


def run_inspect(config, args) -> None:
    """Dispatch to the appropriate inspect sub-handler."""
    sub = getattr(args, "inspect_command", None)
    if sub != "order":
        sys.stderr.write("usage: certflow inspect order <id>\n")
        sys.exit(1)

    from certflow.db import init_database

    db = init_database(config.settings.database)
    _inspect_order(db, args.order_id)


def _inspect_order(db, order_id: int) -> None:
    """Print an order card with its action log."""
    from certflow.repositories import ActionLogRepository, OrderRepository
    from certflow.services.query import order_card

    order = OrderRepository(db).find_by_id(order_id)
    if order is None:
        sys.stderr.write(f"order {order_id} not found\n")
        sys.exit(1)

    result = order_card(order)
    result["user_id"] = order.user_id
    result["acme_output"] = order.acme_output
    result["log"] = [
        {
            "at": str(entry.created_at),
            "action": entry.action,
            "detail": entry.detail,
        }
        for entry in ActionLogRepository(db).find_by_order(order_id)
    ]
    sys.stdout.write(json.dumps(result, indent=2, default=str) + "\n")
