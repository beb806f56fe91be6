"""Quota subcommand: operator-side quota grants."""

from __future__ import annotations

import sys


def run_quota(config, args) -> None:
    if getattr(args, "quota_command", None) != "add":
        sys.stderr.write("usage: certflow quota add <external_id> <amount>\n")
        sys.exit(1)

    from certflow.app.context import Container
    from certflow.db import init_database

    db = init_database(config.settings.database)
    container = Container(db, config.settings)
    user = container.users.grant_quota(None, args.external_id, args.amount)
    sys.stdout.write(f"user {user.external_id}: quota is now {user.quota}\n")
