"""Database start-up from certflow configuration.

Usage::

    from certflow.config import get_config
    from certflow.db.init import init_database

    init_database(get_config().settings.database)
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from pypgkit import Database, DatabaseConfig

if TYPE_CHECKING:
    from certflow.config.settings import DatabaseSettings

SCHEMA_PATH = Path(__file__).parent / "schema.sql"

log = logging.getLogger(__name__)


def _settings_to_config(settings: DatabaseSettings) -> DatabaseConfig:
    return DatabaseConfig(
        host=settings.host,
        port=settings.port,
        database=settings.database,
        user=settings.user,
        password=settings.password,
        sslmode=settings.sslmode,
        min_connections=settings.min_connections,
        max_connections=settings.max_connections,
        connection_timeout=settings.connection_timeout,
    )


def init_database(settings: DatabaseSettings, *, apply_schema: bool | None = None) -> Database:
    """Initialise the :class:`Database` singleton.

    Returns the existing instance when one is already initialised.

    Parameters
    ----------
    settings:
        The ``database`` section of :class:`CertflowSettings`.
    apply_schema:
        Force (or suppress) loading the bundled ``schema.sql``.
        Defaults to ``settings.auto_setup``.

    """
    if Database.is_initialized():
        log.debug("Database already initialised, reusing instance")
        return Database.get_instance()

    setup = settings.auto_setup if apply_schema is None else apply_schema
    log.info(
        "Connecting to database %s@%s:%s/%s (schema setup: %s)",
        settings.user,
        settings.host,
        settings.port,
        settings.database,
        setup,
    )
    db = Database.init(
        config=_settings_to_config(settings),
        schema_path=SCHEMA_PATH if setup else None,
        auto_setup=setup,
        interactive=False,
    )
    log.info("Database ready")
    return db
