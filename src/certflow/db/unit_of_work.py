"""Single-transaction helper for writes that span several statements.

PyPGKit's repository helpers each borrow their own pooled connection,
so two calls are two transactions.  :class:`UnitOfWork` pins one
connection for the duration of a ``with`` block.

Usage::

    with UnitOfWork() as uow:
        uow.fetch_one("DELETE FROM cert_orders WHERE id = %s RETURNING id", (7,))
        uow.insert("cert_orders", {...})
        # COMMIT on clean exit; ROLLBACK on exception
"""

from __future__ import annotations

from typing import Any, Self

from psycopg.rows import dict_row
from pypgkit import Database


class UnitOfWork:
    """Context manager exposing raw SQL helpers on one transaction."""

    def __init__(self, database: Database | None = None) -> None:
        self._db = database or Database.get_instance()
        self._conn = None

    def __enter__(self) -> Self:
        self._tx = self._db.transaction()
        self._conn = self._tx.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self._tx.__exit__(exc_type, exc_val, exc_tb)
        self._conn = None

    def _cursor(self, **kwargs):
        if self._conn is None:
            msg = "UnitOfWork must be used as a context manager"
            raise RuntimeError(msg)
        return self._conn.cursor(**kwargs)

    def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        """INSERT one row and return it as stored (``RETURNING *``)."""
        columns = ", ".join(row)
        placeholders = ", ".join(["%s"] * len(row))
        with self._cursor(row_factory=dict_row) as cur:
            cur.execute(
                f"INSERT INTO {table} ({columns}) VALUES ({placeholders}) RETURNING *",
                list(row.values()),
            )
            return cur.fetchone()

    def execute(self, sql: str, params: tuple | list | None = None) -> int:
        """Run a statement and return its rowcount."""
        with self._cursor() as cur:
            cur.execute(sql, params)
            return cur.rowcount

    def fetch_one(
        self,
        sql: str,
        params: tuple | list | None = None,
    ) -> dict[str, Any] | None:
        with self._cursor(row_factory=dict_row) as cur:
            cur.execute(sql, params)
            return cur.fetchone()
