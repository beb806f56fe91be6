"""Unit tests for certflow.db.unit_of_work.UnitOfWork."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from certflow.db.unit_of_work import UnitOfWork


def _mock_database():
    db = MagicMock()
    conn = MagicMock()
    tx = MagicMock()
    tx.__enter__ = MagicMock(return_value=conn)
    tx.__exit__ = MagicMock(return_value=False)
    db.transaction.return_value = tx
    cursor = MagicMock()
    cursor.__enter__ = MagicMock(return_value=cursor)
    cursor.__exit__ = MagicMock(return_value=False)
    conn.cursor.return_value = cursor
    return db, tx, cursor


class TestUnitOfWork:
    def test_requires_context(self):
        db, _, _ = _mock_database()
        with pytest.raises(RuntimeError, match="context manager"):
            UnitOfWork(db).execute("SELECT 1")

    def test_insert_returns_row(self):
        db, tx, cursor = _mock_database()
        cursor.fetchone.return_value = {"id": 1}
        with UnitOfWork(db) as uow:
            row = uow.insert("users", {"external_id": "1", "quota": 0})
        assert row == {"id": 1}
        sql, params = cursor.execute.call_args.args
        assert sql == "INSERT INTO users (external_id, quota) VALUES (%s, %s) RETURNING *"
        assert params == ["1", 0]
        tx.__exit__.assert_called_once_with(None, None, None)

    def test_exception_reaches_transaction(self):
        db, tx, _ = _mock_database()
        with pytest.raises(KeyError), UnitOfWork(db):
            raise KeyError("x")
        assert tx.__exit__.call_args.args[0] is KeyError
