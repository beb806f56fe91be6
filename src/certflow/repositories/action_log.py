"""Append-only action log repository."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pypgkit import BaseRepository, Database

from certflow.models.action_log import ActionLog

if TYPE_CHECKING:
    from datetime import datetime


class ActionLogRepository(BaseRepository[ActionLog]):
    table_name = "action_logs"
    primary_key = "id"

    def _row_to_entity(self, row: dict) -> ActionLog:
        return ActionLog(
            id=row["id"],
            user_id=row.get("user_id"),
            order_id=row.get("order_id"),
            action=row["action"],
            detail=row.get("detail"),
            created_at=row["created_at"],
        )

    def _entity_to_row(self, entity: ActionLog) -> dict:
        return {
            "user_id": entity.user_id,
            "order_id": entity.order_id,
            "action": entity.action,
            "detail": entity.detail,
        }

    def append(
        self,
        user_id: int | None,
        order_id: int | None,
        action: str,
        detail: str | None = None,
    ) -> None:
        db = Database.get_instance()
        db.execute(
            "INSERT INTO action_logs (user_id, order_id, action, detail) VALUES (%s, %s, %s, %s)",
            (user_id, order_id, action, detail),
        )

    def exists_since(
        self,
        user_id: int,
        action: str,
        detail: str,
        since: datetime,
    ) -> bool:
        """Return whether *user_id* logged *action* with *detail* after *since*."""
        db = Database.get_instance()
        value = db.fetch_value(
            "SELECT EXISTS (SELECT 1 FROM action_logs "
            "WHERE user_id = %s AND action = %s AND detail = %s AND created_at >= %s)",
            (user_id, action, detail, since),
        )
        return bool(value)

    def find_by_order(self, order_id: int, limit: int = 20) -> list[ActionLog]:
        """Return the newest entries for an order, newest first."""
        db = Database.get_instance()
        rows = db.fetch_all(
            "SELECT * FROM action_logs WHERE order_id = %s ORDER BY id DESC LIMIT %s",
            (order_id, limit),
            as_dict=True,
        )
        return [self._row_to_entity(r) for r in rows]

    def find_recent_by_user(self, user_id: int, limit: int = 5) -> list[ActionLog]:
        db = Database.get_instance()
        rows = db.fetch_all(
            "SELECT * FROM action_logs WHERE user_id = %s ORDER BY id DESC LIMIT %s",
            (user_id, limit),
            as_dict=True,
        )
        return [self._row_to_entity(r) for r in rows]
