"""User repository with conditional quota updates."""

from __future__ import annotations

from pypgkit import BaseRepository, Database

from certflow.core.types import UserRole
from certflow.models.user import User


class UserRepository(BaseRepository[User]):
    table_name = "users"
    primary_key = "id"

    def _row_to_entity(self, row: dict) -> User:
        return User(
            id=row["id"],
            external_id=row["external_id"],
            username=row.get("username"),
            role=UserRole(row["role"]),
            quota=row["quota"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _entity_to_row(self, entity: User) -> dict:
        row = {
            "external_id": entity.external_id,
            "username": entity.username,
            "role": entity.role.value,
            "quota": entity.quota,
        }
        if entity.id is not None:
            row["id"] = entity.id
        return row

    def find_by_external_id(self, external_id: str) -> User | None:
        return self.find_one_by({"external_id": external_id})

    def register(self, external_id: str, username: str | None, quota: int) -> User:
        """Insert a user or refresh the username of an existing one.

        The starting *quota* only applies to a brand new row.
        """
        db = Database.get_instance()
        row = db.fetch_one(
            "INSERT INTO users (external_id, username, role, quota) "
            "VALUES (%s, %s, %s, %s) "
            "ON CONFLICT (external_id) DO UPDATE "
            "SET username = COALESCE(EXCLUDED.username, users.username), updated_at = now() "
            "RETURNING *",
            (external_id, username, UserRole.MEMBER.value, quota),
            as_dict=True,
        )
        return self._row_to_entity(row)

    def set_role(self, user_id: int, role: UserRole) -> User | None:
        db = Database.get_instance()
        row = db.fetch_one(
            "UPDATE users SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
            (role.value, user_id),
            as_dict=True,
        )
        return self._row_to_entity(row) if row else None

    def decrement_quota(self, user_id: int) -> User | None:
        """Take one unit of quota; ``None`` if the user has none left."""
        db = Database.get_instance()
        row = db.fetch_one(
            "UPDATE users SET quota = quota - 1, updated_at = now() "
            "WHERE id = %s AND quota > 0 RETURNING *",
            (user_id,),
            as_dict=True,
        )
        return self._row_to_entity(row) if row else None

    def increment_quota(self, user_id: int, amount: int = 1) -> User | None:
        db = Database.get_instance()
        row = db.fetch_one(
            "UPDATE users SET quota = quota + %s, updated_at = now() WHERE id = %s RETURNING *",
            (amount, user_id),
            as_dict=True,
        )
        return self._row_to_entity(row) if row else None
