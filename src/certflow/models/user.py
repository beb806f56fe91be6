"""Chat user entity."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from certflow.core.types import PRIVILEGED_ROLES, UserRole

_EPOCH = datetime(1970, 1, 1)


@dataclass(frozen=True)
class User:
    id: int | None
    external_id: str
    username: str | None = None
    role: UserRole = UserRole.MEMBER
    quota: int = 0
    created_at: datetime = _EPOCH
    updated_at: datetime = _EPOCH

    @property
    def privileged(self) -> bool:
        """Owners and admins bypass quota accounting."""
        return self.role in PRIVILEGED_ROLES
