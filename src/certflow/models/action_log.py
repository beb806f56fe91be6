"""Append-only audit entry."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

_EPOCH = datetime(1970, 1, 1)


@dataclass(frozen=True)
class ActionLog:
    id: int | None
    user_id: int | None
    order_id: int | None
    action: str
    detail: str | None = None
    created_at: datetime = _EPOCH
