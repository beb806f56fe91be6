"""Repository classes for the certflow persistence layer.

Each repository extends :class:`pypgkit.BaseRepository` with the
conditional queries the order workflow relies on.
"""

from certflow.repositories.action_log import ActionLogRepository
from certflow.repositories.order import OrderRepository
from certflow.repositories.user import UserRepository

__all__ = [
    "ActionLogRepository",
    "OrderRepository",
    "UserRepository",
]
