"""Per-user certificate allowance.

Privileged users (owners and admins) are never charged or refunded.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import TYPE_CHECKING

from certflow.core.errors import QuotaExhausted, UserNotFound, ValidationError

if TYPE_CHECKING:
    from certflow.models.user import User
    from certflow.repositories.user import UserRepository

log = logging.getLogger(__name__)


class QuotaLedger:
    def __init__(self, user_repo: UserRepository) -> None:
        self._users = user_repo

    def has_quota(self, user: User) -> bool:
        return user.privileged or user.quota > 0

    def ensure(self, user: User) -> None:
        """Raise :class:`QuotaExhausted` unless *user* may submit an order."""
        if not self.has_quota(user):
            msg = (
                f"No certificate quota left ({user.quota} remaining). "
                "Ask an administrator to add more."
            )
            raise QuotaExhausted(msg)

    def consume(self, user: User) -> User:
        """Take one unit of quota with a conditional decrement.

        Raises :class:`QuotaExhausted` if the balance reached zero
        concurrently.
        """
        if user.privileged:
            return user
        updated = self._users.decrement_quota(user.id)
        if updated is None:
            raise QuotaExhausted("No certificate quota left. Ask an administrator to add more.")
        log.info("Quota consumed for user %s (%d left)", user.id, updated.quota)
        return replace(updated, role=user.role)

    def refund(self, user: User) -> User:
        if user.privileged:
            return user
        updated = self._users.increment_quota(user.id, 1)
        if updated is None:
            log.warning("Quota refund skipped: user %s no longer exists", user.id)
            return user
        log.info("Quota refunded to user %s (%d left)", user.id, updated.quota)
        return replace(updated, role=user.role)

    def grant(self, user: User, amount: int) -> User:
        """Add *amount* units to *user*'s balance."""
        if amount <= 0:
            raise ValidationError("Quota amount must be a positive integer")
        updated = self._users.increment_quota(user.id, amount)
        if updated is None:
            msg = f"User {user.external_id} does not exist"
            raise UserNotFound(msg)
        return updated
