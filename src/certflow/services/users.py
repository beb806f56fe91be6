"""Chat user directory and role resolution.

Roles come from two places: the ``auth.owner_ids`` / ``auth.admin_ids``
configuration lists and the role stored on the user row.  The higher
of the two wins and is written back so quota accounting (which reads
the stored row) sees the same answer.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from certflow.core.errors import PermissionDenied, UserNotFound
from certflow.core.types import LogAction, UserRole
from certflow.logging import events

if TYPE_CHECKING:
    from certflow.config.settings import AuthSettings, OrderSettings
    from certflow.models.user import User
    from certflow.repositories.action_log import ActionLogRepository
    from certflow.repositories.user import UserRepository
    from certflow.services.quota import QuotaLedger

log = logging.getLogger(__name__)

_RANK = {UserRole.MEMBER: 0, UserRole.ADMIN: 1, UserRole.OWNER: 2}


class UserDirectory:
    def __init__(  # noqa: PLR0913
        self,
        user_repo: UserRepository,
        log_repo: ActionLogRepository,
        quota: QuotaLedger,
        auth: AuthSettings,
        order_settings: OrderSettings,
    ) -> None:
        self._users = user_repo
        self._logs = log_repo
        self._quota = quota
        self._auth = auth
        self._order_settings = order_settings

    def configured_role(self, external_id: str) -> UserRole:
        if external_id in self._auth.owner_ids:
            return UserRole.OWNER
        if external_id in self._auth.admin_ids:
            return UserRole.ADMIN
        return UserRole.MEMBER

    def _sync_role(self, user: User) -> User:
        configured = self.configured_role(user.external_id)
        if _RANK[configured] <= _RANK[user.role]:
            return user
        log.info("User %s promoted to %s by configuration", user.external_id, configured.value)
        return self._users.set_role(user.id, configured) or user

    def register(self, external_id: str | int, username: str | None = None) -> User:
        """Create or refresh the user behind a chat identity (``/start``)."""
        user = self._users.register(str(external_id), username, self._order_settings.default_quota)
        return self._sync_role(user)

    def resolve(self, external_id: str | int, username: str | None = None) -> User:
        """Return the acting user, registering on first contact.

        Raises :class:`PermissionDenied` when ``auth.owner_lock`` is on
        and the caller is not an owner.
        """
        external_id = str(external_id)
        self._check_owner_lock(external_id)
        user = self._users.find_by_external_id(external_id)
        if user is None:
            return self.register(external_id, username)
        return self._sync_role(user)

    def lookup(self, external_id: str | int) -> User:
        """Return an already registered user; unknown identities are not created."""
        external_id = str(external_id)
        self._check_owner_lock(external_id)
        return self.get_by_external_id(external_id)

    def _check_owner_lock(self, external_id: str) -> None:
        if not self._auth.owner_lock or self.configured_role(external_id) == UserRole.OWNER:
            return
        existing = self._users.find_by_external_id(external_id)
        if existing is None or existing.role != UserRole.OWNER:
            msg = "This service is restricted to its owner"
            raise PermissionDenied(msg)

    def get_by_external_id(self, external_id: str | int) -> User:
        user = self._users.find_by_external_id(str(external_id))
        if user is None:
            msg = f"User {external_id} does not exist; they must start the bot first"
            raise UserNotFound(msg)
        return self._sync_role(user)

    @staticmethod
    def require_role(user: User, *roles: UserRole) -> None:
        if user.role not in roles:
            allowed = " or ".join(r.value for r in roles)
            msg = f"Only {allowed} users may do this"
            raise PermissionDenied(msg)

    def grant_quota(self, actor: User | None, target_external_id: str | int, amount: int) -> User:
        """Add *amount* to another user's quota.

        *actor* must be an owner or admin; ``None`` means the operator
        running the CLI.
        """
        if actor is not None:
            self.require_role(actor, UserRole.OWNER, UserRole.ADMIN)
        target = self.get_by_external_id(target_external_id)
        updated = self._quota.grant(target, amount)
        actor_id = actor.id if actor is not None else None
        self._logs.append(actor_id, None, LogAction.QUOTA_GRANT.value, f"{target.external_id} +{amount}")
        events.quota_granted(updated.id, amount, actor_id)
        return updated
