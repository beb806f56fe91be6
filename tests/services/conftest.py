"""In-memory repositories and CA tool used by the service tests.

The fakes mirror the conditional-update semantics of the PostgreSQL
repositories: every write re-checks status (and flag) and returns
``None`` when the guard no longer matches.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime, timedelta
from types import SimpleNamespace

import pytest

from certflow.ca.base import CertPaths, ChallengeIssued, ExternalCertTool, Success
from certflow.config.settings import AuthSettings, OrderSettings
from certflow.core.types import OrderStatus, UserRole, WorkFlag
from certflow.models.action_log import ActionLog
from certflow.models.order import DnsChallenge
from certflow.models.user import User
from certflow.services.order import OrderService
from certflow.services.query import OrderQueryService
from certflow.services.quota import QuotaLedger
from certflow.services.retry_policy import RetryPolicy
from certflow.services.users import UserDirectory

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


class FakeOrderRepository:
    def __init__(self, clock: FakeClock) -> None:
        self.rows: dict = {}
        self._next_id = 1
        self._clock = clock
        self.lose_next_transition = False

    def _stamp(self, order, *, created: bool = False):
        now = self._clock()
        if created:
            return replace(order, created_at=now, updated_at=now)
        return replace(order, updated_at=now)

    def _violates_unique(self, order) -> bool:
        if not order.domain or order.status == OrderStatus.ISSUED:
            return False
        return any(
            o.id != order.id
            and o.user_id == order.user_id
            and o.domain == order.domain
            and o.status != OrderStatus.ISSUED
            for o in self.rows.values()
        )

    def find_by_id(self, order_id):
        return self.rows.get(order_id)

    def add(self, order):
        order = self._stamp(replace(order, id=self._next_id), created=True)
        self._next_id += 1
        self.rows[order.id] = order
        return order

    def recreate(self, order_id, from_status, fresh):
        current = self.rows.get(order_id)
        if current is None or current.status != from_status:
            return None
        del self.rows[order_id]
        return self.add(fresh)

    def find_draft(self, user_id):
        drafts = [
            o for o in self.rows.values() if o.user_id == user_id and o.status == OrderStatus.CREATED and not o.domain
        ]
        return max(drafts, key=lambda o: o.id) if drafts else None

    def find_open_by_domain(self, user_id, domain, exclude_id=None):
        for o in self.rows.values():
            if o.user_id == user_id and o.domain == domain and o.status != OrderStatus.ISSUED and o.id != exclude_id:
                return o
        return None

    def find_latest_by_domain(self, user_id, domain):
        matches = [o for o in self.rows.values() if o.user_id == user_id and o.domain == domain]
        return max(matches, key=lambda o: o.id) if matches else None

    def find_by_user(self, user_id, limit=50):
        return sorted((o for o in self.rows.values() if o.user_id == user_id), key=lambda o: -o.id)[:limit]

    def find_flagged(self, status, flag, limit):
        return sorted(
            (o for o in self.rows.values() if o.status == status and flag in o.flags),
            key=lambda o: o.updated_at,
        )[:limit]

    def find_failed_before(self, cutoff, limit):
        return [o for o in self.rows.values() if o.status == OrderStatus.FAILED and o.updated_at < cutoff][:limit]

    def count_by_status(self):
        counts: dict = {}
        for o in self.rows.values():
            counts[o.status.value] = counts.get(o.status.value, 0) + 1
        return counts

    def transition(
        self,
        order_id,
        from_status,
        to_status,
        *,
        require_flag=None,
        flags=None,
        retry_count=None,
        **fields,
    ):
        if self.lose_next_transition:
            self.lose_next_transition = False
            return None
        current = self.rows.get(order_id)
        if current is None or current.status != from_status:
            return None
        if require_flag is not None and require_flag not in current.flags:
            return None
        changes = dict(fields, status=to_status)
        if flags is not None:
            changes["flags"] = frozenset(flags)
        if retry_count is not None:
            changes["retry_count"] = retry_count
        if "txt_values" in changes:
            changes["txt_values"] = tuple(changes["txt_values"] or ())
        updated = self._stamp(replace(current, **changes))
        self.rows[order_id] = updated
        return updated

    def assign_domain(self, order_id, domain, cert_type):
        current = self.rows.get(order_id)
        if current is None or current.status != OrderStatus.CREATED or current.domain:
            return None
        candidate = replace(
            current,
            domain=domain,
            cert_type=cert_type,
            flags=current.flags | {WorkFlag.GENERATE_DNS},
            retry_count=0,
            last_error=None,
        )
        if self._violates_unique(candidate):
            return None
        updated = self._stamp(candidate)
        self.rows[order_id] = updated
        return updated

    def delete_if(self, order_id, statuses):
        current = self.rows.get(order_id)
        if current is None or current.status not in set(statuses):
            return None
        return self.rows.pop(order_id)


class FakeUserRepository:
    def __init__(self) -> None:
        self.rows: dict = {}
        self._next_id = 1

    def add(self, user):
        user = replace(user, id=self._next_id)
        self._next_id += 1
        self.rows[user.id] = user
        return user

    def find_by_id(self, user_id):
        return self.rows.get(user_id)

    def find_by_external_id(self, external_id):
        return next((u for u in self.rows.values() if u.external_id == external_id), None)

    def register(self, external_id, username, quota):
        existing = self.find_by_external_id(external_id)
        if existing is not None:
            updated = replace(existing, username=username or existing.username)
            self.rows[updated.id] = updated
            return updated
        return self.add(User(id=None, external_id=external_id, username=username, quota=quota))

    def set_role(self, user_id, role):
        user = self.rows.get(user_id)
        if user is None:
            return None
        self.rows[user_id] = replace(user, role=role)
        return self.rows[user_id]

    def decrement_quota(self, user_id):
        user = self.rows.get(user_id)
        if user is None or user.quota <= 0:
            return None
        self.rows[user_id] = replace(user, quota=user.quota - 1)
        return self.rows[user_id]

    def increment_quota(self, user_id, amount=1):
        user = self.rows.get(user_id)
        if user is None:
            return None
        self.rows[user_id] = replace(user, quota=user.quota + amount)
        return self.rows[user_id]


class FakeActionLogRepository:
    def __init__(self, clock: FakeClock) -> None:
        self.entries: list[ActionLog] = []
        self._clock = clock

    def append(self, user_id, order_id, action, detail=None):
        self.entries.append(
            ActionLog(
                id=len(self.entries) + 1,
                user_id=user_id,
                order_id=order_id,
                action=action,
                detail=detail,
                created_at=self._clock(),
            ),
        )

    def exists_since(self, user_id, action, detail, since):
        return any(
            e.user_id == user_id and e.action == action and e.detail == detail and e.created_at >= since
            for e in self.entries
        )

    def find_by_order(self, order_id, limit=20):
        return [e for e in reversed(self.entries) if e.order_id == order_id][:limit]

    def find_recent_by_user(self, user_id, limit=5):
        return [e for e in reversed(self.entries) if e.user_id == user_id][:limit]

    def actions(self) -> list[str]:
        return [e.action for e in self.entries]


# ---------------------------------------------------------------------------
# CA tool and verifier
# ---------------------------------------------------------------------------


def challenge_for(domain: str, *values: str) -> ChallengeIssued:
    return ChallengeIssued(
        challenge=DnsChallenge(host=f"_acme-challenge.{domain}", values=values or ("token-1",)),
        output="Add the following TXT record",
    )


class FakeTool(ExternalCertTool):
    """Scripted CA tool: queue results per operation, defaults succeed."""

    def __init__(self, export_path: str = "/certs") -> None:
        self.export_path = export_path
        self.generate_results: list = []
        self.renew_results: list = []
        self.install_results: list = []
        self.remove_results: list = []
        self.calls: list[tuple] = []

    def paths_for(self, domain):
        d = f"{self.export_path}/{domain}"
        return CertPaths(
            directory=d,
            cert=f"{d}/cert.pem",
            key=f"{d}/privkey.pem",
            fullchain=f"{d}/fullchain.pem",
            ca=f"{d}/ca.pem",
        )

    def generate_challenge(self, domains):
        self.calls.append(("generate", tuple(domains)))
        if self.generate_results:
            return self.generate_results.pop(0)
        return challenge_for(domains[0])

    def renew(self, domains):
        self.calls.append(("renew", tuple(domains)))
        return self.renew_results.pop(0) if self.renew_results else Success(output="Cert success.")

    def install(self, domain, paths):
        self.calls.append(("install", domain))
        return self.install_results.pop(0) if self.install_results else Success(output="Installed")

    def remove(self, domain):
        self.calls.append(("remove", domain))
        return self.remove_results.pop(0) if self.remove_results else Success(output="removed")

    def count(self, name: str) -> int:
        return sum(1 for c in self.calls if c[0] == name)


class FakeVerifier:
    def __init__(self) -> None:
        self.visible = True
        self.error: Exception | None = None
        self.calls: list[tuple] = []

    def verify(self, host, values):
        self.calls.append((host, tuple(values)))
        if self.error is not None:
            raise self.error
        return self.visible


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def order_settings():
    return OrderSettings(
        max_retries=3,
        failed_ttl_minutes=60,
        exists_cooldown_seconds=600,
        default_quota=1,
    )


@pytest.fixture()
def auth_settings():
    return AuthSettings(owner_ids=frozenset({"100"}), admin_ids=frozenset({"200"}), owner_lock=False)


@pytest.fixture()
def env(clock, order_settings, auth_settings):
    """Wire an :class:`OrderService` over the in-memory fakes."""
    orders = FakeOrderRepository(clock)
    users = FakeUserRepository()
    logs = FakeActionLogRepository(clock)
    tool = FakeTool()
    verifier = FakeVerifier()
    quota = QuotaLedger(users)
    policy = RetryPolicy(order_settings.max_retries, order_settings.failed_ttl_minutes)
    service = OrderService(orders, users, logs, tool, verifier, quota, policy, order_settings, clock=clock)
    directory = UserDirectory(users, logs, quota, auth_settings, order_settings)
    queries = OrderQueryService(orders, logs)
    return SimpleNamespace(
        orders=orders,
        users=users,
        logs=logs,
        tool=tool,
        verifier=verifier,
        quota=quota,
        policy=policy,
        service=service,
        directory=directory,
        queries=queries,
        clock=clock,
    )


@pytest.fixture()
def member(env):
    return env.users.add(User(id=None, external_id="300", username="member", quota=2))


@pytest.fixture()
def admin(env):
    return env.users.add(User(id=None, external_id="200", username="admin", role=UserRole.ADMIN, quota=0))


@pytest.fixture()
def owner(env):
    return env.users.add(User(id=None, external_id="100", username="owner", role=UserRole.OWNER, quota=0))
