"""Flask app wired to the in-memory service fakes."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from certflow.app.factory import create_app
from certflow.config.settings import AuthSettings, OrderSettings
from certflow.services.actions import ActionDispatcher
from certflow.services.order import OrderService
from certflow.services.query import OrderQueryService
from certflow.services.quota import QuotaLedger
from certflow.services.retry_policy import RetryPolicy
from certflow.services.users import UserDirectory
from tests.services.conftest import (
    FakeActionLogRepository,
    FakeClock,
    FakeOrderRepository,
    FakeTool,
    FakeUserRepository,
    FakeVerifier,
)

API_TOKEN = "s3cret-token-for-tests"


def make_container(*, worker_enabled: bool = True):
    clock = FakeClock()
    order_settings = OrderSettings(3, 60, 600, 1)
    auth_settings = AuthSettings(frozenset({"100"}), frozenset({"200"}), False)
    orders = FakeOrderRepository(clock)
    users_repo = FakeUserRepository()
    logs = FakeActionLogRepository(clock)
    quota = QuotaLedger(users_repo)
    policy = RetryPolicy(order_settings.max_retries, order_settings.failed_ttl_minutes)
    service = OrderService(
        orders, users_repo, logs, FakeTool(), FakeVerifier(), quota, policy, order_settings, clock=clock,
    )
    users = UserDirectory(users_repo, logs, quota, auth_settings, order_settings)
    queries = OrderQueryService(orders, logs)

    settings = MagicMock()
    settings.worker.enabled = worker_enabled
    db = MagicMock()
    db.fetch_value.return_value = 1
    worker = MagicMock()
    worker.running = True
    return SimpleNamespace(
        db=db,
        settings=settings,
        orders=orders,
        users=users,
        queries=queries,
        order_service=service,
        dispatcher=ActionDispatcher(users, service, queries),
        worker=worker,
    )


def make_config(api_token: str | None = None):
    config = MagicMock()
    config.settings.server.api_token = api_token
    config.settings.worker.enabled = False
    return config


@pytest.fixture()
def container():
    return make_container()


@pytest.fixture()
def app(container):
    return create_app(config=make_config(), container=container, start_worker=False)


@pytest.fixture()
def client(app):
    return app.test_client()
