"""Dependency container for certflow.

Created once at startup and stored on the Flask app via
``app.extensions["container"]``; the CLI builds one directly for the
``worker``, ``sweep`` and ``quota`` commands.

Usage::

    from certflow.app.context import get_container

    c = get_container()
    result = c.dispatcher.dispatch(request)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from flask import current_app

from certflow.ca.acme_sh import AcmeShTool
from certflow.challenge.dns01 import TxtVerifier
from certflow.repositories import ActionLogRepository, OrderRepository, UserRepository
from certflow.services import (
    ActionDispatcher,
    OrderProcessor,
    OrderQueryService,
    OrderService,
    OrderWorker,
    QuotaLedger,
    RetryPolicy,
    UserDirectory,
)

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from pypgkit import Database

    from certflow.ca.base import ExternalCertTool
    from certflow.config.settings import CertflowSettings


class Container:
    """Application-wide dependency container.

    Parameters
    ----------
    db:
        The :class:`Database` singleton shared by all repositories.
    settings:
        Loaded settings tree.
    tool:
        CA tool adapter; defaults to :class:`AcmeShTool`.
    verifier:
        TXT verifier; defaults to :class:`TxtVerifier`.
    clock:
        Current-time source for services (tests pin it).

    """

    def __init__(  # noqa: PLR0913
        self,
        db: Database,
        settings: CertflowSettings,
        *,
        tool: ExternalCertTool | None = None,
        verifier: TxtVerifier | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.db = db
        self.settings = settings

        # Repositories
        self.orders = OrderRepository(db)
        self.users_repo = UserRepository(db)
        self.action_logs = ActionLogRepository(db)

        # Collaborators
        self.tool: ExternalCertTool = tool or AcmeShTool(settings.acme)
        self.verifier = verifier or TxtVerifier(settings.dns)
        self.policy = RetryPolicy(
            max_retries=settings.order.max_retries,
            failed_ttl_minutes=settings.order.failed_ttl_minutes,
        )
        self.quota = QuotaLedger(self.users_repo)

        # Services
        self.order_service = OrderService(
            self.orders,
            self.users_repo,
            self.action_logs,
            self.tool,
            self.verifier,
            self.quota,
            self.policy,
            settings.order,
            clock=clock,
        )
        self.queries = OrderQueryService(self.orders, self.action_logs)
        self.users = UserDirectory(
            self.users_repo,
            self.action_logs,
            self.quota,
            settings.auth,
            settings.order,
        )
        self.dispatcher = ActionDispatcher(self.users, self.order_service, self.queries)

        # Background processing
        self.processor = OrderProcessor(
            self.order_service,
            self.orders,
            self.policy,
            batch_size=settings.worker.batch_size,
            clock=clock,
        )
        self.worker = OrderWorker(
            self.processor,
            poll_seconds=settings.worker.poll_seconds,
            db=db if settings.worker.leader_election else None,
        )


def get_container() -> Container:
    """Return the :class:`Container` from the current Flask app.

    Raises :class:`RuntimeError` if the app was created without a
    database.
    """
    container = current_app.extensions.get("container")
    if container is None:
        msg = "Dependency container not available -- was the database initialised before create_app()?"
        raise RuntimeError(msg)
    return container
