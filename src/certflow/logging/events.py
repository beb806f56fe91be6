"""Audit events for order lifecycle milestones.

Every event goes to the ``certflow.audit`` logger with a stable
``event_id`` so the rotating audit file can be filtered per kind.
"""

from __future__ import annotations

import logging
from typing import Any

audit_log = logging.getLogger("certflow.audit")


def _emit(event_id: str, message: str, *args: Any, **extra: Any) -> None:  # noqa: ANN401
    data = {"event_id": f"certflow.audit.{event_id}"}
    data.update({k: v for k, v in extra.items() if v is not None})
    audit_log.info(message, *args, extra=data)


def order_submitted(order_id: int, user_id: int, domain: str, cert_type: str) -> None:
    _emit(
        "order_submitted",
        "Order %s submitted for %s (%s)",
        order_id,
        domain,
        cert_type,
        order_id=order_id,
        user_id=user_id,
        domain=domain,
    )


def certificate_issued(order_id: int, user_id: int, domain: str, fullchain_path: str | None) -> None:
    _emit(
        "certificate_issued",
        "Certificate issued for %s (order %s)",
        domain,
        order_id,
        order_id=order_id,
        user_id=user_id,
        domain=domain,
        fullchain_path=fullchain_path,
    )


def order_failed(order_id: int, user_id: int, domain: str, reason: str) -> None:
    _emit(
        "order_failed",
        "Order %s for %s failed: %s",
        order_id,
        domain,
        reason,
        order_id=order_id,
        user_id=user_id,
        domain=domain,
    )


def order_removed(order_id: int, user_id: int, domain: str, *, refunded: bool, reason: str) -> None:
    """Log an order deletion (user cancel or TTL expiry)."""
    _emit(
        "order_removed",
        "Order %s for %s removed (%s, refunded=%s)",
        order_id,
        domain or "-",
        reason,
        refunded,
        order_id=order_id,
        user_id=user_id,
        domain=domain or None,
        refunded=refunded,
    )


def quota_granted(user_id: int, amount: int, granted_by: int | None) -> None:
    _emit(
        "quota_granted",
        "Quota +%d for user %s",
        amount,
        user_id,
        user_id=user_id,
        amount=amount,
        granted_by=granted_by,
    )
