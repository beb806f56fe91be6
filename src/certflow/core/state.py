"""Certificate order state machine.

Defines the valid status transitions for orders and the status each
work flag requires.  All transitions are enforced via
:func:`assert_transition`.

Usage::

    from certflow.core.state import ORDER_TRANSITIONS, assert_transition
    from certflow.core.types import OrderStatus

    assert_transition(
        OrderStatus.DNS_WAIT, OrderStatus.DNS_VERIFIED,
        ORDER_TRANSITIONS,
    )
"""

from __future__ import annotations

import logging

from certflow.core.types import OrderStatus, WorkFlag

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# created → dns_wait/failed, dns_wait → dns_verified/created/failed,
# dns_verified → issued/dns_wait/failed.  Every non-terminal status is
# re-entrant (error bookkeeping); issued only loops back onto itself
# (reinstall) and failed only leaves by deletion.
# ---------------------------------------------------------------------------

ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.CREATED: frozenset(
        {OrderStatus.CREATED, OrderStatus.DNS_WAIT, OrderStatus.FAILED},
    ),
    OrderStatus.DNS_WAIT: frozenset(
        {
            OrderStatus.DNS_WAIT,
            OrderStatus.DNS_VERIFIED,
            OrderStatus.CREATED,
            OrderStatus.FAILED,
        },
    ),
    OrderStatus.DNS_VERIFIED: frozenset(
        {
            OrderStatus.DNS_VERIFIED,
            OrderStatus.ISSUED,
            OrderStatus.DNS_WAIT,
            OrderStatus.FAILED,
        },
    ),
    OrderStatus.ISSUED: frozenset({OrderStatus.ISSUED}),
    OrderStatus.FAILED: frozenset({OrderStatus.FAILED}),
}

# Statuses from which an order may be cancelled (and deleted).
CANCELLABLE: frozenset[OrderStatus] = frozenset(
    {
        OrderStatus.CREATED,
        OrderStatus.DNS_WAIT,
        OrderStatus.DNS_VERIFIED,
        OrderStatus.FAILED,
    },
)

# A work flag may only be set while its order holds this status.
FLAG_PREREQUISITES: dict[WorkFlag, OrderStatus] = {
    WorkFlag.GENERATE_DNS: OrderStatus.CREATED,
    WorkFlag.ISSUE: OrderStatus.DNS_VERIFIED,
    WorkFlag.REINSTALL: OrderStatus.ISSUED,
}


def assert_transition(
    current: OrderStatus,
    target: OrderStatus,
    table: dict = ORDER_TRANSITIONS,
) -> None:
    """Raise :class:`ValueError` if *current* → *target* is not allowed."""
    allowed = table.get(current)
    if allowed is None:
        msg = f"Unknown status {current!r}"
        raise ValueError(msg)
    if target not in allowed:
        msg = (
            f"Invalid transition {current.value!r} -> {target.value!r}; "
            f"allowed targets: {sorted(s.value for s in allowed) or '(terminal)'}"
        )
        raise ValueError(msg)


def assert_flags(status: OrderStatus, flags: frozenset[WorkFlag]) -> None:
    """Raise :class:`ValueError` if any flag's prerequisite is not *status*."""
    for flag in flags:
        required = FLAG_PREREQUISITES[flag]
        if required != status:
            msg = (
                f"Work flag {flag.value!r} requires status {required.value!r}, "
                f"order is {status.value!r}"
            )
            raise ValueError(msg)


def log_transition(
    order_id,
    from_status,
    to_status,
    *,
    reason: str | None = None,
) -> None:
    """Emit a structured log entry for an order state transition."""
    extra = {
        "event": "state_transition",
        "order_id": str(order_id),
        "from_status": from_status.value if hasattr(from_status, "value") else str(from_status),
        "to_status": to_status.value if hasattr(to_status, "value") else str(to_status),
    }
    if reason:
        extra["reason"] = reason
    log.info(
        "order %s: %s -> %s%s",
        order_id,
        extra["from_status"],
        extra["to_status"],
        f" ({reason})" if reason else "",
        extra=extra,
    )
