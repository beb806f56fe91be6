"""Enumerated types for the certflow persistence layer.

All enums inherit from :class:`enum.StrEnum` so their ``.value`` is a
plain string that psycopg serialises as TEXT and JSON round-trips
naturally.
"""

from __future__ import annotations

from enum import StrEnum

# ---------------------------------------------------------------------------
# Order
# ---------------------------------------------------------------------------


class OrderStatus(StrEnum):
    CREATED = "created"
    DNS_WAIT = "dns_wait"
    DNS_VERIFIED = "dns_verified"
    ISSUED = "issued"
    FAILED = "failed"


class CertType(StrEnum):
    ROOT = "root"
    WILDCARD = "wildcard"


class WorkFlag(StrEnum):
    """Pending background step attached to an order."""

    GENERATE_DNS = "generate_dns"
    ISSUE = "issue"
    REINSTALL = "reinstall"


# Persisted boolean column backing each work flag.
FLAG_COLUMNS: dict[WorkFlag, str] = {
    WorkFlag.GENERATE_DNS: "need_dns_generate",
    WorkFlag.ISSUE: "need_issue",
    WorkFlag.REINSTALL: "need_reinstall",
}

# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserRole(StrEnum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


PRIVILEGED_ROLES = frozenset({UserRole.OWNER, UserRole.ADMIN})

# ---------------------------------------------------------------------------
# Conversation input
# ---------------------------------------------------------------------------


class InputAction(StrEnum):
    AWAIT_DOMAIN = "await_domain"
    AWAIT_STATUS_DOMAIN = "await_status_domain"


# ---------------------------------------------------------------------------
# Action log
# ---------------------------------------------------------------------------


class LogAction(StrEnum):
    ORDER_START = "order_start"
    ORDER_TYPE = "order_type"
    ORDER_SUBMIT = "order_submit"
    ORDER_CREATE = "order_create"
    ORDER_VERIFIED = "order_verified"
    ORDER_ISSUED = "order_issued"
    ORDER_FAILED = "order_failed"
    ORDER_CANCEL = "order_cancel"
    ORDER_EXPIRED = "order_expired"
    ORDER_RECREATED = "order_recreated"
    ORDER_ERROR = "order_error"
    ACME_DRY_RUN = "acme_issue_dry_run"
    ACME_RENEW = "acme_renew"
    ACME_INSTALL = "acme_install_cert"
    ACME_REMOVE = "acme_remove"
    ACME_EXISTS = "acme_exists"
    QUOTA_GRANT = "quota_grant"


# ---------------------------------------------------------------------------
# Front-end actions
# ---------------------------------------------------------------------------


class Action(StrEnum):
    """Operations a chat front end can request through the action boundary."""

    START = "start"
    HELP = "help"
    NEW_ORDER = "new_order"
    SET_TYPE = "set_type"
    REQUEST_DOMAIN = "request_domain"
    SUBMIT_DOMAIN = "submit_domain"
    QUICK_ORDER = "quick_order"
    RETRY_DNS = "retry_dns"
    VERIFY = "verify"
    VERIFY_DOMAIN = "verify_domain"
    STATUS = "status"
    ASK_STATUS_DOMAIN = "ask_status_domain"
    STATUS_DOMAIN = "status_domain"
    LIST_ORDERS = "list_orders"
    CANCEL = "cancel"
    REINSTALL = "reinstall"
    DOWNLOAD = "download"
    FILE = "file"
    INFO = "info"
    DIAGNOSTICS = "diagnostics"
    GRANT_QUOTA = "grant_quota"
    TEXT = "text"
