"""Error taxonomy for certflow.

Every error carries a stable machine-readable ``code`` and the HTTP
status the API layer maps it to.  The action boundary converts these
into user-facing messages; the HTTP layer renders them as problem JSON.

Usage::

    raise QuotaExhausted("No certificate quota left")
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from certflow.models.order import Order


class CertflowError(Exception):
    """Base class for all domain errors.

    Parameters
    ----------
    detail:
        Human-readable explanation of the problem.
    order:
        The order the error relates to, when there is one.

    """

    code = "internal"
    status = 500

    def __init__(self, detail: str, *, order: Order | None = None) -> None:
        self.detail = detail
        self.order = order
        super().__init__(detail)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "type": f"urn:certflow:error:{self.code}",
            "code": self.code,
            "detail": self.detail,
            "status": self.status,
        }
        if self.order is not None:
            body["order_id"] = self.order.id
        return body


class ValidationError(CertflowError):
    code = "validation"
    status = 400


class QuotaExhausted(CertflowError):
    code = "quota_exhausted"
    status = 403


class DuplicateOrder(CertflowError):
    """An open order already exists for the same (user, domain)."""

    code = "duplicate_order"
    status = 409


class IllegalTransition(CertflowError):
    code = "illegal_transition"
    status = 409


class ExternalToolFailure(CertflowError):
    """The CA tool failed in a way that may succeed on retry."""

    code = "external_tool_failure"
    status = 502


class TerminalFailure(CertflowError):
    """The order reached ``failed``; only cancellation remains."""

    code = "terminal_failure"
    status = 409


class OrderNotFound(CertflowError):
    code = "order_not_found"
    status = 404


class UserNotFound(CertflowError):
    code = "user_not_found"
    status = 404


class PermissionDenied(CertflowError):
    code = "permission_denied"
    status = 403
