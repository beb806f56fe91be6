"""Action boundary between a chat front end and the order services.

A front end turns each button press or message into an
:class:`ActionRequest` and renders the returned :class:`ActionResult`.
No exception escapes :meth:`ActionDispatcher.dispatch`: domain errors
become a message plus the next legal actions, anything unexpected is
logged, recorded on the order and reported generically.

Free text is interpreted through the :class:`InputExpectation` the
previous result handed out (``await_domain`` / ``await_status_domain``).
Without one, text that looks like a domain is submitted to a typed
draft if there is one, otherwise treated as a status lookup.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from certflow.core.errors import (
    CertflowError,
    DuplicateOrder,
    ExternalToolFailure,
    IllegalTransition,
    OrderNotFound,
    PermissionDenied,
    QuotaExhausted,
    TerminalFailure,
    ValidationError,
)
from certflow.core.types import Action, InputAction, OrderStatus, UserRole
from certflow.logging import log_context
from certflow.models.session import InputExpectation
from certflow.services.query import legal_actions, order_card, status_text

if TYPE_CHECKING:
    from collections.abc import Callable

    from certflow.models.order import Order
    from certflow.models.user import User
    from certflow.services.order import OrderService
    from certflow.services.query import OrderQueryService
    from certflow.services.users import UserDirectory

log = logging.getLogger(__name__)

_MENU = [Action.NEW_ORDER, Action.LIST_ORDERS, Action.HELP]

_HELP = "\n".join(
    [
        "Certificate bot help",
        "",
        "new_order: start an order and choose root or wildcard",
        "quick_order example.com: order a root certificate in one step",
        "verify example.com: check the TXT record and issue",
        "status example.com: show an order",
        "list_orders: your orders",
        "",
        "created: choose a type, then send the root domain (not www. or *.)",
        "dns_wait: publish the TXT record, then verify",
        "dns_verified: issuance runs in the background, refresh the status",
        "issued: download the files or export them again",
    ],
)

_ADMIN_HELP = "\n".join(
    [
        "",
        "Admin commands",
        "grant_quota add <user id> <amount>: add to a user's quota",
        "diagnostics: latest error and recent actions (owner only)",
    ],
)

_GENERIC_ERROR = "Something went wrong. Try again later or contact an administrator."

_ERROR_PREFIX: dict[type[CertflowError], str] = {
    ValidationError: "Invalid input",
    QuotaExhausted: "No quota left",
    DuplicateOrder: "Duplicate order",
    IllegalTransition: "Not possible right now",
    ExternalToolFailure: "The certificate tool failed",
    TerminalFailure: "The order has failed",
    OrderNotFound: "Not found",
    PermissionDenied: "Not allowed",
}


@dataclass(frozen=True)
class ActionRequest:
    """One user interaction.

    ``text`` carries the free-form argument (a domain, a certificate
    type, ``add <id> <n>``); ``params`` carries structured arguments
    (``cert_type``, ``kind``, ``target``, ``amount``) for callers that
    have them.
    """

    external_id: str
    action: Action
    username: str | None = None
    order_id: int | None = None
    text: str | None = None
    params: dict[str, Any] = field(default_factory=dict)
    expect: InputExpectation | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ActionRequest:
        """Build a request from a decoded JSON body.

        Raises :class:`ValidationError` for missing or malformed fields.
        """
        external_id = data.get("user")
        if external_id in (None, ""):
            msg = "Field 'user' is required"
            raise ValidationError(msg)
        try:
            action = Action(data.get("action", ""))
        except ValueError as exc:
            msg = f"Unknown action {data.get('action')!r}"
            raise ValidationError(msg) from exc
        try:
            order_id = int(data["order_id"]) if data.get("order_id") is not None else None
            expect = InputExpectation.from_dict(data.get("expect"))
        except (KeyError, TypeError, ValueError) as exc:
            msg = f"Malformed request: {exc}"
            raise ValidationError(msg) from exc
        params = data.get("params") or {}
        if not isinstance(params, dict):
            msg = "Field 'params' must be an object"
            raise ValidationError(msg)
        return cls(
            external_id=str(external_id),
            action=action,
            username=data.get("username"),
            order_id=order_id,
            text=data.get("text"),
            params=params,
            expect=expect,
        )


@dataclass(frozen=True)
class ActionResult:
    success: bool
    message: str
    order: dict[str, Any] | None = None
    actions: list[str] = field(default_factory=list)
    expect: InputExpectation | None = None
    error: str | None = None
    data: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "order": self.order,
            "actions": list(self.actions),
            "expect": self.expect.to_dict() if self.expect else None,
            "error": self.error,
            "data": self.data,
        }


def _ok(
    message: str,
    order: Order | None = None,
    *,
    actions: list[Action] | None = None,
    expect: InputExpectation | None = None,
    data: dict[str, Any] | None = None,
) -> ActionResult:
    if actions is None:
        actions = legal_actions(order) if order is not None else _MENU
    return ActionResult(
        success=True,
        message=message,
        order=order_card(order) if order is not None else None,
        actions=[a.value for a in actions],
        expect=expect,
        data=data,
    )


class ActionDispatcher:
    """Route :class:`ActionRequest` objects to the order services.

    Parameters
    ----------
    users:
        Resolves the acting user and grants quota.
    orders:
        State-changing order operations.
    queries:
        Read-only projections.

    """

    def __init__(
        self,
        users: UserDirectory,
        orders: OrderService,
        queries: OrderQueryService,
    ) -> None:
        self._users = users
        self._orders = orders
        self._queries = queries
        self._handlers: dict[Action, Callable[[User, ActionRequest], ActionResult]] = {
            Action.START: self._start,
            Action.HELP: self._help,
            Action.NEW_ORDER: self._new_order,
            Action.SET_TYPE: self._set_type,
            Action.REQUEST_DOMAIN: self._request_domain,
            Action.SUBMIT_DOMAIN: self._submit_domain,
            Action.QUICK_ORDER: self._quick_order,
            Action.RETRY_DNS: self._retry_dns,
            Action.VERIFY: self._verify,
            Action.VERIFY_DOMAIN: self._verify_domain,
            Action.STATUS: self._status,
            Action.ASK_STATUS_DOMAIN: self._ask_status_domain,
            Action.STATUS_DOMAIN: self._status_domain,
            Action.LIST_ORDERS: self._list_orders,
            Action.CANCEL: self._cancel,
            Action.REINSTALL: self._reinstall,
            Action.DOWNLOAD: self._download,
            Action.FILE: self._file,
            Action.INFO: self._info,
            Action.DIAGNOSTICS: self._diagnostics,
            Action.GRANT_QUOTA: self._grant_quota,
            Action.TEXT: self._free_text,
        }

    def dispatch(self, request: ActionRequest) -> ActionResult:
        user: User | None = None
        try:
            if request.action == Action.START:
                user = self._users.register(request.external_id, request.username)
            else:
                user = self._users.resolve(request.external_id, request.username)
            with log_context(order_id=request.order_id, user_id=user.id):
                return self._handlers[request.action](user, request)
        except CertflowError as exc:
            log.info(
                "Action %s by %s rejected: %s (%s)",
                request.action.value,
                request.external_id,
                exc.detail,
                exc.code,
            )
            return self._error_result(exc, request)
        except Exception:
            log.exception("Action %s by %s failed", request.action.value, request.external_id)
            self._record_unexpected(user, request)
            return ActionResult(
                success=False,
                message=_GENERIC_ERROR,
                actions=[a.value for a in _MENU],
                error="internal",
            )

    # ------------------------------------------------------------------
    # Errors
    # ------------------------------------------------------------------

    @staticmethod
    def _error_result(exc: CertflowError, request: ActionRequest) -> ActionResult:
        prefix = next((p for cls, p in _ERROR_PREFIX.items() if isinstance(exc, cls)), "Error")
        if exc.order is not None:
            actions = legal_actions(exc.order)
        elif isinstance(exc, QuotaExhausted):
            actions = [Action.LIST_ORDERS, Action.HELP]
        else:
            actions = _MENU

        # A rejected domain keeps the prompt open so the user can try again.
        expect = None
        if isinstance(exc, ValidationError) and exc.order is None and request.expect is not None:
            expect = request.expect

        return ActionResult(
            success=False,
            message=f"{prefix}: {exc.detail}",
            order=order_card(exc.order) if exc.order is not None else None,
            actions=[a.value for a in actions],
            expect=expect,
            error=exc.code,
        )

    def _record_unexpected(self, user: User | None, request: ActionRequest) -> None:
        """Write a generic error onto the order the request was about."""
        if user is None:
            return
        order_id = request.order_id
        if order_id is None and request.expect is not None:
            order_id = request.expect.order_id
        try:
            if order_id is None:
                latest = self._queries.list_orders(user, 1)
                if not latest:
                    return
                order_id = latest[0].id
            else:
                order_id = self._queries.status(user, order_id).id
            self._orders.record_error(order_id, "Internal error while handling your request")
        except OrderNotFound:
            return
        except Exception:
            log.exception("Could not record error on order %s", order_id)

    # ------------------------------------------------------------------
    # Argument helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _order_id(request: ActionRequest) -> int:
        if request.order_id is None:
            msg = "An order id is required for this action"
            raise ValidationError(msg)
        return request.order_id

    @staticmethod
    def _argument(request: ActionRequest, what: str) -> str:
        text = (request.text or "").strip()
        if not text:
            msg = f"Please send {what}, for example example.com"
            raise ValidationError(msg)
        return text

    # ------------------------------------------------------------------
    # Menu
    # ------------------------------------------------------------------

    def _start(self, user: User, request: ActionRequest) -> ActionResult:
        message = f"Welcome to the certificate bot.\nRole: {user.role.value}\nQuota left: {user.quota}"
        return _ok(message, data={"role": user.role.value, "quota": user.quota})

    def _help(self, user: User, request: ActionRequest) -> ActionResult:
        message = _HELP + (_ADMIN_HELP if user.privileged else "")
        return _ok(message)

    # ------------------------------------------------------------------
    # Ordering
    # ------------------------------------------------------------------

    def _new_order(self, user: User, request: ActionRequest) -> ActionResult:
        order = self._orders.start_order(user)
        message = (
            "Choose a certificate type.\n"
            "root: protects example.com only.\n"
            "wildcard: protects *.example.com and example.com.\n"
            "Always send the root domain, never www.example.com or *.example.com."
        )
        return _ok(message, order)

    def _set_type(self, user: User, request: ActionRequest) -> ActionResult:
        cert_type = request.params.get("cert_type") or (request.text or "").strip()
        order, expect = self._orders.set_cert_type(user, self._order_id(request), cert_type)
        message = f"Type set to {order.cert_type.value}. Send the root domain, for example example.com."
        return _ok(message, order, expect=expect)

    def _request_domain(self, user: User, request: ActionRequest) -> ActionResult:
        expect = self._orders.request_domain_input(user, self._order_id(request))
        order = self._queries.status(user, expect.order_id)
        return _ok("Send the root domain, for example example.com.", order, expect=expect)

    def _submit_domain(self, user: User, request: ActionRequest) -> ActionResult:
        order_id = request.order_id
        if order_id is None and request.expect is not None:
            order_id = request.expect.order_id
        if order_id is None:
            draft = self._queries.pending_domain_order(user)
            if draft is None:
                msg = "There is no order waiting for a domain; start a new order first"
                raise IllegalTransition(msg)
            order_id = draft.id
        order = self._orders.submit_domain(user, order_id, self._argument(request, "the root domain"))
        return self._progress(order)

    def _quick_order(self, user: User, request: ActionRequest) -> ActionResult:
        order = self._orders.quick_order(user, self._argument(request, "the root domain"))
        return self._progress(order)

    def _retry_dns(self, user: User, request: ActionRequest) -> ActionResult:
        order = self._orders.retry_dns(user, self._order_id(request))
        return self._progress(order)

    def _progress(self, order: Order) -> ActionResult:
        if order.challenge is not None:
            lead = "The DNS record is ready."
        else:
            lead = "The order was submitted; the DNS record will be generated shortly."
        return _ok(f"{lead}\n\n{status_text(order)}", order)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def _verify(self, user: User, request: ActionRequest) -> ActionResult:
        return self._verified(self._orders.verify(user, self._order_id(request)))

    def _verify_domain(self, user: User, request: ActionRequest) -> ActionResult:
        found = self._queries.status_by_domain(user, self._argument(request, "the domain to verify"))
        return self._verified(self._orders.verify(user, found.id))

    def _verified(self, order: Order) -> ActionResult:
        if order.status == OrderStatus.ISSUED:
            lead = "The certificate has been issued."
        elif order.status == OrderStatus.DNS_VERIFIED:
            lead = "The TXT record is verified; issuance continues in the background."
        elif order.last_error:
            lead = "Verification did not finish."
        else:
            lead = "The TXT record is not visible yet. Wait for DNS propagation and verify again."
        return _ok(f"{lead}\n\n{status_text(order)}", order)

    # ------------------------------------------------------------------
    # Status and listings
    # ------------------------------------------------------------------

    def _status(self, user: User, request: ActionRequest) -> ActionResult:
        order = self._queries.status(user, self._order_id(request))
        return _ok(status_text(order, with_tips=True), order)

    def _ask_status_domain(self, user: User, request: ActionRequest) -> ActionResult:
        expect = InputExpectation(InputAction.AWAIT_STATUS_DOMAIN)
        return _ok("Send the domain to look up, for example example.com.", actions=[], expect=expect)

    def _status_domain(self, user: User, request: ActionRequest) -> ActionResult:
        order = self._queries.status_by_domain(user, self._argument(request, "the domain to look up"))
        return _ok(status_text(order), order)

    def _list_orders(self, user: User, request: ActionRequest) -> ActionResult:
        orders = self._queries.list_orders(user)
        return _ok(
            self._queries.list_text(orders),
            actions=[Action.NEW_ORDER, Action.HELP],
            data={"orders": [order_card(o) for o in orders]},
        )

    def _cancel(self, user: User, request: ActionRequest) -> ActionResult:
        deleted = self._orders.cancel(user, self._order_id(request))
        message = f"Order #{deleted.id} was cancelled."
        if deleted.domain and not user.privileged:
            message += " Your quota was returned."
        return _ok(message, actions=_MENU, data={"order_id": deleted.id})

    # ------------------------------------------------------------------
    # Issued certificates
    # ------------------------------------------------------------------

    def _reinstall(self, user: User, request: ActionRequest) -> ActionResult:
        order = self._orders.request_reinstall(user, self._order_id(request))
        return _ok("The certificate files will be exported again shortly.", order)

    def _download(self, user: User, request: ActionRequest) -> ActionResult:
        order_id = self._order_id(request)
        paths = self._queries.download_paths(user, order_id)
        lines = ["Certificate files:"] + [f"{kind}: {path or '-'}" for kind, path in paths.items()]
        return _ok("\n".join(lines), self._queries.status(user, order_id), data={"paths": paths})

    def _file(self, user: User, request: ActionRequest) -> ActionResult:
        kind = request.params.get("kind") or (request.text or "").strip()
        order_id = self._order_id(request)
        path = self._queries.file_path(user, order_id, kind)
        return _ok(
            f"{kind}: {path}",
            self._queries.status(user, order_id),
            data={"kind": kind, "path": path},
        )

    def _info(self, user: User, request: ActionRequest) -> ActionResult:
        order_id = self._order_id(request)
        info = self._queries.certificate_info(user, order_id)
        expires = info.expires_at.strftime("%Y-%m-%d %H:%M:%S UTC") if info.expires_at else "unknown"
        message = f"Domain: {info.domain}\nExpires: {expires}\nFile: {info.path or '-'}"
        return _ok(message, self._queries.status(user, order_id), data=info.to_dict())

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def _diagnostics(self, user: User, request: ActionRequest) -> ActionResult:
        diag = self._queries.diagnostics(user)
        return _ok(self._queries.diagnostics_text(diag), data=diag.to_dict())

    def _grant_quota(self, user: User, request: ActionRequest) -> ActionResult:
        self._users.require_role(user, UserRole.OWNER, UserRole.ADMIN)
        target = request.params.get("target")
        amount = request.params.get("amount")
        if target is None or amount is None:
            parts = (request.text or "").split()
            if len(parts) != 3 or parts[0] != "add":  # noqa: PLR2004
                msg = "Usage: add <user id> <amount>"
                raise ValidationError(msg)
            target, amount = parts[1], parts[2]
        try:
            amount = int(amount)
        except (TypeError, ValueError) as exc:
            msg = "The amount must be a positive integer"
            raise ValidationError(msg) from exc

        updated = self._users.grant_quota(user, target, amount)
        message = f"Added {amount} to user {updated.external_id}; quota left: {updated.quota}."
        return _ok(message, data={"external_id": updated.external_id, "quota": updated.quota})

    # ------------------------------------------------------------------
    # Free text
    # ------------------------------------------------------------------

    def _free_text(self, user: User, request: ActionRequest) -> ActionResult:
        text = (request.text or "").strip()
        expect = request.expect
        if expect is not None:
            if text.startswith("/"):
                msg = "Please send a domain, for example example.com"
                raise ValidationError(msg)
            if expect.action == InputAction.AWAIT_DOMAIN:
                return self._submit_domain(user, request)
            return self._status_domain(user, request)

        if not text or text.startswith("/") or "." not in text:
            return _ok("Unknown command. Pick an action from the menu or ask for help.")
        if self._queries.pending_domain_order(user) is not None:
            return self._submit_domain(user, request)
        return self._status_domain(user, request)
