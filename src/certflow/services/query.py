"""Read-only order projections for the front end.

Nothing here mutates state.  Every method that takes an order id checks
ownership through :meth:`OrderService.get_order` semantics (a foreign
order is reported as missing).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from cryptography import x509
from cryptography.x509.oid import ExtensionOID, NameOID

from certflow.core.domain import normalize_domain
from certflow.core.errors import IllegalTransition, OrderNotFound, ValidationError
from certflow.core.types import Action, CertType, OrderStatus, UserRole, WorkFlag
from certflow.services.users import UserDirectory

if TYPE_CHECKING:
    from certflow.models.action_log import ActionLog
    from certflow.models.order import Order
    from certflow.models.user import User
    from certflow.repositories.action_log import ActionLogRepository
    from certflow.repositories.order import OrderRepository

log = logging.getLogger(__name__)

FILE_KINDS = ("fullchain", "cert", "key", "ca")

_CERT_TYPE_LABELS = {
    CertType.ROOT: "root certificate",
    CertType.WILDCARD: "wildcard certificate",
}

_NO_DOMAIN = "(no domain submitted)"


@dataclass(frozen=True)
class CertificateInfo:
    """Facts read from an issued certificate on disk."""

    domain: str
    path: str
    expires_at: datetime | None = None
    subject: str | None = None
    sans: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "domain": self.domain,
            "path": self.path,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "subject": self.subject,
            "sans": list(self.sans),
        }


@dataclass(frozen=True)
class Diagnostics:
    user_id: int
    latest_order_id: int | None
    last_error: str | None
    recent_logs: tuple[ActionLog, ...]
    order_counts: dict[str, int]

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "latest_order_id": self.latest_order_id,
            "last_error": self.last_error,
            "recent_logs": [
                {
                    "created_at": entry.created_at.isoformat(),
                    "action": entry.action,
                    "detail": entry.detail,
                    "order_id": entry.order_id,
                }
                for entry in self.recent_logs
            ],
            "order_counts": dict(self.order_counts),
        }


def legal_actions(order: Order) -> list[Action]:
    """Next actions a user may take on *order* in its current state."""
    status = order.status
    if status == OrderStatus.CREATED:
        if order.cert_type is None:
            return [Action.SET_TYPE, Action.CANCEL]
        if order.has_flag(WorkFlag.GENERATE_DNS):
            return [Action.STATUS, Action.CANCEL]
        if not order.domain:
            return [Action.REQUEST_DOMAIN, Action.SET_TYPE, Action.CANCEL]
        return [Action.RETRY_DNS, Action.NEW_ORDER, Action.CANCEL]
    if status == OrderStatus.DNS_WAIT:
        return [Action.VERIFY, Action.RETRY_DNS, Action.CANCEL]
    if status == OrderStatus.DNS_VERIFIED:
        return [Action.STATUS, Action.CANCEL]
    if status == OrderStatus.ISSUED:
        return [Action.FILE, Action.INFO, Action.DOWNLOAD, Action.REINSTALL]
    return [Action.NEW_ORDER, Action.CANCEL]


def format_cert_type(cert_type: CertType | None) -> str:
    if cert_type is None:
        return "not chosen"
    return _CERT_TYPE_LABELS[cert_type]


def status_text(order: Order, *, with_tips: bool = False) -> str:
    """Render the status message shown for one order.

    A ``dns_wait`` order includes the TXT record table; a draft without
    a domain optionally includes a hint on what to send next.
    """
    domain = order.domain or _NO_DOMAIN
    lines = [f"Status: {order.status.value}", f"Domain: {domain}"]
    if order.cert_type is not None:
        lines.append(f"Type: {format_cert_type(order.cert_type)}")

    if order.status == OrderStatus.DNS_WAIT:
        lines += ["", "Add the TXT record below, then ask for verification."]
        challenge = order.challenge
        if challenge is not None:
            lines.append("domain | host | type | value")
            lines += [f"{order.domain} | {challenge.host} | TXT | {value}" for value in challenge.values]
    elif order.status == OrderStatus.CREATED and not order.domain and with_tips:
        lines += ["", "Send the root domain next, for example example.com."]

    if order.last_error and order.status != OrderStatus.ISSUED:
        lines += ["", f"Last error: {order.last_error}"]
    return "\n".join(lines)


def order_card(order: Order) -> dict[str, Any]:
    """JSON snapshot of *order* with its legal next actions."""
    challenge = order.challenge
    return {
        "id": order.id,
        "domain": order.domain,
        "cert_type": order.cert_type.value if order.cert_type else None,
        "status": order.status.value,
        "flags": sorted(f.value for f in order.flags),
        "retry_count": order.retry_count,
        "last_error": order.last_error,
        "txt": (
            {"host": challenge.host, "values": list(challenge.values)} if challenge is not None else None
        ),
        "paths": (
            {"cert": order.cert_path, "key": order.key_path, "fullchain": order.fullchain_path}
            if order.status == OrderStatus.ISSUED
            else None
        ),
        "actions": [a.value for a in legal_actions(order)],
        "created_at": order.created_at.isoformat(),
        "updated_at": order.updated_at.isoformat(),
    }


def read_certificate(path: str) -> x509.Certificate | None:
    """Load a PEM certificate, or ``None`` when missing or unreadable."""
    try:
        data = Path(path).read_bytes()
    except OSError:
        return None
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        log.warning("Certificate at %s is not valid PEM", path)
        return None


class OrderQueryService:
    """Status, listings, file locations and diagnostics.

    Parameters
    ----------
    order_repo:
        Order persistence.
    log_repo:
        Action log persistence (diagnostics).

    """

    def __init__(self, order_repo: OrderRepository, log_repo: ActionLogRepository) -> None:
        self._orders = order_repo
        self._logs = log_repo

    def _owned(self, user: User, order_id: int) -> Order:
        order = self._orders.find_by_id(order_id)
        if order is None or order.user_id != user.id:
            msg = f"Order {order_id} does not exist"
            raise OrderNotFound(msg)
        return order

    def _issued(self, user: User, order_id: int) -> Order:
        order = self._owned(user, order_id)
        if order.status != OrderStatus.ISSUED:
            msg = f"The certificate has not been issued yet (order is {order.status.value})"
            raise IllegalTransition(msg, order=order)
        return order

    # -- status ----------------------------------------------------------

    def status(self, user: User, order_id: int) -> Order:
        return self._owned(user, order_id)

    def status_by_domain(self, user: User, raw_domain: str) -> Order:
        """Most recent order of *user* for *raw_domain*."""
        domain = normalize_domain(raw_domain)
        order = self._orders.find_latest_by_domain(user.id, domain)
        if order is None:
            msg = f"No order found for {domain}"
            raise OrderNotFound(msg)
        return order

    def list_orders(self, user: User, limit: int = 50) -> list[Order]:
        return self._orders.find_by_user(user.id, limit)

    @staticmethod
    def list_text(orders: list[Order]) -> str:
        if not orders:
            return "You have no certificate orders yet."
        lines = ["Your certificate orders:"]
        lines += [f"- #{o.id} {o.domain or _NO_DOMAIN} | {o.status.value}" for o in orders]
        return "\n".join(lines)

    # -- issued certificates ---------------------------------------------

    def download_paths(self, user: User, order_id: int) -> dict[str, str | None]:
        return self._paths(self._issued(user, order_id))

    @staticmethod
    def _paths(order: Order) -> dict[str, str | None]:
        return {
            "cert": order.cert_path,
            "key": order.key_path,
            "fullchain": order.fullchain_path,
            "ca": str(Path(order.cert_path).with_name("ca.pem")) if order.cert_path else None,
        }

    def file_path(self, user: User, order_id: int, kind: str) -> str:
        """Path of one exported file (``fullchain``, ``cert``, ``key``, ``ca``)."""
        if kind not in FILE_KINDS:
            msg = f"Unknown file kind {kind!r}; expected one of {', '.join(FILE_KINDS)}"
            raise ValidationError(msg)
        order = self._issued(user, order_id)
        path = self._paths(order).get(kind)
        if not path or not Path(path).is_file():
            msg = f"The {kind} file is not available; export the certificate again"
            raise IllegalTransition(msg, order=order)
        return path

    def certificate_info(self, user: User, order_id: int) -> CertificateInfo:
        order = self._issued(user, order_id)
        path = order.cert_path or ""
        cert = read_certificate(path) if path else None
        if cert is None:
            return CertificateInfo(domain=order.domain, path=path)

        subject_cn = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        try:
            san_ext = cert.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME)
            sans = tuple(san_ext.value.get_values_for_type(x509.DNSName))
        except x509.ExtensionNotFound:
            sans = ()
        return CertificateInfo(
            domain=order.domain,
            path=path,
            expires_at=cert.not_valid_after_utc,
            subject=str(subject_cn[0].value) if subject_cn else None,
            sans=sans,
        )

    # -- diagnostics -----------------------------------------------------

    def diagnostics(self, user: User) -> Diagnostics:
        """Latest error, recent action log and order counts (owners only)."""
        UserDirectory.require_role(user, UserRole.OWNER)
        latest = self._orders.find_by_user(user.id, 1)
        latest_order = latest[0] if latest else None
        return Diagnostics(
            user_id=user.id,
            latest_order_id=latest_order.id if latest_order else None,
            last_error=latest_order.last_error if latest_order else None,
            recent_logs=tuple(self._logs.find_recent_by_user(user.id, 5)),
            order_counts=self._orders.count_by_status(),
        )

    @staticmethod
    def diagnostics_text(diag: Diagnostics) -> str:
        lines = [
            "Diagnostics",
            f"Latest order: {diag.latest_order_id or '-'}",
            f"Last error: {diag.last_error or '-'}",
            "Orders by status: "
            + (", ".join(f"{k}={v}" for k, v in sorted(diag.order_counts.items())) or "-"),
            "",
            "Recent actions:",
        ]
        if diag.recent_logs:
            lines += [
                f"{e.created_at:%Y-%m-%d %H:%M:%S} {e.action} {e.detail or ''}".rstrip()
                for e in diag.recent_logs
            ]
        else:
            lines.append("(none)")
        return "\n".join(lines)

    def pending_domain_order(self, user: User) -> Order | None:
        """Draft that has a type but still waits for its domain."""
        draft = self._orders.find_draft(user.id)
        if draft is None or draft.cert_type is None:
            return None
        return draft
