"""Order service: the certificate order state machine.

Every transition goes through :meth:`OrderService._move`, which checks
the transition table and then issues one conditional update.  A
``None`` from the repository means another actor (the background
processor or a second click) got there first; the caller then returns
the reloaded order instead of failing, or raises
:class:`OrderNotFound` when the order was deleted meanwhile.

Step methods that run the CA tool (:meth:`generate_dns`,
:meth:`issue`, :meth:`reinstall`) persist every failure before raising
:class:`ExternalToolFailure` (will be retried) or
:class:`TerminalFailure` (order is now ``failed``).
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from certflow.ca.acme_sh import summarize
from certflow.ca.base import AlreadyExists, ChallengeIssued, Failure, PropagationPending, Success
from certflow.challenge.dns01 import DnsLookupError
from certflow.core.domain import normalize_domain
from certflow.core.errors import (
    DuplicateOrder,
    ExternalToolFailure,
    IllegalTransition,
    OrderNotFound,
    TerminalFailure,
    ValidationError,
)
from certflow.core.state import CANCELLABLE, assert_flags, assert_transition, log_transition
from certflow.core.types import CertType, InputAction, LogAction, OrderStatus, WorkFlag
from certflow.logging import events, log_context
from certflow.models.order import Order
from certflow.models.session import InputExpectation
from certflow.services.retry_policy import Outcome

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from certflow.ca.base import ExternalCertTool, ToolResult
    from certflow.challenge.dns01 import TxtVerifier
    from certflow.config.settings import OrderSettings
    from certflow.models.user import User
    from certflow.repositories.action_log import ActionLogRepository
    from certflow.repositories.order import OrderRepository
    from certflow.repositories.user import UserRepository
    from certflow.services.quota import QuotaLedger
    from certflow.services.retry_policy import RetryPolicy

log = logging.getLogger(__name__)

_NO_FLAGS: frozenset[WorkFlag] = frozenset()


def _output(result: ToolResult) -> str:
    return getattr(result, "output", "") or ""


class OrderService:
    """Drive certificate orders from draft to issued certificate.

    Parameters
    ----------
    order_repo, user_repo, log_repo:
        Persistence.
    tool:
        The CA client adapter.
    verifier:
        DNS TXT verifier.
    quota:
        Quota ledger.
    policy:
        Retry ceiling and failed-order TTL.
    settings:
        The ``order`` configuration section.
    clock:
        Returns the current UTC time (tests inject a fixed clock).

    """

    def __init__(  # noqa: PLR0913
        self,
        order_repo: OrderRepository,
        user_repo: UserRepository,
        log_repo: ActionLogRepository,
        tool: ExternalCertTool,
        verifier: TxtVerifier,
        quota: QuotaLedger,
        policy: RetryPolicy,
        settings: OrderSettings,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._orders = order_repo
        self._users = user_repo
        self._logs = log_repo
        self._tool = tool
        self._verifier = verifier
        self._quota = quota
        self._policy = policy
        self._settings = settings
        self._now = clock or (lambda: datetime.now(UTC))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def get_order(self, user: User, order_id: int) -> Order:
        """Load *order_id* if it belongs to *user*, else :class:`OrderNotFound`."""
        order = self._orders.find_by_id(order_id)
        if order is None or order.user_id != user.id:
            msg = f"Order {order_id} does not exist"
            raise OrderNotFound(msg)
        return order

    def _reload(self, order: Order) -> Order:
        """Re-read *order*; :class:`OrderNotFound` once it has been deleted."""
        current = self._orders.find_by_id(order.id)
        if current is None:
            msg = f"Order {order.id} no longer exists"
            raise OrderNotFound(msg)
        return current

    def _pending(self, order: Order, status: OrderStatus, flag: WorkFlag, what: str) -> Order:
        """Return the persisted row if it still awaits *flag* work in *status*.

        Callers may hold a snapshot listed long ago; the CA tool only
        ever runs against the row read here.
        """
        current = self._reload(order)
        if current.status != status or not current.has_flag(flag):
            msg = f"{what} is not pending for this order"
            raise IllegalTransition(msg, order=current)
        return current

    def _log(self, order: Order, action: LogAction, detail: str | None = None) -> None:
        self._logs.append(order.user_id, order.id, action.value, detail)

    def _move(  # noqa: PLR0913
        self,
        order: Order,
        to_status: OrderStatus,
        *,
        require_flag: WorkFlag | None = None,
        flags: Iterable[WorkFlag] | None = None,
        retry_count: int | None = None,
        reason: str | None = None,
        **fields,
    ) -> Order | None:
        """Validate and apply one conditional transition from ``order.status``."""
        try:
            assert_transition(order.status, to_status)
            if flags is not None:
                assert_flags(to_status, frozenset(flags))
        except ValueError as exc:
            raise IllegalTransition(str(exc), order=order) from exc

        updated = self._orders.transition(
            order.id,
            order.status,
            to_status,
            require_flag=require_flag,
            flags=flags,
            retry_count=retry_count,
            **fields,
        )
        if updated is None:
            log.info(
                "Order %s changed concurrently, %s -> %s skipped",
                order.id,
                order.status.value,
                to_status.value,
            )
            return None
        if updated.status != order.status:
            log_transition(order.id, order.status, updated.status, reason=reason)
        return updated

    def _record_failure(
        self,
        order: Order,
        flag: WorkFlag,
        message: str,
        output: str,
    ) -> Order:
        """Persist a CA-tool failure and raise the matching error.

        Below the ceiling the work flag stays set so the processor
        tries again.  At the ceiling the order becomes ``failed`` with
        its flags cleared.
        """
        decision = self._policy.evaluate(order.retry_count, Outcome.FAILURE)

        if decision.fail:
            updated = self._move(
                order,
                OrderStatus.FAILED,
                require_flag=flag,
                flags=_NO_FLAGS,
                retry_count=decision.retry_count,
                reason="retry ceiling reached",
                last_error=message,
                acme_output=output or order.acme_output,
            )
        else:
            updated = self._move(
                order,
                order.status,
                require_flag=flag,
                retry_count=decision.retry_count,
                last_error=message,
                acme_output=output or order.acme_output,
            )
        if updated is None:
            return self._reload(order)

        if decision.fail:
            self._log(updated, LogAction.ORDER_FAILED, message)
            events.order_failed(updated.id, updated.user_id, updated.domain, message)
            msg = (
                f"{message}. The order failed after {decision.retry_count} attempts; "
                "cancel it and start a new one."
            )
            raise TerminalFailure(msg, order=updated)

        self._log(updated, LogAction.ORDER_ERROR, message)
        left = self._policy.remaining(decision.retry_count)
        msg = f"{message}. It will be retried automatically ({left} attempt(s) left)."
        raise ExternalToolFailure(msg, order=updated)

    # ------------------------------------------------------------------
    # Draft creation
    # ------------------------------------------------------------------

    def start_order(self, user: User) -> Order:
        """Return the user's domain-less draft, creating one if needed."""
        self._quota.ensure(user)
        draft = self._orders.find_draft(user.id)
        if draft is not None:
            return draft
        order = self._orders.add(Order(id=None, user_id=user.id))
        self._log(order, LogAction.ORDER_START)
        log.info("Draft order %s created for user %s", order.id, user.id)
        return order

    def set_cert_type(
        self,
        user: User,
        order_id: int,
        cert_type: str,
    ) -> tuple[Order, InputExpectation]:
        """Choose root or wildcard; the next free text is the domain."""
        try:
            chosen = CertType(cert_type)
        except ValueError as exc:
            msg = f"Unknown certificate type '{cert_type}' (use root or wildcard)"
            raise ValidationError(msg) from exc

        order = self.get_order(user, order_id)
        if order.status != OrderStatus.CREATED:
            msg = f"The certificate type can no longer be changed (order is {order.status.value})"
            raise IllegalTransition(msg, order=order)
        if order.domain:
            msg = f"Order {order.id} already has domain {order.domain}; cancel it to change the type"
            raise IllegalTransition(msg, order=order)

        updated = self._move(order, OrderStatus.CREATED, cert_type=chosen) or self._reload(order)
        self._log(updated, LogAction.ORDER_TYPE, chosen.value)
        return updated, InputExpectation(InputAction.AWAIT_DOMAIN, updated.id)

    def request_domain_input(self, user: User, order_id: int) -> InputExpectation:
        """Ask for the domain of a typed draft."""
        order = self.get_order(user, order_id)
        if order.status != OrderStatus.CREATED or order.domain:
            msg = "This order does not need a domain"
            raise IllegalTransition(msg, order=order)
        if order.cert_type is None:
            msg = "Choose a certificate type first"
            raise ValidationError(msg, order=order)
        return InputExpectation(InputAction.AWAIT_DOMAIN, order.id)

    def submit_domain(self, user: User, order_id: int, raw_domain: str) -> Order:
        """Attach a domain to a draft, charge quota and generate the challenge.

        Quota is taken only after every check passes and is returned if
        the conditional update loses a race.
        """
        domain = normalize_domain(raw_domain)
        order = self.get_order(user, order_id)
        if order.status != OrderStatus.CREATED:
            msg = f"A domain can only be submitted to a new order (order is {order.status.value})"
            raise IllegalTransition(msg, order=order)
        if order.domain:
            msg = f"Order {order.id} already has domain {order.domain}"
            raise IllegalTransition(msg, order=order)

        duplicate = self._orders.find_open_by_domain(user.id, domain, exclude_id=order.id)
        if duplicate is not None:
            msg = f"You already have an open order for {domain}"
            raise DuplicateOrder(msg, order=duplicate)

        cert_type = order.cert_type or CertType.ROOT
        charged = self._quota.consume(user)
        updated = self._orders.assign_domain(order.id, domain, cert_type)
        if updated is None:
            self._quota.refund(charged)
            duplicate = self._orders.find_open_by_domain(user.id, domain, exclude_id=order.id)
            if duplicate is not None:
                msg = f"You already have an open order for {domain}"
                raise DuplicateOrder(msg, order=duplicate)
            msg = "The order changed while the domain was being submitted"
            raise IllegalTransition(msg, order=self._reload(order))

        self._log(updated, LogAction.ORDER_SUBMIT, domain)
        events.order_submitted(updated.id, user.id, domain, cert_type.value)
        return self.generate_dns(updated)

    def quick_order(self, user: User, raw_domain: str) -> Order:
        """Create and submit a root-certificate order in one step."""
        domain = normalize_domain(raw_domain)
        duplicate = self._orders.find_open_by_domain(user.id, domain)
        if duplicate is not None:
            msg = f"You already have an open order for {domain}"
            raise DuplicateOrder(msg, order=duplicate)

        draft = self.start_order(user)
        if draft.cert_type != CertType.ROOT:
            draft = self._move(draft, OrderStatus.CREATED, cert_type=CertType.ROOT) or self._reload(draft)
        return self.submit_domain(user, draft.id, domain)

    # ------------------------------------------------------------------
    # DNS challenge
    # ------------------------------------------------------------------

    def generate_dns(self, order: Order, *, allow_recreate: bool = True) -> Order:
        """Ask the CA tool for a TXT challenge (``created`` + ``generate_dns``)."""
        order = self._pending(order, OrderStatus.CREATED, WorkFlag.GENERATE_DNS, "DNS generation")

        with log_context(order_id=order.id, user_id=order.user_id):
            result = self._tool.generate_challenge(order.domains)
            output = _output(result)
            self._log(order, LogAction.ACME_DRY_RUN, summarize(output))

            if isinstance(result, ChallengeIssued):
                updated = self._move(
                    order,
                    OrderStatus.DNS_WAIT,
                    require_flag=WorkFlag.GENERATE_DNS,
                    flags=_NO_FLAGS,
                    retry_count=0,
                    reason="challenge generated",
                    last_error=None,
                    acme_output=output,
                    txt_host=result.challenge.host,
                    txt_values=result.challenge.values,
                )
                if updated is None:
                    return self._reload(order)
                self._log(updated, LogAction.ORDER_CREATE, updated.domain)
                return updated

            if isinstance(result, AlreadyExists):
                return self._handle_existing(order, output, allow_recreate=allow_recreate)

            message = result.message if isinstance(result, Failure) else "acme.sh gave an unexpected answer"
            return self._record_failure(
                order,
                WorkFlag.GENERATE_DNS,
                f"DNS challenge generation failed: {message}",
                output,
            )

    def _handle_existing(self, order: Order, output: str, *, allow_recreate: bool) -> Order:
        """Recover from "certificate already exists" on the CA side.

        Recreates the order once per cooldown window; a repeat within
        the window fails the order.
        """
        since = self._now() - timedelta(seconds=self._settings.exists_cooldown_seconds)
        recent = self._logs.exists_since(order.user_id, LogAction.ACME_EXISTS.value, order.domain, since)

        if recent or not allow_recreate:
            message = (
                f"A certificate for {order.domain} already exists at the CA and was "
                "recreated moments ago"
            )
            updated = self._move(
                order,
                OrderStatus.FAILED,
                require_flag=WorkFlag.GENERATE_DNS,
                flags=_NO_FLAGS,
                reason="certificate already exists",
                last_error=message,
                acme_output=output,
            )
            if updated is None:
                return self._reload(order)
            self._log(updated, LogAction.ORDER_FAILED, message)
            events.order_failed(updated.id, updated.user_id, updated.domain, message)
            msg = f"{message}. Cancel this order and try again in a few minutes."
            raise TerminalFailure(msg, order=updated)

        removed = self._tool.remove(order.domain)
        self._log(order, LogAction.ACME_REMOVE, summarize(_output(removed)))
        if not isinstance(removed, Success):
            reason = removed.message if isinstance(removed, Failure) else "unexpected answer"
            return self._record_failure(
                order,
                WorkFlag.GENERATE_DNS,
                f"Could not remove the existing certificate for {order.domain}: {reason}",
                _output(removed),
            )

        # The cooldown marker is written only after a successful remove.
        self._log(order, LogAction.ACME_EXISTS, order.domain)
        fresh = Order(
            id=None,
            user_id=order.user_id,
            domain=order.domain,
            cert_type=order.cert_type,
            flags=frozenset({WorkFlag.GENERATE_DNS}),
        )
        recreated = self._orders.recreate(order.id, OrderStatus.CREATED, fresh)
        if recreated is None:
            return self._reload(order)
        log.warning(
            "Certificate for %s already existed; order %s recreated as %s",
            order.domain,
            order.id,
            recreated.id,
        )
        self._log(recreated, LogAction.ORDER_RECREATED, f"{order.id} -> {recreated.id}")
        return self.generate_dns(recreated, allow_recreate=False)

    def retry_dns(self, user: User, order_id: int) -> Order:
        """Regenerate the TXT challenge of a ``created`` or ``dns_wait`` order."""
        order = self.get_order(user, order_id)
        if not order.domain:
            msg = "Submit a domain before generating a DNS record"
            raise ValidationError(msg, order=order)
        if order.status not in (OrderStatus.CREATED, OrderStatus.DNS_WAIT):
            msg = f"The DNS record cannot be regenerated (order is {order.status.value})"
            raise IllegalTransition(msg, order=order)

        removed = self._tool.remove(order.domain)
        self._log(order, LogAction.ACME_REMOVE, summarize(_output(removed)))
        if not isinstance(removed, Success):
            log.info("No stale CA-side order removed for %s", order.domain)

        if order.status == OrderStatus.DNS_WAIT:
            updated = self._move(
                order,
                OrderStatus.CREATED,
                flags={WorkFlag.GENERATE_DNS},
                retry_count=0,
                reason="challenge regenerated",
                txt_host=None,
                txt_values=(),
            )
        else:
            updated = self._move(order, OrderStatus.CREATED, flags={WorkFlag.GENERATE_DNS})
        if updated is None:
            return self._reload(order)
        return self.generate_dns(updated)

    # ------------------------------------------------------------------
    # Verification and issuance
    # ------------------------------------------------------------------

    def verify(self, user: User, order_id: int) -> Order:
        """Check the TXT record and, once visible, issue the certificate.

        Returns the order unchanged (still ``dns_wait``) while the
        record has not propagated.  Verifying an order that is already
        verified or issued is a no-op.
        """
        order = self.get_order(user, order_id)
        if order.status in (OrderStatus.DNS_VERIFIED, OrderStatus.ISSUED):
            return order
        if order.status != OrderStatus.DNS_WAIT:
            msg = f"There is nothing to verify (order is {order.status.value})"
            raise IllegalTransition(msg, order=order)

        challenge = order.challenge
        if challenge is None:
            msg = "No TXT record is on file for this order; regenerate the DNS record"
            raise IllegalTransition(msg, order=order)

        with log_context(order_id=order.id, user_id=order.user_id):
            try:
                visible = self._verifier.verify(challenge.host, challenge.values)
            except DnsLookupError as exc:
                log.warning("TXT lookup failed for order %s: %s", order.id, exc)
                return self._move(order, OrderStatus.DNS_WAIT, last_error=str(exc)) or self._reload(order)
            if not visible:
                return order

            updated = self._move(
                order,
                OrderStatus.DNS_VERIFIED,
                flags={WorkFlag.ISSUE},
                retry_count=0,
                reason="TXT record visible",
                last_error=None,
            )
            if updated is None:
                return self._reload(order)
            self._log(updated, LogAction.ORDER_VERIFIED, challenge.host)
        return self.issue(updated)

    def issue(self, order: Order) -> Order:
        """Finish issuance and export files (``dns_verified`` + ``issue``)."""
        order = self._pending(order, OrderStatus.DNS_VERIFIED, WorkFlag.ISSUE, "Issuance")

        with log_context(order_id=order.id, user_id=order.user_id):
            renewed = self._tool.renew(order.domains)
            output = _output(renewed)
            self._log(order, LogAction.ACME_RENEW, summarize(output))

            if isinstance(renewed, PropagationPending):
                decision = self._policy.evaluate(order.retry_count, Outcome.PROPAGATION_PENDING)
                updated = self._move(
                    order,
                    OrderStatus.DNS_WAIT,
                    require_flag=WorkFlag.ISSUE,
                    flags=_NO_FLAGS,
                    retry_count=decision.retry_count,
                    reason="CA has not seen the TXT record",
                    last_error="The CA could not see the TXT record yet; verify again shortly",
                    acme_output=output,
                )
                return updated or self._reload(order)

            if not isinstance(renewed, Success):
                message = renewed.message if isinstance(renewed, Failure) else "unexpected answer"
                return self._record_failure(
                    order,
                    WorkFlag.ISSUE,
                    f"Certificate issuance failed: {message}",
                    output,
                )

            paths = self._tool.paths_for(order.domain)
            installed = self._tool.install(order.domain, paths)
            self._log(order, LogAction.ACME_INSTALL, summarize(_output(installed)))
            if not isinstance(installed, Success):
                message = installed.message if isinstance(installed, Failure) else "unexpected answer"
                return self._record_failure(
                    order,
                    WorkFlag.ISSUE,
                    f"Certificate export failed: {message}",
                    _output(installed),
                )

            updated = self._move(
                order,
                OrderStatus.ISSUED,
                require_flag=WorkFlag.ISSUE,
                flags=_NO_FLAGS,
                retry_count=0,
                reason="certificate issued",
                last_error=None,
                acme_output=output,
                cert_path=paths.cert,
                key_path=paths.key,
                fullchain_path=paths.fullchain,
            )
            if updated is None:
                return self._reload(order)
            self._log(updated, LogAction.ORDER_ISSUED, updated.domain)
            events.certificate_issued(updated.id, updated.user_id, updated.domain, updated.fullchain_path)
            return updated

    def request_reinstall(self, user: User, order_id: int) -> Order:
        """Flag an issued order for re-export of its certificate files."""
        order = self.get_order(user, order_id)
        if order.status != OrderStatus.ISSUED:
            msg = f"Only issued certificates can be exported again (order is {order.status.value})"
            raise IllegalTransition(msg, order=order)
        if order.has_flag(WorkFlag.REINSTALL):
            return order
        updated = self._move(order, OrderStatus.ISSUED, flags={WorkFlag.REINSTALL}, retry_count=0)
        return updated or self._reload(order)

    def reinstall(self, order: Order) -> Order:
        """Re-export certificate files (``issued`` + ``reinstall``).

        A failed export records the error and drops the request without
        touching the retry counter; the certificate stays issued and the
        user may ask for another export.
        """
        order = self._pending(order, OrderStatus.ISSUED, WorkFlag.REINSTALL, "Re-export")

        with log_context(order_id=order.id, user_id=order.user_id):
            paths = self._tool.paths_for(order.domain)
            installed = self._tool.install(order.domain, paths)
            output = _output(installed)
            self._log(order, LogAction.ACME_INSTALL, summarize(output))
            if not isinstance(installed, Success):
                reason = installed.message if isinstance(installed, Failure) else "unexpected answer"
                message = f"Certificate export failed: {reason}"
                updated = self._move(
                    order,
                    OrderStatus.ISSUED,
                    require_flag=WorkFlag.REINSTALL,
                    flags=_NO_FLAGS,
                    last_error=message,
                    acme_output=output or order.acme_output,
                )
                if updated is None:
                    return self._reload(order)
                self._log(updated, LogAction.ORDER_ERROR, message)
                msg = f"{message}. The certificate is unchanged; request a new export to try again."
                raise ExternalToolFailure(msg, order=updated)
            updated = self._move(
                order,
                OrderStatus.ISSUED,
                require_flag=WorkFlag.REINSTALL,
                flags=_NO_FLAGS,
                retry_count=0,
                last_error=None,
                cert_path=paths.cert,
                key_path=paths.key,
                fullchain_path=paths.fullchain,
            )
            return updated or self._reload(order)

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    def cancel(self, user: User, order_id: int) -> Order:
        """Delete a non-issued order, refunding quota if it had a domain.

        Returns the deleted order.
        """
        order = self.get_order(user, order_id)
        if order.status not in CANCELLABLE:
            msg = "Issued certificates cannot be cancelled"
            raise IllegalTransition(msg, order=order)

        deleted = self._orders.delete_if(order.id, CANCELLABLE)
        if deleted is None:
            current = self._orders.find_by_id(order.id)
            if current is None:
                msg = f"Order {order_id} does not exist"
                raise OrderNotFound(msg)
            msg = "Issued certificates cannot be cancelled"
            raise IllegalTransition(msg, order=current)

        refunded = bool(deleted.domain) and not user.privileged
        if deleted.domain:
            self._quota.refund(user)
        self._log(deleted, LogAction.ORDER_CANCEL, deleted.domain or None)
        events.order_removed(deleted.id, deleted.user_id, deleted.domain, refunded=refunded, reason="cancelled")
        return deleted

    def expire_failed(self, order: Order) -> bool:
        """Delete a ``failed`` order past its TTL; returns whether it was removed."""
        deleted = self._orders.delete_if(order.id, {OrderStatus.FAILED})
        if deleted is None:
            return False
        refunded = False
        if deleted.domain:
            owner = self._users.find_by_id(deleted.user_id)
            if owner is not None:
                refunded = not owner.privileged
                self._quota.refund(owner)
        self._log(deleted, LogAction.ORDER_EXPIRED, deleted.domain or None)
        events.order_removed(deleted.id, deleted.user_id, deleted.domain, refunded=refunded, reason="expired")
        return True

    def record_error(self, order_id: int, message: str) -> Order | None:
        """Store *message* as the order's last error without changing its state."""
        order = self._orders.find_by_id(order_id)
        if order is None:
            return None
        updated = self._orders.transition(order.id, order.status, order.status, last_error=message)
        self._log(order, LogAction.ORDER_ERROR, message)
        return updated
