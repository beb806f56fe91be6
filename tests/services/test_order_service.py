"""Tests for certflow.services.order.OrderService."""

from __future__ import annotations

from dataclasses import replace

import pytest

from certflow.ca.base import AlreadyExists, Failure, PropagationPending
from certflow.challenge.dns01 import DnsLookupError
from certflow.core.errors import (
    DuplicateOrder,
    ExternalToolFailure,
    IllegalTransition,
    OrderNotFound,
    QuotaExhausted,
    TerminalFailure,
    ValidationError,
)
from certflow.core.types import CertType, InputAction, LogAction, OrderStatus, WorkFlag
from tests.services.conftest import challenge_for


def _submitted(env, user, domain="example.com", cert_type="root"):
    draft = env.service.start_order(user)
    env.service.set_cert_type(user, draft.id, cert_type)
    return env.service.submit_domain(user, draft.id, domain)


def _quota(env, user):
    return env.users.find_by_id(user.id).quota


# ---------------------------------------------------------------------------
# Draft flow
# ---------------------------------------------------------------------------


class TestDraftFlow:
    def test_start_order_creates_draft(self, env, member):
        draft = env.service.start_order(member)
        assert draft.status == OrderStatus.CREATED
        assert draft.domain == ""
        assert draft.cert_type is None
        assert env.logs.actions() == [LogAction.ORDER_START.value]

    def test_start_order_reuses_existing_draft(self, env, member):
        first = env.service.start_order(member)
        second = env.service.start_order(member)
        assert first.id == second.id
        assert len(env.orders.rows) == 1

    def test_start_order_without_quota(self, env, member):
        with pytest.raises(QuotaExhausted):
            env.service.start_order(replace(member, quota=0))

    def test_set_cert_type_returns_domain_prompt(self, env, member):
        draft = env.service.start_order(member)
        order, expect = env.service.set_cert_type(member, draft.id, "wildcard")
        assert order.cert_type == CertType.WILDCARD
        assert expect.action == InputAction.AWAIT_DOMAIN
        assert expect.order_id == draft.id

    def test_set_cert_type_unknown_value(self, env, member):
        draft = env.service.start_order(member)
        with pytest.raises(ValidationError, match="root or wildcard"):
            env.service.set_cert_type(member, draft.id, "ecdsa")

    def test_set_cert_type_locked_after_domain(self, env, member):
        order = _submitted(env, member)
        with pytest.raises(IllegalTransition):
            env.service.set_cert_type(member, order.id, "wildcard")

    def test_request_domain_input_requires_type(self, env, member):
        draft = env.service.start_order(member)
        with pytest.raises(ValidationError):
            env.service.request_domain_input(member, draft.id)

    def test_foreign_order_reported_missing(self, env, member, admin):
        draft = env.service.start_order(member)
        with pytest.raises(OrderNotFound):
            env.service.set_cert_type(admin, draft.id, "root")


# ---------------------------------------------------------------------------
# Submission and quota
# ---------------------------------------------------------------------------


class TestSubmitDomain:
    def test_submit_generates_challenge(self, env, member):
        order = _submitted(env, member, "Example.COM")
        assert order.status == OrderStatus.DNS_WAIT
        assert order.domain == "example.com"
        assert order.flags == frozenset()
        assert order.challenge.host == "_acme-challenge.example.com"
        assert _quota(env, member) == 1
        assert env.tool.calls[0] == ("generate", ("example.com",))

    def test_wildcard_requests_both_names(self, env, member):
        env.tool.generate_results = [challenge_for("example.com", "v1", "v2")]
        order = _submitted(env, member, cert_type="wildcard")
        assert env.tool.calls[0] == ("generate", ("example.com", "*.example.com"))
        assert order.challenge.values == ("v1", "v2")

    def test_missing_type_defaults_to_root(self, env, member):
        draft = env.service.start_order(member)
        order = env.service.submit_domain(member, draft.id, "example.com")
        assert order.cert_type == CertType.ROOT

    def test_invalid_domain_not_charged(self, env, member):
        draft = env.service.start_order(member)
        with pytest.raises(ValidationError):
            env.service.submit_domain(member, draft.id, "www.example.com")
        assert _quota(env, member) == 2
        assert env.tool.calls == []

    def test_duplicate_open_order_rejected(self, env, member):
        first = _submitted(env, member)
        draft = env.service.start_order(member)
        with pytest.raises(DuplicateOrder) as exc_info:
            env.service.submit_domain(member, draft.id, "example.com")
        assert exc_info.value.order.id == first.id
        assert _quota(env, member) == 1

    def test_issued_order_does_not_block_new_one(self, env, member):
        first = _submitted(env, member)
        env.service.verify(member, first.id)
        second = _submitted(env, member)
        assert second.id != first.id
        assert second.status == OrderStatus.DNS_WAIT

    def test_lost_assignment_refunds_quota(self, env, member, monkeypatch):
        draft = env.service.start_order(member)
        monkeypatch.setattr(env.orders, "assign_domain", lambda *args: None)
        with pytest.raises(IllegalTransition):
            env.service.submit_domain(member, draft.id, "example.com")
        assert _quota(env, member) == 2

    def test_privileged_user_not_charged(self, env, admin):
        order = _submitted(env, admin)
        assert order.status == OrderStatus.DNS_WAIT
        assert _quota(env, admin) == 0

    def test_quick_order(self, env, member):
        order = env.service.quick_order(member, "example.org")
        assert order.status == OrderStatus.DNS_WAIT
        assert order.cert_type == CertType.ROOT

    def test_quick_order_duplicate(self, env, member):
        _submitted(env, member, "example.org")
        with pytest.raises(DuplicateOrder):
            env.service.quick_order(member, "example.org")


# ---------------------------------------------------------------------------
# DNS generation failures
# ---------------------------------------------------------------------------


class TestGenerateFailures:
    def test_failure_below_ceiling_keeps_flag(self, env, member):
        env.tool.generate_results = [Failure("rate limited", output="error")]
        with pytest.raises(ExternalToolFailure, match="2 attempt"):
            _submitted(env, member)
        order = env.orders.find_latest_by_domain(member.id, "example.com")
        assert order.status == OrderStatus.CREATED
        assert order.has_flag(WorkFlag.GENERATE_DNS)
        assert order.retry_count == 1
        assert "rate limited" in order.last_error

    def test_failure_at_ceiling_fails_order(self, env, member):
        env.tool.generate_results = [Failure("boom")] * 3
        with pytest.raises(ExternalToolFailure):
            _submitted(env, member)
        order = env.orders.find_latest_by_domain(member.id, "example.com")
        with pytest.raises(ExternalToolFailure):
            env.service.generate_dns(order)
        order = env.orders.find_by_id(order.id)
        with pytest.raises(TerminalFailure):
            env.service.generate_dns(order)
        order = env.orders.find_by_id(order.id)
        assert order.status == OrderStatus.FAILED
        assert order.flags == frozenset()
        assert order.retry_count == 3

    def test_generate_without_flag_is_illegal(self, env, member):
        order = _submitted(env, member)
        with pytest.raises(IllegalTransition):
            env.service.generate_dns(order)

    def test_concurrent_change_returns_current_order(self, env, member):
        env.tool.generate_results = [Failure("boom")]
        with pytest.raises(ExternalToolFailure):
            _submitted(env, member)
        order = env.orders.find_latest_by_domain(member.id, "example.com")
        env.orders.lose_next_transition = True
        result = env.service.generate_dns(order)
        assert result.status == OrderStatus.CREATED
        assert result.retry_count == 1


class TestAlreadyExists:
    def test_recreates_order_once(self, env, member):
        env.tool.generate_results = [AlreadyExists("Domains not changed.")]
        draft = env.service.start_order(member)
        order = env.service.submit_domain(member, draft.id, "example.com")
        assert order.id != draft.id
        assert order.status == OrderStatus.DNS_WAIT
        assert env.orders.find_by_id(draft.id) is None
        assert env.tool.count("remove") == 1
        assert LogAction.ORDER_RECREATED.value in env.logs.actions()
        assert _quota(env, member) == 1

    def test_second_exists_fails(self, env, member):
        env.tool.generate_results = [AlreadyExists("exists"), AlreadyExists("exists")]
        with pytest.raises(TerminalFailure):
            _submitted(env, member)
        order = env.orders.find_latest_by_domain(member.id, "example.com")
        assert order.status == OrderStatus.FAILED

    def test_cooldown_blocks_recreation(self, env, member):
        env.logs.append(member.id, None, LogAction.ACME_EXISTS.value, "example.com")
        env.clock.advance(seconds=60)
        env.tool.generate_results = [AlreadyExists("exists")]
        with pytest.raises(TerminalFailure):
            _submitted(env, member)
        assert env.tool.count("remove") == 0

    def test_cooldown_expires(self, env, member):
        env.logs.append(member.id, None, LogAction.ACME_EXISTS.value, "example.com")
        env.clock.advance(seconds=601)
        env.tool.generate_results = [AlreadyExists("exists")]
        order = _submitted(env, member)
        assert order.status == OrderStatus.DNS_WAIT
        assert env.tool.count("remove") == 1

    def test_remove_failure_counts_as_retry(self, env, member):
        env.tool.generate_results = [AlreadyExists("exists")]
        env.tool.remove_results = [Failure("no such domain")]
        with pytest.raises(ExternalToolFailure):
            _submitted(env, member)
        order = env.orders.find_latest_by_domain(member.id, "example.com")
        assert order.retry_count == 1
        assert order.has_flag(WorkFlag.GENERATE_DNS)
        assert LogAction.ACME_EXISTS.value not in env.logs.actions()

        env.tool.generate_results = [AlreadyExists("exists")]
        env.tool.remove_results = [Failure("no such domain")]
        with pytest.raises(ExternalToolFailure):
            env.service.generate_dns(order)
        order = env.orders.find_by_id(order.id)
        assert order.status == OrderStatus.CREATED
        assert order.retry_count == 2
        assert env.tool.count("remove") == 2
        assert LogAction.ACME_EXISTS.value not in env.logs.actions()

    def test_marker_written_after_successful_remove(self, env, member):
        env.tool.generate_results = [AlreadyExists("exists")]
        env.tool.remove_results = [Failure("no such domain")]
        with pytest.raises(ExternalToolFailure):
            _submitted(env, member)
        order = env.orders.find_latest_by_domain(member.id, "example.com")

        env.tool.generate_results = [AlreadyExists("exists")]
        recreated = env.service.generate_dns(order)
        assert recreated.status == OrderStatus.DNS_WAIT
        assert env.logs.actions().count(LogAction.ACME_EXISTS.value) == 1


class TestRetryDns:
    def test_regenerates_from_dns_wait(self, env, member):
        order = _submitted(env, member)
        env.tool.generate_results = [challenge_for("example.com", "fresh")]
        result = env.service.retry_dns(member, order.id)
        assert result.status == OrderStatus.DNS_WAIT
        assert result.challenge.values == ("fresh",)
        assert env.tool.count("remove") == 1

    def test_requires_domain(self, env, member):
        draft = env.service.start_order(member)
        with pytest.raises(ValidationError):
            env.service.retry_dns(member, draft.id)


# ---------------------------------------------------------------------------
# Verification and issuance
# ---------------------------------------------------------------------------


class TestVerifyAndIssue:
    def test_happy_path_issues_certificate(self, env, member):
        order = _submitted(env, member)
        issued = env.service.verify(member, order.id)
        assert issued.status == OrderStatus.ISSUED
        assert issued.flags == frozenset()
        assert issued.fullchain_path == "/certs/example.com/fullchain.pem"
        assert env.verifier.calls == [("_acme-challenge.example.com", ("token-1",))]
        actions = env.logs.actions()
        assert actions.index(LogAction.ORDER_VERIFIED.value) < actions.index(LogAction.ORDER_ISSUED.value)

    def test_record_not_visible(self, env, member):
        order = _submitted(env, member)
        env.verifier.visible = False
        result = env.service.verify(member, order.id)
        assert result.status == OrderStatus.DNS_WAIT
        assert env.tool.count("renew") == 0

    def test_lookup_error_does_not_count_retry(self, env, member):
        order = _submitted(env, member)
        env.verifier.error = DnsLookupError("timed out")
        result = env.service.verify(member, order.id)
        assert result.status == OrderStatus.DNS_WAIT
        assert result.last_error == "timed out"
        assert result.retry_count == 0

    def test_verify_is_idempotent(self, env, member):
        order = _submitted(env, member)
        env.service.verify(member, order.id)
        again = env.service.verify(member, order.id)
        assert again.status == OrderStatus.ISSUED
        assert env.tool.count("renew") == 1

    def test_verify_draft_is_illegal(self, env, member):
        draft = env.service.start_order(member)
        with pytest.raises(IllegalTransition):
            env.service.verify(member, draft.id)

    def test_propagation_pending_returns_to_dns_wait(self, env, member):
        order = _submitted(env, member)
        env.tool.renew_results = [PropagationPending("Verify error")]
        result = env.service.verify(member, order.id)
        assert result.status == OrderStatus.DNS_WAIT
        assert result.flags == frozenset()
        assert result.retry_count == 0
        assert "TXT record" in result.last_error

    def test_renew_failure_keeps_issue_flag(self, env, member):
        order = _submitted(env, member)
        env.tool.renew_results = [Failure("CA unavailable")]
        with pytest.raises(ExternalToolFailure):
            env.service.verify(member, order.id)
        order = env.orders.find_by_id(order.id)
        assert order.status == OrderStatus.DNS_VERIFIED
        assert order.has_flag(WorkFlag.ISSUE)
        assert order.retry_count == 1

    def test_install_failure_keeps_issue_flag(self, env, member):
        order = _submitted(env, member)
        env.tool.install_results = [Failure("permission denied")]
        with pytest.raises(ExternalToolFailure, match="export failed"):
            env.service.verify(member, order.id)
        assert env.orders.find_by_id(order.id).has_flag(WorkFlag.ISSUE)


class TestReinstall:
    def _issued(self, env, member):
        order = _submitted(env, member)
        return env.service.verify(member, order.id)

    def test_request_sets_flag_once(self, env, member):
        order = self._issued(env, member)
        flagged = env.service.request_reinstall(member, order.id)
        assert flagged.has_flag(WorkFlag.REINSTALL)
        again = env.service.request_reinstall(member, order.id)
        assert again.has_flag(WorkFlag.REINSTALL)

    def test_request_on_unissued_order(self, env, member):
        order = _submitted(env, member)
        with pytest.raises(IllegalTransition):
            env.service.request_reinstall(member, order.id)

    def test_reinstall_clears_flag(self, env, member):
        order = self._issued(env, member)
        flagged = env.service.request_reinstall(member, order.id)
        result = env.service.reinstall(flagged)
        assert result.status == OrderStatus.ISSUED
        assert not result.has_flag(WorkFlag.REINSTALL)
        assert env.tool.count("install") == 2

    def test_failure_drops_request_without_retry(self, env, member):
        order = self._issued(env, member)
        flagged = env.service.request_reinstall(member, order.id)
        flagged = env.orders.transition(flagged.id, OrderStatus.ISSUED, OrderStatus.ISSUED, retry_count=2)
        env.tool.install_results = [Failure("disk full")]
        with pytest.raises(ExternalToolFailure, match="request a new export"):
            env.service.reinstall(flagged)
        result = env.orders.find_by_id(order.id)
        assert result.status == OrderStatus.ISSUED
        assert result.flags == frozenset()
        assert result.retry_count == 2
        assert "disk full" in result.last_error
        assert result.fullchain_path == order.fullchain_path
        assert LogAction.ORDER_FAILED.value not in env.logs.actions()

    def test_failed_export_can_be_requested_again(self, env, member):
        order = self._issued(env, member)
        env.tool.install_results = [Failure("disk full")]
        with pytest.raises(ExternalToolFailure):
            env.service.reinstall(env.service.request_reinstall(member, order.id))
        again = env.service.reinstall(env.service.request_reinstall(member, order.id))
        assert not again.has_flag(WorkFlag.REINSTALL)
        assert env.tool.count("install") == 3

    def test_reinstall_without_request_is_illegal(self, env, member):
        order = self._issued(env, member)
        with pytest.raises(IllegalTransition):
            env.service.reinstall(order)
        assert env.tool.count("install") == 1


# ---------------------------------------------------------------------------
# Removal
# ---------------------------------------------------------------------------


class TestCancelAndExpire:
    def test_cancel_refunds_submitted_order(self, env, member):
        order = _submitted(env, member)
        deleted = env.service.cancel(member, order.id)
        assert deleted.id == order.id
        assert env.orders.find_by_id(order.id) is None
        assert _quota(env, member) == 2

    def test_cancel_draft_does_not_refund(self, env, member):
        draft = env.service.start_order(member)
        env.service.cancel(member, draft.id)
        assert _quota(env, member) == 2

    def test_cancel_issued_rejected(self, env, member):
        order = _submitted(env, member)
        env.service.verify(member, order.id)
        with pytest.raises(IllegalTransition):
            env.service.cancel(member, order.id)

    def test_cancel_does_not_touch_ca(self, env, member):
        order = _submitted(env, member)
        env.service.cancel(member, order.id)
        assert env.tool.count("remove") == 0

    def test_expire_failed_refunds_owner(self, env, member):
        env.tool.generate_results = [AlreadyExists("exists"), AlreadyExists("exists")]
        with pytest.raises(TerminalFailure):
            _submitted(env, member)
        failed = env.orders.find_latest_by_domain(member.id, "example.com")
        assert _quota(env, member) == 1
        assert env.service.expire_failed(failed) is True
        assert _quota(env, member) == 2
        assert env.service.expire_failed(failed) is False

    def test_record_error(self, env, member):
        order = _submitted(env, member)
        updated = env.service.record_error(order.id, "Internal error: boom")
        assert updated.last_error == "Internal error: boom"
        assert updated.status == OrderStatus.DNS_WAIT
        assert env.service.record_error(999, "x") is None
