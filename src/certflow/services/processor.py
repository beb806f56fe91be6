"""Background order processor.

:class:`OrderProcessor` resumes deferred or failed work in four passes,
each bounded by ``worker.batch_size``:

1. ``created`` + ``generate_dns``  ->  :meth:`OrderService.generate_dns`
2. ``dns_verified`` + ``issue``    ->  :meth:`OrderService.issue`
3. ``issued`` + ``reinstall``      ->  :meth:`OrderService.reinstall`
4. ``failed`` older than the TTL   ->  :meth:`OrderService.expire_failed`

:class:`OrderWorker` runs :meth:`OrderProcessor.sweep` on a daemon
thread at a fixed interval.
"""

from __future__ import annotations

import contextlib
import logging
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from certflow.core.errors import (
    CertflowError,
    ExternalToolFailure,
    IllegalTransition,
    OrderNotFound,
    TerminalFailure,
)
from certflow.core.types import OrderStatus, WorkFlag

if TYPE_CHECKING:
    from collections.abc import Callable

    from pypgkit import Database

    from certflow.models.order import Order
    from certflow.repositories.order import OrderRepository
    from certflow.services.order import OrderService
    from certflow.services.retry_policy import RetryPolicy

log = logging.getLogger(__name__)

_MAX_BACKOFF_SECONDS = 300


@dataclass
class PassReport:
    """Counters for one sweep pass."""

    processed: int = 0
    advanced: int = 0
    failed: int = 0
    skipped: int = 0
    expired: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "advanced": self.advanced,
            "failed": self.failed,
            "skipped": self.skipped,
            "expired": self.expired,
        }


@dataclass
class SweepReport:
    generate: PassReport = field(default_factory=PassReport)
    issue: PassReport = field(default_factory=PassReport)
    reinstall: PassReport = field(default_factory=PassReport)
    cleanup: PassReport = field(default_factory=PassReport)

    @property
    def total_processed(self) -> int:
        return sum(p.processed for p in (self.generate, self.issue, self.reinstall, self.cleanup))

    def as_dict(self) -> dict[str, dict[str, int]]:
        return {
            "generate": self.generate.as_dict(),
            "issue": self.issue.as_dict(),
            "reinstall": self.reinstall.as_dict(),
            "cleanup": self.cleanup.as_dict(),
        }


class OrderProcessor:
    """Run one bounded sweep over pending order work.

    Each order is handled in isolation: an exception from one order is
    logged, written to its ``last_error`` and counted, and the batch
    continues.
    """

    def __init__(
        self,
        order_service: OrderService,
        order_repo: OrderRepository,
        policy: RetryPolicy,
        batch_size: int = 20,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._service = order_service
        self._orders = order_repo
        self._policy = policy
        self._batch_size = batch_size
        self._now = clock or (lambda: datetime.now(UTC))

    def sweep(self) -> SweepReport:
        report = SweepReport()
        self._run_pass(
            self._orders.find_flagged(OrderStatus.CREATED, WorkFlag.GENERATE_DNS, self._batch_size),
            self._service.generate_dns,
            report.generate,
            advanced_when=lambda o: o.status == OrderStatus.DNS_WAIT,
        )
        self._run_pass(
            self._orders.find_flagged(OrderStatus.DNS_VERIFIED, WorkFlag.ISSUE, self._batch_size),
            self._service.issue,
            report.issue,
            advanced_when=lambda o: o.status == OrderStatus.ISSUED,
        )
        self._run_pass(
            self._orders.find_flagged(OrderStatus.ISSUED, WorkFlag.REINSTALL, self._batch_size),
            self._service.reinstall,
            report.reinstall,
            advanced_when=lambda o: not o.has_flag(WorkFlag.REINSTALL),
        )
        self._cleanup(report.cleanup)

        if report.total_processed:
            log.info("Sweep finished: %s", report.as_dict(), extra={"sweep": report.as_dict()})
        return report

    def _run_pass(
        self,
        orders: list[Order],
        step: Callable[[Order], Order],
        counters: PassReport,
        advanced_when: Callable[[Order], bool],
    ) -> None:
        for order in orders:
            counters.processed += 1
            try:
                result = step(order)
            except (IllegalTransition, OrderNotFound):
                # Another actor moved or deleted the order since it was listed.
                counters.skipped += 1
            except (ExternalToolFailure, TerminalFailure) as exc:
                counters.failed += 1
                log.warning("Order %s: %s", order.id, exc.detail)
            except CertflowError as exc:
                counters.failed += 1
                log.warning("Order %s rejected by the service: %s", order.id, exc.detail)
                self._safe_record_error(order.id, exc.detail)
            except Exception as exc:
                counters.failed += 1
                log.exception("Unexpected error processing order %s", order.id)
                self._safe_record_error(order.id, f"Internal error: {exc}")
            else:
                if advanced_when(result):
                    counters.advanced += 1
                else:
                    counters.skipped += 1

    def _cleanup(self, counters: PassReport) -> None:
        cutoff = self._policy.ttl_cutoff(self._now())
        if cutoff is None:
            return
        for order in self._orders.find_failed_before(cutoff, self._batch_size):
            counters.processed += 1
            try:
                if self._service.expire_failed(order):
                    counters.expired += 1
                else:
                    counters.skipped += 1
            except Exception:
                counters.failed += 1
                log.exception("Could not expire failed order %s", order.id)

    def _safe_record_error(self, order_id: int, message: str) -> None:
        try:
            self._service.record_error(order_id, message)
        except Exception:
            log.exception("Could not record error on order %s", order_id)


class OrderWorker:
    """Daemon thread that calls :meth:`OrderProcessor.sweep` periodically.

    When a database is provided, ``pg_try_advisory_lock`` ensures only
    one instance across the deployment sweeps at a time.

    Parameters
    ----------
    processor:
        The sweep to run.
    poll_seconds:
        Interval between sweeps.
    db:
        Database for leader election; ``None`` disables it.

    """

    _ADVISORY_LOCK_ID = 731_001

    def __init__(
        self,
        processor: OrderProcessor,
        poll_seconds: int = 30,
        db: Database | None = None,
    ) -> None:
        self._processor = processor
        self._poll_seconds = poll_seconds
        self._db = db
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._consecutive_failures = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="order-worker", daemon=True)
        self._thread.start()
        log.info("Order worker started (poll=%ds)", self._poll_seconds)

    def stop(self) -> None:
        """Signal the worker to stop and wait for the current sweep."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=self._poll_seconds + 5)
            log.info("Order worker stopped")

    def run_forever(self) -> None:
        """Run the loop on the calling thread until :meth:`stop`."""
        log.info("Order worker running in foreground (poll=%ds)", self._poll_seconds)
        self._run()

    def _try_acquire_leader(self) -> bool:
        if self._db is None:
            return True
        try:
            return bool(
                self._db.fetch_value("SELECT pg_try_advisory_lock(%s)", (self._ADVISORY_LOCK_ID,)),
            )
        except Exception:
            log.debug("Advisory lock check failed, skipping this cycle")
            return False

    def _release_leader(self) -> None:
        if self._db is None:
            return
        with contextlib.suppress(Exception):
            self._db.execute("SELECT pg_advisory_unlock(%s)", (self._ADVISORY_LOCK_ID,))

    def _backoff(self) -> int:
        """Seconds to wait after a failed sweep: poll * 2^failures, capped."""
        return min(self._poll_seconds * (2**self._consecutive_failures), _MAX_BACKOFF_SECONDS)

    def _run(self) -> None:
        while not self._stop_event.is_set():
            if not self._try_acquire_leader():
                self._stop_event.wait(timeout=self._poll_seconds)
                continue

            wait = self._poll_seconds
            try:
                self._processor.sweep()
                self._consecutive_failures = 0
            except Exception:
                self._consecutive_failures += 1
                log.exception(
                    "Sweep failed (consecutive failures: %d)",
                    self._consecutive_failures,
                )
                wait = self._backoff()
            finally:
                self._release_leader()
            self._stop_event.wait(timeout=wait)
