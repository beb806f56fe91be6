"""Retry ceiling and failed-order TTL.

Pure functions of their inputs; the order service applies the
resulting decision in one conditional update.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum


class Outcome(StrEnum):
    """Classification of an unsuccessful CA tool call."""

    FAILURE = "failure"
    PROPAGATION_PENDING = "propagation_pending"


@dataclass(frozen=True)
class RetryDecision:
    """What to do with an order after an unsuccessful attempt.

    Attributes
    ----------
    retry_count:
        Counter value to persist.
    fail:
        The order must move to ``failed`` with all flags cleared.
    back_to_dns_wait:
        The CA has not seen the TXT record; return to ``dns_wait``
        without touching the counter.

    """

    retry_count: int
    fail: bool = False
    back_to_dns_wait: bool = False


class RetryPolicy:
    def __init__(self, max_retries: int = 3, failed_ttl_minutes: int = 0) -> None:
        self.max_retries = max_retries
        self.failed_ttl_minutes = failed_ttl_minutes

    def evaluate(self, retry_count: int, outcome: Outcome) -> RetryDecision:
        if outcome == Outcome.PROPAGATION_PENDING:
            return RetryDecision(retry_count=retry_count, back_to_dns_wait=True)
        count = retry_count + 1
        return RetryDecision(retry_count=count, fail=count >= self.max_retries)

    def remaining(self, retry_count: int) -> int:
        return max(self.max_retries - retry_count, 0)

    def ttl_cutoff(self, now: datetime) -> datetime | None:
        """Return the instant before which ``failed`` orders expire.

        ``None`` disables cleanup.
        """
        if self.failed_ttl_minutes <= 0:
            return None
        return now - timedelta(minutes=self.failed_ttl_minutes)
