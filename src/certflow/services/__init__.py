"""certflow service layer.

Services hold the order lifecycle rules and delegate persistence to
the repository layer and CA work to :mod:`certflow.ca`.
"""

from certflow.services.actions import ActionDispatcher, ActionRequest, ActionResult
from certflow.services.order import OrderService
from certflow.services.processor import OrderProcessor, OrderWorker, SweepReport
from certflow.services.query import OrderQueryService
from certflow.services.quota import QuotaLedger
from certflow.services.retry_policy import RetryPolicy
from certflow.services.users import UserDirectory

__all__ = [
    "ActionDispatcher",
    "ActionRequest",
    "ActionResult",
    "OrderProcessor",
    "OrderQueryService",
    "OrderService",
    "OrderWorker",
    "QuotaLedger",
    "RetryPolicy",
    "SweepReport",
    "UserDirectory",
]
