"""Entity models for the certflow persistence layer.

All models are frozen dataclasses.  Use :func:`dataclasses.replace`
for modifications (copy-on-write).
"""

from certflow.models.action_log import ActionLog
from certflow.models.order import DnsChallenge, Order
from certflow.models.session import InputExpectation
from certflow.models.user import User

__all__ = [
    "ActionLog",
    "DnsChallenge",
    "InputExpectation",
    "Order",
    "User",
]
