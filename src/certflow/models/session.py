"""Conversation input expectation.

The front end receives an :class:`InputExpectation` alongside an action
result and hands it back with the user's next free-text message, so
no pending-input marker has to be stored server side.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from certflow.core.types import InputAction


@dataclass(frozen=True)
class InputExpectation:
    action: InputAction
    order_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"action": self.action.value, "order_id": self.order_id}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> InputExpectation | None:
        """Parse the ``expect`` object a front end echoes back.

        Returns ``None`` for a missing or empty object.  Raises
        :class:`ValueError` for an unknown action.
        """
        if not data:
            return None
        order_id = data.get("order_id")
        return cls(
            action=InputAction(data["action"]),
            order_id=int(order_id) if order_id is not None else None,
        )
