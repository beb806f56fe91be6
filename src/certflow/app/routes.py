"""JSON API consumed by chat front ends.

``POST /api/actions`` is the single write path; the ``GET`` routes are
conveniences for dashboards and debugging.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from flask import Blueprint, jsonify, request

from certflow.app.context import get_container
from certflow.core.errors import ValidationError
from certflow.services.actions import ActionRequest
from certflow.services.query import order_card, status_text

if TYPE_CHECKING:
    from flask.typing import ResponseReturnValue

log = logging.getLogger(__name__)

api_bp = Blueprint("api", __name__)


def _acting_user():
    external_id = request.args.get("user", "").strip()
    if not external_id:
        msg = "Query parameter 'user' is required"
        raise ValidationError(msg)
    return get_container().users.lookup(external_id)


@api_bp.route("/actions", methods=["POST"])
def post_action() -> ResponseReturnValue:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        msg = "Request body must be a JSON object"
        raise ValidationError(msg)
    action_request = ActionRequest.from_dict(body)
    result = get_container().dispatcher.dispatch(action_request)
    return jsonify(result.to_dict()), 200


@api_bp.route("/orders", methods=["GET"])
def list_orders() -> ResponseReturnValue:
    user = _acting_user()
    orders = get_container().queries.list_orders(user)
    return jsonify({"orders": [order_card(o) for o in orders]}), 200


@api_bp.route("/orders/<int:order_id>", methods=["GET"])
def get_order(order_id: int) -> ResponseReturnValue:
    user = _acting_user()
    order = get_container().queries.status(user, order_id)
    body = order_card(order)
    body["message"] = status_text(order, with_tips=True)
    return jsonify(body), 200
