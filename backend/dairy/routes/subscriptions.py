# Overview: Flask API routes for customer subscriptions and their delivery calendar.

from flask import Blueprint, g, request

from ..decorators import require_auth
from ..responses import success
from ..services import subscription_service
from ..services.recurrence_service import describe, recurrence_for
from ..validation import optional_date, require_json_object


subscriptions_bp = Blueprint("subscriptions", __name__, url_prefix="/api/subscriptions")


def _serialize(subscription) -> dict:
    data = subscription.to_dict()
    data["schedule"] = describe(recurrence_for(subscription))
    return data


@subscriptions_bp.get("")
@require_auth
def list_subscriptions():
    subscriptions = subscription_service.list_subscriptions(
        user_id=g.current_user.id,
        status=request.args.get("status"),
    )
    return success([_serialize(s) for s in subscriptions])


@subscriptions_bp.post("")
@require_auth
def create_subscription():
    """
    Body: {"product_id", "address_id", "billing_cycle", "delivery_days",
           "default_quantity"?, "start_date"?, "end_date"?, "payment_mode"?, "notes"?}

    The next MATERIALIZE_HORIZON_DAYS of deliveries are scheduled immediately.
    """
    subscription = subscription_service.create_subscription(
        g.current_user.id, require_json_object(request.get_json(silent=True))
    )
    return success(_serialize(subscription), message="Subscription created", status=201)


@subscriptions_bp.get("/<int:subscription_id>")
@require_auth
def get_subscription(subscription_id: int):
    subscription = subscription_service.get_subscription(subscription_id, user_id=g.current_user.id)
    return success(_serialize(subscription))


@subscriptions_bp.put("/<int:subscription_id>")
@require_auth
def update_subscription(subscription_id: int):
    """Quantity, schedule, address, end date, or status (paused/active/cancelled)."""
    subscription = subscription_service.update_subscription(
        subscription_id,
        require_json_object(request.get_json(silent=True)),
        user_id=g.current_user.id,
    )
    return success(_serialize(subscription), message="Subscription updated")


@subscriptions_bp.get("/<int:subscription_id>/deliveries")
@require_auth
def list_deliveries(subscription_id: int):
    """Query params: from, to (YYYY-MM-DD), status."""
    subscription = subscription_service.get_subscription(subscription_id, user_id=g.current_user.id)
    deliveries = subscription_service.list_deliveries(
        subscription,
        date_from=optional_date("from", request.args.get("from")),
        date_to=optional_date("to", request.args.get("to")),
        status=request.args.get("status"),
    )
    return success([d.to_dict() for d in deliveries])
