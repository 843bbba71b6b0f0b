# Overview: Flask API routes for customer one-off orders.

from flask import Blueprint, g, request

from ..decorators import require_auth
from ..responses import success
from ..services import order_service
from ..validation import require_json_object


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.get("")
@require_auth
def list_orders():
    orders = order_service.list_orders(
        user_id=g.current_user.id,
        status=request.args.get("status"),
        limit=min(request.args.get("limit", 50, type=int), 200),
        offset=request.args.get("offset", 0, type=int),
    )
    return success([o.to_dict(include_items=False) for o in orders])


@orders_bp.post("")
@require_auth
def create_order():
    """
    Body: {"address_id", "items": [{"product_id", "quantity"}], "delivery_date"?, "notes"?}

    delivery_date defaults to tomorrow.
    """
    data = require_json_object(request.get_json(silent=True))
    order = order_service.create_order(
        g.current_user.id,
        address_id=data.get("address_id"),
        items=data.get("items"),
        delivery_date=data.get("delivery_date"),
        notes=data.get("notes"),
    )
    return success(order.to_dict(), message="Order placed", status=201)


@orders_bp.get("/<int:order_id>")
@require_auth
def get_order(order_id: int):
    return success(order_service.get_order(order_id, user_id=g.current_user.id).to_dict())


@orders_bp.put("/<int:order_id>/cancel")
@require_auth
def cancel_order(order_id: int):
    data = require_json_object(request.get_json(silent=True))
    order = order_service.cancel_order(g.current_user.id, order_id, reason=data.get("reason"))
    return success(order.to_dict(), message="Order cancelled")
