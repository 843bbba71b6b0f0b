# Overview: Flask API routes for delivery agents: today's route, stop and delivery updates.

"""
Agent routes.

SECURITY: agent role only. An agent sees and updates only its own route
and assigned deliveries; anything else is reported as not found.
"""

from flask import Blueprint, g, request

from ..decorators import require_auth, require_role
from ..responses import success
from ..services import fulfillment_service, route_planner_service
from dairy.time_utils import today
from ..validation import ValidationError, optional_date, require_json_object


agent_bp = Blueprint("agent", __name__, url_prefix="/api/agent")


def _route_date():
    return optional_date("date", request.args.get("date")) or today()


def _require_status(data: dict) -> str:
    status = data.get("status")
    if not status:
        raise ValidationError("status is required", errors={"status": "required"})
    return status


@agent_bp.get("/deliveries/today")
@require_auth
@require_role("agent")
def todays_deliveries():
    deliveries = route_planner_service.get_agent_deliveries(g.current_user.id, _route_date())
    return success([d.to_dict() for d in deliveries])


@agent_bp.get("/route/today")
@require_auth
@require_role("agent")
def todays_route():
    route = route_planner_service.get_agent_route(g.current_user.id, _route_date())
    if route is None:
        return success(None, message="No route planned")
    return success(route.to_dict(include_stops=True))


@agent_bp.post("/route/start")
@require_auth
@require_role("agent")
def start_route():
    route = fulfillment_service.start_route(g.current_user.id, _route_date())
    return success(route.to_dict(include_stops=True), message="Route started")


@agent_bp.put("/deliveries/<int:delivery_id>")
@require_auth
@require_role("agent")
def update_delivery(delivery_id: int):
    """
    Body: {"status": picked_up|in_transit|delivered|failed, "delivery_notes"?,
           "proof_type"?, "proof_data"?, "customer_rating"?, "customer_feedback"?}
    """
    data = require_json_object(request.get_json(silent=True))
    delivery = fulfillment_service.update_delivery(
        g.current_user.id,
        delivery_id,
        _require_status(data),
        delivery_notes=data.get("delivery_notes"),
        proof_type=data.get("proof_type"),
        proof_data=data.get("proof_data"),
        customer_rating=data.get("customer_rating"),
        customer_feedback=data.get("customer_feedback"),
    )
    return success(delivery.to_dict(), message="Delivery updated")


@agent_bp.put("/stops/<int:stop_id>")
@require_auth
@require_role("agent")
def update_stop(stop_id: int):
    """Body: {"status": in_transit|delivered|missed, "delivery_notes"?, "proof_image"?, "customer_rating"?}"""
    data = require_json_object(request.get_json(silent=True))
    stop = fulfillment_service.update_stop(
        g.current_user.id,
        stop_id,
        _require_status(data),
        delivery_notes=data.get("delivery_notes"),
        proof_image=data.get("proof_image"),
        customer_rating=data.get("customer_rating"),
    )
    return success(stop.to_dict(), message="Stop updated")
