# Overview: Flask API routes for administrators: subscriptions, orders, materialization, routes and billing runs.

"""
Admin routes.

SECURITY: admin role only; every lookup is scoped to g.org_id.
Batch endpoints run the same service calls as the `flask jobs ...` CLI.
"""

from datetime import timedelta

from flask import Blueprint, current_app, g, request

from ..decorators import require_auth, require_role
from ..responses import success
from ..services import (
    billing_service,
    fulfillment_service,
    materializer_service,
    order_service,
    route_planner_service,
    subscription_service,
)
from ..services.tenant_service import require_user_in_org
from dairy.time_utils import today
from ..validation import ValidationError, coerce_int, optional_date, require_json_object


admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


def _body() -> dict:
    return require_json_object(request.get_json(silent=True))


# =============================================================================
# SUBSCRIPTIONS & ORDERS
# =============================================================================

@admin_bp.get("/subscriptions")
@require_auth
@require_role("admin")
def list_subscriptions():
    subscriptions = subscription_service.list_subscriptions(
        org_id=g.org_id,
        user_id=request.args.get("user_id", type=int),
        status=request.args.get("status"),
    )
    return success([s.to_dict() for s in subscriptions])


@admin_bp.put("/subscriptions/<int:subscription_id>")
@require_auth
@require_role("admin")
def update_subscription(subscription_id: int):
    subscription = subscription_service.update_subscription(subscription_id, _body(), org_id=g.org_id)
    return success(subscription.to_dict(), message="Subscription updated")


@admin_bp.get("/orders")
@require_auth
@require_role("admin")
def list_orders():
    orders = order_service.list_orders(
        org_id=g.org_id,
        status=request.args.get("status"),
        delivery_date=optional_date("date", request.args.get("date")),
        limit=min(request.args.get("limit", 100, type=int), 500),
        offset=request.args.get("offset", 0, type=int),
    )
    return success([o.to_dict(include_items=False) for o in orders])


@admin_bp.put("/orders/<int:order_id>/status")
@require_auth
@require_role("admin")
def update_order_status(order_id: int):
    data = _body()
    if not data.get("status"):
        raise ValidationError("status is required", errors={"status": "required"})
    order = order_service.update_order_status(g.org_id, order_id, data["status"], reason=data.get("reason"))
    return success(order.to_dict(), message="Order status updated")


# =============================================================================
# DELIVERIES
# =============================================================================

@admin_bp.post("/deliveries/materialize")
@require_auth
@require_role("admin")
def materialize_deliveries():
    """
    Body: {"date_from"?, "date_to"?, "subscription_id"?}

    Defaults to today .. today + MATERIALIZE_HORIZON_DAYS for every active subscription.
    """
    data = _body()
    date_from = optional_date("date_from", data.get("date_from")) or today()
    date_to = optional_date("date_to", data.get("date_to")) or materializer_service.horizon_end(date_from)
    if date_to < date_from:
        raise ValidationError("date_to cannot be before date_from")

    if data.get("subscription_id") is not None:
        subscription = subscription_service.get_subscription(
            coerce_int("subscription_id", data["subscription_id"]), org_id=g.org_id
        )
        result = materializer_service.materialize_subscription(subscription.id, date_from, date_to)
    else:
        result = materializer_service.materialize_all(g.org_id, date_from, date_to)
    return success(result.to_dict(), message="Deliveries materialized")


@admin_bp.put("/deliveries/<int:delivery_id>/override")
@require_auth
@require_role("admin")
def override_delivery(delivery_id: int):
    """Corrective status override. Body: {"status", "reason"}"""
    data = _body()
    if not data.get("status"):
        raise ValidationError("status is required", errors={"status": "required"})
    delivery = fulfillment_service.override_delivery_status(
        g.org_id,
        delivery_id,
        data["status"],
        reason=data.get("reason"),
        actor_user_id=g.current_user.id,
    )
    return success(delivery.to_dict(), message="Delivery status overridden")


# =============================================================================
# ROUTES
# =============================================================================

@admin_bp.post("/routes/plan")
@require_auth
@require_role("admin")
def plan_routes():
    """Body: {"date"? (default tomorrow), "agent_ids"?}"""
    data = _body()
    route_date = optional_date("date", data.get("date")) or today() + timedelta(days=1)
    agent_ids = data.get("agent_ids")
    if agent_ids is not None:
        if not isinstance(agent_ids, list):
            raise ValidationError("agent_ids must be a list")
        agent_ids = [coerce_int("agent_ids", a) for a in agent_ids]
    result = route_planner_service.plan_routes(g.org_id, route_date, agent_ids)
    return success(result.to_dict(), message="Routes planned")


@admin_bp.get("/routes")
@require_auth
@require_role("admin")
def list_routes():
    routes = route_planner_service.list_routes(
        g.org_id,
        route_date=optional_date("date", request.args.get("date")),
        status=request.args.get("status"),
    )
    include_stops = request.args.get("include_stops") == "true"
    return success([r.to_dict(include_stops=include_stops) for r in routes])


@admin_bp.post("/routes/<int:route_id>/cancel")
@require_auth
@require_role("admin")
def cancel_route(route_id: int):
    route = route_planner_service.cancel_route(g.org_id, route_id, reason=_body().get("reason"))
    return success(route.to_dict(include_stops=True), message="Route cancelled")


@admin_bp.put("/route-stops/<int:stop_id>/move")
@require_auth
@require_role("admin")
def move_stop(stop_id: int):
    """Body: {"route_id", "sequence"?}; 409 when either route has started."""
    data = _body()
    if data.get("route_id") is None:
        raise ValidationError("route_id is required", errors={"route_id": "required"})
    sequence = data.get("sequence")
    stop = route_planner_service.move_stop(
        g.org_id,
        stop_id,
        coerce_int("route_id", data["route_id"]),
        sequence=None if sequence is None else coerce_int("sequence", sequence),
    )
    return success(stop.to_dict(), message="Stop moved")


# =============================================================================
# BILLING
# =============================================================================

@admin_bp.get("/invoices")
@require_auth
@require_role("admin")
def list_invoices():
    user_id = request.args.get("user_id")
    invoices = billing_service.list_org_invoices(
        g.org_id,
        status=request.args.get("status"),
        user_id=None if user_id is None else coerce_int("user_id", user_id),
        limit=min(request.args.get("limit", 50, type=int), 100),
        offset=request.args.get("offset", 0, type=int),
    )
    return success([
        {**i.to_dict(), "customer_name": i.user.full_name, "customer_phone": i.user.phone}
        for i in invoices
    ])


@admin_bp.post("/invoices/generate")
@require_auth
@require_role("admin")
def generate_invoices():
    """
    Body, one of:
    - {"cycle": "weekly"|"monthly", "as_of"?}                  batch run
    - {"user_id", "period_start", "period_end"}                 single customer
    """
    data = _body()
    if data.get("user_id") is not None:
        user = require_user_in_org(coerce_int("user_id", data["user_id"]), g.org_id)
        period_start = optional_date("period_start", data.get("period_start"))
        period_end = optional_date("period_end", data.get("period_end"))
        if period_start is None or period_end is None:
            raise ValidationError("period_start and period_end are required")
        invoice = billing_service.generate_invoice(
            user.id, period_start, period_end, billing_cycle=data.get("billing_cycle")
        )
        if invoice is None:
            return success(None, message="Nothing to invoice")
        return success(invoice.to_dict(), message="Invoice generated", status=201)

    cycle = data.get("cycle") or "weekly"
    result = billing_service.generate_cycle_invoices(
        g.org_id, cycle, as_of=optional_date("as_of", data.get("as_of"))
    )
    return success(result, message="Invoices generated")


@admin_bp.post("/invoices/mark-overdue")
@require_auth
@require_role("admin")
def mark_overdue():
    count = billing_service.mark_overdue_invoices(
        g.org_id, as_of=optional_date("as_of", _body().get("as_of"))
    )
    return success({"marked_overdue": count})


@admin_bp.post("/payments/<int:payment_id>/complete")
@require_auth
@require_role("admin")
def complete_payment(payment_id: int):
    """Body: {"payment_id"? (gateway id), "payment_details"?}"""
    data = _body()
    details = data.get("payment_details")
    if details is not None and not isinstance(details, dict):
        raise ValidationError("payment_details must be an object")
    payment = billing_service.get_payment(payment_id, org_id=g.org_id)
    payment = billing_service.complete_payment(
        payment.id, gateway_payment_id=data.get("payment_id"), payment_details=details
    )
    current_app.logger.info("Admin %s confirmed payment %s", g.current_user.id, payment.id)
    return success(payment.to_dict(), message="Payment completed")


@admin_bp.post("/payments/<int:payment_id>/fail")
@require_auth
@require_role("admin")
def fail_payment(payment_id: int):
    """Body: {"reason"?}"""
    payment = billing_service.get_payment(payment_id, org_id=g.org_id)
    payment = billing_service.fail_payment(payment.id, reason=_body().get("reason"))
    return success(payment.to_dict(), message="Payment failed")


@admin_bp.post("/payments/<int:payment_id>/refund")
@require_auth
@require_role("admin")
def refund_payment(payment_id: int):
    """Body: {"amount_cents"? (default: everything refundable), "reason"?}"""
    data = _body()
    payment = billing_service.get_payment(payment_id, org_id=g.org_id)
    amount = data.get("amount_cents")
    refund = billing_service.refund_payment(
        payment.id,
        amount_cents=None if amount is None else coerce_int("amount_cents", amount),
        reason=data.get("reason"),
    )
    current_app.logger.info("Admin %s refunded payment %s", g.current_user.id, payment.id)
    return success(refund.to_dict(), message="Refund issued", status=201)
