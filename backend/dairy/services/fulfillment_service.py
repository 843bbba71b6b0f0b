# Overview: Agent delivery execution: route start, stop and delivery updates, status mirroring and admin overrides.

"""
Fulfillment

WHY: Agents report progress either per stop (route view) or per delivery
(delivery list). Both views must agree, so every change is mirrored:

    stop in_transit  -> delivery in_transit (via picked_up) / order out_for_delivery
    stop delivered   -> delivery / order delivered
    stop missed      -> delivery failed (orders stay with the admin)
    stop cancelled   -> target untouched

    delivery in_transit -> stop in_transit
    delivery delivered  -> stop delivered
    delivery failed     -> stop missed

Multi-step changes walk the legal path one step at a time, so every
intermediate transition is checked and recorded. A stop update on a
'planned' route starts the route; the route completes when its last stop
reaches a terminal status.

Delivered targets trigger billing: prepaid deliveries and orders are
debited immediately; postpaid ones wait for the invoice run.
"""

from __future__ import annotations

from datetime import date

from flask import current_app

from ..extensions import db
from ..models import Route, RouteStop, SubscriptionDelivery
from ..models.subscriptions import DELIVERY_STATUSES, PROOF_TYPES
from dairy.time_utils import today, utcnow
from ..validation import NotFoundError, ValidationError, coerce_int, require_choice
from . import billing_service, event_service, lifecycle_service, order_service, route_planner_service
from .concurrency import lock_for_update, run_with_retry


AGENT_DELIVERY_STATUSES = ("picked_up", "in_transit", "delivered", "failed")
AGENT_STOP_STATUSES = ("in_transit", "delivered", "missed")

DELIVERY_TIMESTAMPS = {
    "picked_up": "picked_up_at",
    "in_transit": "in_transit_at",
    "delivered": "delivered_at",
    "failed": "failed_at",
    "cancelled": "cancelled_at",
}

# stop status -> target status
STOP_TO_DELIVERY = {"in_transit": "in_transit", "delivered": "delivered", "missed": "failed"}
STOP_TO_ORDER = {"in_transit": "out_for_delivery", "delivered": "delivered"}
# delivery status -> stop status
DELIVERY_TO_STOP = {"in_transit": "in_transit", "delivered": "delivered", "failed": "missed"}
OVERRIDE_TO_STOP = {"delivered": "delivered", "failed": "missed", "cancelled": "cancelled"}


def _validate_rating(value):
    if value is None:
        return None
    rating = coerce_int("customer_rating", value)
    if not 1 <= rating <= 5:
        raise ValidationError("customer_rating must be between 1 and 5")
    return rating


# =============================================================================
# SINGLE STEPS (flush-only; callers commit)
# =============================================================================

def _apply_delivery_status(delivery: SubscriptionDelivery, new_status: str) -> None:
    lifecycle_service.require_transition("delivery", delivery.status, new_status)
    old_status = delivery.status
    delivery.status = new_status
    setattr(delivery, DELIVERY_TIMESTAMPS[new_status], utcnow())

    if new_status == "delivered":
        billing_service.charge_prepaid_delivery(delivery)

    event_service.record_event(
        org_id=delivery.subscription.org_id,
        event_type=f"delivery.{new_status}",
        entity_type="subscription_delivery",
        entity_id=delivery.id,
        user_id=delivery.user_id,
        payload={"from_status": old_status, "to_status": new_status},
    )


def _walk_delivery(delivery: SubscriptionDelivery, target_status: str) -> None:
    for step in lifecycle_service.transition_path("delivery", delivery.status, target_status):
        _apply_delivery_status(delivery, step)


def _start_route(route: Route) -> None:
    lifecycle_service.require_transition("route", route.status, "in_progress")
    route.status = "in_progress"
    route.start_time = utcnow()
    event_service.record_event(
        org_id=route.org_id,
        event_type="route.started",
        entity_type="route",
        entity_id=route.id,
        user_id=route.agent_id,
    )


def _apply_stop_status(stop: RouteStop, new_status: str) -> None:
    if stop.route.status == "planned":
        _start_route(stop.route)

    lifecycle_service.require_transition("route_stop", stop.status, new_status)
    stop.status = new_status
    now = utcnow()
    if new_status in ("delivered", "missed"):
        stop.arrived_at = stop.arrived_at or now
    if new_status == "delivered":
        stop.delivered_at = now


def _walk_stop(stop: RouteStop, target_status: str) -> None:
    for step in lifecycle_service.transition_path("route_stop", stop.status, target_status):
        _apply_stop_status(stop, step)


def _mirror_to_target(stop: RouteStop) -> None:
    if stop.stop_type == "subscription" and stop.subscription_delivery is not None:
        target_status = STOP_TO_DELIVERY.get(stop.status)
        if target_status and stop.subscription_delivery.status != target_status:
            _walk_delivery(stop.subscription_delivery, target_status)
    elif stop.stop_type == "order" and stop.order is not None:
        target_status = STOP_TO_ORDER.get(stop.status)
        if target_status and stop.order.status != target_status:
            order_service.walk_status(stop.order, target_status)
        elif stop.status == "missed":
            current_app.logger.warning(
                "Order %s missed on route %s; left at %s for follow-up",
                stop.order.order_number,
                stop.route_id,
                stop.order.status,
            )


# =============================================================================
# AGENT OPERATIONS
# =============================================================================

def start_route(agent_id: int, route_date: date | None = None) -> Route:
    """Agent starts the day's planned route."""
    route_date = route_date or today()

    def _op() -> Route:
        route = lock_for_update(
            db.session.query(Route).filter_by(agent_id=agent_id, route_date=route_date)
        ).first()
        if route is None:
            raise NotFoundError(f"No route for {route_date.isoformat()}")
        _start_route(route)
        db.session.commit()
        return route

    route = run_with_retry(_op)
    current_app.logger.info("Agent %s started route %s", agent_id, route.id)
    return route


def update_stop(
    agent_id: int,
    stop_id: int,
    status: str,
    *,
    delivery_notes: str | None = None,
    proof_image: str | None = None,
    customer_rating=None,
) -> RouteStop:
    """
    Agent reports progress on a stop; the target delivery/order follows.
    """
    require_choice("status", status, AGENT_STOP_STATUSES)
    rating = _validate_rating(customer_rating)

    def _op() -> RouteStop:
        stop = lock_for_update(db.session.query(RouteStop).filter_by(id=stop_id)).first()
        if stop is None or stop.route.agent_id != agent_id:
            raise NotFoundError(f"Route stop {stop_id} not found")

        _walk_stop(stop, status)
        if delivery_notes is not None:
            stop.delivery_notes = delivery_notes
        if proof_image is not None:
            stop.proof_image = proof_image
        if rating is not None:
            stop.customer_rating = rating

        _mirror_to_target(stop)
        route_planner_service.maybe_complete_route(stop.route)
        db.session.commit()
        return stop

    return run_with_retry(_op)


def update_delivery(
    agent_id: int,
    delivery_id: int,
    status: str,
    *,
    delivery_notes: str | None = None,
    proof_type: str | None = None,
    proof_data: str | None = None,
    customer_rating=None,
    customer_feedback: str | None = None,
) -> SubscriptionDelivery:
    """
    Agent reports progress on an assigned delivery; its active stop follows.
    """
    require_choice("status", status, AGENT_DELIVERY_STATUSES)
    if proof_type is not None:
        require_choice("proof_type", proof_type, PROOF_TYPES)
    rating = _validate_rating(customer_rating)

    def _op() -> SubscriptionDelivery:
        delivery = lock_for_update(
            db.session.query(SubscriptionDelivery).filter_by(id=delivery_id)
        ).first()
        if delivery is None or delivery.agent_id != agent_id:
            raise NotFoundError(f"Delivery {delivery_id} not found")

        # The scheduled -> delivered shortcut is rejected; agents report each step
        lifecycle_service.require_transition("delivery", delivery.status, status)
        _apply_delivery_status(delivery, status)

        if delivery_notes is not None:
            delivery.delivery_notes = delivery_notes
        if proof_type is not None:
            delivery.proof_type = proof_type
            delivery.proof_data = proof_data
        if rating is not None:
            delivery.customer_rating = rating
        if customer_feedback is not None:
            delivery.customer_feedback = customer_feedback

        stop = route_planner_service.active_stop_for(subscription_delivery_id=delivery.id)
        stop_status = DELIVERY_TO_STOP.get(status)
        if stop is not None and stop_status and stop.status != stop_status:
            _walk_stop(stop, stop_status)
            if delivery_notes is not None:
                stop.delivery_notes = delivery_notes
            if rating is not None:
                stop.customer_rating = rating
            route_planner_service.maybe_complete_route(stop.route)

        db.session.commit()
        return delivery

    return run_with_retry(_op)


# =============================================================================
# ADMIN OVERRIDE
# =============================================================================

def override_delivery_status(
    org_id: int,
    delivery_id: int,
    status: str,
    *,
    reason: str,
    actor_user_id: int | None = None,
) -> SubscriptionDelivery:
    """
    Corrective override: set any status, bypassing the state machine.

    Always logged and recorded as an event. Terminal overrides are copied
    onto the active stop; delivered overrides still bill prepaid customers once
    and leaving delivered credits the charge back. Invoiced deliveries cannot
    leave delivered.
    """
    require_choice("status", status, DELIVERY_STATUSES)
    if not reason or not str(reason).strip():
        raise ValidationError("reason is required for a status override", errors={"reason": "required"})

    def _op() -> SubscriptionDelivery:
        delivery = lock_for_update(
            db.session.query(SubscriptionDelivery).filter_by(id=delivery_id)
        ).first()
        if delivery is None or delivery.subscription.org_id != org_id:
            raise NotFoundError(f"Delivery {delivery_id} not found")
        if delivery.status == status:
            raise ValidationError(f"Delivery is already {status}")

        old_status = delivery.status
        if old_status == "delivered":
            billing_service.reverse_prepaid_delivery_charge(delivery, reason=reason)
        delivery.status = status
        stamp = DELIVERY_TIMESTAMPS.get(status)
        if stamp:
            setattr(delivery, stamp, utcnow())
        if status == "cancelled":
            delivery.cancel_reason = "admin_override"
        if status == "delivered":
            billing_service.charge_prepaid_delivery(delivery)

        stop_status = OVERRIDE_TO_STOP.get(status)
        stop = route_planner_service.active_stop_for(subscription_delivery_id=delivery.id)
        if stop is not None and stop_status and not lifecycle_service.ROUTE_STOP.is_terminal(stop.status):
            stop.status = stop_status
            if stop_status == "delivered":
                stop.delivered_at = utcnow()
            if stop.route.status == "planned" and stop_status == "cancelled":
                route_planner_service.resequence_route(stop.route)
            else:
                route_planner_service.maybe_complete_route(stop.route)

        event_service.record_event(
            org_id=org_id,
            event_type="delivery.override",
            entity_type="subscription_delivery",
            entity_id=delivery.id,
            user_id=delivery.user_id,
            payload={
                "from_status": old_status,
                "to_status": status,
                "reason": reason,
                "actor_user_id": actor_user_id,
            },
        )
        db.session.commit()
        current_app.logger.warning(
            "Delivery %s status overridden %s -> %s by user %s: %s",
            delivery.id,
            old_status,
            status,
            actor_user_id,
            reason,
        )
        return delivery

    return run_with_retry(_op)
