# Overview: Subscription lifecycle: create, edit, pause/resume/cancel, keeping materialized deliveries in step.

from __future__ import annotations

from datetime import date

from flask import current_app

from ..extensions import db
from ..models import Address, Product, Subscription, SubscriptionDelivery, User
from ..models.auth import PAYMENT_MODES
from ..models.subscriptions import BILLING_CYCLES
from dairy.time_utils import today, utcnow
from ..validation import (
    ConflictError,
    ModelValidationPolicy,
    NotFoundError,
    ReferentialIntegrityViolation,
    ValidationError,
    enforce_quantity,
    require_choice,
    validate_payload,
)
from . import event_service, lifecycle_service, materializer_service
from .concurrency import lock_for_update, run_with_retry
from .recurrence_service import parse_recurrence, validate_date_window


CREATE_POLICY = ModelValidationPolicy(
    writable_fields={
        "product_id", "address_id", "default_quantity", "billing_cycle",
        "delivery_days", "start_date", "end_date", "payment_mode", "notes",
    },
    required_on_create={"product_id", "address_id", "billing_cycle"},
)

UPDATE_POLICY = ModelValidationPolicy(
    writable_fields={
        "address_id", "default_quantity", "billing_cycle", "delivery_days",
        "end_date", "payment_mode", "notes", "status",
    },
)


def _customer_address(user_id: int, address_id: int) -> Address:
    address = db.session.query(Address).filter_by(id=address_id, user_id=user_id).first()
    if address is None:
        raise ReferentialIntegrityViolation(f"Address {address_id} not found")
    return address


def _subscribable_product(org_id: int, product_id: int) -> Product:
    product = db.session.query(Product).filter_by(id=product_id, org_id=org_id).first()
    if product is None:
        raise ReferentialIntegrityViolation(f"Product {product_id} not found")
    if not product.is_active:
        raise ReferentialIntegrityViolation(f"Product {product.name} is not available", status_code=409)
    if not product.is_subscribable:
        raise ValidationError(f"Product {product.name} is not available on subscription")
    return product


def _validate_schedule(billing_cycle: str, delivery_days, start_date: date, end_date: date | None) -> list:
    require_choice("billing_cycle", billing_cycle, BILLING_CYCLES)
    if delivery_days is not None and not isinstance(delivery_days, list):
        raise ValidationError("delivery_days must be a list", errors={"delivery_days": "must be a list"})
    days = [] if billing_cycle == "daily" else list(delivery_days or [])
    if any(isinstance(d, bool) or not isinstance(d, int) for d in days):
        raise ValidationError("delivery_days must contain integers", errors={"delivery_days": "integers only"})
    days = sorted(set(days))
    parse_recurrence(billing_cycle, days)
    validate_date_window(start_date, end_date)
    return days


def create_subscription(user_id: int, payload: dict) -> Subscription:
    """
    Create a subscription and materialize its delivery horizon.
    """
    patch = validate_payload(model=Subscription, payload=payload, policy=CREATE_POLICY, partial=False)

    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")

    product = _subscribable_product(user.org_id, patch["product_id"])
    address = _customer_address(user.id, patch["address_id"])
    quantity = enforce_quantity("default_quantity", patch.get("default_quantity") or 1)

    start_date = patch.get("start_date") or today()
    if start_date < today():
        raise ValidationError("start_date cannot be in the past")
    end_date = patch.get("end_date")
    days = _validate_schedule(patch["billing_cycle"], patch.get("delivery_days"), start_date, end_date)

    payment_mode = patch.get("payment_mode") or user.payment_mode
    require_choice("payment_mode", payment_mode, PAYMENT_MODES)

    subscription = Subscription(
        org_id=user.org_id,
        user_id=user.id,
        product_id=product.id,
        address_id=address.id,
        default_quantity=quantity,
        billing_cycle=patch["billing_cycle"],
        delivery_days=days,
        start_date=start_date,
        end_date=end_date,
        payment_mode=payment_mode,
        status="active",
        notes=patch.get("notes"),
    )
    db.session.add(subscription)
    db.session.flush()
    event_service.record_event(
        org_id=subscription.org_id,
        event_type="subscription.created",
        entity_type="subscription",
        entity_id=subscription.id,
        user_id=subscription.user_id,
    )
    db.session.commit()

    result = materializer_service.materialize_horizon(subscription.id)
    current_app.logger.info(
        "Subscription %s created for user %s: %s deliveries scheduled",
        subscription.id,
        user.id,
        result.created,
    )
    return subscription


def _get_subscription(
    subscription_id: int,
    *,
    org_id: int | None = None,
    user_id: int | None = None,
    lock: bool = False,
) -> Subscription:
    query = db.session.query(Subscription).filter(Subscription.id == subscription_id)
    if org_id is not None:
        query = query.filter(Subscription.org_id == org_id)
    if user_id is not None:
        query = query.filter(Subscription.user_id == user_id)
    if lock:
        query = lock_for_update(query)
    subscription = query.first()
    if subscription is None:
        raise NotFoundError(f"Subscription {subscription_id} not found")
    return subscription


def get_subscription(subscription_id: int, *, org_id: int | None = None, user_id: int | None = None) -> Subscription:
    return _get_subscription(subscription_id, org_id=org_id, user_id=user_id)


def update_subscription(
    subscription_id: int,
    payload: dict,
    *,
    org_id: int | None = None,
    user_id: int | None = None,
) -> Subscription:
    """
    Edit quantity, schedule, address, end date or status.

    A status key is routed to pause/resume/cancel. Schedule edits re-run
    the materializer: future scheduled rows are refreshed, dropped dates
    are cancelled, new dates are created.
    """
    patch = validate_payload(model=Subscription, payload=payload, policy=UPDATE_POLICY, partial=True)
    status = patch.pop("status", None)

    subscription = _get_subscription(subscription_id, org_id=org_id, user_id=user_id)
    if subscription.status == "cancelled":
        raise ConflictError("Cancelled subscriptions cannot be changed")

    if patch:
        def _op() -> Subscription:
            sub = _get_subscription(subscription_id, org_id=org_id, user_id=user_id, lock=True)
            if "address_id" in patch:
                sub.address_id = _customer_address(sub.user_id, patch["address_id"]).id
            if "default_quantity" in patch:
                sub.default_quantity = enforce_quantity("default_quantity", patch["default_quantity"])
            if "payment_mode" in patch:
                sub.payment_mode = require_choice("payment_mode", patch["payment_mode"], PAYMENT_MODES)
            if "notes" in patch:
                sub.notes = patch["notes"]

            billing_cycle = patch.get("billing_cycle", sub.billing_cycle)
            delivery_days = patch["delivery_days"] if "delivery_days" in patch else sub.delivery_days
            end_date = patch["end_date"] if "end_date" in patch else sub.end_date
            if billing_cycle != sub.billing_cycle and "delivery_days" not in patch and billing_cycle != "daily":
                raise ValidationError("delivery_days is required when changing billing_cycle")
            sub.delivery_days = _validate_schedule(billing_cycle, delivery_days, sub.start_date, end_date)
            sub.billing_cycle = billing_cycle
            sub.end_date = end_date

            event_service.record_event(
                org_id=sub.org_id,
                event_type="subscription.updated",
                entity_type="subscription",
                entity_id=sub.id,
                user_id=sub.user_id,
                payload={"fields": sorted(patch)},
            )
            db.session.commit()
            return sub

        subscription = run_with_retry(_op)
        if subscription.status == "active":
            materializer_service.materialize_horizon(subscription.id)

    if status is not None and status != subscription.status:
        if status == "paused":
            subscription = pause_subscription(subscription.id, org_id=org_id, user_id=user_id)
        elif status == "active":
            subscription = resume_subscription(subscription.id, org_id=org_id, user_id=user_id)
        elif status == "cancelled":
            subscription = cancel_subscription(subscription.id, org_id=org_id, user_id=user_id)
        else:
            raise ValidationError(f"Invalid subscription status '{status}'")

    return subscription


def _change_status(
    subscription_id: int,
    new_status: str,
    *,
    org_id: int | None,
    user_id: int | None,
) -> Subscription:
    def _op() -> Subscription:
        sub = _get_subscription(subscription_id, org_id=org_id, user_id=user_id, lock=True)
        lifecycle_service.require_transition("subscription", sub.status, new_status)
        sub.status = new_status
        now = utcnow()
        if new_status == "paused":
            sub.paused_at = now
            materializer_service.cancel_future_deliveries(
                sub, materializer_service.CANCEL_REASON_PAUSED, from_date=today()
            )
        elif new_status == "cancelled":
            sub.cancelled_at = now
            materializer_service.cancel_future_deliveries(
                sub, materializer_service.CANCEL_REASON_CANCELLED, from_date=today()
            )
        else:
            sub.paused_at = None

        event_service.record_event(
            org_id=sub.org_id,
            event_type=f"subscription.{new_status}",
            entity_type="subscription",
            entity_id=sub.id,
            user_id=sub.user_id,
        )
        db.session.commit()
        return sub

    subscription = run_with_retry(_op)
    current_app.logger.info("Subscription %s is now %s", subscription.id, new_status)
    return subscription


def pause_subscription(subscription_id: int, *, org_id: int | None = None, user_id: int | None = None) -> Subscription:
    return _change_status(subscription_id, "paused", org_id=org_id, user_id=user_id)


def resume_subscription(subscription_id: int, *, org_id: int | None = None, user_id: int | None = None) -> Subscription:
    """Reactivate and reinstate the deliveries the pause cancelled."""
    subscription = _change_status(subscription_id, "active", org_id=org_id, user_id=user_id)
    materializer_service.materialize_horizon(subscription.id)
    return subscription


def cancel_subscription(subscription_id: int, *, org_id: int | None = None, user_id: int | None = None) -> Subscription:
    return _change_status(subscription_id, "cancelled", org_id=org_id, user_id=user_id)


def list_subscriptions(
    *,
    org_id: int | None = None,
    user_id: int | None = None,
    status: str | None = None,
) -> list[Subscription]:
    query = db.session.query(Subscription)
    if org_id is not None:
        query = query.filter(Subscription.org_id == org_id)
    if user_id is not None:
        query = query.filter(Subscription.user_id == user_id)
    if status:
        query = query.filter(Subscription.status == status)
    return query.order_by(Subscription.created_at.desc(), Subscription.id.desc()).all()


def list_deliveries(
    subscription: Subscription,
    *,
    date_from: date | None = None,
    date_to: date | None = None,
    status: str | None = None,
) -> list[SubscriptionDelivery]:
    query = db.session.query(SubscriptionDelivery).filter(
        SubscriptionDelivery.subscription_id == subscription.id
    )
    if date_from is not None:
        query = query.filter(SubscriptionDelivery.delivery_date >= date_from)
    if date_to is not None:
        query = query.filter(SubscriptionDelivery.delivery_date <= date_to)
    if status:
        query = query.filter(SubscriptionDelivery.status == status)
    return query.order_by(SubscriptionDelivery.delivery_date).all()
