# Overview: Turns subscription schedules into SubscriptionDelivery rows, idempotently.

"""
Delivery Materializer

WHY: The route planner, agents and billing all work on concrete rows, not
on recurrence rules. This service writes one SubscriptionDelivery per
(subscription, due date) and keeps future rows in line with the
subscription's current state.

RULES:
- Keyed on (subscription_id, delivery_date); the unique constraint is the
  exclusion mechanism when two runs race. A lost race surfaces internally
  as DuplicateDelivery; the run is rolled back and replayed, and the
  replay sees the winner's rows and no-ops. After MAX_REPLAYS lost races
  the caller gets ConflictError.
- First materialization snapshots quantity, unit price and address.
  unit_price_cents never changes afterwards.
- Re-runs only touch rows that are still 'scheduled': quantity/address are
  refreshed from the subscription when they differ.
- Dates that dropped out of the schedule are cancelled ('schedule_changed').
- Paused/cancelled subscriptions materialize nothing; their future
  scheduled rows are cancelled ('subscription_paused'/'subscription_cancelled').
- Rows cancelled for a pause or a schedule change come back as 'scheduled'
  when the date is due again and not in the past. This is the one
  corrective override applied by the system itself.
- Dates before today are never created.
- Inactive products are skipped and logged.
"""

from __future__ import annotations

from dataclasses import dataclass, asdict
from datetime import date, timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Subscription, SubscriptionDelivery
from dairy.time_utils import utcnow, today
from ..validation import ConflictError, NotFoundError
from . import event_service, lifecycle_service, route_planner_service
from .recurrence_service import InvalidRecurrence, expand


CANCEL_REASON_PAUSED = "subscription_paused"
CANCEL_REASON_CANCELLED = "subscription_cancelled"
CANCEL_REASON_SCHEDULE_CHANGED = "schedule_changed"
REINSTATABLE_REASONS = {CANCEL_REASON_PAUSED, CANCEL_REASON_SCHEDULE_CHANGED}
MAX_REPLAYS = 3


class DuplicateDelivery(Exception):
    """A concurrent run inserted the same (subscription_id, delivery_date) first."""


@dataclass
class MaterializeResult:
    created: int = 0
    refreshed: int = 0
    reinstated: int = 0
    cancelled: int = 0
    unchanged: int = 0
    skipped: int = 0
    failed: int = 0

    def merge(self, other: "MaterializeResult") -> "MaterializeResult":
        for key, value in asdict(other).items():
            setattr(self, key, getattr(self, key) + value)
        return self

    def to_dict(self) -> dict:
        return asdict(self)


def horizon_end(start: date) -> date:
    return start + timedelta(days=current_app.config["MATERIALIZE_HORIZON_DAYS"])


def _snapshot_total(quantity: int, unit_price_cents: int) -> int:
    return quantity * unit_price_cents


def _cancel_delivery(delivery: SubscriptionDelivery, reason: str) -> None:
    lifecycle_service.require_transition("delivery", delivery.status, "cancelled")
    delivery.status = "cancelled"
    delivery.cancel_reason = reason
    delivery.cancelled_at = utcnow()
    delivery.agent_id = None
    route_planner_service.cancel_pending_stop(subscription_delivery_id=delivery.id)


def cancel_future_deliveries(subscription: Subscription, reason: str, *, from_date: date) -> int:
    """Cancel scheduled rows on/after from_date. Caller owns the commit."""
    rows = (
        db.session.query(SubscriptionDelivery)
        .filter(
            SubscriptionDelivery.subscription_id == subscription.id,
            SubscriptionDelivery.status == "scheduled",
            SubscriptionDelivery.delivery_date >= from_date,
        )
        .all()
    )
    for row in rows:
        _cancel_delivery(row, reason)
    if rows:
        event_service.record_event(
            org_id=subscription.org_id,
            event_type="deliveries.cancelled",
            entity_type="subscription",
            entity_id=subscription.id,
            user_id=subscription.user_id,
            payload={"count": len(rows), "reason": reason, "from_date": from_date.isoformat()},
        )
    return len(rows)


def _refresh_snapshot(delivery: SubscriptionDelivery, subscription: Subscription) -> bool:
    changed = False
    if delivery.quantity != subscription.default_quantity:
        delivery.quantity = subscription.default_quantity
        delivery.total_cents = _snapshot_total(delivery.quantity, delivery.unit_price_cents)
        changed = True
    if delivery.address_id != subscription.address_id:
        delivery.address_id = subscription.address_id
        changed = True
    if changed:
        route_planner_service.refresh_pending_stop(delivery)
    return changed


def _materialize_once(subscription_id: int, date_from: date, date_to: date, as_of: date) -> MaterializeResult:
    result = MaterializeResult()

    subscription = db.session.get(Subscription, subscription_id)
    if subscription is None:
        raise NotFoundError(f"Subscription {subscription_id} not found")

    effective_from = max(date_from, as_of)

    if subscription.status != "active":
        reason = CANCEL_REASON_PAUSED if subscription.status == "paused" else CANCEL_REASON_CANCELLED
        result.cancelled += cancel_future_deliveries(subscription, reason, from_date=effective_from)
        return result

    product = subscription.product
    if product is None or not product.is_active:
        current_app.logger.warning(
            "Skipping subscription %s: product %s is inactive",
            subscription.id,
            subscription.product_id,
        )
        result.skipped += 1
        return result

    if effective_from > date_to:
        return result

    existing = {
        row.delivery_date: row
        for row in db.session.query(SubscriptionDelivery).filter(
            SubscriptionDelivery.subscription_id == subscription.id,
            SubscriptionDelivery.delivery_date >= effective_from,
            SubscriptionDelivery.delivery_date <= date_to,
        )
    }

    due = list(expand(subscription, effective_from, date_to))
    due_set = set(due)

    # Existing rows first: the stop lookups below autoflush, and new rows
    # must only reach the database in the guarded flush.
    for day in due:
        row = existing.get(day)
        if row is None:
            continue
        if row.status == "scheduled":
            if _refresh_snapshot(row, subscription):
                result.refreshed += 1
            else:
                result.unchanged += 1
        elif row.status == "cancelled" and row.cancel_reason in REINSTATABLE_REASONS:
            row.status = "scheduled"
            row.cancel_reason = None
            row.cancelled_at = None
            _refresh_snapshot(row, subscription)
            result.reinstated += 1
        else:
            result.unchanged += 1

    for day, row in existing.items():
        if day not in due_set and row.status == "scheduled":
            _cancel_delivery(row, CANCEL_REASON_SCHEDULE_CHANGED)
            result.cancelled += 1

    created = [
        SubscriptionDelivery(
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            product_id=subscription.product_id,
            address_id=subscription.address_id,
            delivery_date=day,
            quantity=subscription.default_quantity,
            unit_price_cents=product.price_cents,
            total_cents=_snapshot_total(subscription.default_quantity, product.price_cents),
            status="scheduled",
        )
        for day in due
        if day not in existing
    ]
    db.session.add_all(created)

    try:
        db.session.flush()
    except IntegrityError as exc:
        raise DuplicateDelivery(
            f"Subscription {subscription.id} materialized concurrently"
        ) from exc

    for row in created:
        event_service.record_event(
            org_id=subscription.org_id,
            event_type="delivery.scheduled",
            entity_type="subscription_delivery",
            entity_id=row.id,
            user_id=row.user_id,
            payload={"subscription_id": subscription.id, "delivery_date": row.delivery_date.isoformat()},
        )
    result.created += len(created)
    return result


def materialize_subscription(
    subscription_id: int,
    date_from: date,
    date_to: date,
    *,
    as_of: date | None = None,
) -> MaterializeResult:
    """
    Materialize one subscription over [date_from, date_to] and commit.

    Safe to call repeatedly and concurrently. A run that keeps losing the
    insert race raises ConflictError.
    """
    as_of = as_of or today()
    for attempt in range(1, MAX_REPLAYS + 2):
        try:
            result = _materialize_once(subscription_id, date_from, date_to, as_of)
            db.session.commit()
            return result
        except DuplicateDelivery as exc:
            db.session.rollback()
            if attempt > MAX_REPLAYS:
                current_app.logger.warning(
                    "Subscription %s still racing after %s replays", subscription_id, MAX_REPLAYS
                )
                raise ConflictError(
                    f"Subscription {subscription_id} is being materialized concurrently; try again"
                ) from exc
            current_app.logger.info(
                "Concurrent materialization for subscription %s; replaying (%s/%s)",
                subscription_id,
                attempt,
                MAX_REPLAYS,
            )


def materialize_horizon(subscription_id: int, *, as_of: date | None = None) -> MaterializeResult:
    as_of = as_of or today()
    return materialize_subscription(subscription_id, as_of, horizon_end(as_of), as_of=as_of)


def materialize_all(
    org_id: int,
    date_from: date,
    date_to: date,
    *,
    as_of: date | None = None,
) -> MaterializeResult:
    """
    Batch job: materialize every active subscription of an organization.

    One subscription's failure is logged and counted; the batch continues.
    """
    as_of = as_of or today()
    total = MaterializeResult()
    subscription_ids = [
        sid for (sid,) in db.session.query(Subscription.id)
        .filter(Subscription.org_id == org_id, Subscription.status == "active")
        .order_by(Subscription.id)
    ]

    for sid in subscription_ids:
        try:
            total.merge(materialize_subscription(sid, date_from, date_to, as_of=as_of))
        except (InvalidRecurrence, NotFoundError, ConflictError, IntegrityError):
            db.session.rollback()
            total.failed += 1
            current_app.logger.exception("Materialization failed for subscription %s", sid)

    current_app.logger.info(
        "Materialized org %s %s..%s: %s", org_id, date_from, date_to, total.to_dict()
    )
    return total
