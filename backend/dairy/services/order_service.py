# Overview: One-off orders: checkout with stock reservation, fees and tax, status changes and cancellation.

"""
Order Service

Totals are fixed at checkout:
    subtotal     = sum(quantity * unit price)
    delivery fee = DELIVERY_FEE_CENTS unless subtotal >= FREE_DELIVERY_THRESHOLD_CENTS
    tax          = TAX_RATE_BPS of the subtotal (the delivery fee is not taxed)
    total        = subtotal + delivery fee + tax

Stock is decremented at checkout under a row lock and restored when the
order is cancelled or refunded before delivery. The customer's payment
mode is snapshotted so billing does not change if the customer switches
modes later.
"""

from __future__ import annotations

from datetime import date, timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Address, Order, OrderItem, Product, User
from dairy.time_utils import today, utcnow
from ..validation import (
    ConflictError,
    NotFoundError,
    ReferentialIntegrityViolation,
    ValidationError,
    coerce_date,
    coerce_int,
    enforce_quantity,
)
from . import billing_service, document_service, event_service, lifecycle_service, route_planner_service
from .concurrency import lock_for_update, run_with_retry


CUSTOMER_CANCELLABLE = ("pending", "confirmed")
STATUS_TIMESTAMPS = {
    "confirmed": "confirmed_at",
    "delivered": "delivered_at",
    "cancelled": "cancelled_at",
    "refunded": "refunded_at",
}


def compute_totals(subtotal_cents: int) -> dict:
    config = current_app.config
    fee = 0 if subtotal_cents >= config["FREE_DELIVERY_THRESHOLD_CENTS"] else config["DELIVERY_FEE_CENTS"]
    tax = billing_service.compute_tax(subtotal_cents)
    return {
        "subtotal_cents": subtotal_cents,
        "delivery_fee_cents": fee,
        "tax_cents": tax,
        "total_cents": subtotal_cents + fee + tax,
    }


def verify_order_totals(order: Order) -> bool:
    """True when stored totals agree with the items."""
    subtotal = sum(item.total_cents for item in order.items)
    lines_ok = all(item.total_cents == item.quantity * item.unit_price_cents for item in order.items)
    return (
        lines_ok
        and order.subtotal_cents == subtotal
        and order.total_cents == order.subtotal_cents + order.delivery_fee_cents + order.tax_cents
    )


def _normalize_items(items) -> dict[int, int]:
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list", errors={"items": "required"})

    quantities: dict[int, int] = {}
    for index, raw in enumerate(items):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{index}] must be an object")
        if "product_id" not in raw:
            raise ValidationError(f"items[{index}].product_id is required")
        product_id = coerce_int(f"items[{index}].product_id", raw["product_id"])
        quantity = coerce_int(f"items[{index}].quantity", raw.get("quantity", 1))
        enforce_quantity(f"items[{index}].quantity", quantity)
        quantities[product_id] = quantities.get(product_id, 0) + quantity

    for product_id, quantity in quantities.items():
        enforce_quantity(f"quantity for product {product_id}", quantity)
    return quantities


def _customer_address(user: User, address_id) -> Address:
    address_id = coerce_int("address_id", address_id)
    address = db.session.query(Address).filter_by(id=address_id, user_id=user.id).first()
    if address is None:
        raise ReferentialIntegrityViolation(f"Address {address_id} not found")
    return address


def create_order(
    user_id: int,
    *,
    address_id,
    items,
    delivery_date=None,
    notes: str | None = None,
) -> Order:
    """
    Check out an order for a customer.

    Raises:
        ValidationError: bad items/date
        ReferentialIntegrityViolation: unknown address/product (404) or inactive product (409)
        ConflictError: insufficient stock
    """
    quantities = _normalize_items(items)
    if delivery_date is None:
        when = today() + timedelta(days=1)
    else:
        when = coerce_date("delivery_date", delivery_date)
    if when < today():
        raise ValidationError("delivery_date cannot be in the past")

    def _op() -> Order:
        user = db.session.get(User, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        address = _customer_address(user, address_id)

        order_items = []
        subtotal = 0
        for product_id in sorted(quantities):
            quantity = quantities[product_id]
            product = lock_for_update(
                db.session.query(Product).filter_by(id=product_id, org_id=user.org_id)
            ).first()
            if product is None:
                raise ReferentialIntegrityViolation(f"Product {product_id} not found")
            if not product.is_active:
                raise ReferentialIntegrityViolation(f"Product {product.name} is not available", status_code=409)
            if product.stock_quantity < quantity:
                raise ConflictError(
                    f"Insufficient stock for {product.name}: requested {quantity}, available {product.stock_quantity}"
                )
            product.stock_quantity -= quantity
            line_total = quantity * product.price_cents
            subtotal += line_total
            order_items.append(OrderItem(
                product_id=product.id,
                quantity=quantity,
                unit_price_cents=product.price_cents,
                total_cents=line_total,
            ))

        order = Order(
            org_id=user.org_id,
            order_number=document_service.allocate(user.org_id, document_service.ORDER),
            user_id=user.id,
            address_id=address.id,
            delivery_date=when,
            payment_mode=user.payment_mode,
            status="pending",
            notes=notes,
            items=order_items,
            **compute_totals(subtotal),
        )
        db.session.add(order)
        db.session.flush()

        event_service.record_event(
            org_id=order.org_id,
            event_type="order.created",
            entity_type="order",
            entity_id=order.id,
            user_id=order.user_id,
            payload={"order_number": order.order_number, "total_cents": order.total_cents},
        )
        db.session.commit()
        return order

    order = run_with_retry(_op, retry_on=document_service.SEQUENCE_RACE_ERRORS)
    current_app.logger.info("Order %s created for user %s", order.order_number, user_id)
    return order


def _restore_stock(order: Order) -> None:
    for item in order.items:
        product = lock_for_update(db.session.query(Product).filter_by(id=item.product_id)).first()
        if product is not None:
            product.stock_quantity += item.quantity


def apply_status(order: Order, new_status: str, *, reason: str | None = None) -> None:
    """
    Move an order one legal step. Flushes; the caller owns the commit.

    delivered posts the prepaid debit; cancelled/refunded restore stock and
    release the order's pending route stop.
    """
    lifecycle_service.require_transition("order", order.status, new_status)
    old_status = order.status
    order.status = new_status

    stamp = STATUS_TIMESTAMPS.get(new_status)
    if stamp:
        setattr(order, stamp, utcnow())

    if new_status == "delivered":
        billing_service.charge_prepaid_order(order)
    elif new_status in ("cancelled", "refunded"):
        _restore_stock(order)
        route_planner_service.cancel_pending_stop(order_id=order.id)
        if reason:
            order.notes = f"{order.notes}\n{reason}" if order.notes else reason

    event_service.record_event(
        org_id=order.org_id,
        event_type=f"order.{new_status}",
        entity_type="order",
        entity_id=order.id,
        user_id=order.user_id,
        payload={"from_status": old_status, "to_status": new_status},
    )


def walk_status(order: Order, target_status: str) -> None:
    """Apply every legal step from the current status to target_status."""
    for step in lifecycle_service.transition_path("order", order.status, target_status):
        apply_status(order, step)


def _get_order(order_id: int, *, org_id: int | None = None, user_id: int | None = None, lock: bool = False) -> Order:
    query = db.session.query(Order).filter(Order.id == order_id)
    if org_id is not None:
        query = query.filter(Order.org_id == org_id)
    if user_id is not None:
        query = query.filter(Order.user_id == user_id)
    if lock:
        query = lock_for_update(query)
    order = query.first()
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")
    return order


def cancel_order(user_id: int, order_id: int, reason: str | None = None) -> Order:
    """Customer cancellation; only pending/confirmed orders."""
    def _op() -> Order:
        order = _get_order(order_id, user_id=user_id, lock=True)
        if order.status not in CUSTOMER_CANCELLABLE:
            raise ConflictError(f"Order cannot be cancelled once it is {order.status}")
        apply_status(order, "cancelled", reason=reason)
        db.session.commit()
        return order

    return run_with_retry(_op)


def update_order_status(org_id: int, order_id: int, new_status: str, reason: str | None = None) -> Order:
    """Admin status change; one legal step at a time."""
    def _op() -> Order:
        order = _get_order(order_id, org_id=org_id, lock=True)
        apply_status(order, new_status, reason=reason)
        db.session.commit()
        return order

    order = run_with_retry(_op, retry_on=(IntegrityError,))
    current_app.logger.info("Order %s moved to %s", order.order_number, new_status)
    return order


def get_order(order_id: int, *, org_id: int | None = None, user_id: int | None = None) -> Order:
    return _get_order(order_id, org_id=org_id, user_id=user_id)


def list_orders(
    *,
    org_id: int | None = None,
    user_id: int | None = None,
    status: str | None = None,
    delivery_date: date | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[Order]:
    query = db.session.query(Order)
    if org_id is not None:
        query = query.filter(Order.org_id == org_id)
    if user_id is not None:
        query = query.filter(Order.user_id == user_id)
    if status:
        query = query.filter(Order.status == status)
    if delivery_date is not None:
        query = query.filter(Order.delivery_date == delivery_date)
    return query.order_by(Order.created_at.desc(), Order.id.desc()).offset(offset).limit(limit).all()
