# Overview: Invoices, payments, prepaid charges and refunds, all posted through the customer ledger.

"""
Billing Aggregator

WHY: Deliveries and orders turn into money here. Prepaid customers are
debited as each delivery/order is completed and pay ahead with topups.
Postpaid customers are invoiced per billing period and settle invoices.

DESIGN PRINCIPLES:
- Money is integer minor units (paise/cents); tax is rounded half-up
- Every money movement is a LedgerEntry (see ledger_service)
- A delivery/order is billed exactly once: charged_at (prepaid) or
  invoice_id (postpaid) marks it
- Invoice: total = subtotal + tax, balance = total - paid_amount, and
  paid_amount is recomputable from the payments applied to the invoice
- Refunds are Payment rows of type 'refund' pointing at the original
"""

from __future__ import annotations

import calendar
from datetime import date, timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..extensions import db
from ..models import Invoice, Order, Payment, Subscription, SubscriptionDelivery, User
from ..models.billing import PAYMENT_METHODS
from dairy.time_utils import today, utcnow
from ..validation import ConflictError, NotFoundError, ValidationError
from . import document_service, event_service, ledger_service, lifecycle_service
from .concurrency import lock_for_update, run_with_retry
from .document_service import SEQUENCE_RACE_ERRORS


class PaymentError(Exception):
    """Raised for payment operation errors."""
    pass


LEDGER_RACE_ERRORS = (IntegrityError,)
RETRY_ON = tuple(set(SEQUENCE_RACE_ERRORS + LEDGER_RACE_ERRORS))


# =============================================================================
# TAX
# =============================================================================

def compute_tax(amount_cents: int, rate_bps: int | None = None) -> int:
    """Tax on amount_cents at rate_bps basis points, rounded half-up."""
    if rate_bps is None:
        rate_bps = current_app.config["TAX_RATE_BPS"]
    return (amount_cents * rate_bps + 5000) // 10000


# =============================================================================
# PREPAID CHARGES (called from fulfillment; caller owns the commit)
# =============================================================================

def charge_prepaid_delivery(delivery: SubscriptionDelivery):
    """
    Debit a prepaid subscriber for a delivered delivery (total plus tax).

    Idempotent: a delivery with charged_at set is never debited again.
    Returns the ledger entry, or None when nothing was posted.
    """
    if delivery.charged_at is not None or delivery.invoice_id is not None:
        return None
    if delivery.subscription.payment_mode != "prepaid" or delivery.total_cents <= 0:
        return None

    tax = compute_tax(delivery.total_cents)
    entry = ledger_service.append_entry(
        user_id=delivery.user_id,
        entry_type="debit",
        amount_cents=delivery.total_cents + tax,
        description=f"Delivery on {delivery.delivery_date.isoformat()}",
        subscription_delivery_id=delivery.id,
        details={"subtotal_cents": delivery.total_cents, "tax_cents": tax},
    )
    delivery.charged_at = utcnow()
    return entry


def reverse_prepaid_delivery_charge(delivery: SubscriptionDelivery, reason: str | None = None):
    """
    Credit back whatever is still debited for a delivery and clear charged_at.

    Invoiced deliveries are settled through the invoice and are not touched.
    Returns the credit entry, or None when nothing was outstanding.
    """
    if delivery.invoice_id is not None:
        raise ConflictError(f"Delivery {delivery.id} is already invoiced; refund the invoice payment instead")

    entry = None
    outstanding = ledger_service.delivery_net_cents(delivery.id)
    if outstanding > 0:
        entry = ledger_service.append_entry(
            user_id=delivery.user_id,
            entry_type="credit",
            amount_cents=outstanding,
            description=f"Reversal of delivery on {delivery.delivery_date.isoformat()}",
            subscription_delivery_id=delivery.id,
            details={"reason": reason} if reason else None,
        )
    delivery.charged_at = None
    return entry


def charge_prepaid_order(order: Order):
    """Debit a prepaid customer for a delivered order. Idempotent on charged_at."""
    if order.charged_at is not None or order.invoice_id is not None:
        return None
    if order.payment_mode != "prepaid" or order.total_cents <= 0:
        return None

    entry = ledger_service.append_entry(
        user_id=order.user_id,
        entry_type="debit",
        amount_cents=order.total_cents,
        description=f"Order {order.order_number}",
        reference_number=order.order_number,
        order_id=order.id,
    )
    order.charged_at = utcnow()
    return entry


# =============================================================================
# INVOICES
# =============================================================================

def due_days_for(billing_cycle: str | None) -> int:
    if billing_cycle == "monthly":
        return current_app.config["MONTHLY_INVOICE_DUE_DAYS"]
    return current_app.config["WEEKLY_INVOICE_DUE_DAYS"]


# invoice cycle -> subscription billing cycles it covers
CYCLE_SUBSCRIPTIONS = {
    "daily": ("daily", "weekly"),
    "weekly": ("daily", "weekly"),
    "monthly": ("monthly",),
}


def _uninvoiced_deliveries(
    user_id: int,
    period_start: date,
    period_end: date,
    billing_cycle: str | None = None,
) -> list[SubscriptionDelivery]:
    """Without a billing_cycle every postpaid subscription is included."""
    query = (
        db.session.query(SubscriptionDelivery)
        .join(Subscription, Subscription.id == SubscriptionDelivery.subscription_id)
        .filter(
            SubscriptionDelivery.user_id == user_id,
            SubscriptionDelivery.status == "delivered",
            SubscriptionDelivery.invoice_id.is_(None),
            SubscriptionDelivery.charged_at.is_(None),
            SubscriptionDelivery.delivery_date >= period_start,
            SubscriptionDelivery.delivery_date <= period_end,
            Subscription.payment_mode == "postpaid",
        )
    )
    if billing_cycle in CYCLE_SUBSCRIPTIONS:
        query = query.filter(Subscription.billing_cycle.in_(CYCLE_SUBSCRIPTIONS[billing_cycle]))
    return query.order_by(SubscriptionDelivery.delivery_date, SubscriptionDelivery.id).all()


def _uninvoiced_orders(user_id: int, period_start: date, period_end: date) -> list[Order]:
    return (
        db.session.query(Order)
        .filter(
            Order.user_id == user_id,
            Order.status == "delivered",
            Order.payment_mode == "postpaid",
            Order.invoice_id.is_(None),
            Order.charged_at.is_(None),
            Order.delivery_date >= period_start,
            Order.delivery_date <= period_end,
        )
        .order_by(Order.delivery_date, Order.id)
        .all()
    )


def _build_invoice(
    user: User,
    period_start: date,
    period_end: date,
    billing_cycle: str | None,
    invoice_date: date,
) -> Invoice | None:
    deliveries = _uninvoiced_deliveries(user.id, period_start, period_end, billing_cycle)
    orders = _uninvoiced_orders(user.id, period_start, period_end)
    if not deliveries and not orders:
        return None

    line_items = []
    delivery_subtotal = 0
    for d in deliveries:
        product_name = d.product.name if d.product else f"Product {d.product_id}"
        line_items.append({
            "kind": "delivery",
            "reference_id": d.id,
            "date": d.delivery_date.isoformat(),
            "description": f"{product_name} x {d.quantity}",
            "quantity": d.quantity,
            "unit_price_cents": d.unit_price_cents,
            "total_cents": d.total_cents,
        })
        delivery_subtotal += d.total_cents

    order_subtotal = 0
    for o in orders:
        line_items.append({
            "kind": "order",
            "reference_id": o.id,
            "date": o.delivery_date.isoformat(),
            "description": f"Order {o.order_number}",
            "quantity": 1,
            "unit_price_cents": o.total_cents,
            "total_cents": o.total_cents,
        })
        order_subtotal += o.total_cents

    subtotal = delivery_subtotal + order_subtotal
    # Orders already carry their own tax
    tax = compute_tax(delivery_subtotal)
    total = subtotal + tax

    invoice = Invoice(
        org_id=user.org_id,
        invoice_number=document_service.allocate(user.org_id, document_service.INVOICE),
        user_id=user.id,
        invoice_date=invoice_date,
        due_date=invoice_date + timedelta(days=due_days_for(billing_cycle)),
        period_start=period_start,
        period_end=period_end,
        billing_cycle=billing_cycle,
        subtotal_cents=subtotal,
        tax_cents=tax,
        total_cents=total,
        paid_amount_cents=0,
        balance_cents=total,
        status="draft",
        line_items=line_items,
    )
    db.session.add(invoice)
    db.session.flush()

    for d in deliveries:
        d.invoice_id = invoice.id
    for o in orders:
        o.invoice_id = invoice.id

    lifecycle_service.require_transition("invoice", invoice.status, "sent")
    invoice.status = "sent"
    invoice.sent_at = utcnow()

    if total > 0:
        ledger_service.append_entry(
            user_id=user.id,
            entry_type="debit",
            amount_cents=total,
            description=f"Invoice {invoice.invoice_number}",
            reference_number=invoice.invoice_number,
            invoice_id=invoice.id,
        )
    event_service.record_event(
        org_id=user.org_id,
        event_type="invoice.sent",
        entity_type="invoice",
        entity_id=invoice.id,
        user_id=user.id,
        payload={"invoice_number": invoice.invoice_number, "total_cents": total},
    )
    return invoice


def generate_invoice(
    user_id: int,
    period_start: date,
    period_end: date,
    *,
    billing_cycle: str | None = None,
    as_of: date | None = None,
) -> Invoice | None:
    """
    Invoice a postpaid customer's delivered, not-yet-invoiced work in the period.

    Returns None when there is nothing to bill. Commits.
    """
    if period_end < period_start:
        raise ValidationError("period_end cannot be before period_start")

    def _op() -> Invoice | None:
        user = db.session.get(User, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        invoice = _build_invoice(user, period_start, period_end, billing_cycle, as_of or today())
        db.session.commit()
        return invoice

    return run_with_retry(_op, retry_on=RETRY_ON)


def cycle_period(cycle: str, as_of: date) -> tuple[date, date]:
    """
    Billing period that closes before as_of.

    weekly: the previous 7 days; monthly: the previous calendar month.
    """
    if cycle == "weekly":
        return as_of - timedelta(days=7), as_of - timedelta(days=1)
    if cycle == "monthly":
        year, month = (as_of.year, as_of.month - 1) if as_of.month > 1 else (as_of.year - 1, 12)
        return date(year, month, 1), date(year, month, calendar.monthrange(year, month)[1])
    raise ValidationError(f"Unknown invoice cycle '{cycle}'. Must be 'weekly' or 'monthly'")


def _cycle_user_ids(org_id: int, cycle: str, period_start: date, period_end: date) -> list[int]:
    sub_cycles = CYCLE_SUBSCRIPTIONS[cycle]
    subscriber_ids = {
        uid for (uid,) in db.session.query(Subscription.user_id)
        .filter(
            Subscription.org_id == org_id,
            Subscription.payment_mode == "postpaid",
            Subscription.billing_cycle.in_(sub_cycles),
        )
        .distinct()
    }
    if cycle == "weekly":
        # Postpaid one-off orders of customers without a monthly subscription
        monthly_ids = {
            uid for (uid,) in db.session.query(Subscription.user_id)
            .filter(
                Subscription.org_id == org_id,
                Subscription.payment_mode == "postpaid",
                Subscription.billing_cycle == "monthly",
            )
            .distinct()
        }
        order_user_ids = {
            uid for (uid,) in db.session.query(Order.user_id)
            .filter(
                Order.org_id == org_id,
                Order.payment_mode == "postpaid",
                Order.status == "delivered",
                Order.invoice_id.is_(None),
                Order.delivery_date >= period_start,
                Order.delivery_date <= period_end,
            )
            .distinct()
        }
        subscriber_ids |= order_user_ids - monthly_ids
    return sorted(subscriber_ids)


def generate_cycle_invoices(org_id: int, cycle: str, as_of: date | None = None) -> dict:
    """
    Batch job: invoice every postpaid customer on the given cycle.

    One customer's failure is logged and does not stop the batch.
    """
    as_of = as_of or today()
    period_start, period_end = cycle_period(cycle, as_of)

    generated = []
    empty = 0
    failed = 0
    for user_id in _cycle_user_ids(org_id, cycle, period_start, period_end):
        try:
            invoice = generate_invoice(
                user_id, period_start, period_end, billing_cycle=cycle, as_of=as_of
            )
        except (ValidationError, NotFoundError, SQLAlchemyError):
            db.session.rollback()
            failed += 1
            current_app.logger.exception("Invoice generation failed for user %s", user_id)
            continue
        if invoice is None:
            empty += 1
        else:
            generated.append(invoice.id)

    current_app.logger.info(
        "%s invoices for org %s (%s..%s): %s generated, %s empty, %s failed",
        cycle.capitalize(),
        org_id,
        period_start,
        period_end,
        len(generated),
        empty,
        failed,
    )
    return {
        "cycle": cycle,
        "period_start": period_start.isoformat(),
        "period_end": period_end.isoformat(),
        "generated": generated,
        "empty": empty,
        "failed": failed,
    }


def applied_amount(invoice: Invoice) -> int:
    payments = (
        db.session.query(Payment)
        .filter(
            Payment.invoice_id == invoice.id,
            Payment.payment_type == "invoice_payment",
            Payment.status.in_(("completed", "refunded")),
        )
        .all()
    )
    return sum(p.amount_cents - (p.refunded_amount_cents or 0) for p in payments)


def recompute_invoice_balance(invoice: Invoice) -> int:
    """Balance implied by the payments applied to the invoice."""
    return invoice.total_cents - applied_amount(invoice)


def _sync_invoice(invoice: Invoice) -> None:
    invoice.paid_amount_cents = applied_amount(invoice)
    invoice.balance_cents = invoice.total_cents - invoice.paid_amount_cents

    if invoice.balance_cents <= 0 and invoice.status in ("sent", "overdue"):
        lifecycle_service.require_transition("invoice", invoice.status, "paid")
        invoice.status = "paid"
        invoice.paid_at = utcnow()
    elif invoice.balance_cents > 0 and invoice.status == "paid":
        lifecycle_service.require_transition("invoice", invoice.status, "sent")
        invoice.status = "sent"
        invoice.paid_at = None


def mark_overdue_invoices(org_id: int | None = None, as_of: date | None = None) -> int:
    """Move sent invoices past their due date with an open balance to overdue."""
    as_of = as_of or today()

    def _op() -> int:
        query = db.session.query(Invoice).filter(
            Invoice.status == "sent",
            Invoice.due_date < as_of,
            Invoice.balance_cents > 0,
        )
        if org_id is not None:
            query = query.filter(Invoice.org_id == org_id)
        invoices = query.all()
        for invoice in invoices:
            lifecycle_service.require_transition("invoice", invoice.status, "overdue")
            invoice.status = "overdue"
            event_service.record_event(
                org_id=invoice.org_id,
                event_type="invoice.overdue",
                entity_type="invoice",
                entity_id=invoice.id,
                user_id=invoice.user_id,
                payload={"balance_cents": invoice.balance_cents},
            )
        db.session.commit()
        return len(invoices)

    count = run_with_retry(_op)
    current_app.logger.info("Marked %s invoices overdue as of %s", count, as_of)
    return count


def get_invoice(user_id: int, invoice_id: int) -> Invoice:
    invoice = db.session.query(Invoice).filter_by(id=invoice_id, user_id=user_id).first()
    if invoice is None:
        raise NotFoundError(f"Invoice {invoice_id} not found")
    return invoice


def list_invoices(user_id: int, status: str | None = None) -> list[Invoice]:
    query = db.session.query(Invoice).filter(Invoice.user_id == user_id)
    if status:
        query = query.filter(Invoice.status == status)
    return query.order_by(Invoice.invoice_date.desc(), Invoice.id.desc()).all()


def list_org_invoices(
    org_id: int,
    *,
    status: str | None = None,
    user_id: int | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Invoice]:
    query = db.session.query(Invoice).filter(Invoice.org_id == org_id)
    if status:
        query = query.filter(Invoice.status == status)
    if user_id is not None:
        query = query.filter(Invoice.user_id == user_id)
    return (
        query.order_by(Invoice.invoice_date.desc(), Invoice.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


# =============================================================================
# PAYMENTS
# =============================================================================

def _existing_gateway_payment(user_id: int, gateway_payment_id: str | None) -> Payment | None:
    if not gateway_payment_id:
        return None
    payment = db.session.query(Payment).filter_by(gateway_payment_id=gateway_payment_id).first()
    if payment is not None and payment.user_id != user_id:
        raise PaymentError("Gateway payment id already used")
    return payment


def _create_payment(
    *,
    user: User,
    amount_cents: int,
    payment_method: str,
    payment_type: str,
    invoice: Invoice | None = None,
    gateway_payment_id: str | None = None,
    payment_details: dict | None = None,
) -> Payment:
    if payment_method not in PAYMENT_METHODS:
        raise PaymentError(f"Invalid payment method: {payment_method}. Must be one of {list(PAYMENT_METHODS)}")
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        raise PaymentError("Payment amount must be positive")

    if payment_type == "invoice_payment":
        if invoice is None:
            raise PaymentError("Invoice payments need an invoice")
        if invoice.status not in ("sent", "overdue"):
            raise PaymentError(f"Cannot pay an invoice with status {invoice.status}")
        if amount_cents > invoice.balance_cents:
            raise PaymentError(
                f"Payment of {amount_cents} exceeds the invoice balance of {invoice.balance_cents}"
            )

    payment = Payment(
        org_id=user.org_id,
        user_id=user.id,
        invoice_id=invoice.id if invoice else None,
        reference_number=document_service.allocate(user.org_id, document_service.PAYMENT),
        gateway_payment_id=gateway_payment_id,
        amount_cents=amount_cents,
        refunded_amount_cents=0,
        payment_method=payment_method,
        payment_type=payment_type,
        status="pending",
        payment_details=payment_details,
    )
    db.session.add(payment)
    db.session.flush()
    return payment


def _complete(payment: Payment, *, gateway_payment_id: str | None = None, payment_details: dict | None = None) -> Payment:
    lifecycle_service.require_transition("payment", payment.status, "completed")

    invoice = None
    if payment.invoice_id is not None:
        # Another payment may have settled the invoice since this one was created
        invoice = lock_for_update(db.session.query(Invoice).filter_by(id=payment.invoice_id)).first()
        if invoice.status not in ("sent", "overdue"):
            raise PaymentError(f"Cannot pay an invoice with status {invoice.status}")
        if payment.amount_cents > invoice.balance_cents:
            raise PaymentError(
                f"Payment of {payment.amount_cents} exceeds the invoice balance of {invoice.balance_cents}"
            )

    if gateway_payment_id:
        payment.gateway_payment_id = gateway_payment_id
    if payment_details:
        payment.payment_details = payment_details
    payment.status = "completed"
    payment.processed_at = utcnow()

    description = {
        "invoice_payment": f"Payment {payment.reference_number}",
        "prepaid_topup": f"Prepaid topup {payment.reference_number}",
    }.get(payment.payment_type, f"Payment {payment.reference_number}")
    ledger_service.append_entry(
        user_id=payment.user_id,
        entry_type="credit",
        amount_cents=payment.amount_cents,
        description=description,
        reference_number=payment.reference_number,
        invoice_id=payment.invoice_id,
        payment_id=payment.id,
    )

    if invoice is not None:
        _sync_invoice(invoice)

    event_service.record_event(
        org_id=payment.org_id,
        event_type="payment.completed",
        entity_type="payment",
        entity_id=payment.id,
        user_id=payment.user_id,
        payload={"amount_cents": payment.amount_cents, "payment_type": payment.payment_type},
    )
    return payment


def _get_user(user_id: int) -> User:
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    return user


def create_payment(
    user_id: int,
    amount_cents: int,
    payment_method: str,
    payment_type: str,
    invoice_id: int | None = None,
    gateway_payment_id: str | None = None,
    payment_details: dict | None = None,
) -> Payment:
    """Record a pending payment awaiting gateway confirmation."""
    if payment_type not in ("invoice_payment", "prepaid_topup"):
        raise PaymentError(f"Invalid payment type: {payment_type}")

    def _op() -> Payment:
        existing = _existing_gateway_payment(user_id, gateway_payment_id)
        if existing is not None:
            return existing
        user = _get_user(user_id)
        invoice = get_invoice(user_id, invoice_id) if invoice_id is not None else None
        payment = _create_payment(
            user=user,
            amount_cents=amount_cents,
            payment_method=payment_method,
            payment_type=payment_type,
            invoice=invoice,
            gateway_payment_id=gateway_payment_id,
            payment_details=payment_details,
        )
        db.session.commit()
        return payment

    return run_with_retry(_op, retry_on=RETRY_ON)


def complete_payment(payment_id: int, gateway_payment_id: str | None = None, payment_details: dict | None = None) -> Payment:
    """
    Confirm a pending payment: credit the ledger and apply it to its invoice.

    A repeat confirmation of a completed payment is a no-op.
    """
    def _op() -> Payment:
        payment = lock_for_update(db.session.query(Payment).filter_by(id=payment_id)).first()
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        if payment.status == "completed":
            return payment
        _complete(payment, gateway_payment_id=gateway_payment_id, payment_details=payment_details)
        db.session.commit()
        return payment

    return run_with_retry(_op, retry_on=RETRY_ON)


def fail_payment(payment_id: int, reason: str | None = None) -> Payment:
    def _op() -> Payment:
        payment = lock_for_update(db.session.query(Payment).filter_by(id=payment_id)).first()
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        lifecycle_service.require_transition("payment", payment.status, "failed")
        payment.status = "failed"
        payment.failure_reason = (reason or "Payment failed")[:255]
        payment.processed_at = utcnow()
        db.session.commit()
        return payment

    payment = run_with_retry(_op)
    current_app.logger.info("Payment %s failed: %s", payment.id, payment.failure_reason)
    return payment


def pay_invoice(
    user_id: int,
    invoice_id: int,
    payment_method: str,
    amount_cents: int | None = None,
    gateway_payment_id: str | None = None,
    payment_details: dict | None = None,
) -> Payment:
    """Settle (part of) an invoice with a gateway-confirmed payment. Defaults to the full balance."""
    def _op() -> Payment:
        existing = _existing_gateway_payment(user_id, gateway_payment_id)
        if existing is not None:
            return existing
        user = _get_user(user_id)
        invoice = lock_for_update(
            db.session.query(Invoice).filter_by(id=invoice_id, user_id=user_id)
        ).first()
        if invoice is None:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        payment = _create_payment(
            user=user,
            amount_cents=invoice.balance_cents if amount_cents is None else amount_cents,
            payment_method=payment_method,
            payment_type="invoice_payment",
            invoice=invoice,
            gateway_payment_id=gateway_payment_id,
            payment_details=payment_details,
        )
        _complete(payment)
        db.session.commit()
        return payment

    return run_with_retry(_op, retry_on=RETRY_ON)


def topup_prepaid(
    user_id: int,
    amount_cents: int,
    payment_method: str,
    gateway_payment_id: str | None = None,
    payment_details: dict | None = None,
) -> Payment:
    """Credit a prepaid balance. Replaying the same gateway payment id returns the first payment."""
    def _op() -> Payment:
        existing = _existing_gateway_payment(user_id, gateway_payment_id)
        if existing is not None:
            return existing
        user = _get_user(user_id)
        payment = _create_payment(
            user=user,
            amount_cents=amount_cents,
            payment_method=payment_method,
            payment_type="prepaid_topup",
            gateway_payment_id=gateway_payment_id,
            payment_details=payment_details,
        )
        _complete(payment)
        db.session.commit()
        return payment

    return run_with_retry(_op, retry_on=RETRY_ON)


def refund_payment(payment_id: int, amount_cents: int | None = None, reason: str | None = None) -> Payment:
    """
    Refund (part of) a completed payment.

    Posts a debit, lowers the invoice's paid amount (re-opening it when it
    was paid), and marks the original refunded once fully refunded.
    """
    def _op() -> Payment:
        original = lock_for_update(db.session.query(Payment).filter_by(id=payment_id)).first()
        if original is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        if original.payment_type == "refund":
            raise PaymentError("A refund cannot be refunded")
        if original.status != "completed":
            raise PaymentError(f"Cannot refund a payment with status {original.status}")

        refundable = original.amount_cents - (original.refunded_amount_cents or 0)
        amount = refundable if amount_cents is None else amount_cents
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise PaymentError("Refund amount must be positive")
        if amount > refundable:
            raise PaymentError(f"Refund of {amount} exceeds the refundable {refundable}")

        refund = Payment(
            org_id=original.org_id,
            user_id=original.user_id,
            invoice_id=original.invoice_id,
            reference_number=document_service.allocate(original.org_id, document_service.REFUND),
            amount_cents=amount,
            refunded_amount_cents=0,
            payment_method=original.payment_method,
            payment_type="refund",
            status="completed",
            refund_of_payment_id=original.id,
            failure_reason=reason[:255] if reason else None,
            processed_at=utcnow(),
        )
        db.session.add(refund)
        db.session.flush()

        original.refunded_amount_cents = (original.refunded_amount_cents or 0) + amount
        if original.refunded_amount_cents >= original.amount_cents:
            lifecycle_service.require_transition("payment", original.status, "refunded")
            original.status = "refunded"

        ledger_service.append_entry(
            user_id=original.user_id,
            entry_type="debit",
            amount_cents=amount,
            description=f"Refund {refund.reference_number} of {original.reference_number}",
            reference_number=refund.reference_number,
            invoice_id=original.invoice_id,
            payment_id=refund.id,
            details={"reason": reason} if reason else None,
        )

        if original.invoice_id is not None:
            invoice = lock_for_update(db.session.query(Invoice).filter_by(id=original.invoice_id)).first()
            _sync_invoice(invoice)

        event_service.record_event(
            org_id=original.org_id,
            event_type="payment.refunded",
            entity_type="payment",
            entity_id=refund.id,
            user_id=original.user_id,
            payload={"amount_cents": amount, "refund_of_payment_id": original.id},
        )
        db.session.commit()
        return refund

    return run_with_retry(_op, retry_on=RETRY_ON)


def get_payment(payment_id: int, org_id: int | None = None) -> Payment:
    query = db.session.query(Payment).filter_by(id=payment_id)
    if org_id is not None:
        query = query.filter_by(org_id=org_id)
    payment = query.first()
    if payment is None:
        raise NotFoundError(f"Payment {payment_id} not found")
    return payment


def list_payments(user_id: int, limit: int = 20, offset: int = 0) -> list[Payment]:
    """A customer's payments, refunds included, newest first."""
    return (
        db.session.query(Payment)
        .filter(Payment.user_id == user_id)
        .order_by(Payment.created_at.desc(), Payment.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


# =============================================================================
# SUMMARY
# =============================================================================

def get_billing_summary(user_id: int) -> dict:
    user = _get_user(user_id)
    open_invoices = (
        db.session.query(Invoice)
        .filter(Invoice.user_id == user_id, Invoice.status.in_(("sent", "overdue")))
        .order_by(Invoice.due_date)
        .all()
    )
    last_invoice = (
        db.session.query(Invoice)
        .filter(Invoice.user_id == user_id)
        .order_by(Invoice.invoice_date.desc(), Invoice.id.desc())
        .first()
    )
    balance = ledger_service.get_balance(user_id)
    return {
        "user_id": user_id,
        "payment_mode": user.payment_mode,
        "balance_cents": balance,
        "prepaid_credit_cents": max(-balance, 0),
        "outstanding_cents": sum(i.balance_cents for i in open_invoices),
        "open_invoice_count": len(open_invoices),
        "overdue_invoice_count": sum(1 for i in open_invoices if i.status == "overdue"),
        "next_due_date": open_invoices[0].due_date.isoformat() if open_invoices else None,
        "last_invoice": last_invoice.to_dict() if last_invoice else None,
        **ledger_service.totals(user_id),
    }
