from __future__ import annotations

from ..extensions import db
from dairy.time_utils import to_utc_z, to_iso_date


INVOICE_STATUSES = ("draft", "sent", "paid", "overdue", "cancelled")
PAYMENT_METHODS = ("cash", "card", "upi", "netbanking", "wallet")
PAYMENT_TYPES = ("invoice_payment", "prepaid_topup", "refund")
PAYMENT_STATUSES = ("pending", "completed", "failed", "refunded")
ENTRY_TYPES = ("debit", "credit")


class Invoice(db.Model):
    """
    Billing-period invoice for postpaid customers.

    INVARIANT: balance_cents == total_cents - paid_amount_cents, and
    paid_amount_cents is recomputable from the payments applied to it.
    """
    __tablename__ = "invoices"
    __table_args__ = (
        db.UniqueConstraint("org_id", "invoice_number", name="uq_invoices_org_number"),
        db.Index("ix_invoices_user_status", "user_id", "status"),
        db.Index("ix_invoices_status_due", "status", "due_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    invoice_number = db.Column(db.String(32), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    invoice_date = db.Column(db.Date, nullable=False)
    due_date = db.Column(db.Date, nullable=False)
    period_start = db.Column(db.Date, nullable=False)
    period_end = db.Column(db.Date, nullable=False)
    billing_cycle = db.Column(db.String(16), nullable=True)

    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    paid_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    balance_cents = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(db.String(16), nullable=False, default="draft")
    # [{"kind", "reference_id", "date", "description", "quantity", "unit_price_cents", "total_cents"}]
    line_items = db.Column(db.JSON, nullable=False, default=list)
    notes = db.Column(db.Text, nullable=True)

    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    version_id = db.Column(db.Integer, nullable=False, default=1)

    user = db.relationship("User", backref=db.backref("invoices", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "invoice_number": self.invoice_number,
            "user_id": self.user_id,
            "invoice_date": to_iso_date(self.invoice_date),
            "due_date": to_iso_date(self.due_date),
            "period_start": to_iso_date(self.period_start),
            "period_end": to_iso_date(self.period_end),
            "billing_cycle": self.billing_cycle,
            "subtotal_cents": self.subtotal_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "paid_amount_cents": self.paid_amount_cents,
            "balance_cents": self.balance_cents,
            "status": self.status,
            "line_items": list(self.line_items or []),
            "sent_at": to_utc_z(self.sent_at),
            "paid_at": to_utc_z(self.paid_at),
            "created_at": to_utc_z(self.created_at),
        }


class Payment(db.Model):
    """
    A money movement: invoice settlement, prepaid topup, or refund.

    gateway_payment_id/payment_details come from the external payment
    gateway. Refunds are their own Payment rows pointing at the original.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.UniqueConstraint("org_id", "reference_number", name="uq_payments_org_reference"),
        db.Index("ix_payments_user_created", "user_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=True, index=True)

    reference_number = db.Column(db.String(32), nullable=False)
    gateway_payment_id = db.Column(db.String(128), nullable=True, unique=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    refunded_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    payment_method = db.Column(db.String(16), nullable=False)
    payment_type = db.Column(db.String(24), nullable=False)
    status = db.Column(db.String(16), nullable=False, default="pending")
    payment_details = db.Column(db.JSON, nullable=True)
    failure_reason = db.Column(db.String(255), nullable=True)

    refund_of_payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=True, index=True)

    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    version_id = db.Column(db.Integer, nullable=False, default=1)

    invoice = db.relationship("Invoice", backref=db.backref("payments", lazy=True))
    refund_of = db.relationship("Payment", remote_side=[id])
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "invoice_id": self.invoice_id,
            "reference_number": self.reference_number,
            "gateway_payment_id": self.gateway_payment_id,
            "amount_cents": self.amount_cents,
            "refunded_amount_cents": self.refunded_amount_cents,
            "payment_method": self.payment_method,
            "payment_type": self.payment_type,
            "status": self.status,
            "failure_reason": self.failure_reason,
            "refund_of_payment_id": self.refund_of_payment_id,
            "processed_at": to_utc_z(self.processed_at),
            "created_at": to_utc_z(self.created_at),
        }


class LedgerEntry(db.Model):
    """
    Append-only per-user running-balance ledger.

    INVARIANTS:
    - sequence is 1..N per user (unique (user_id, sequence))
    - running_balance[i] = running_balance[i-1] + amount (debit)
                                                - amount (credit)
    - rows are never updated or deleted

    A positive balance is what the customer owes; negative is prepaid credit.
    """
    __tablename__ = "ledger_entries"
    __table_args__ = (
        db.UniqueConstraint("user_id", "sequence", name="uq_ledger_entries_user_sequence"),
        db.CheckConstraint("amount_cents > 0", name="ck_ledger_entries_amount_positive"),
        db.CheckConstraint("entry_type IN ('debit', 'credit')", name="ck_ledger_entries_entry_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    sequence = db.Column(db.Integer, nullable=False)

    entry_type = db.Column(db.String(8), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    running_balance_cents = db.Column(db.Integer, nullable=False)

    description = db.Column(db.String(255), nullable=False)
    reference_number = db.Column(db.String(32), nullable=True)

    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=True, index=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=True, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    subscription_delivery_id = db.Column(
        db.Integer,
        db.ForeignKey("subscription_deliveries.id"),
        nullable=True,
        index=True,
    )

    details = db.Column("metadata", db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "sequence": self.sequence,
            "entry_type": self.entry_type,
            "amount_cents": self.amount_cents,
            "running_balance_cents": self.running_balance_cents,
            "description": self.description,
            "reference_number": self.reference_number,
            "invoice_id": self.invoice_id,
            "payment_id": self.payment_id,
            "order_id": self.order_id,
            "subscription_delivery_id": self.subscription_delivery_id,
            "metadata": self.details,
            "created_at": to_utc_z(self.created_at),
        }
