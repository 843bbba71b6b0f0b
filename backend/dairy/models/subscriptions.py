from __future__ import annotations

from ..extensions import db
from dairy.time_utils import to_utc_z, to_iso_date


BILLING_CYCLES = ("daily", "weekly", "monthly")
SUBSCRIPTION_STATUSES = ("active", "paused", "cancelled")
DELIVERY_STATUSES = ("scheduled", "picked_up", "in_transit", "delivered", "failed", "cancelled")
PROOF_TYPES = ("photo", "signature", "otp")


class Subscription(db.Model):
    """
    Recurring delivery definition.

    Recurrence is billing_cycle + delivery_days:
    - daily:   delivery_days ignored
    - weekly:  weekday indices 0-6 (0 = Sunday), non-empty
    - monthly: exactly one day-of-month, 1-28

    Never physically deleted; cancelled is terminal.
    """
    __tablename__ = "subscriptions"
    __table_args__ = (
        db.Index("ix_subscriptions_org_status", "org_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    address_id = db.Column(db.Integer, db.ForeignKey("addresses.id"), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    default_quantity = db.Column(db.Integer, nullable=False, default=1)
    billing_cycle = db.Column(db.String(16), nullable=False, default="weekly")
    delivery_days = db.Column(db.JSON, nullable=False, default=list)

    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=True)

    payment_mode = db.Column(db.String(16), nullable=False, default="prepaid")
    status = db.Column(db.String(16), nullable=False, default="active", index=True)
    notes = db.Column(db.Text, nullable=True)

    paused_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    version_id = db.Column(db.Integer, nullable=False, default=1)

    user = db.relationship("User", backref=db.backref("subscriptions", lazy=True))
    address = db.relationship("Address")
    product = db.relationship("Product")
    deliveries = db.relationship(
        "SubscriptionDelivery",
        back_populates="subscription",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "user_id": self.user_id,
            "address_id": self.address_id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "default_quantity": self.default_quantity,
            "billing_cycle": self.billing_cycle,
            "delivery_days": list(self.delivery_days or []),
            "start_date": to_iso_date(self.start_date),
            "end_date": to_iso_date(self.end_date),
            "payment_mode": self.payment_mode,
            "status": self.status,
            "notes": self.notes,
            "paused_at": to_utc_z(self.paused_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "created_at": to_utc_z(self.created_at),
            "version_id": self.version_id,
        }


class SubscriptionDelivery(db.Model):
    """
    One materialized delivery of a subscription on a calendar date.

    INVARIANT: unique (subscription_id, delivery_date). This constraint is
    what makes concurrent materializer runs safe.

    quantity/unit_price_cents/total_cents are a snapshot taken when the row
    is first materialized. unit_price_cents never changes afterwards.
    """
    __tablename__ = "subscription_deliveries"
    __table_args__ = (
        db.UniqueConstraint("subscription_id", "delivery_date", name="uq_subscription_deliveries_sub_date"),
        db.Index("ix_subscription_deliveries_date_status", "delivery_date", "status"),
        db.Index("ix_subscription_deliveries_agent_date", "agent_id", "delivery_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    subscription_id = db.Column(
        db.Integer,
        db.ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    address_id = db.Column(db.Integer, db.ForeignKey("addresses.id"), nullable=False)

    # Denormalized from the active route stop
    agent_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    delivery_date = db.Column(db.Date, nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    total_cents = db.Column(db.Integer, nullable=False)

    status = db.Column(db.String(16), nullable=False, default="scheduled")
    cancel_reason = db.Column(db.String(64), nullable=True)

    picked_up_at = db.Column(db.DateTime(timezone=True), nullable=True)
    in_transit_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    failed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Proof of delivery
    proof_type = db.Column(db.String(16), nullable=True)
    proof_data = db.Column(db.Text, nullable=True)
    delivery_notes = db.Column(db.Text, nullable=True)
    customer_rating = db.Column(db.Integer, nullable=True)
    customer_feedback = db.Column(db.Text, nullable=True)

    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=True, index=True)
    charged_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    version_id = db.Column(db.Integer, nullable=False, default=1)

    subscription = db.relationship("Subscription", back_populates="deliveries")
    product = db.relationship("Product")
    address = db.relationship("Address")
    user = db.relationship("User", foreign_keys=[user_id])
    agent = db.relationship("User", foreign_keys=[agent_id])
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "subscription_id": self.subscription_id,
            "user_id": self.user_id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "address_id": self.address_id,
            "agent_id": self.agent_id,
            "delivery_date": to_iso_date(self.delivery_date),
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "total_cents": self.total_cents,
            "status": self.status,
            "cancel_reason": self.cancel_reason,
            "picked_up_at": to_utc_z(self.picked_up_at),
            "in_transit_at": to_utc_z(self.in_transit_at),
            "delivered_at": to_utc_z(self.delivered_at),
            "failed_at": to_utc_z(self.failed_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "proof_type": self.proof_type,
            "delivery_notes": self.delivery_notes,
            "customer_rating": self.customer_rating,
            "customer_feedback": self.customer_feedback,
            "invoice_id": self.invoice_id,
            "version_id": self.version_id,
        }
