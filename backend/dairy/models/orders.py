from __future__ import annotations

from ..extensions import db
from dairy.time_utils import to_utc_z, to_iso_date


ORDER_STATUSES = (
    "pending", "confirmed", "processing", "out_for_delivery",
    "delivered", "cancelled", "refunded",
)


class Order(db.Model):
    """
    One-off (non-recurring) purchase.

    INVARIANT: total_cents == subtotal_cents + delivery_fee_cents + tax_cents
    and subtotal_cents == sum(item.total_cents).

    delivery_date is the requested delivery day; the route planner picks up
    pending/confirmed/processing orders due on a date.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("org_id", "order_number", name="uq_orders_org_number"),
        db.Index("ix_orders_org_status_date", "org_id", "status", "delivery_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    order_number = db.Column(db.String(32), nullable=False)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    address_id = db.Column(db.Integer, db.ForeignKey("addresses.id"), nullable=False)
    delivery_date = db.Column(db.Date, nullable=False, index=True)

    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    delivery_fee_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    # Snapshot of the customer's payment mode at checkout
    payment_mode = db.Column(db.String(16), nullable=False, default="prepaid")
    status = db.Column(db.String(24), nullable=False, default="pending", index=True)
    notes = db.Column(db.Text, nullable=True)

    confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Billing linkage: invoice for postpaid, charged_at for prepaid debit
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

    user = db.relationship("User", backref=db.backref("orders", lazy=True))
    address = db.relationship("Address")
    items = db.relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "org_id": self.org_id,
            "order_number": self.order_number,
            "user_id": self.user_id,
            "address_id": self.address_id,
            "delivery_date": to_iso_date(self.delivery_date),
            "subtotal_cents": self.subtotal_cents,
            "delivery_fee_cents": self.delivery_fee_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "payment_mode": self.payment_mode,
            "status": self.status,
            "notes": self.notes,
            "confirmed_at": to_utc_z(self.confirmed_at),
            "delivered_at": to_utc_z(self.delivered_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "refunded_at": to_utc_z(self.refunded_at),
            "invoice_id": self.invoice_id,
            "created_at": to_utc_z(self.created_at),
            "version_id": self.version_id,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class OrderItem(db.Model):
    """Line item on an order; prices are snapshotted at checkout."""
    __tablename__ = "order_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    total_cents = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    order = db.relationship("Order", back_populates="items")
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "total_cents": self.total_cents,
        }
