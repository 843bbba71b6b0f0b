from __future__ import annotations

from ..extensions import db
from dairy.time_utils import to_utc_z


class Address(db.Model):
    """
    Customer delivery address.

    area is the zone key used by the route planner; latitude/longitude are
    filled by the customer or by the geocoder and may stay NULL.
    """
    __tablename__ = "addresses"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    label = db.Column(db.String(32), nullable=True)  # home, work, ...
    line1 = db.Column(db.String(255), nullable=False)
    line2 = db.Column(db.String(255), nullable=True)
    area = db.Column(db.String(120), nullable=True, index=True)
    city = db.Column(db.String(120), nullable=False)
    state = db.Column(db.String(120), nullable=True)
    pincode = db.Column(db.String(12), nullable=False)

    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)

    is_default = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    user = db.relationship("User", backref=db.backref("addresses", lazy=True))

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def one_line(self) -> str:
        parts = [self.line1, self.line2, self.area, self.city, self.state, self.pincode]
        return ", ".join(p for p in parts if p)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "label": self.label,
            "line1": self.line1,
            "line2": self.line2,
            "area": self.area,
            "city": self.city,
            "state": self.state,
            "pincode": self.pincode,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "is_default": self.is_default,
            "created_at": to_utc_z(self.created_at),
        }


class Product(db.Model):
    """Catalog item. is_subscribable marks milk products offered on subscription."""
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_org_status", "org_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    unit = db.Column(db.String(32), nullable=False, default="1L")

    price_cents = db.Column(db.Integer, nullable=False)
    is_subscribable = db.Column(db.Boolean, nullable=False, default=False)
    status = db.Column(db.String(16), nullable=False, default="active")
    stock_quantity = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "name": self.name,
            "description": self.description,
            "unit": self.unit,
            "price_cents": self.price_cents,
            "is_subscribable": self.is_subscribable,
            "status": self.status,
            "stock_quantity": self.stock_quantity,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
