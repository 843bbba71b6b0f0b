from __future__ import annotations

from sqlalchemy import text

from ..extensions import db
from dairy.time_utils import to_utc_z, to_iso_date


ROUTE_STATUSES = ("planned", "in_progress", "completed", "cancelled")
STOP_STATUSES = ("pending", "in_transit", "delivered", "missed", "cancelled")
STOP_TYPES = ("subscription", "order")


class Route(db.Model):
    """
    One agent's delivery plan for one date.

    INVARIANT: one route per (agent_id, route_date).
    Stop membership is frozen once the route leaves 'planned'.
    """
    __tablename__ = "routes"
    __table_args__ = (
        db.UniqueConstraint("agent_id", "route_date", name="uq_routes_agent_date"),
        db.Index("ix_routes_org_date_status", "org_id", "route_date", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    agent_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    route_date = db.Column(db.Date, nullable=False)
    route_name = db.Column(db.String(255), nullable=False)

    status = db.Column(db.String(16), nullable=False, default="planned")
    start_time = db.Column(db.DateTime(timezone=True), nullable=True)
    end_time = db.Column(db.DateTime(timezone=True), nullable=True)

    total_distance_km = db.Column(db.Float, nullable=False, default=0.0)
    estimated_duration_minutes = db.Column(db.Integer, nullable=False, default=0)
    depot_location = db.Column(db.JSON, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    version_id = db.Column(db.Integer, nullable=False, default=1)

    agent = db.relationship("User")
    stops = db.relationship(
        "RouteStop",
        back_populates="route",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="RouteStop.sequence",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_stops: bool = False) -> dict:
        data = {
            "id": self.id,
            "org_id": self.org_id,
            "agent_id": self.agent_id,
            "agent_name": self.agent.full_name if self.agent else None,
            "route_date": to_iso_date(self.route_date),
            "route_name": self.route_name,
            "status": self.status,
            "start_time": to_utc_z(self.start_time),
            "end_time": to_utc_z(self.end_time),
            "total_distance_km": self.total_distance_km,
            "estimated_duration_minutes": self.estimated_duration_minutes,
            "depot_location": self.depot_location,
            "notes": self.notes,
            "stop_count": len(self.stops),
            "version_id": self.version_id,
        }
        if include_stops:
            data["stops"] = [stop.to_dict() for stop in self.stops]
        return data


class RouteStop(db.Model):
    """
    Ordered stop on a route.

    The target is a tagged variant keyed by stop_type:
    - "subscription": subscription_delivery_id set, order_id NULL
    - "order":        order_id set, subscription_delivery_id NULL

    Targets are non-owning (SET NULL on delete). A delivery or order has at
    most one non-cancelled stop across all routes.
    """
    __tablename__ = "route_stops"
    __table_args__ = (
        db.CheckConstraint(
            "subscription_delivery_id IS NULL OR order_id IS NULL",
            name="ck_route_stops_single_target",
        ),
        db.CheckConstraint(
            "stop_type IN ('subscription', 'order')",
            name="ck_route_stops_stop_type",
        ),
        db.Index(
            "uq_route_stops_active_delivery",
            "subscription_delivery_id",
            unique=True,
            sqlite_where=text("status != 'cancelled' AND subscription_delivery_id IS NOT NULL"),
            postgresql_where=text("status != 'cancelled' AND subscription_delivery_id IS NOT NULL"),
        ),
        db.Index(
            "uq_route_stops_active_order",
            "order_id",
            unique=True,
            sqlite_where=text("status != 'cancelled' AND order_id IS NOT NULL"),
            postgresql_where=text("status != 'cancelled' AND order_id IS NOT NULL"),
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    route_id = db.Column(db.Integer, db.ForeignKey("routes.id", ondelete="CASCADE"), nullable=False, index=True)
    sequence = db.Column(db.Integer, nullable=False)
    stop_type = db.Column(db.String(16), nullable=False)

    subscription_delivery_id = db.Column(
        db.Integer,
        db.ForeignKey("subscription_deliveries.id", ondelete="SET NULL"),
        nullable=True,
    )
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id", ondelete="SET NULL"), nullable=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    address_id = db.Column(db.Integer, db.ForeignKey("addresses.id"), nullable=False)

    # [{"product_id", "product_name", "quantity", "unit_price_cents", "total_cents"}]
    delivery_items = db.Column(db.JSON, nullable=False, default=list)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    distance_from_previous_km = db.Column(db.Float, nullable=True)

    status = db.Column(db.String(16), nullable=False, default="pending")
    arrived_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivery_notes = db.Column(db.Text, nullable=True)
    proof_image = db.Column(db.String(500), nullable=True)
    customer_rating = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    version_id = db.Column(db.Integer, nullable=False, default=1)

    route = db.relationship("Route", back_populates="stops")
    subscription_delivery = db.relationship("SubscriptionDelivery")
    order = db.relationship("Order")
    address = db.relationship("Address")
    customer = db.relationship("User")
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def target(self):
        if self.stop_type == "subscription":
            return self.subscription_delivery
        return self.order

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "route_id": self.route_id,
            "sequence": self.sequence,
            "stop_type": self.stop_type,
            "subscription_delivery_id": self.subscription_delivery_id,
            "order_id": self.order_id,
            "user_id": self.user_id,
            "customer_name": self.customer.full_name if self.customer else None,
            "address": self.address.to_dict() if self.address else None,
            "delivery_items": list(self.delivery_items or []),
            "total_cents": self.total_cents,
            "distance_from_previous_km": self.distance_from_previous_km,
            "status": self.status,
            "arrived_at": to_utc_z(self.arrived_at),
            "delivered_at": to_utc_z(self.delivered_at),
            "delivery_notes": self.delivery_notes,
            "proof_image": self.proof_image,
            "customer_rating": self.customer_rating,
        }
