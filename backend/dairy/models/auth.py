from __future__ import annotations

from ..extensions import db
from dairy.time_utils import to_utc_z


USER_ROLES = ("user", "agent", "admin")
USER_STATUSES = ("active", "inactive", "suspended")
PAYMENT_MODES = ("prepaid", "postpaid")


class User(db.Model):
    """
    Customers, delivery agents and administrators.

    MULTI-TENANT: Users belong to exactly one organization (org_id).
    Phone is the login identity and is unique within an organization.

    payment_mode is the default for new subscriptions and decides how
    one-off orders are billed (immediate debit vs. periodic invoice).
    """
    __tablename__ = "users"
    __table_args__ = (
        db.UniqueConstraint("org_id", "phone", name="uq_users_org_phone"),
        db.Index("ix_users_org_role_status", "org_id", "role", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)

    phone = db.Column(db.String(20), nullable=False)
    email = db.Column(db.String(255), nullable=True)
    full_name = db.Column(db.String(255), nullable=True)

    role = db.Column(db.String(16), nullable=False, default="user")
    status = db.Column(db.String(16), nullable=False, default="active")
    payment_mode = db.Column(db.String(16), nullable=False, default="prepaid")

    # Bcrypt hash; NULL for OTP-only customers
    password_hash = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    last_login_at = db.Column(db.DateTime(timezone=True), nullable=True)

    organization = db.relationship("Organization", backref=db.backref("users", lazy=True))

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "phone": self.phone,
            "email": self.email,
            "full_name": self.full_name,
            "role": self.role,
            "status": self.status,
            "payment_mode": self.payment_mode,
            "created_at": to_utc_z(self.created_at),
            "last_login_at": to_utc_z(self.last_login_at) if self.last_login_at else None,
        }


class SessionToken(db.Model):
    """
    Bearer session tokens.

    Only the SHA-256 hash of the token is stored. org_id is captured at
    creation and is the tenant context for every authenticated request.
    """
    __tablename__ = "session_tokens"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)

    token_hash = db.Column(db.String(64), nullable=False, unique=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    last_used_at = db.Column(db.DateTime(timezone=True), nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    user_agent = db.Column(db.String(255), nullable=True)
    ip_address = db.Column(db.String(64), nullable=True)

    is_revoked = db.Column(db.Boolean, nullable=False, default=False, index=True)
    revoked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    revoked_reason = db.Column(db.String(255), nullable=True)

    user = db.relationship("User", backref=db.backref("sessions", lazy=True))
    organization = db.relationship("Organization")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "org_id": self.org_id,
            "created_at": to_utc_z(self.created_at),
            "last_used_at": to_utc_z(self.last_used_at),
            "expires_at": to_utc_z(self.expires_at),
            "is_revoked": self.is_revoked,
        }
