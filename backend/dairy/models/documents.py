from __future__ import annotations

from ..extensions import db
from dairy.time_utils import to_utc_z


class DocumentSequence(db.Model):
    """Per-organization counters for human-readable document numbers."""
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("org_id", "document_type", name="uq_document_sequences_org_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    document_type = db.Column(db.String(32), nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())


class DomainEvent(db.Model):
    """
    Outbox of status-change events.

    Written in the same transaction as the change it records; a dispatcher
    job hands undispatched rows to the push notification collaborator.
    """
    __tablename__ = "domain_events"
    __table_args__ = (
        db.Index("ix_domain_events_undispatched", "dispatched_at", "id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    event_type = db.Column(db.String(64), nullable=False, index=True)
    entity_type = db.Column(db.String(32), nullable=False)
    entity_id = db.Column(db.Integer, nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    payload = db.Column(db.JSON, nullable=True)

    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.String(255), nullable=True)
    dispatched_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "event_type": self.event_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "user_id": self.user_id,
            "payload": self.payload,
            "attempts": self.attempts,
            "dispatched_at": to_utc_z(self.dispatched_at),
            "created_at": to_utc_z(self.created_at),
        }
