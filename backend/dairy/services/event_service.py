# Overview: Domain event outbox; records status changes and dispatches them to the push notifier.

"""
Outbox invariants

- Events are written inside the same DB transaction as the change they
  record (flush only, never commit here).
- Dispatch is at-least-once: a row is marked dispatched only after the
  notifier returns. Failed sends keep the row pending with attempts/last_error.
"""

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import DomainEvent
from dairy.time_utils import utcnow
from .integrations import get_notifier


MAX_DISPATCH_ATTEMPTS = 5


def record_event(
    *,
    org_id: int,
    event_type: str,
    entity_type: str,
    entity_id: int,
    user_id: int | None = None,
    payload: dict | None = None,
) -> DomainEvent:
    event = DomainEvent(
        org_id=org_id,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        user_id=user_id,
        payload=payload or {},
    )
    db.session.add(event)
    db.session.flush()
    return event


def pending_events(org_id: int | None = None, limit: int = 500) -> list[DomainEvent]:
    query = db.session.query(DomainEvent).filter(
        DomainEvent.dispatched_at.is_(None),
        DomainEvent.attempts < MAX_DISPATCH_ATTEMPTS,
    )
    if org_id is not None:
        query = query.filter(DomainEvent.org_id == org_id)
    return query.order_by(DomainEvent.id).limit(limit).all()


def dispatch_pending_events(org_id: int | None = None, limit: int = 500, notifier=None) -> dict:
    """
    Send undispatched events to the push notifier.

    Returns {"dispatched": n, "failed": m}.
    """
    notifier = notifier or get_notifier()
    dispatched = 0
    failed = 0

    for event in pending_events(org_id, limit):
        event.attempts += 1
        try:
            notifier.send(event)
        except Exception as exc:
            failed += 1
            event.last_error = str(exc)[:255]
            current_app.logger.exception("Push notification failed for event %s", event.id)
            continue
        event.dispatched_at = utcnow()
        event.last_error = None
        dispatched += 1

    db.session.commit()
    if dispatched or failed:
        current_app.logger.info("Dispatched %s events (%s failed)", dispatched, failed)
    return {"dispatched": dispatched, "failed": failed}
