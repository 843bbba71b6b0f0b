# backend/dairy/routes/system.py
"""
System health and version endpoints.

Health checks the database and the outbox backlog. Both endpoints are
unauthenticated and expose nothing sensitive.
"""

import sys
import time

from flask import Blueprint, current_app
from sqlalchemy import text

from ..extensions import db
from ..models import DomainEvent
from ..responses import success, failure
from dairy.time_utils import utcnow

system_bp = Blueprint("system", __name__)

API_VERSION = "1.0.0"
EVENT_BACKLOG_DEGRADED = 1000


def check_database_health() -> dict:
    start_time = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        elapsed_ms = (time.time() - start_time) * 1000
        return {"status": "healthy", "latency_ms": round(elapsed_ms, 2)}
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        db.session.rollback()
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_event_backlog() -> dict:
    """Undispatched push notifications; a large backlog means the dispatcher is not running."""
    try:
        pending = db.session.query(DomainEvent).filter(DomainEvent.dispatched_at.is_(None)).count()
    except Exception:
        current_app.logger.exception("Event backlog check failed")
        db.session.rollback()
        return {"status": "unhealthy", "error": "Database error"}
    status = "degraded" if pending >= EVENT_BACKLOG_DEGRADED else "healthy"
    return {"status": status, "pending": pending}


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded
    - 503: a dependency is unhealthy
    """
    start_time = time.time()
    checks = {
        "database": check_database_health(),
        "event_outbox": check_event_backlog(),
    }
    statuses = {check["status"] for check in checks.values()}
    if "unhealthy" in statuses:
        overall_status = "unhealthy"
    elif "degraded" in statuses:
        overall_status = "degraded"
    else:
        overall_status = "healthy"

    body = {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": checks,
    }
    if overall_status == "unhealthy":
        return failure("Service unhealthy", 503, data=body)
    return success(body)


@system_bp.get("/version")
def version():
    env = "production" if not current_app.debug else "development"
    return success({
        "api_version": API_VERSION,
        "environment": env,
        "python_version": sys.version.split()[0],
        "server_time": utcnow().isoformat() + "Z",
    })
