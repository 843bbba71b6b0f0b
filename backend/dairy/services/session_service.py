# Overview: Service-layer operations for session; bearer token issue, validation and revocation.

"""
Session Token Management Service

Tokens are 32 random bytes sent to the client once; only their SHA-256
hash is stored. Sessions capture org_id at creation, which is the tenant
context for every authenticated request.

TIMEOUTS (from config):
- SESSION_ABSOLUTE_TIMEOUT_HOURS (24): maximum session length
- SESSION_IDLE_TIMEOUT_HOURS (2): revoked after this long without use
"""

import hashlib
import secrets
from dataclasses import dataclass
from datetime import timedelta

from flask import current_app

from ..extensions import db
from ..models import Organization, SessionToken, User
from dairy.time_utils import utcnow


@dataclass
class SessionContext:
    """User identity plus the tenant context fixed at login."""
    user: User
    session: SessionToken
    org_id: int


def generate_token() -> str:
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    """SHA-256 is enough for high-entropy tokens; bcrypt is for passwords."""
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def _absolute_timeout() -> timedelta:
    return timedelta(hours=current_app.config["SESSION_ABSOLUTE_TIMEOUT_HOURS"])


def _idle_timeout() -> timedelta:
    return timedelta(hours=current_app.config["SESSION_IDLE_TIMEOUT_HOURS"])


def create_session(
    user_id: int,
    user_agent: str | None = None,
    ip_address: str | None = None
) -> tuple[SessionToken, str]:
    """
    Create a session for a user.

    Returns (session_record, plaintext_token). Raises ValueError if the
    user or its organization is missing or inactive.
    """
    user = db.session.query(User).filter_by(id=user_id).first()
    if not user:
        raise ValueError("User not found")

    org = db.session.query(Organization).filter_by(id=user.org_id).first()
    if not org or not org.is_active:
        raise ValueError("Organization is not active")

    plaintext_token = generate_token()
    now = utcnow()

    session = SessionToken(
        user_id=user_id,
        org_id=user.org_id,
        token_hash=hash_token(plaintext_token),
        created_at=now,
        last_used_at=now,
        expires_at=now + _absolute_timeout(),
        user_agent=(user_agent or "")[:255] or None,
        ip_address=ip_address,
        is_revoked=False
    )

    db.session.add(session)
    db.session.commit()

    return session, plaintext_token


def _revoke(session: SessionToken, reason: str, now) -> None:
    session.is_revoked = True
    session.revoked_at = now
    session.revoked_reason = reason
    db.session.commit()


def validate_session(token: str) -> SessionContext | None:
    """
    Return the SessionContext for a valid token, else None.

    Idle sessions and sessions of deactivated users/organizations are
    revoked on sight. A valid call refreshes last_used_at.
    """
    now = utcnow()
    session = db.session.query(SessionToken).filter_by(
        token_hash=hash_token(token),
        is_revoked=False
    ).first()

    if not session:
        return None

    if session.expires_at < now:
        return None

    if now - session.last_used_at > _idle_timeout():
        _revoke(session, "Idle timeout", now)
        return None

    user = session.user
    if not user or not user.is_active:
        _revoke(session, "User account deactivated", now)
        return None

    org = session.organization
    if not org or not org.is_active:
        _revoke(session, "Organization deactivated", now)
        return None

    session.last_used_at = now
    db.session.commit()

    return SessionContext(user=user, session=session, org_id=session.org_id)


def revoke_session(token: str, reason: str = "User logout") -> bool:
    session = db.session.query(SessionToken).filter_by(
        token_hash=hash_token(token),
        is_revoked=False
    ).first()

    if not session:
        return False

    _revoke(session, reason, utcnow())
    return True
