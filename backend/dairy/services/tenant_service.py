"""
Multi-Tenant Service: Tenant Validation and Scoping Helpers

SECURITY INVARIANTS:
1. Every authenticated request has g.org_id set (see require_auth)
2. User ids from client input are validated against g.org_id
3. A row in another organization is reported as not found, never as forbidden

USAGE:
    from dairy.services.tenant_service import get_current_org_id, require_user_in_org

    customer = require_user_in_org(user_id, get_current_org_id(), role="user")
"""

from flask import current_app, g

from ..extensions import db
from ..models import User
from ..validation import NotFoundError


class TenantAccessError(Exception):
    """Raised when the tenant context is missing."""
    pass


def get_current_org_id() -> int:
    """
    Current tenant's org_id from Flask g.

    Raises TenantAccessError if not set; never happens after @require_auth.
    """
    if not hasattr(g, 'org_id') or g.org_id is None:
        raise TenantAccessError("Tenant context not established")
    return g.org_id


def require_user_in_org(user_id: int, org_id: int, role: str | None = None) -> User:
    """
    Validate that a user belongs to the organization (and has the role).

    Raises NotFoundError either way so other tenants' users are not revealed.
    """
    user = db.session.query(User).filter_by(id=user_id).first()
    if not user or user.org_id != org_id:
        if user is not None:
            current_app.logger.warning(
                "Cross-tenant access attempt: user %s belongs to org %s, not %s",
                user_id,
                user.org_id,
                org_id,
            )
        raise NotFoundError(f"User {user_id} not found")
    if role is not None and user.role != role:
        raise NotFoundError(f"User {user_id} not found")
    return user
