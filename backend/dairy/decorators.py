# Overview: Request authentication and role decorators for API routes.

from functools import wraps

from flask import g, request

from .responses import failure
from .services import session_service


def _is_authenticated() -> bool:
    return hasattr(g, 'current_user') and hasattr(g, 'org_id')


def bearer_token() -> str | None:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return auth_header.split(" ", 1)[1].strip() or None


def require_auth(f):
    """
    Require a valid bearer token and establish tenant context.

    Sets g.current_user, g.org_id and g.session_context. Returns 401 for a
    missing, invalid, expired or revoked token.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token = bearer_token()
        if token is None:
            return failure("Authentication required", 401)

        context = session_service.validate_session(token)
        if not context:
            return failure("Invalid or expired token", 401)

        g.current_user = context.user
        g.org_id = context.org_id
        g.session_context = context

        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles: str):
    """
    Require one of the given roles. Use after @require_auth.

    Returns 403 when the authenticated user has another role.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not _is_authenticated():
                return failure("Authentication required", 401)

            if g.current_user.role not in roles:
                return failure("Permission denied", 403)

            return f(*args, **kwargs)

        return decorated_function
    return decorator
