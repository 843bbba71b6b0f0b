# Overview: Flask API routes for auth operations; phone/password login, logout and the current user.

from flask import Blueprint, current_app, g, request

from ..decorators import bearer_token, require_auth
from ..responses import failure, success
from ..services import auth_service, session_service
from ..validation import require_json_object


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


@auth_bp.post("/login")
def login_route():
    """
    Authenticate by phone + password and issue a bearer token.

    Body: {"phone", "password", "org_id"?}
    """
    data = require_json_object(request.get_json(silent=True))
    phone = data.get("phone")
    password = data.get("password")
    if not phone or not password:
        return failure(
            "phone and password are required",
            400,
            {k: "required" for k in ("phone", "password") if not data.get(k)},
        )

    user = auth_service.authenticate(str(phone), str(password), org_id=data.get("org_id"))
    if user is None:
        current_app.logger.info("Failed login for phone %s", phone)
        return failure("Invalid credentials", 401)

    session, token = session_service.create_session(
        user.id,
        user_agent=request.headers.get("User-Agent"),
        ip_address=request.remote_addr,
    )
    return success({
        "token": token,
        "expires_at": session.to_dict()["expires_at"],
        "user": user.to_dict(),
    }, message="Login successful")


@auth_bp.post("/logout")
@require_auth
def logout_route():
    session_service.revoke_session(bearer_token(), reason="User logout")
    return success(message="Logged out")


@auth_bp.get("/me")
@require_auth
def me_route():
    return success({"user": g.current_user.to_dict(), "org_id": g.org_id})
