# Overview: Service-layer operations for auth; user creation, bcrypt password hashing and phone login.

"""
Authentication Service with Multi-Tenant Support

MULTI-TENANT: Users belong to exactly one organization (org_id). The phone
number is the login identity and is unique within an organization.

SECURITY NOTES:
- Passwords hashed with bcrypt (cost factor 12)
- Minimum 8 characters with upper/lower case, digit and special char
- Customers may be created without a password (OTP-only); they cannot
  use password login
- Session tokens managed separately (see session_service.py)
- Authentication validates that user and organization are active
"""

import re

import bcrypt

from ..extensions import db
from ..models import Organization, User
from ..models.auth import PAYMENT_MODES, USER_ROLES
from dairy.time_utils import utcnow
from ..validation import ConflictError, ValidationError, require_choice


PHONE_PATTERN = re.compile(r"^\+?[0-9]{10,15}$")


class PasswordValidationError(ValidationError):
    """Raised when password doesn't meet strength requirements."""
    pass


class AuthenticationError(Exception):
    """Raised when credentials or a bearer token are rejected (401)."""
    pass


def validate_password_strength(password: str) -> None:
    """
    Validate password meets strength requirements.

    Raises PasswordValidationError if requirements not met.
    """
    if len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")

    if not re.search(r'[A-Z]', password):
        raise PasswordValidationError("Password must contain at least one uppercase letter")

    if not re.search(r'[a-z]', password):
        raise PasswordValidationError("Password must contain at least one lowercase letter")

    if not re.search(r'\d', password):
        raise PasswordValidationError("Password must contain at least one digit")

    if not re.search(r"[!@#$%^&*(),.'\":{}|<>]", password):
        raise PasswordValidationError("Password must contain at least one special character")


def hash_password(password: str) -> str:
    """Validate strength, then hash with bcrypt (cost factor 12)."""
    validate_password_strength(password)
    salt = bcrypt.gensalt(rounds=12)
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')


def verify_password(password: str, password_hash: str | None) -> bool:
    """
    Verify password against bcrypt hash.

    bcrypt.checkpw() is timing-safe. Users without a hash never match.
    """
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        return False


def normalize_phone(phone: str) -> str:
    normalized = re.sub(r"[\s\-()]", "", phone or "")
    if not PHONE_PATTERN.match(normalized):
        raise ValidationError("phone must be 10-15 digits", errors={"phone": "invalid"})
    return normalized


def create_user(
    org_id: int,
    phone: str,
    password: str | None = None,
    *,
    role: str = "user",
    full_name: str | None = None,
    email: str | None = None,
    payment_mode: str = "prepaid",
) -> User:
    """
    Create a user in an organization.

    Raises:
        ValidationError: bad phone/role/payment mode, weak password, inactive org
        ConflictError: phone already registered in the organization
    """
    org = db.session.query(Organization).filter_by(id=org_id).first()
    if not org:
        raise ValidationError("Organization not found")
    if not org.is_active:
        raise ValidationError("Organization is not active")

    require_choice("role", role, USER_ROLES)
    require_choice("payment_mode", payment_mode, PAYMENT_MODES)
    phone = normalize_phone(phone)

    # MULTI-TENANT: phone uniqueness is scoped to the organization
    existing = db.session.query(User).filter_by(org_id=org_id, phone=phone).first()
    if existing:
        raise ConflictError("Phone number already registered in this organization")

    if role != "user" and not password:
        raise ValidationError("Agents and admins need a password")

    user = User(
        org_id=org_id,
        phone=phone,
        email=email,
        full_name=full_name,
        role=role,
        status="active",
        payment_mode=payment_mode,
        password_hash=hash_password(password) if password else None,
    )
    db.session.add(user)
    db.session.commit()
    return user


def authenticate(phone: str, password: str, org_id: int | None = None) -> User | None:
    """
    Authenticate by phone and password.

    Returns the User (and stamps last_login_at) or None. When org_id is not
    given, the phone must identify exactly one active user.
    """
    try:
        phone = normalize_phone(phone)
    except ValidationError:
        return None

    query = db.session.query(User).filter(User.phone == phone, User.status == "active")
    if org_id is not None:
        query = query.filter(User.org_id == org_id)

    candidates = query.limit(2).all()
    if len(candidates) != 1:
        return None
    user = candidates[0]

    org = db.session.query(Organization).filter_by(id=user.org_id).first()
    if not org or not org.is_active:
        return None

    if verify_password(password, user.password_hash):
        user.last_login_at = utcnow()
        db.session.commit()
        return user

    return None
