# Overview: Accounts and credentials; bcrypt passwords, roles read from the identity store.

"""
Authentication Service

Accounts are the identities every audit entry and order is attributed to.

SECURITY NOTES:
- bcrypt with cost BCRYPT_ROUNDS (12 unless configured; tests use 4)
- Password rules: PASSWORD_RULES below, checked before hashing
- Self-signup only ever creates customers; owner and admin roles are
  granted by an administrator or the CLI. Approving a restaurant
  application promotes the applicant to owner
- Bearer sessions live in session_service
- export_user_data answers a data-subject request with everything held
  about the caller
"""

import re

import bcrypt
from flask import current_app

from ..errors import AlreadyExists, NotFound, ValidationError
from ..extensions import db
from ..models import Order, RestaurantApplication, User
from ..models.identity import ROLE_CUSTOMER, VALID_ROLES
from . import audit_service
from chowline.time_utils import to_utc_z, utcnow


EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

MIN_PASSWORD_LENGTH = 8

# (pattern, message) pairs; the first failing rule is reported
PASSWORD_RULES = (
    (re.compile(r"[A-Z]"), "Password must contain at least one uppercase letter"),
    (re.compile(r"[a-z]"), "Password must contain at least one lowercase letter"),
    (re.compile(r"\d"), "Password must contain at least one digit"),
    (re.compile(r"[!@#$%^&*(),.'\":{}|<>]"), "Password must contain at least one special character"),
)


class PasswordValidationError(ValidationError):
    def __init__(self, message: str):
        super().__init__(message, field="password")


def validate_password_strength(password: str) -> None:
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        raise PasswordValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    for pattern, message in PASSWORD_RULES:
        if not pattern.search(password):
            raise PasswordValidationError(message)


def hash_password(password: str) -> str:
    """Strength-check, then bcrypt. Returns the hash as text for the users row."""
    validate_password_strength(password)
    rounds = current_app.config.get("BCRYPT_ROUNDS", 12)
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    if not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        current_app.logger.error("Unreadable password hash encountered")
        return False


def normalize_email(email) -> str:
    if not isinstance(email, str) or not EMAIL_PATTERN.match(email.strip()):
        raise ValidationError("A valid email is required", field="email")
    return email.strip().lower()


def create_user(
    email: str,
    password: str,
    *,
    role: str = ROLE_CUSTOMER,
    full_name: str | None = None,
    phone: str | None = None,
) -> User:
    """
    Raises:
        ValidationError: bad email, weak password or unknown role
        AlreadyExists: email already registered
    """
    email = normalize_email(email)
    if role not in VALID_ROLES:
        raise ValidationError(f"Invalid role '{role}'", field="role")

    if db.session.query(User.id).filter(User.email == email).first():
        raise AlreadyExists("An account with this email already exists")

    user = User(
        email=email,
        password_hash=hash_password(password),
        role=role,
        full_name=(full_name or "").strip() or None,
        phone=(phone or "").strip() or None,
        is_active=True,
        created_at=utcnow(),
    )
    db.session.add(user)
    db.session.commit()
    current_app.logger.info("User %s created with role %s", user.id, role)
    return user


def authenticate(email: str, password: str) -> User | None:
    """The active user for these credentials, else None. Stamps last_login_at."""
    if not isinstance(email, str) or not isinstance(password, str):
        return None

    user = (
        db.session.query(User)
        .filter(User.email == email.strip().lower(), User.is_active.is_(True))
        .first()
    )
    if user is None or not verify_password(password, user.password_hash):
        return None

    user.last_login_at = utcnow()
    db.session.commit()
    return user


def current_role(user_id: int) -> str | None:
    """
    Role straight from the identity store; None for unknown or inactive users.

    WHY: Authorization never trusts a role carried by the client or cached
    on a token; it is re-read on every authorized call.
    """
    row = (
        db.session.query(User.role, User.is_active)
        .filter(User.id == user_id)
        .first()
    )
    if row is None or not row.is_active:
        return None
    return row.role


def _require_valid_role(role: str) -> None:
    if role not in VALID_ROLES:
        raise ValidationError(f"Invalid role '{role}'", field="role")


def apply_role_change(
    user: User,
    role: str,
    actor: User | None = None,
    *,
    ip_address: str | None = None,
) -> str | None:
    """
    Set the role and record user_role_changed in the caller's transaction.

    Returns the previous role, or None when nothing changed. Does not commit.
    """
    _require_valid_role(role)
    if user.role == role:
        return None

    previous = user.role
    user.role = role
    audit_service.record(
        "user_role_changed",
        actor_id=actor.id if actor else None,
        target_type="user",
        target_id=user.id,
        metadata={"from": previous, "to": role},
        ip_address=ip_address,
    )
    return previous


def set_role(
    user_id: int,
    role: str,
    actor: User | None = None,
    *,
    ip_address: str | None = None,
) -> User:
    """
    Change a user's role, recording user_role_changed.

    Takes effect on the user's next request. Callers revoke existing
    sessions when the change must also force a fresh login.
    """
    _require_valid_role(role)
    user = db.session.query(User).filter_by(id=user_id).first()
    if user is None:
        raise NotFound("User not found")

    previous = apply_role_change(user, role, actor, ip_address=ip_address)
    if previous is None:
        return user
    db.session.commit()
    current_app.logger.info("User %s role changed %s -> %s", user.id, previous, role)
    return user


def export_user_data(user: User, now=None) -> dict:
    """
    Everything held about `user` as a data subject: profile, orders placed
    (with line items) and restaurant applications.

    Credentials and session records are not part of the export.
    """
    orders = (
        db.session.query(Order)
        .filter(Order.customer_id == user.id)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .all()
    )
    applications = (
        db.session.query(RestaurantApplication)
        .filter(RestaurantApplication.applicant_id == user.id)
        .order_by(RestaurantApplication.id.desc())
        .all()
    )
    return {
        "exported_at": to_utc_z(now or utcnow()),
        "subject": user.to_dict(),
        "orders": [order.to_dict(include_items=True) for order in orders],
        "restaurant_applications": [application.to_dict() for application in applications],
    }
