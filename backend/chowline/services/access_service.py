# Overview: Access guard; resolves the caller's identity and checks its role.

"""
Access Guard

SECURITY:
- Identity comes only from a server-side session looked up by token hash.
- The role is re-read from the users table on every check; nothing the
  client sends (headers, token claims, body fields) can influence it.
- Forbidden never says which roles would have been accepted.
"""

from __future__ import annotations

from flask import current_app

from ..errors import Forbidden, Unauthenticated
from ..models import User
from . import auth_service, session_service


def bearer_token(authorization_header: str | None) -> str | None:
    if not authorization_header or not authorization_header.startswith("Bearer "):
        return None
    token = authorization_header.split(" ", 1)[1].strip()
    return token or None


def require_authenticated(authorization_header: str | None) -> session_service.SessionContext:
    """Raises Unauthenticated unless the header carries a live session token."""
    token = bearer_token(authorization_header)
    if token is None:
        raise Unauthenticated()

    context = session_service.validate_session(token)
    if context is None:
        raise Unauthenticated("Invalid or expired token")
    return context


def require_role(identity: User, *allowed_roles: str) -> User:
    """Raises Forbidden unless the stored role is one of `allowed_roles`."""
    role = auth_service.current_role(identity.id)
    if role is None or role not in allowed_roles:
        current_app.logger.warning(
            "Permission denied for user %s (role %s)", identity.id, role
        )
        raise Forbidden()
    return identity
