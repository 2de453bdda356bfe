# Overview: Server-side sessions backing bearer tokens; issue, resolve, revoke and prune.

"""
Session Service

A bearer token is 32 random bytes (hex). Only its SHA-256 is stored, so a
leaked session_tokens table cannot be replayed. High-entropy tokens do not
need a slow hash; bcrypt is reserved for passwords.

LIFETIME:
- Absolute: SESSION_LIFETIME_HOURS after issue (default 24)
- Idle: SESSION_IDLE_MINUTES without a request (default 120); an idle
  session is revoked when next presented

The session row stores who, never what they may do. Roles are re-read from
users on every authorization check, so a demotion bites on the next request.
"""

import hashlib
import secrets
from dataclasses import dataclass
from datetime import timedelta

from flask import current_app

from ..extensions import db
from ..models import SessionToken, User
from chowline.time_utils import as_utc_naive, utcnow


# Revoked / expired rows are kept this long for incident review
SESSION_RETENTION = timedelta(days=30)


@dataclass
class SessionContext:
    user: User
    session: SessionToken


def _lifetime() -> timedelta:
    return timedelta(hours=current_app.config.get("SESSION_LIFETIME_HOURS", 24))


def _idle_limit() -> timedelta:
    return timedelta(minutes=current_app.config.get("SESSION_IDLE_MINUTES", 120))


def generate_token() -> str:
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def create_session(
    user_id: int,
    user_agent: str | None = None,
    ip_address: str | None = None,
) -> tuple[SessionToken, str]:
    """
    Issue a session for an active user.

    Returns (stored row, plaintext token). The plaintext goes to the client
    once and is not recoverable afterwards.
    """
    user = db.session.query(User).filter_by(id=user_id).first()
    if user is None or not user.is_active:
        raise ValueError("User not found or inactive")

    token = generate_token()
    issued_at = utcnow()
    session = SessionToken(
        user_id=user.id,
        token_hash=hash_token(token),
        created_at=issued_at,
        last_used_at=issued_at,
        expires_at=issued_at + _lifetime(),
        user_agent=(user_agent or "")[:512] or None,
        ip_address=(ip_address or "")[:45] or None,
        is_revoked=False,
    )
    db.session.add(session)
    db.session.commit()
    return session, token


def _live_session(token: str) -> SessionToken | None:
    return (
        db.session.query(SessionToken)
        .filter(SessionToken.token_hash == hash_token(token), SessionToken.is_revoked.is_(False))
        .first()
    )


def _revoke(session: SessionToken, reason: str) -> None:
    session.is_revoked = True
    session.revoked_at = utcnow()
    session.revoked_reason = reason[:128]
    db.session.commit()


def validate_session(token: str) -> SessionContext | None:
    """
    Resolve a presented token to its user.

    None for unknown, revoked, expired or idle tokens, and for deactivated
    users. A successful lookup refreshes last_used_at.
    """
    if not token:
        return None

    session = _live_session(token)
    if session is None:
        return None

    now = utcnow()
    if now >= as_utc_naive(session.expires_at):
        return None
    if now - as_utc_naive(session.last_used_at) > _idle_limit():
        _revoke(session, "Idle timeout")
        current_app.logger.info("Session %s for user %s revoked after idle timeout", session.id, session.user_id)
        return None

    user = session.user
    if user is None or not user.is_active:
        _revoke(session, "User account deactivated")
        return None

    session.last_used_at = now
    db.session.commit()
    return SessionContext(user=user, session=session)


def revoke_session(token: str, reason: str = "User logout") -> bool:
    """False if the token does not name a live session."""
    session = _live_session(token)
    if session is None:
        return False
    _revoke(session, reason)
    return True


def revoke_all_user_sessions(user_id: int, reason: str = "Revoke all sessions") -> int:
    """Force re-authentication everywhere (role change, suspected compromise)."""
    count = (
        db.session.query(SessionToken)
        .filter(SessionToken.user_id == user_id, SessionToken.is_revoked.is_(False))
        .update(
            {"is_revoked": True, "revoked_at": utcnow(), "revoked_reason": reason[:128]},
            synchronize_session=False,
        )
    )
    db.session.commit()
    if count:
        current_app.logger.info("Revoked %d session(s) for user %s: %s", count, user_id, reason)
    return count


def cleanup_expired_sessions() -> int:
    """Delete dead sessions older than SESSION_RETENTION. Returns count deleted."""
    now = utcnow()
    deleted = (
        db.session.query(SessionToken)
        .filter(
            db.or_(SessionToken.expires_at < now, SessionToken.is_revoked.is_(True)),
            SessionToken.created_at < now - SESSION_RETENTION,
        )
        .delete(synchronize_session=False)
    )
    db.session.commit()
    return deleted
