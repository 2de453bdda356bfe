# Overview: Flask API routes for auth operations; parses input and returns JSON responses.

# backend/chowline/routes/auth.py
"""
Authentication API routes

SECURITY FEATURES:
- Password strength validation on signup
- Per-address throttling: signup 3/hour, login 5/15 minutes
- Self-signup only creates customers
- Session management with token-based auth
- Data-subject export of everything held about the caller
"""

from flask import Blueprint, request, jsonify, current_app, g

from ..errors import ChowlineError, Unauthenticated, ValidationError
from ..services import auth_service
from ..services import session_service
from ..services.access_service import bearer_token
from ..decorators import client_ip, error_response, rate_limited, require_auth
from chowline.time_utils import to_utc_z


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


@auth_bp.post("/signup")
@rate_limited("signup")
def signup_route():
    """
    Register a customer account and start a session.

    Other roles are granted by an administrator (see /api/admin/users).
    """
    data = request.get_json(silent=True) or {}

    try:
        user = auth_service.create_user(
            data.get("email"),
            data.get("password"),
            full_name=data.get("full_name"),
            phone=data.get("phone"),
        )
        session, token = session_service.create_session(
            user_id=user.id,
            user_agent=request.headers.get("User-Agent"),
            ip_address=client_ip(),
        )
    except ChowlineError as e:
        current_app.logger.warning("Signup rejected from %s: %s", client_ip(), e.message)
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to sign up user")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({
        "user": user.to_dict(),
        "token": token,
        "expires_at": to_utc_z(session.expires_at),
    }), 201


@auth_bp.post("/login")
@rate_limited("login")
def login_route():
    """
    Exchange email + password for a bearer token.

    Unknown email, wrong password and deactivated account all get the same
    401 so the response does not reveal which accounts exist.
    """
    data = request.get_json(silent=True) or {}
    email = data.get("email")
    password = data.get("password")

    try:
        if not email or not password:
            raise ValidationError("email and password required", field="email" if not email else "password")

        user = auth_service.authenticate(email, password)
        if user is None:
            current_app.logger.warning("Failed login from %s", client_ip())
            raise Unauthenticated("Invalid credentials")

        session, token = session_service.create_session(
            user_id=user.id,
            user_agent=request.headers.get("User-Agent"),
            ip_address=client_ip(),
        )
    except ChowlineError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to login user")
        return jsonify({"error": "Internal server error"}), 500

    current_app.logger.info("User %s logged in from %s", user.id, client_ip())
    return jsonify({
        "user": user.to_dict(),
        "token": token,
        "expires_at": to_utc_z(session.expires_at),
    }), 200


@auth_bp.post("/logout")
def logout_route():
    """Revoke the presented bearer token. Other sessions of the user stay live."""
    token = bearer_token(request.headers.get("Authorization"))
    if not token:
        return jsonify({"error": "Authorization header required", "code": "UNAUTHENTICATED"}), 401

    try:
        revoked = session_service.revoke_session(token, reason="User logout")
    except Exception:
        current_app.logger.exception("Failed to logout user")
        return jsonify({"error": "Internal server error"}), 500

    if not revoked:
        return jsonify({"error": "Invalid or expired token", "code": "UNAUTHENTICATED"}), 401

    return jsonify({"message": "Logout successful"}), 200


@auth_bp.get("/me")
@require_auth
def me_route():
    return jsonify({"user": g.current_user.to_dict()}), 200


@auth_bp.get("/me/export")
@require_auth
def export_me_route():
    """
    Data-subject export: the caller's profile, orders and restaurant
    applications as a downloadable JSON document.
    """
    user = g.current_user
    try:
        document = auth_service.export_user_data(user)
    except Exception:
        current_app.logger.exception("Failed to export data for user %s", user.id)
        return jsonify({"error": "Internal server error"}), 500

    current_app.logger.info("Data export issued to user %s", user.id)
    response = jsonify(document)
    response.headers["Content-Disposition"] = f'attachment; filename="chowline-data-export-{user.id}.json"'
    return response, 200
