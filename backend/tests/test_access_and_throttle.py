"""
Access guard and abuse throttle tests.

Verifies:
- Protected endpoints return 401 without a valid session
- Wrong roles get 403 without learning which roles are accepted
- Roles are re-read on every request
- Throttle buckets reject with 429 + Retry-After and key on the leftmost
  X-Forwarded-For address
"""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from chowline.errors import RateLimited
from chowline.extensions import db
from chowline.models import AuditEntry, SessionToken
from chowline.services import auth_service, order_service, session_service, throttle_service
from chowline.time_utils import utcnow
from conftest import PASSWORD, auth_headers, make_restaurant, make_user, order_payload


# =============================================================================
# UNAUTHENTICATED ACCESS: 401
# =============================================================================


class TestUnauthenticatedAccess:
    """All protected endpoints return 401 without a token."""

    @pytest.mark.parametrize(
        "method,path",
        [
            ("GET", "/api/auth/me"),
            ("GET", "/api/orders"),
            ("POST", "/api/orders"),
            ("GET", "/api/orders/1"),
            ("GET", "/api/restaurant/mine"),
            ("GET", "/api/restaurant/1/orders"),
            ("PATCH", "/api/restaurant/orders/1/status"),
            ("GET", "/api/admin/orders"),
            ("POST", "/api/admin/settlements"),
            ("GET", "/api/admin/audit"),
            ("POST", "/api/admin/users"),
        ],
    )
    def test_requires_auth(self, client, method, path):
        resp = getattr(client, method.lower())(path)
        assert resp.status_code == 401, f"{method} {path} returned {resp.status_code}"

    def test_garbage_token(self, client):
        resp = client.get("/api/auth/me", headers={"Authorization": "Bearer not-a-token"})
        assert resp.status_code == 401

    def test_revoked_session(self, client, customer):
        headers = auth_headers(customer)
        session_service.revoke_all_user_sessions(customer.id)

        resp = client.get("/api/auth/me", headers=headers)
        assert resp.status_code == 401

    def test_idle_session_revoked(self, client, customer):
        headers = auth_headers(customer)
        session = db.session.query(SessionToken).filter_by(user_id=customer.id).one()
        session.last_used_at = utcnow() - timedelta(hours=3)
        db.session.commit()

        assert client.get("/api/auth/me", headers=headers).status_code == 401
        db.session.refresh(session)
        assert session.is_revoked
        assert session.revoked_reason == "Idle timeout"

    def test_timezone_aware_timestamps(self, monkeypatch, customer):
        # PostgreSQL returns timestamptz columns tz-aware
        issued = datetime.now(timezone.utc)
        stored = SimpleNamespace(
            id=1,
            user_id=customer.id,
            user=customer,
            expires_at=issued + timedelta(hours=1),
            last_used_at=issued - timedelta(minutes=5),
        )
        monkeypatch.setattr(session_service, "_live_session", lambda token: stored)

        context = session_service.validate_session("opaque-token")
        assert context is not None
        assert context.user.id == customer.id
        assert stored.last_used_at.tzinfo is None

    def test_timezone_aware_expiry_enforced(self, monkeypatch, customer):
        issued = datetime.now(timezone.utc) - timedelta(hours=25)
        stored = SimpleNamespace(
            id=1,
            user_id=customer.id,
            user=customer,
            expires_at=issued + timedelta(hours=24),
            last_used_at=issued,
        )
        monkeypatch.setattr(session_service, "_live_session", lambda token: stored)

        assert session_service.validate_session("opaque-token") is None


# =============================================================================
# WRONG ROLE: 403
# =============================================================================


class TestRoleGuard:

    @pytest.mark.parametrize(
        "method,path",
        [
            ("GET", "/api/admin/orders"),
            ("GET", "/api/admin/settlements"),
            ("POST", "/api/admin/restaurants"),
            ("GET", "/api/restaurant/mine"),
        ],
    )
    def test_customer_denied(self, client, customer, method, path):
        resp = getattr(client, method.lower())(path, headers=auth_headers(customer))
        assert resp.status_code == 403
        assert resp.get_json() == {"error": "Insufficient permissions", "code": "FORBIDDEN"}

    def test_owner_denied_admin(self, client, owner):
        resp = client.get("/api/admin/orders", headers=auth_headers(owner))
        assert resp.status_code == 403

    def test_role_change_applies_immediately(self, client, owner, restaurant):
        headers = auth_headers(owner)
        assert client.get("/api/restaurant/mine", headers=headers).status_code == 200

        auth_service.set_role(owner.id, "customer")

        assert client.get("/api/restaurant/mine", headers=headers).status_code == 403

    def test_owner_cannot_edit_other_restaurant(self, client, owner):
        other = make_restaurant(make_user("other@example.com", role="restaurant_owner"), name="Suya Spot")
        resp = client.patch(
            f"/api/restaurant/{other.id}",
            json={"is_open": False},
            headers=auth_headers(owner),
        )
        assert resp.status_code == 403

    def test_owner_toggles_open(self, client, owner, restaurant):
        resp = client.patch(
            f"/api/restaurant/{restaurant.id}",
            json={"is_open": False},
            headers=auth_headers(owner),
        )
        assert resp.status_code == 200
        assert resp.get_json()["restaurant"]["is_open"] is False

    def test_owner_cannot_set_commission(self, client, owner, restaurant):
        resp = client.patch(
            f"/api/restaurant/{restaurant.id}",
            json={"commission_rate_bps": 0},
            headers=auth_headers(owner),
        )
        assert resp.status_code == 400
        assert resp.get_json()["field"] == "commission_rate_bps"

    def test_admin_sets_commission(self, client, admin, restaurant):
        resp = client.put(
            f"/api/admin/restaurants/{restaurant.id}/commission",
            json={"commission_rate": "7.5"},
            headers=auth_headers(admin),
        )
        assert resp.status_code == 200
        assert resp.get_json()["restaurant"]["commission_rate"] == "7.50"

    def test_admin_role_change_revokes_sessions(self, client, admin, customer):
        customer_headers = auth_headers(customer)

        resp = client.patch(
            f"/api/admin/users/{customer.id}/role",
            json={"role": "restaurant_owner"},
            headers=auth_headers(admin),
        )
        assert resp.status_code == 200
        assert resp.get_json()["sessions_revoked"] == 1
        assert client.get("/api/auth/me", headers=customer_headers).status_code == 401

        entry = db.session.query(AuditEntry).filter_by(action="user_role_changed").one()
        assert entry.actor_id == admin.id
        assert entry.entry_metadata == {"from": "customer", "to": "restaurant_owner"}


# =============================================================================
# AUTH ROUTES
# =============================================================================


class TestAuthRoutes:

    def test_signup_creates_customer(self, client):
        resp = client.post("/api/auth/signup", json={"email": "New@Example.com", "password": PASSWORD})
        assert resp.status_code == 201
        body = resp.get_json()
        assert body["user"]["email"] == "new@example.com"
        assert body["user"]["role"] == "customer"
        assert body["token"]

    def test_signup_ignores_role(self, client):
        resp = client.post(
            "/api/auth/signup",
            json={"email": "sneaky@example.com", "password": PASSWORD, "role": "admin"},
        )
        assert resp.status_code == 201
        assert resp.get_json()["user"]["role"] == "customer"

    def test_signup_weak_password(self, client):
        resp = client.post("/api/auth/signup", json={"email": "weak@example.com", "password": "short"})
        assert resp.status_code == 400
        assert resp.get_json()["field"] == "password"

    def test_login_and_me(self, client, customer):
        resp = client.post("/api/auth/login", json={"email": customer.email, "password": PASSWORD})
        assert resp.status_code == 200
        token = resp.get_json()["token"]

        resp = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 200
        assert resp.get_json()["user"]["id"] == customer.id

    def test_logout_revokes_token(self, client, customer):
        headers = auth_headers(customer)

        assert client.post("/api/auth/logout", headers=headers).status_code == 200
        assert client.get("/api/auth/me", headers=headers).status_code == 401
        assert client.post("/api/auth/logout", headers=headers).status_code == 401

    def test_login_bad_password(self, client, customer):
        resp = client.post("/api/auth/login", json={"email": customer.email, "password": "Wrong123!"})
        assert resp.status_code == 401

    def test_data_export(self, client, customer, restaurant, jollof):
        order_service.create_order(customer=customer, payload=order_payload(restaurant, [(jollof, 2)]))
        other = make_user("other@example.com")
        order_service.create_order(customer=other, payload=order_payload(restaurant, [(jollof, 1)]))

        resp = client.get("/api/auth/me/export", headers=auth_headers(customer))

        assert resp.status_code == 200
        assert resp.headers["Content-Disposition"] == (
            f'attachment; filename="chowline-data-export-{customer.id}.json"'
        )
        body = resp.get_json()
        assert body["subject"]["email"] == customer.email
        assert "password_hash" not in body["subject"]
        assert [o["customer_id"] for o in body["orders"]] == [customer.id]
        assert body["orders"][0]["items"][0]["quantity"] == 2
        assert body["restaurant_applications"] == []

    def test_data_export_requires_auth(self, client):
        assert client.get("/api/auth/me/export").status_code == 401


# =============================================================================
# ABUSE THROTTLE
# =============================================================================


class TestThrottle:

    def test_client_key_prefers_leftmost_forwarded(self):
        assert throttle_service.client_key("203.0.113.5, 10.0.0.1", "127.0.0.1") == "203.0.113.5"
        assert throttle_service.client_key(None, "127.0.0.1") == "127.0.0.1"
        assert throttle_service.client_key("", None) == "unknown"

    def test_sliding_window(self, app):
        start = utcnow()
        for i in range(5):
            throttle_service.check_and_record("login", "198.51.100.7", now=start + timedelta(seconds=i))

        with pytest.raises(RateLimited) as exc:
            throttle_service.check_and_record("login", "198.51.100.7", now=start + timedelta(seconds=10))
        assert 0 < exc.value.retry_after_seconds <= 15 * 60

        # Other clients are unaffected
        throttle_service.check_and_record("login", "198.51.100.8", now=start + timedelta(seconds=10))

        # The oldest hit has left the window
        throttle_service.check_and_record("login", "198.51.100.7", now=start + timedelta(minutes=15, seconds=1))

    def test_unknown_bucket(self, app):
        with pytest.raises(ValueError):
            throttle_service.check_and_record("nope", "198.51.100.7")

    def test_login_returns_429(self, client, customer):
        headers = {"X-Forwarded-For": "203.0.113.5, 10.0.0.1"}
        for _ in range(5):
            resp = client.post("/api/auth/login", json={"email": customer.email, "password": "Wrong123!"},
                               headers=headers)
            assert resp.status_code == 401

        resp = client.post("/api/auth/login", json={"email": customer.email, "password": PASSWORD},
                           headers=headers)
        assert resp.status_code == 429
        assert int(resp.headers["Retry-After"]) > 0
        body = resp.get_json()
        assert body["code"] == "RATE_LIMITED"
        assert body["retry_after_seconds"] == int(resp.headers["Retry-After"])

        # A different leftmost address has its own budget, whatever the proxy chain
        resp = client.post("/api/auth/login", json={"email": customer.email, "password": PASSWORD},
                           headers={"X-Forwarded-For": "203.0.113.6, 10.0.0.1"})
        assert resp.status_code == 200

    def test_disabled_outside_production(self, client, app, customer):
        app.config["RATE_LIMIT_ENABLED"] = False
        for _ in range(7):
            resp = client.post("/api/auth/login", json={"email": customer.email, "password": "Wrong123!"})
            assert resp.status_code == 401

    def test_cleanup(self, app):
        old = utcnow() - timedelta(hours=2)
        throttle_service.check_and_record("signup", "198.51.100.7", now=old)
        throttle_service.check_and_record("signup", "198.51.100.7")

        assert throttle_service.cleanup_expired_hits() == 1
