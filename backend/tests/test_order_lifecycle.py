"""
Order lifecycle tests.

Verifies:
- Only table edges are legal; terminal states are final
- Same-status requests are no-ops (no audit, no aggregate bump)
- Delivery bumps restaurant aggregates exactly once
- Payment confirmation is administrative and stamps the payment fields
- A write based on a stale read is rejected without side effects
- The storage layer rejects illegal transitions that bypass the service
- Owners may only drive their own restaurant's orders
"""

from types import SimpleNamespace

import pytest
from sqlalchemy import text, update
from sqlalchemy.exc import IntegrityError

from chowline.errors import IllegalTransition, NotFound, ValidationError
from chowline.extensions import db
from chowline.models import AuditEntry, Order, OrderLineItem, Restaurant
from chowline.services import order_service, order_state_service
from conftest import auth_headers, make_restaurant, make_user, order_payload


def place(customer, restaurant, item, quantity=2):
    return order_service.create_order(customer=customer, payload=order_payload(restaurant, [(item, quantity)]))


def deliver(order, admin):
    order_state_service.confirm_payment(order.id, admin, payment_reference="PAY-1")
    for status in ("preparing", "out_for_delivery", "delivered"):
        order_state_service.transition(order.id, status, admin)
    return db.session.query(Order).filter_by(id=order.id).one()


# =============================================================================
# TRANSITION TABLE
# =============================================================================


class TestTransitionTable:

    @pytest.mark.parametrize(
        "from_status,to_status,allowed",
        [
            ("awaiting_payment", "confirmed", True),
            ("awaiting_payment", "cancelled", True),
            ("awaiting_payment", "preparing", False),
            ("confirmed", "preparing", True),
            ("confirmed", "delivered", False),
            ("preparing", "out_for_delivery", True),
            ("out_for_delivery", "delivered", True),
            ("out_for_delivery", "cancelled", True),
            ("delivered", "cancelled", False),
            ("cancelled", "confirmed", False),
            ("delivered", "delivered", True),
        ],
    )
    def test_can_transition(self, app, from_status, to_status, allowed):
        assert order_state_service.can_transition(from_status, to_status) is allowed

    def test_unknown_status(self, app):
        with pytest.raises(ValidationError):
            order_state_service.can_transition("awaiting_payment", "teleported")

    def test_terminal(self, app):
        assert order_state_service.is_terminal("delivered")
        assert order_state_service.is_terminal("cancelled")
        assert not order_state_service.is_terminal("preparing")


# =============================================================================
# TRANSITIONS
# =============================================================================


class TestTransition:

    def test_illegal_skip(self, customer, admin, restaurant, jollof):
        order = place(customer, restaurant, jollof)

        with pytest.raises(IllegalTransition) as exc:
            order_state_service.transition(order.id, "preparing", admin)
        assert exc.value.details == {"from": "awaiting_payment", "to": "preparing"}

    def test_unknown_order(self, admin):
        with pytest.raises(NotFound):
            order_state_service.transition(9999, "cancelled", admin)

    def test_confirm_payment_stamps_fields(self, customer, admin, restaurant, jollof):
        order = place(customer, restaurant, jollof)

        confirmed = order_state_service.confirm_payment(order.id, admin, payment_reference="PAY-42")

        assert confirmed.status == "confirmed"
        assert confirmed.payment_reference == "PAY-42"
        assert confirmed.payment_confirmed_by == admin.id
        assert confirmed.payment_confirmed_at is not None
        assert confirmed.confirmed_at is not None

        entry = db.session.query(AuditEntry).filter_by(action="payment_confirmed").one()
        assert entry.entry_metadata["from"] == "awaiting_payment"
        assert entry.entry_metadata["to"] == "confirmed"

    def test_confirm_payment_twice(self, customer, admin, restaurant, jollof):
        order = place(customer, restaurant, jollof)
        order_state_service.confirm_payment(order.id, admin)

        with pytest.raises(IllegalTransition):
            order_state_service.confirm_payment(order.id, admin)

    def test_delivery_bumps_aggregates_once(self, customer, admin, restaurant, jollof):
        order = place(customer, restaurant, jollof)
        delivered = deliver(order, admin)
        assert delivered.delivered_at is not None

        # Repeating the current status is a no-op
        again = order_state_service.transition(order.id, "delivered", admin)
        assert again.status == "delivered"

        db.session.expire_all()
        stored = db.session.query(Restaurant).filter_by(id=restaurant.id).one()
        assert stored.total_orders == 1
        assert stored.total_revenue == 5000

        updates = db.session.query(AuditEntry).filter_by(action="order_status_updated").count()
        assert updates == 3

    def test_terminal_is_final(self, customer, admin, restaurant, jollof):
        order = place(customer, restaurant, jollof)
        deliver(order, admin)

        with pytest.raises(IllegalTransition):
            order_state_service.transition(order.id, "cancelled", admin)

    def test_cancel_stores_reason(self, customer, admin, restaurant, jollof):
        order = place(customer, restaurant, jollof)

        cancelled = order_state_service.transition(order.id, "cancelled", admin, reason="customer unreachable")

        assert cancelled.status == "cancelled"
        assert cancelled.cancelled_at is not None
        assert cancelled.cancellation_reason == "customer unreachable"
        entry = db.session.query(AuditEntry).filter_by(action="order_status_updated").one()
        assert entry.entry_metadata["cancellation_reason"] == "customer unreachable"

    def test_expected_from_mismatch(self, customer, admin, restaurant, jollof):
        order = place(customer, restaurant, jollof)
        order_state_service.confirm_payment(order.id, admin)

        with pytest.raises(IllegalTransition):
            order_state_service.transition(order.id, "cancelled", None, expected_from="awaiting_payment")

        stored = db.session.query(Order.status).filter(Order.id == order.id).scalar()
        assert stored == "confirmed"

    def test_write_after_stale_read_is_rejected(self, monkeypatch, customer, admin, restaurant, jollof):
        order = place(customer, restaurant, jollof)
        order_state_service.confirm_payment(order.id, admin)
        real_lock = order_state_service.lock_for_update

        def racing_lock(query):
            row = real_lock(query).first()
            # Another writer moves the row after it was read
            db.session.execute(
                update(Order)
                .where(Order.id == row.id)
                .values(status="cancelled")
                .execution_options(synchronize_session=False)
            )
            return SimpleNamespace(first=lambda: row)

        monkeypatch.setattr(order_state_service, "lock_for_update", racing_lock)

        with pytest.raises(IllegalTransition) as exc:
            order_state_service.transition(order.id, "preparing", admin)

        assert exc.value.details["to"] == "preparing"
        assert db.session.query(AuditEntry).filter_by(action="order_status_updated").count() == 0
        stored = db.session.query(Order).filter_by(id=order.id).one()
        assert stored.preparing_at is None


# =============================================================================
# STORAGE GUARDS
# =============================================================================


class TestStorageGuards:

    def test_direct_update_out_of_terminal_rejected(self, customer, admin, restaurant, jollof):
        order = place(customer, restaurant, jollof)
        deliver(order, admin)

        with pytest.raises(IntegrityError):
            db.session.execute(
                text("UPDATE orders SET status = 'preparing' WHERE id = :id"), {"id": order.id}
            )
        db.session.rollback()

    def test_direct_skip_rejected(self, customer, restaurant, jollof):
        order = place(customer, restaurant, jollof)

        with pytest.raises(IntegrityError):
            db.session.execute(
                text("UPDATE orders SET status = 'delivered' WHERE id = :id"), {"id": order.id}
            )
        db.session.rollback()

    def test_snapshot_frozen(self, customer, restaurant, jollof):
        order = place(customer, restaurant, jollof)

        with pytest.raises(IntegrityError):
            db.session.execute(
                text("UPDATE orders SET commission_amount = 0 WHERE id = :id"), {"id": order.id}
            )
        db.session.rollback()

    def test_line_items_frozen(self, customer, restaurant, jollof):
        order = place(customer, restaurant, jollof)
        line = db.session.query(OrderLineItem).filter_by(order_id=order.id).first()

        with pytest.raises(IntegrityError):
            db.session.execute(
                text("UPDATE order_line_items SET unit_price = 1 WHERE id = :id"), {"id": line.id}
            )
        db.session.rollback()


# =============================================================================
# HTTP SURFACE
# =============================================================================


class TestStatusRoutes:

    def test_owner_moves_own_order(self, client, customer, owner, admin, restaurant, jollof):
        order = place(customer, restaurant, jollof)
        order_state_service.confirm_payment(order.id, admin)

        resp = client.patch(
            f"/api/restaurant/orders/{order.id}/status",
            json={"status": "preparing"},
            headers=auth_headers(owner),
        )
        assert resp.status_code == 200
        assert resp.get_json()["order"]["status"] == "preparing"

    def test_owner_cannot_confirm_payment(self, client, customer, owner, restaurant, jollof):
        order = place(customer, restaurant, jollof)

        resp = client.patch(
            f"/api/restaurant/orders/{order.id}/status",
            json={"status": "confirmed"},
            headers=auth_headers(owner),
        )
        assert resp.status_code == 403

    def test_owner_cannot_touch_other_restaurant(self, client, customer, restaurant, jollof):
        order = place(customer, restaurant, jollof)
        other_owner = make_user("other-owner@example.com", role="restaurant_owner")
        make_restaurant(other_owner, name="Suya Spot")

        resp = client.patch(
            f"/api/restaurant/orders/{order.id}/status",
            json={"status": "cancelled"},
            headers=auth_headers(other_owner),
        )
        assert resp.status_code == 403

    def test_illegal_transition_body(self, client, customer, admin, restaurant, jollof):
        order = place(customer, restaurant, jollof)

        resp = client.patch(
            f"/api/admin/orders/{order.id}/status",
            json={"status": "delivered"},
            headers=auth_headers(admin),
        )
        assert resp.status_code == 422
        body = resp.get_json()
        assert body["code"] == "ILLEGAL_TRANSITION"
        assert body["from"] == "awaiting_payment"
        assert body["to"] == "delivered"

    def test_admin_confirm_payment_route(self, client, customer, admin, restaurant, jollof):
        order = place(customer, restaurant, jollof)

        resp = client.post(
            f"/api/admin/orders/{order.id}/confirm-payment",
            json={"payment_reference": "TRF-99"},
            headers=auth_headers(admin),
        )
        assert resp.status_code == 200
        body = resp.get_json()["order"]
        assert body["status"] == "confirmed"
        assert body["payment_reference"] == "TRF-99"
