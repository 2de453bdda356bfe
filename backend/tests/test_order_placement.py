"""
Order placement tests.

Verifies:
- Totals come from catalog prices only (client amounts ignored)
- Unknown / unavailable / cross-restaurant items are rejected
- Closed or delisted restaurants refuse orders
- Commission is snapshotted at creation time
- A line-item failure leaves no order and no audit entry behind
- Order numbers are sequential per operator-local day
"""

import re

import pytest
from sqlalchemy.exc import OperationalError

from chowline.errors import (
    CrossRestaurantItems,
    ItemNotFound,
    ItemUnavailable,
    PersistenceFailure,
    RestaurantUnavailable,
    Unauthenticated,
    ValidationError,
)
from chowline.extensions import db
from chowline.models import AuditEntry, Order, OrderLineItem
from chowline.services import catalog_service, order_service, pricing_service
from conftest import auth_headers, make_item, make_restaurant, order_payload


ORDER_NUMBER = re.compile(r"^CHW-\d{8}-\d{3}$")


# =============================================================================
# PRICING ORACLE
# =============================================================================


class TestPricingOracle:

    def test_commission_rounds_half_up(self):
        assert pricing_service.compute_commission(5000, 1000) == 500
        assert pricing_service.compute_commission(25, 1000) == 3
        assert pricing_service.compute_commission(15, 1000) == 2
        assert pricing_service.compute_commission(0, 1000) == 0

    def test_lookup_reports_current_price(self, restaurant, jollof):
        jollof.price = 2700
        db.session.commit()

        priced = pricing_service.lookup_prices([jollof.id, 9999])
        assert priced[jollof.id].unit_price == 2700
        assert priced[jollof.id].restaurant_id == restaurant.id
        assert pricing_service.missing_ids([jollof.id, 9999], priced) == [9999]

    def test_lookup_empty(self, app):
        assert pricing_service.lookup_prices([]) == {}


# =============================================================================
# ORDER ASSEMBLY
# =============================================================================


class TestCreateOrder:

    def test_totals_from_catalog(self, customer, restaurant, jollof):
        order = order_service.create_order(
            customer=customer,
            payload=order_payload(restaurant, [(jollof, 2)]),
        )

        assert order.subtotal == 5000
        assert order.delivery_fee == 500
        assert order.total == 5500
        assert order.commission_rate_bps == 1000
        assert order.commission_amount == 500
        assert order.status == "awaiting_payment"
        assert ORDER_NUMBER.match(order.order_number)

        lines = db.session.query(OrderLineItem).filter_by(order_id=order.id).all()
        assert len(lines) == 1
        assert lines[0].unit_price == 2500
        assert lines[0].subtotal == 5000
        assert lines[0].name == "Jollof Rice"

    def test_client_price_is_ignored(self, customer, restaurant, jollof):
        payload = order_payload(restaurant, [(jollof, 1)])
        payload["items"][0]["price"] = 1
        payload["total"] = 1

        order = order_service.create_order(customer=customer, payload=payload)
        assert order.subtotal == 2500
        assert order.total == 3000

    def test_audit_entry_written(self, customer, restaurant, jollof):
        order = order_service.create_order(customer=customer, payload=order_payload(restaurant, [(jollof, 1)]))

        entry = db.session.query(AuditEntry).filter_by(action="order_created").one()
        assert entry.actor_id == customer.id
        assert entry.target_type == "order"
        assert entry.target_id == str(order.id)
        assert entry.entry_metadata["total"] == 3000
        assert entry.entry_metadata["order_number"] == order.order_number

    def test_requires_customer(self, restaurant, jollof):
        with pytest.raises(Unauthenticated):
            order_service.create_order(customer=None, payload=order_payload(restaurant, [(jollof, 1)]))

    def test_unknown_item(self, customer, restaurant, jollof):
        payload = order_payload(restaurant, [(jollof, 1)])
        payload["items"].append({"item_id": 9999, "quantity": 1})

        with pytest.raises(ItemNotFound) as exc:
            order_service.create_order(customer=customer, payload=payload)
        assert exc.value.details["item_id"] == 9999
        assert db.session.query(Order).count() == 0

    def test_unavailable_item(self, customer, restaurant):
        item = make_item(restaurant, name="Egusi Soup", is_available=False)

        with pytest.raises(ItemUnavailable):
            order_service.create_order(customer=customer, payload=order_payload(restaurant, [(item, 1)]))

    def test_cross_restaurant_cart(self, customer, restaurant, jollof):
        other = make_restaurant(name="Suya Spot")
        suya = make_item(other, name="Suya", price=1500)

        with pytest.raises(CrossRestaurantItems):
            order_service.create_order(
                customer=customer,
                payload=order_payload(restaurant, [(jollof, 1), (suya, 1)]),
            )
        assert db.session.query(Order).count() == 0

    def test_closed_restaurant(self, customer, restaurant, jollof):
        restaurant.is_open = False
        db.session.commit()

        with pytest.raises(RestaurantUnavailable):
            order_service.create_order(customer=customer, payload=order_payload(restaurant, [(jollof, 1)]))

    def test_delisted_restaurant(self, customer, restaurant, jollof):
        restaurant.is_active = False
        db.session.commit()

        with pytest.raises(RestaurantUnavailable):
            order_service.create_order(customer=customer, payload=order_payload(restaurant, [(jollof, 1)]))

    def test_items_must_belong_to_requested_restaurant(self, customer, restaurant, jollof):
        payload = order_payload(restaurant, [(jollof, 1)])
        payload["restaurant_id"] = restaurant.id + 1

        with pytest.raises(CrossRestaurantItems):
            order_service.create_order(customer=customer, payload=payload)

    @pytest.mark.parametrize(
        "mutate,field",
        [
            (lambda p: p.update(items=[]), "items"),
            (lambda p: p["items"][0].update(quantity=21), "items[0].quantity"),
            (lambda p: p["items"][0].update(quantity=0), "items[0].quantity"),
            (lambda p: p["items"][0].update(quantity="1.5"), "items[0].quantity"),
            (lambda p: p.update(delivery_address="abc"), "delivery_address"),
            (lambda p: p.update(contact_name="A"), "contact_name"),
            (lambda p: p.update(contact_phone="12345"), "contact_phone"),
        ],
    )
    def test_validation_reports_field(self, customer, restaurant, jollof, mutate, field):
        payload = order_payload(restaurant, [(jollof, 1)])
        mutate(payload)

        with pytest.raises(ValidationError) as exc:
            order_service.create_order(customer=customer, payload=payload)
        assert exc.value.field == field

    def test_too_many_lines(self, customer, restaurant, jollof):
        payload = order_payload(restaurant, [(jollof, 1)] * 21)

        with pytest.raises(ValidationError) as exc:
            order_service.create_order(customer=customer, payload=payload)
        assert exc.value.field == "items"

    def test_phone_formatting_tolerated(self, customer, restaurant, jollof):
        payload = order_payload(restaurant, [(jollof, 1)], contact_phone="0803-123 4567")
        order = order_service.create_order(customer=customer, payload=payload)
        assert order.contact_phone == "08031234567"

    def test_commission_snapshot_survives_rate_change(self, customer, admin, restaurant, jollof):
        order = order_service.create_order(customer=customer, payload=order_payload(restaurant, [(jollof, 2)]))

        catalog_service.set_commission_rate(restaurant.id, 500, admin)

        db.session.expire_all()
        stored = db.session.query(Order).filter_by(id=order.id).one()
        assert stored.commission_rate_bps == 1000
        assert stored.commission_amount == 500

        later = order_service.create_order(customer=customer, payload=order_payload(restaurant, [(jollof, 2)]))
        assert later.commission_rate_bps == 500
        assert later.commission_amount == 250

    def test_order_numbers_are_sequential(self, customer, restaurant, jollof):
        first = order_service.create_order(customer=customer, payload=order_payload(restaurant, [(jollof, 1)]))
        second = order_service.create_order(customer=customer, payload=order_payload(restaurant, [(jollof, 1)]))

        assert first.order_number.endswith("-001")
        assert second.order_number.endswith("-002")
        assert first.order_number[:-4] == second.order_number[:-4]


class TestCompensatingRollback:
    """A line-item failure removes the order and records nothing."""

    def test_no_orphan_order(self, monkeypatch, customer, restaurant, jollof):
        def failing_insert(*args, **kwargs):
            raise OperationalError("INSERT INTO order_line_items", {}, Exception("disk I/O error"))

        monkeypatch.setattr(order_service, "_insert_line_items", failing_insert)

        with pytest.raises(PersistenceFailure) as exc:
            order_service.create_order(customer=customer, payload=order_payload(restaurant, [(jollof, 1)]))

        assert exc.value.details["retryable"] is True
        assert db.session.query(Order).count() == 0
        assert db.session.query(OrderLineItem).count() == 0
        assert db.session.query(AuditEntry).count() == 0

    def test_failed_cleanup_is_still_retryable(self, monkeypatch, caplog, customer, restaurant, jollof):
        def failing_insert(*args, **kwargs):
            raise OperationalError("INSERT INTO order_line_items", {}, Exception("disk I/O error"))

        def failing_delete(order_id):
            raise OperationalError("DELETE FROM orders", {}, Exception("database is locked"))

        monkeypatch.setattr(order_service, "_insert_line_items", failing_insert)
        monkeypatch.setattr(order_service, "_delete_order_rows", failing_delete)

        with caplog.at_level("ERROR"):
            with pytest.raises(PersistenceFailure) as exc:
                order_service.create_order(customer=customer, payload=order_payload(restaurant, [(jollof, 1)]))

        assert exc.value.details["retryable"] is True
        orphan = db.session.query(Order).one()
        assert db.session.query(OrderLineItem).count() == 0
        assert f"order {orphan.id} left without line items" in caplog.text


# =============================================================================
# HTTP SURFACE
# =============================================================================


class TestOrderRoutes:

    def test_requires_auth(self, client, restaurant, jollof):
        resp = client.post("/api/orders", json=order_payload(restaurant, [(jollof, 1)]))
        assert resp.status_code == 401

    def test_create_order(self, client, customer, restaurant, jollof):
        resp = client.post(
            "/api/orders",
            json=order_payload(restaurant, [(jollof, 2)]),
            headers=auth_headers(customer),
        )
        assert resp.status_code == 201
        body = resp.get_json()
        assert body["total"] == 5500
        assert ORDER_NUMBER.match(body["order_number"])
        assert len(body["order"]["items"]) == 1

    def test_validation_error_body(self, client, customer, restaurant, jollof):
        payload = order_payload(restaurant, [(jollof, 21)])
        resp = client.post("/api/orders", json=payload, headers=auth_headers(customer))

        assert resp.status_code == 400
        body = resp.get_json()
        assert body["code"] == "VALIDATION_ERROR"
        assert body["field"] == "items[0].quantity"

    def test_closed_restaurant_message(self, client, customer, restaurant, jollof):
        restaurant.is_open = False
        db.session.commit()

        resp = client.post(
            "/api/orders",
            json=order_payload(restaurant, [(jollof, 1)]),
            headers=auth_headers(customer),
        )
        assert resp.status_code == 409
        assert resp.get_json()["error"] == "This restaurant is currently closed"

    def test_other_customers_order_is_hidden(self, client, customer, restaurant, jollof):
        from conftest import make_user

        order = order_service.create_order(customer=customer, payload=order_payload(restaurant, [(jollof, 1)]))
        stranger = make_user("stranger@example.com")

        resp = client.get(f"/api/orders/{order.id}", headers=auth_headers(stranger))
        assert resp.status_code == 404

        resp = client.get(f"/api/orders/{order.id}", headers=auth_headers(customer))
        assert resp.status_code == 200

    def test_public_menu_hides_commission(self, client, restaurant, jollof):
        resp = client.get(f"/api/orders/restaurants/{restaurant.id}/menu")
        assert resp.status_code == 200
        body = resp.get_json()
        assert "commission_rate" not in body["restaurant"]
        assert body["items"][0]["name"] == "Jollof Rice"
