"""
Pytest fixtures for Chowline backend tests.

Provides a fresh in-memory database per test (storage guards included),
a test client, and small factories for users, restaurants and menus.
"""

import pytest

from chowline import create_app
from chowline.extensions import db
from chowline.models import MenuItem, Restaurant
from chowline.models.identity import ROLE_ADMIN, ROLE_CUSTOMER, ROLE_RESTAURANT_OWNER
from chowline.services import auth_service, session_service

PASSWORD = "Password123!"
CRON_SECRET = "test-cron-secret"


@pytest.fixture(scope='function')
def app(tmp_path):
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'BCRYPT_ROUNDS': 4,
        'CRON_SECRET': CRON_SECRET,
        'AUDIT_EXPORT_ENABLED': True,
        'AUDIT_EXPORT_DIR': str(tmp_path / "archive"),
        'ORDER_NUMBER_PREFIX': 'CHW',
        'ORDER_NUMBER_TIMEZONE': 'Africa/Lagos',
    })

    # The audit table refuses DELETE, so each test gets its own schema
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


def make_user(email: str, role: str = ROLE_CUSTOMER, **kwargs):
    return auth_service.create_user(email, PASSWORD, role=role, **kwargs)


def auth_headers(user) -> dict:
    """Start a session for `user` and return Authorization headers."""
    _, token = session_service.create_session(user_id=user.id, user_agent="pytest", ip_address="127.0.0.1")
    return {'Authorization': f'Bearer {token}'}


def cron_headers(secret: str = CRON_SECRET) -> dict:
    return {'Authorization': f'Bearer {secret}'}


def make_restaurant(owner=None, *, name="Mama Put", delivery_fee=500, commission_rate_bps=1000,
                    is_active=True, is_open=True) -> Restaurant:
    restaurant = Restaurant(
        owner_id=owner.id if owner else None,
        name=name,
        address="12 Aba Road, Umuahia",
        delivery_fee=delivery_fee,
        commission_rate_bps=commission_rate_bps,
        is_active=is_active,
        is_open=is_open,
    )
    db.session.add(restaurant)
    db.session.commit()
    return restaurant


def make_item(restaurant, *, name="Jollof Rice", price=2500, is_available=True) -> MenuItem:
    item = MenuItem(restaurant_id=restaurant.id, name=name, price=price, is_available=is_available)
    db.session.add(item)
    db.session.commit()
    return item


def order_payload(restaurant, lines, **overrides) -> dict:
    """lines: [(item, quantity), ...]"""
    payload = {
        'restaurant_id': restaurant.id,
        'items': [{'item_id': item.id, 'quantity': qty} for item, qty in lines],
        'delivery_address': '12 Aba Road, Umuahia',
        'contact_name': 'Ada Obi',
        'contact_phone': '08031234567',
    }
    payload.update(overrides)
    return payload


@pytest.fixture(scope='function')
def customer(app):
    return make_user("customer@example.com")


@pytest.fixture(scope='function')
def owner(app):
    return make_user("owner@example.com", role=ROLE_RESTAURANT_OWNER)


@pytest.fixture(scope='function')
def admin(app):
    return make_user("admin@example.com", role=ROLE_ADMIN)


@pytest.fixture(scope='function')
def restaurant(owner):
    return make_restaurant(owner)


@pytest.fixture(scope='function')
def jollof(restaurant):
    return make_item(restaurant)
