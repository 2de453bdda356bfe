from ..extensions import db
from .identity import User, SessionToken
from .catalog import Restaurant, MenuItem
from .applications import RestaurantApplication
from .orders import Order, OrderLineItem, OrderNumberSequence
from .settlements import Settlement
from .audit import AuditEntry
from .throttle import ThrottleHit
from .guards import install_storage_guards

install_storage_guards(db.metadata)

__all__ = [
    'User', 'SessionToken',
    'Restaurant', 'MenuItem',
    'RestaurantApplication',
    'Order', 'OrderLineItem', 'OrderNumberSequence',
    'Settlement',
    'AuditEntry',
    'ThrottleHit',
]
