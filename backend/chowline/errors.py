"""
Categorized domain errors.

Every error the core surfaces to a collaborator is one of these categories.
Routes render them uniformly as {"error": <message>, "code": <CODE>, ...details}
with the category's HTTP status.
"""


class ChowlineError(Exception):
    status_code = 400
    code = "ERROR"
    default_message = "Request failed"

    def __init__(self, message: str | None = None, details: dict | None = None):
        super().__init__(message or self.default_message)
        self.details = details or {}

    @property
    def message(self) -> str:
        return str(self)

    def to_dict(self) -> dict:
        body = {"error": self.message, "code": self.code}
        body.update(self.details)
        return body


class ConfigurationError(RuntimeError):
    """Raised at startup when the configuration is unsafe for the environment."""


class Unauthenticated(ChowlineError):
    status_code = 401
    code = "UNAUTHENTICATED"
    default_message = "Authentication required"


class Forbidden(ChowlineError):
    # Never carries the roles that would have been accepted.
    status_code = 403
    code = "FORBIDDEN"
    default_message = "Insufficient permissions"


class ValidationError(ChowlineError):
    status_code = 400
    code = "VALIDATION_ERROR"
    default_message = "Invalid request"

    def __init__(self, message: str | None = None, field: str | None = None):
        super().__init__(message, {"field": field} if field else None)
        self.field = field


class NotFound(ChowlineError):
    status_code = 404
    code = "NOT_FOUND"
    default_message = "Not found"


class ItemNotFound(NotFound):
    code = "ITEM_NOT_FOUND"
    default_message = "Menu item no longer exists"


class ItemUnavailable(ChowlineError):
    status_code = 409
    code = "ITEM_UNAVAILABLE"
    default_message = "Menu item is currently unavailable"


class RestaurantUnavailable(ChowlineError):
    status_code = 409
    code = "RESTAURANT_UNAVAILABLE"
    default_message = "This restaurant is currently closed"


class CrossRestaurantItems(ChowlineError):
    status_code = 422
    code = "CROSS_RESTAURANT_ITEMS"
    default_message = "Cart contains items from multiple restaurants"


class AlreadyExists(ChowlineError):
    status_code = 409
    code = "ALREADY_EXISTS"
    default_message = "Record already exists"


class AlreadyPaid(ChowlineError):
    status_code = 409
    code = "ALREADY_PAID"
    default_message = "Settlement already marked as paid"


class NothingToSettle(ChowlineError):
    status_code = 422
    code = "NOTHING_TO_SETTLE"
    default_message = "No delivered orders found in this period - nothing to settle"


class IllegalTransition(ChowlineError):
    status_code = 422
    code = "ILLEGAL_TRANSITION"
    default_message = "Illegal order status transition"


class RateLimited(ChowlineError):
    status_code = 429
    code = "RATE_LIMITED"
    default_message = "Too many attempts. Please wait before trying again."

    def __init__(self, retry_after_seconds: int, message: str | None = None):
        super().__init__(message, {"retry_after_seconds": retry_after_seconds})
        self.retry_after_seconds = retry_after_seconds


class PersistenceFailure(ChowlineError):
    """Storage layer error. Callers may retry."""
    status_code = 503
    code = "PERSISTENCE_FAILURE"
    default_message = "Storage temporarily unavailable. Please try again."

    def __init__(self, message: str | None = None, details: dict | None = None):
        details = dict(details or {})
        details.setdefault("retryable", True)
        super().__init__(message, details)


class ExportFailure(ChowlineError):
    """The archive store rejected or failed an audit export write."""
    status_code = 502
    code = "EXPORT_FAILED"
    default_message = "Audit export failed"
