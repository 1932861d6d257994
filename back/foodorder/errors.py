"""
Domain errors raised by the ordering and payment services.

Each error carries the HTTP status it maps to; `main.py` turns them into
JSON responses so services never need to know about FastAPI.
"""


class OrderingError(Exception):
    status_code = 500
    default_detail = "Internal server error"

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class ValidationError(OrderingError):
    status_code = 400
    default_detail = "Invalid request"


class Unauthorized(OrderingError):
    status_code = 401
    default_detail = "Unauthorized"


class Forbidden(OrderingError):
    status_code = 403
    default_detail = "Not authorized"


class NotFound(OrderingError):
    status_code = 404
    default_detail = "Not found"


class Conflict(OrderingError):
    status_code = 409
    default_detail = "Conflict"


class InvalidTransition(Conflict):
    """Raised when a status change is not allowed from the current state."""

    def __init__(self, axis: str, current: str, requested: str):
        self.axis = axis
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot change {axis} from {current} to {requested}")


class GatewayError(OrderingError):
    """Payment provider unreachable or returned unusable data."""
    status_code = 502
    default_detail = "Payment failed, try again or use cash on delivery"
