"""Domain errors raised by the catalog and order services.

Each error carries the HTTP status it maps to; ``main.py`` registers a single
exception handler that renders them as ``{"detail": ..., "error": ...}``.
"""
from typing import Any, Dict, Optional


class MarketplaceError(Exception):
    """Base class for business-rule violations."""

    status_code = 400

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    @property
    def code(self) -> str:
        return type(self).__name__


class ValidationError(MarketplaceError):
    """Malformed or missing input."""
    status_code = 400


class EmptyCartError(ValidationError):
    """Checkout attempted with no items."""

    def __init__(self):
        super().__init__("Order must have at least one item")


class InvalidQuantityError(ValidationError):
    """Requested quantity is below the minimum or above what is available."""

    def __init__(self, product_id: int, title: str, message: str):
        super().__init__(message, product_id=product_id, product_title=title)
        self.product_id = product_id


class MixedFarmerCartError(ValidationError):
    """Cart holds products from more than one farmer."""

    def __init__(self, farmer_ids):
        super().__init__(
            "All items in an order must come from the same farmer",
            farmer_ids=sorted(farmer_ids),
        )


class NotFoundError(MarketplaceError):
    """Unknown product or order."""
    status_code = 404


class ProductNotFoundError(NotFoundError):

    def __init__(self, product_id: int):
        super().__init__(f"Product {product_id} not found", product_id=product_id)
        self.product_id = product_id


class OrderNotFoundError(NotFoundError):

    def __init__(self, order_id: int):
        super().__init__(f"Order {order_id} not found", order_id=order_id)


class ForbiddenError(MarketplaceError):
    """Role or ownership violation."""
    status_code = 403

    def __init__(self, message: str = "Access denied", **context: Any):
        super().__init__(message, **context)


class InsufficientStock(MarketplaceError):
    """Stock was depleted between validation and reservation."""
    status_code = 409

    def __init__(self, product_id: int, requested: int, title: Optional[str] = None):
        name = title or f"product {product_id}"
        super().__init__(
            f"Insufficient stock for {name}",
            product_id=product_id,
            requested=requested,
        )
        self.product_id = product_id


class InvalidTransitionError(MarketplaceError):
    """Status change not allowed from the order's current status."""
    status_code = 409

    def __init__(self, order_id: int, current: str, requested: str):
        super().__init__(
            f"Cannot change order status from '{current}' to '{requested}'",
            order_id=order_id,
            current_status=current,
            requested_status=requested,
        )
