"""
Error taxonomy for the order & inventory engine.

Every error carries a ``kind`` tag plus structured context so callers branch on
``err.kind`` (or the class) instead of matching message strings. ``to_dict()``
renders the client-safe part of the error.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class StorefrontError(Exception):
    kind: str = "storefront_error"
    status_code: int = 500
    public_message: str = "An unexpected error occurred"

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.kind, "message": self.public_message}


class ValidationError(StorefrontError):
    """Malformed or out-of-range input. Raised before any database access."""

    kind = "validation_error"
    status_code = 400
    public_message = "Invalid request data"

    def __init__(self, message: str, details: Optional[Any] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.kind,
            "message": self.public_message,
            "details": self.details if self.details is not None else self.message,
        }


class InsufficientStockError(StorefrontError):
    kind = "insufficient_stock"
    status_code = 409
    public_message = "Insufficient stock for some items"

    def __init__(self, product_id: int, product_name: str, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient stock for '{product_name}' (ID: {product_id}): "
            f"requested {requested}, available {available}"
        )
        self.product_id = product_id
        self.product_name = product_name
        self.requested = requested
        self.available = available

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.kind,
            "message": self.public_message,
            "productId": self.product_id,
            "productName": self.product_name,
            "requested": self.requested,
            "available": self.available,
        }


class CartStockError(StorefrontError):
    """Checkout-time shortage on one or more cart lines."""

    kind = "insufficient_stock"
    status_code = 409
    public_message = "Insufficient stock for some items"

    def __init__(self, insufficient_items: List[Dict[str, Any]]) -> None:
        super().__init__(f"{len(insufficient_items)} cart item(s) short on stock")
        self.insufficient_items = insufficient_items

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.kind,
            "message": self.public_message,
            "insufficientItems": self.insufficient_items,
        }


class OrderNotFoundError(StorefrontError):
    kind = "order_not_found"
    status_code = 404
    public_message = "Order not found"

    def __init__(self, external_payment_ref: str) -> None:
        super().__init__(f"No order for payment reference {external_payment_ref}")
        self.external_payment_ref = external_payment_ref

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.kind, "message": self.public_message, "ref": self.external_payment_ref}


class PromoCodeNotFoundError(StorefrontError):
    kind = "promo_code_not_found"
    status_code = 404
    public_message = "Promo code not found"

    def __init__(self, promo_id: int) -> None:
        super().__init__(f"Promo code with id {promo_id} not found")
        self.promo_id = promo_id


class DuplicatePromoCodeError(StorefrontError):
    kind = "duplicate_promo_code"
    status_code = 409
    public_message = "This promo code already exists"

    def __init__(self, code: str) -> None:
        super().__init__(f"Promo code {code} already exists")
        self.code = code

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.kind, "message": self.public_message, "code": self.code}


class ProductNotFoundError(StorefrontError):
    kind = "product_not_found"
    status_code = 404
    public_message = "Product not found"

    def __init__(self, product_id: int) -> None:
        super().__init__(f"Product with id {product_id} not found")
        self.product_id = product_id

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.kind, "message": self.public_message, "productId": self.product_id}


class DuplicateOrderError(StorefrontError):
    kind = "duplicate_order"
    status_code = 409
    public_message = "An order already exists for this payment session"

    def __init__(self, external_payment_ref: str) -> None:
        super().__init__(f"Order already exists for payment reference {external_payment_ref}")
        self.external_payment_ref = external_payment_ref


class InvalidStatusTransitionError(StorefrontError):
    kind = "invalid_status_transition"
    status_code = 409
    public_message = "Order status cannot be changed this way"

    def __init__(self, order_id: str, current: str, requested: str) -> None:
        super().__init__(f"Order {order_id}: cannot move from {current} to {requested}")
        self.order_id = order_id
        self.current = current
        self.requested = requested

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.kind,
            "message": self.public_message,
            "current": self.current,
            "requested": self.requested,
        }


class RateLimitExceeded(StorefrontError):
    kind = "rate_limited"
    status_code = 429
    public_message = "Too many requests. Please try again shortly."

    def __init__(self, retry_after: int, reset_time: int) -> None:
        super().__init__(f"Rate limit exceeded, retry after {retry_after}s")
        self.retry_after = retry_after
        self.reset_time = reset_time

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.kind, "message": self.public_message, "retryAfter": self.retry_after}


class ConfigurationError(StorefrontError):
    """Missing secret or setting. The message is for logs, never for clients."""

    kind = "configuration_error"
    status_code = 500
    public_message = "Server configuration error"


class SignatureError(StorefrontError):
    kind = "invalid_signature"
    status_code = 400
    public_message = "Invalid webhook signature"


__all__ = [
    "StorefrontError",
    "ValidationError",
    "InsufficientStockError",
    "CartStockError",
    "OrderNotFoundError",
    "ProductNotFoundError",
    "PromoCodeNotFoundError",
    "DuplicatePromoCodeError",
    "DuplicateOrderError",
    "InvalidStatusTransitionError",
    "RateLimitExceeded",
    "ConfigurationError",
    "SignatureError",
]
