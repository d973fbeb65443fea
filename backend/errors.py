"""
Errors raised by the pricing, inventory and checkout code.

Each error knows the HTTP status it maps to; main.py turns them into
`{"error": ..., "failingProductId": ...}` responses.
"""

from __future__ import annotations
from typing import Any, Optional


class StoreError(Exception):
    status_code = 400

    def __init__(self, message: str, product_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.product_id = product_id

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message}
        if self.product_id is not None:
            payload["failingProductId"] = self.product_id
        return payload


class InvalidProductState(StoreError):
    """Malformed product data. Not the user's fault."""

    status_code = 500


class ProductUnavailable(StoreError):
    def __init__(self, product_id: str, product_name: Optional[str] = None) -> None:
        if product_name:
            message = f"Product {product_name} is not available"
        else:
            message = f"Product {product_id} not available"
        super().__init__(message, product_id)
        self.product_name = product_name


class InvalidQuantity(StoreError):
    def __init__(self, quantity: Any, product_id: Optional[str] = None) -> None:
        super().__init__(f"Invalid quantity: {quantity!r}", product_id)
        self.quantity = quantity


class InsufficientStock(StoreError):
    def __init__(
        self,
        product_id: str,
        available: int,
        max_quantity: int,
        product_name: Optional[str] = None,
    ) -> None:
        name = product_name or product_id
        super().__init__(
            f"Only {available} items available for {name} (max quantity {max_quantity})",
            product_id,
        )
        self.available = available
        self.max_quantity = max_quantity
        self.product_name = product_name

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["maxQuantity"] = self.max_quantity
        return payload


class NotFound(StoreError):
    status_code = 404


class InvalidTransition(StoreError):
    status_code = 409


class PaymentGatewayError(StoreError):
    status_code = 502


class PaymentsDisabled(StoreError):
    status_code = 503

    def __init__(self) -> None:
        super().__init__("Payment gateway is not configured. Payments are disabled in this environment.")


class Forbidden(StoreError):
    status_code = 403
