"""Exception taxonomy for the fulfillment core.

Every error carries a stable ``code`` and a ``retryable`` flag. Retryable
errors are infrastructure problems that the payment gateway's redelivery
can recover from; the rest are terminal for the request that raised them.
"""
from typing import Optional


class FulfillmentError(Exception):
    """Base class for fulfillment core errors."""

    code = "FULFILLMENT_ERROR"
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class StorageError(FulfillmentError):
    """Underlying store failed; the caller may retry later."""

    code = "STORAGE_ERROR"
    retryable = True


class ConcurrencyExhausted(FulfillmentError):
    """Optimistic concurrency retries ran out without a successful write."""

    code = "CONCURRENCY_EXHAUSTED"
    retryable = True

    def __init__(self, resource: str, attempts: int):
        super().__init__(
            f"Concurrent modification of {resource} could not be resolved "
            f"after {attempts} attempts"
        )
        self.resource = resource
        self.attempts = attempts


class InsufficientStock(FulfillmentError):
    """A decrement would drive a stock counter below zero."""

    code = "INSUFFICIENT_STOCK"

    def __init__(
        self,
        product_id: str,
        variant_id: Optional[str],
        requested: int,
        available: int,
        counter: str = "available",
    ):
        variant_info = f" (variant {variant_id})" if variant_id else ""
        super().__init__(
            f"Insufficient {counter} stock for product {product_id}{variant_info}: "
            f"{available} available, {requested} requested"
        )
        self.product_id = product_id
        self.variant_id = variant_id
        self.requested = requested
        self.available = available
        self.counter = counter


class InventoryRecordNotFound(FulfillmentError):
    code = "INVENTORY_NOT_FOUND"


class InventoryRecordExists(FulfillmentError):
    code = "INVENTORY_EXISTS"


class InventoryLimitExceeded(FulfillmentError):
    code = "INVENTORY_LIMIT_EXCEEDED"


class InvalidStatusTransition(FulfillmentError):
    """Order status change rejected by the state machine."""

    code = "INVALID_STATUS_TRANSITION"

    def __init__(self, message: str, from_status: Optional[str] = None, to_status: Optional[str] = None):
        super().__init__(message)
        self.from_status = from_status
        self.to_status = to_status


class OrderNotFound(FulfillmentError):
    code = "ORDER_NOT_FOUND"


class WebhookSignatureError(FulfillmentError):
    code = "INVALID_SIGNATURE"


class WebhookEventNotFound(FulfillmentError):
    code = "WEBHOOK_EVENT_NOT_FOUND"


class GatewayError(FulfillmentError):
    """Payment gateway call failed for a transient reason."""

    code = "GATEWAY_ERROR"
    retryable = True
