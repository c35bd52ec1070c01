"""Exceptions raised by the payment service."""
from typing import Iterable, Optional
from uuid import UUID


class PaymentServiceError(Exception):
    """Base class for payment service errors."""


class SignatureInvalid(PaymentServiceError):
    """Inbound webhook signature is missing or does not match the body."""


class ReferenceNotFound(PaymentServiceError):
    """The ledger has no transaction for a gateway reference."""

    def __init__(self, reference: str):
        super().__init__(f"Transaction not found: {reference}")
        self.reference = reference


class OrderNotFound(PaymentServiceError):
    def __init__(self, order_id):
        super().__init__(f"Order not found: {order_id}")
        self.order_id = order_id


class GatewayError(PaymentServiceError):
    """Base class for payment gateway failures."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class GatewayUnavailable(GatewayError):
    """Network, timeout, auth or 5xx failure talking to the gateway; retryable."""


class GatewayRejected(GatewayError):
    """The gateway rejected the request (e.g. unknown reference); not retryable."""


class InsufficientStock(PaymentServiceError):
    def __init__(self, product_id, product_name: Optional[str] = None, available: int = 0):
        name = product_name or str(product_id)
        super().__init__(f"Insufficient stock for {name}. Only {available} available.")
        self.product_id = product_id
        self.product_name = product_name
        self.available = available


class CompensationPartialFailure(PaymentServiceError):
    """Stock for some items of a failed order could not be restored."""

    def __init__(self, order_id: UUID, product_ids: Iterable[UUID]):
        self.order_id = order_id
        self.product_ids = list(product_ids)
        super().__init__(
            f"Failed to restore stock for order {order_id}: "
            f"products {[str(p) for p in self.product_ids]}"
        )


class NotificationFailure(PaymentServiceError):
    """An email could not be sent; logged, never propagated past the dispatcher."""


class InvalidTransition(PaymentServiceError):
    def __init__(self, from_status: str, to_status: str):
        super().__init__(f"Cannot move order from {from_status} to {to_status}")
        self.from_status = from_status
        self.to_status = to_status


class CheckoutValidationError(PaymentServiceError):
    """The checkout request is incomplete or the cart is empty."""


class DeadLetterNotReplayable(PaymentServiceError):
    """The dead letter does not exist, is not a webhook, or has no parseable payload."""


class CancellationRejected(PaymentServiceError):
    def __init__(self, message: str, requires_support: bool = False):
        super().__init__(message)
        self.requires_support = requires_support
