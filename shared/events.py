"""Domain events emitted by the payment service."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Event types published on the storefront exchange."""

    # Order events
    ORDER_PLACED = "order.placed"
    ORDER_PAID = "order.paid"
    ORDER_CANCELLED = "order.cancelled"
    ORDER_STATUS_CHANGED = "order.status_changed"

    # Payment events
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_PENDING = "payment.pending"

    # Inventory events
    INVENTORY_RESTORED = "inventory.restored"


class BaseEvent(BaseModel):
    """Base event model with common fields."""

    event_id: UUID = Field(default_factory=uuid4)
    event_type: EventType
    aggregate_id: UUID  # order id
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    version: int = Field(default=1)
    correlation_id: str  # gateway reference, or order number before one exists
    causation_id: Optional[UUID] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


# Order Events
class OrderPlacedEvent(BaseEvent):
    """Event emitted when checkout creates a new order."""
    event_type: EventType = EventType.ORDER_PLACED
    order_number: str
    customer_email: str
    items: list[Dict[str, Any]]  # [{"product_id": str, "quantity": int, "price": float}]
    total_amount: float


class OrderPaidEvent(BaseEvent):
    """Event emitted when an order's payment is confirmed."""
    event_type: EventType = EventType.ORDER_PAID
    order_number: str
    total_amount: float


class OrderCancelledEvent(BaseEvent):
    """Event emitted when an order is cancelled."""
    event_type: EventType = EventType.ORDER_CANCELLED
    order_number: str
    reason: str


class OrderStatusChangedEvent(BaseEvent):
    """Event emitted on fulfillment transitions (shipped, delivered)."""
    event_type: EventType = EventType.ORDER_STATUS_CHANGED
    order_number: str
    from_status: str
    to_status: str


# Payment Events
class PaymentSucceededEvent(BaseEvent):
    """Event emitted when a payment attempt is confirmed by the gateway."""
    event_type: EventType = EventType.PAYMENT_SUCCEEDED
    reference: str
    amount_minor: int
    currency: str = "NGN"
    channel: Optional[str] = None
    source: str  # webhook, verify or charge


class PaymentFailedEvent(BaseEvent):
    """Event emitted when a payment attempt fails."""
    event_type: EventType = EventType.PAYMENT_FAILED
    reference: str
    reason: str
    source: str


class PaymentPendingEvent(BaseEvent):
    """Event emitted when the gateway reports an interim status."""
    event_type: EventType = EventType.PAYMENT_PENDING
    reference: str
    status: str


# Inventory Events
class InventoryRestoredEvent(BaseEvent):
    """Event emitted after stock is returned for a failed or cancelled order."""
    event_type: EventType = EventType.INVENTORY_RESTORED
    items: list[Dict[str, Any]]  # [{"product_id": str, "quantity": int}]


# Event Registry for deserialization
EVENT_REGISTRY: Dict[EventType, type[BaseEvent]] = {
    EventType.ORDER_PLACED: OrderPlacedEvent,
    EventType.ORDER_PAID: OrderPaidEvent,
    EventType.ORDER_CANCELLED: OrderCancelledEvent,
    EventType.ORDER_STATUS_CHANGED: OrderStatusChangedEvent,

    EventType.PAYMENT_SUCCEEDED: PaymentSucceededEvent,
    EventType.PAYMENT_FAILED: PaymentFailedEvent,
    EventType.PAYMENT_PENDING: PaymentPendingEvent,

    EventType.INVENTORY_RESTORED: InventoryRestoredEvent,
}


def deserialize_event(event_data: Dict[str, Any]) -> BaseEvent:
    """Deserialize event from dictionary."""
    event_type = EventType(event_data["event_type"])
    event_class = EVENT_REGISTRY.get(event_type, BaseEvent)
    return event_class(**event_data)
