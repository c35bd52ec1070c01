"""Order status / payment_status transitions."""
import logging
from datetime import datetime
from typing import Dict, FrozenSet, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.events import OrderStatusChangedEvent
from shared.outbox import save_event_to_outbox

from .errors import InvalidTransition, OrderNotFound
from .models import Order, OrderStatus, PaymentStatus

logger = logging.getLogger(__name__)

# Fulfillment transitions; delivered and cancelled are absorbing
ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

_OPEN_PAYMENT = [PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value]


def can_transition(from_status: OrderStatus, to_status: OrderStatus) -> bool:
    return to_status in ORDER_TRANSITIONS[from_status]


class OrderStateMachine:
    """
    Setters for an order's status fields.

    The payment setters are invoked by the reconciler after it has won the
    ledger guard for a reference; they do not re-check the ledger. Each one
    is still a conditional UPDATE on the order's payment_status so an order
    can never end up paid and cancelled at the same time.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, order_id: UUID) -> Order:
        result = await self.session.execute(
            select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise OrderNotFound(order_id)
        return order

    async def mark_paid(self, order_id: UUID, paid_at: Optional[datetime] = None) -> bool:
        applied = await self._update(
            order_id,
            Order.payment_status.in_(_OPEN_PAYMENT),
            payment_status=PaymentStatus.PAID.value,
            status=OrderStatus.PROCESSING.value,
            paid_at=paid_at or datetime.utcnow(),
        )
        if applied:
            logger.info(f"Order {order_id} marked paid")
        else:
            logger.warning(f"Order {order_id} not in an open payment state, mark_paid skipped")
        return applied

    async def mark_failed(self, order_id: UUID, reason: str) -> bool:
        applied = await self._update(
            order_id,
            Order.payment_status.in_(_OPEN_PAYMENT),
            payment_status=PaymentStatus.FAILED.value,
            status=OrderStatus.CANCELLED.value,
            cancelled_at=datetime.utcnow(),
            cancellation_reason=reason,
        )
        if applied:
            logger.info(f"Order {order_id} marked failed: {reason}")
        else:
            logger.warning(f"Order {order_id} not in an open payment state, mark_failed skipped")
        return applied

    async def mark_pending(self, order_id: UUID) -> bool:
        return await self._update(
            order_id,
            Order.payment_status == PaymentStatus.PENDING.value,
            payment_status=PaymentStatus.PENDING.value,
        )

    async def mark_processing(self, order_id: UUID) -> bool:
        return await self._update(
            order_id,
            Order.payment_status.in_(_OPEN_PAYMENT),
            payment_status=PaymentStatus.PROCESSING.value,
        )

    async def cancel(self, order_id: UUID, reason: str) -> bool:
        """Customer/admin cancellation of an unpaid order."""
        return await self.mark_failed(order_id, reason)

    async def advance(self, order_id: UUID, new_status: OrderStatus) -> Order:
        """Apply a fulfillment transition (e.g. processing -> shipped)."""
        order = await self.get(order_id)
        current = OrderStatus(order.status)

        if not can_transition(current, new_status):
            raise InvalidTransition(current.value, new_status.value)
        if new_status == OrderStatus.CANCELLED:
            raise InvalidTransition(current.value, new_status.value)
        if new_status != OrderStatus.PROCESSING and order.payment_status != PaymentStatus.PAID.value:
            raise InvalidTransition(current.value, new_status.value)

        applied = await self._update(order_id, Order.status == current.value, status=new_status.value)
        if not applied:
            raise InvalidTransition(current.value, new_status.value)

        await save_event_to_outbox(
            self.session,
            OrderStatusChangedEvent(
                aggregate_id=order.id,
                correlation_id=order.order_number,
                order_number=order.order_number,
                from_status=current.value,
                to_status=new_status.value,
            ),
        )
        await self.session.refresh(order)
        logger.info(f"Order {order_id} moved from {current.value} to {new_status.value}")
        return order

    async def _update(self, order_id: UUID, condition, **values) -> bool:
        result = await self.session.execute(
            update(Order)
            .where(Order.id == order_id, condition)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
