"""Checkout, cancellation and saved-card payment for storefront orders."""
import logging
import math
import secrets
import string
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from pydantic import BaseModel, Field
from sqlalchemy import func, select

from shared.config import Settings
from shared.events import OrderCancelledEvent, OrderPlacedEvent
from shared.outbox import save_event_to_outbox

from .cache import OrderViewCache
from .errors import (
    CancellationRejected,
    CheckoutValidationError,
    GatewayRejected,
    OrderNotFound,
)
from .gateway import (
    ChargeOutcome,
    GatewayTransaction,
    PaystackClient,
    calculate_transaction_fee,
    from_minor_units,
    generate_payment_reference,
    to_minor_units,
)
from .inventory import InventoryCompensator, StockLine
from .ledger import TransactionLedger
from .models import Order, OrderItem, OrderStatus, PaymentStatus, PaymentTransaction
from .notifications import Notifier
from .order_state import OrderStateMachine
from .payment_methods import PaymentMethodStore
from .reconciler import FinalizationResult, PaymentReconciler, ReconciliationSource

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = (
    "customer_email",
    "customer_phone",
    "customer_first_name",
    "customer_last_name",
    "shipping_first_name",
    "shipping_last_name",
    "shipping_address",
    "shipping_city",
    "shipping_state",
)

NOT_CANCELLABLE = {
    OrderStatus.SHIPPED.value,
    OrderStatus.DELIVERED.value,
    OrderStatus.CANCELLED.value,
}


class CheckoutItem(BaseModel):
    product_id: UUID
    name: str = "Product"
    sku: Optional[str] = None
    image: Optional[str] = None
    quantity: int = Field(gt=0)
    unit_price: float = Field(ge=0)


class CheckoutRequest(BaseModel):
    """Checkout form for guests and registered customers."""

    customer_id: Optional[UUID] = None
    customer_email: str = ""
    customer_phone: str = ""
    customer_first_name: str = ""
    customer_last_name: str = ""
    shipping_first_name: str = ""
    shipping_last_name: str = ""
    shipping_address: str = ""
    shipping_city: str = ""
    shipping_state: str = ""
    shipping_postal_code: Optional[str] = None
    shipping_cost: float = Field(default=0, ge=0)
    order_notes: Optional[str] = None
    items: List[CheckoutItem] = Field(default_factory=list)

    def check_complete(self):
        for field in REQUIRED_FIELDS:
            if not getattr(self, field).strip():
                raise CheckoutValidationError(f"{field.replace('_', ' ')} is required")
        if not self.items:
            raise CheckoutValidationError("Cart is empty")

    @property
    def subtotal(self) -> float:
        return round(sum(item.unit_price * item.quantity for item in self.items), 2)


class CheckoutResult(BaseModel):
    order_id: UUID
    order_number: str
    total_amount: float
    reference: str
    authorization_url: str
    access_code: str


def generate_order_number(prefix: str = "FS") -> str:
    alphabet = string.ascii_uppercase + string.digits
    suffix = "".join(secrets.choice(alphabet) for _ in range(9))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


class CheckoutService:
    """Creates orders, starts their first payment attempt and handles cancellation."""

    def __init__(
        self,
        session_factory,
        settings: Settings,
        gateway: PaystackClient,
        inventory: InventoryCompensator,
        reconciler: PaymentReconciler,
        notifier: Notifier,
        cache: OrderViewCache,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.gateway = gateway
        self.inventory = inventory
        self.reconciler = reconciler
        self.notifier = notifier
        self.cache = cache

    async def create_order(self, request: CheckoutRequest) -> CheckoutResult:
        """
        Create a pending order, reserve its stock and initialize payment.

        The ledger row is written together with the order, before the
        gateway is called, so a webhook can never arrive for a reference
        we do not know. If initialization fails the attempt and the order
        are failed and the stock is returned.
        """
        request.check_complete()
        lines = [StockLine(product_id=item.product_id, quantity=item.quantity) for item in request.items]

        subtotal = request.subtotal
        shipping = request.shipping_cost
        fee = from_minor_units(calculate_transaction_fee(to_minor_units(subtotal + shipping)))
        total = round(subtotal + shipping + fee, 2)
        amount_minor = to_minor_units(total)
        if amount_minor <= 0:
            raise CheckoutValidationError("Order total must be greater than zero")
        reference = generate_payment_reference(self.settings.payment_reference_prefix)

        async with self.session_factory() as session:
            await self.inventory.check_availability(session, lines)

            order = Order(
                order_number=generate_order_number(self.settings.payment_reference_prefix),
                status=OrderStatus.PENDING.value,
                payment_status=PaymentStatus.PENDING.value,
                customer_id=request.customer_id,
                customer_email=request.customer_email.lower().strip(),
                customer_phone=request.customer_phone.strip(),
                customer_first_name=request.customer_first_name.strip(),
                customer_last_name=request.customer_last_name.strip(),
                shipping_address={
                    "first_name": request.shipping_first_name.strip(),
                    "last_name": request.shipping_last_name.strip(),
                    "address": request.shipping_address.strip(),
                    "city": request.shipping_city.strip(),
                    "state": request.shipping_state.strip(),
                    "postal_code": (request.shipping_postal_code or "").strip() or None,
                    "country": "NG",
                },
                subtotal=subtotal,
                shipping_cost=shipping,
                transaction_fee=fee,
                total_amount=total,
                payment_method="card",
                order_notes=(request.order_notes or "").strip() or None,
                items=[
                    OrderItem(
                        product_id=item.product_id,
                        product_name=item.name,
                        product_image=item.image,
                        product_sku=item.sku,
                        quantity=item.quantity,
                        price=item.unit_price,
                        total=round(item.unit_price * item.quantity, 2),
                    )
                    for item in request.items
                ],
            )
            session.add(order)
            await session.flush()

            await self.inventory.reserve(session, lines)
            await TransactionLedger(session).create(
                reference,
                order.id,
                amount_minor,
                currency=self.settings.payment_currency,
            )
            await save_event_to_outbox(
                session,
                OrderPlacedEvent(
                    aggregate_id=order.id,
                    correlation_id=reference,
                    order_number=order.order_number,
                    customer_email=order.customer_email,
                    items=[
                        {"product_id": str(i.product_id), "quantity": i.quantity, "price": i.price}
                        for i in order.items
                    ],
                    total_amount=total,
                ),
            )
            await session.commit()

        logger.info(f"Created order {order.order_number} ({order.id}) with reference {reference}")

        await self.notifier.dispatch(
            {"order_confirmation": self.notifier.send_order_confirmation_email(order)},
            order_id=order.id,
            reference=reference,
        )

        try:
            payment = await self.gateway.initialize_transaction(
                email=order.customer_email,
                amount_minor=amount_minor,
                reference=reference,
                metadata={
                    "order_id": str(order.id),
                    "order_number": order.order_number,
                    "customer_name": order.customer_name,
                    "customer_phone": order.customer_phone,
                    "cancel_action": f"{self.settings.app_url}/checkout?cancelled=true",
                },
                channels=self.settings.channels,
                callback_url=(
                    f"{self.settings.app_url}/payment/verify"
                    f"?reference={reference}&order_id={order.id}"
                ),
            )
        except Exception:
            # Nothing will ever settle this reference; give the stock back before re-raising
            logger.error(f"Payment initialization failed for order {order.id}", exc_info=True)
            await self._cancel_internal(order, "Payment initialization failed", reference)
            raise

        async with self.session_factory() as session:
            transaction = await TransactionLedger(session).get_by_reference(reference)
            transaction.access_code = payment.access_code
            await session.commit()

        return CheckoutResult(
            order_id=order.id,
            order_number=order.order_number,
            total_amount=total,
            reference=reference,
            authorization_url=payment.authorization_url,
            access_code=payment.access_code,
        )

    async def get_order_status(self, order_id: UUID) -> Dict[str, Any]:
        """Status view polled by the payment verification page."""
        cached = await self.cache.get_status(order_id)
        if cached is not None:
            return cached

        async with self.session_factory() as session:
            order = await OrderStateMachine(session).get(order_id)

        view = {
            "id": str(order.id),
            "order_number": order.order_number,
            "status": order.status,
            "payment_status": order.payment_status,
            "total_amount": order.total_amount,
            "created_at": order.created_at.isoformat(),
            "paid_at": order.paid_at.isoformat() if order.paid_at else None,
            "poll_interval_seconds": self.settings.payment_poll_interval_seconds,
            "poll_timeout_seconds": self.settings.payment_poll_timeout_seconds,
        }
        await self.cache.set_status(order_id, view)
        return view

    async def get_order(
        self, order_id: UUID, customer_email: str
    ) -> Tuple[Order, List[PaymentTransaction]]:
        """Order detail with its payment attempts; OrderNotFound unless the email owns it."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Order).where(
                    Order.id == order_id,
                    Order.customer_email == customer_email.lower().strip(),
                )
            )
            order = result.scalar_one_or_none()
            if order is None:
                raise OrderNotFound(order_id)

            transactions = await TransactionLedger(session).list_for_order(order.id)

        return order, transactions

    async def list_customer_orders(
        self,
        customer_email: str,
        page: int = 1,
        limit: int = 10,
        status: Optional[OrderStatus] = None,
    ) -> Dict[str, Any]:
        """Order history for an email, newest first, guests and registered customers alike."""
        conditions = [Order.customer_email == customer_email.lower().strip()]
        if status is not None:
            conditions.append(Order.status == status.value)
        offset = (page - 1) * limit

        async with self.session_factory() as session:
            total = await session.scalar(select(func.count()).select_from(Order).where(*conditions))
            result = await session.execute(
                select(Order)
                .where(*conditions)
                .order_by(Order.created_at.desc())
                .offset(offset)
                .limit(limit)
            )
            orders = list(result.scalars().all())

        return {
            "orders": orders,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "has_more": total > offset + limit,
                "total_pages": math.ceil(total / limit),
            },
        }

    async def cancel_order(self, order_id: UUID, reason: str, customer_email: str) -> Order:
        """Customer cancellation of an unpaid order inside the cancellation window."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Order).where(
                    Order.id == order_id,
                    Order.customer_email == customer_email.lower().strip(),
                )
            )
            order = result.scalar_one_or_none()

        if order is None:
            raise OrderNotFound(order_id)
        if order.status in NOT_CANCELLABLE:
            raise CancellationRejected("Order cannot be cancelled at this stage")
        if order.payment_status == PaymentStatus.PAID.value:
            raise CancellationRejected("Please contact support to cancel paid orders", requires_support=True)

        window = self.settings.order_cancellation_window_minutes
        if datetime.utcnow() - order.created_at > timedelta(minutes=window):
            raise CancellationRejected(
                f"Cancellation window ({window} minutes) has expired. Please contact support.",
                requires_support=True,
            )

        if not await self._cancel_internal(order, reason, order.order_number):
            raise CancellationRejected("Please contact support to cancel paid orders", requires_support=True)

        await self.notifier.dispatch(
            {"order_cancellation": self.notifier.send_order_cancellation_email(order, reason)},
            order_id=order.id,
        )

        async with self.session_factory() as session:
            return await OrderStateMachine(session).get(order_id)

    async def pay_with_saved_card(
        self, order_id: UUID, authorization_code: str, customer_email: str
    ) -> FinalizationResult:
        """
        Start a new payment attempt for a pending order using a saved card.

        The charge response is fed to the same finalization path as webhooks.
        If the gateway is unreachable the attempt stays pending and is settled
        later by the webhook or a verify call.
        """
        email = customer_email.lower().strip()
        reference = generate_payment_reference(self.settings.payment_reference_prefix)

        async with self.session_factory() as session:
            order = await OrderStateMachine(session).get(order_id)
            if order.customer_email != email:
                raise OrderNotFound(order_id)
            if order.status != OrderStatus.PENDING.value or order.payment_status not in (
                PaymentStatus.PENDING.value,
                PaymentStatus.PROCESSING.value,
            ):
                raise CheckoutValidationError("Order is not awaiting payment")

            card = await PaymentMethodStore(session).get_active(email, authorization_code)
            if card is None:
                raise CheckoutValidationError("Saved card not found")

            amount_minor = to_minor_units(order.total_amount)
            await TransactionLedger(session).create(
                reference,
                order.id,
                amount_minor,
                currency=self.settings.payment_currency,
                channel=card.channel,
            )
            await session.commit()

        try:
            charge = await self.gateway.charge_authorization(
                email=email,
                amount_minor=amount_minor,
                authorization_code=authorization_code,
                reference=reference,
                metadata={"order_id": str(order.id), "order_number": order.order_number},
            )
        except GatewayRejected as e:
            logger.warning(f"Saved card charge rejected for order {order.id}: {str(e)}")
            declined = GatewayTransaction(reference=reference, status="failed", gateway_response=str(e))
            return await self.reconciler.finalize(
                reference, ChargeOutcome.FAILED, declined, source=ReconciliationSource.CHARGE
            )

        return await self.reconciler.finalize(
            reference, charge.outcome, charge, source=ReconciliationSource.CHARGE
        )

    async def _cancel_internal(self, order: Order, reason: str, correlation_id: str) -> bool:
        """Fail open attempts, cancel the order and return its stock."""
        async with self.session_factory() as session:
            await TransactionLedger(session).fail_open_attempts(order.id, reason)
            if not await OrderStateMachine(session).cancel(order.id, reason):
                await session.rollback()
                logger.warning(f"Order {order.id} could not be cancelled, payment already settled")
                return False

            await save_event_to_outbox(
                session,
                OrderCancelledEvent(
                    aggregate_id=order.id,
                    correlation_id=correlation_id,
                    order_number=order.order_number,
                    reason=reason,
                ),
            )
            await session.commit()

        logger.info(f"Cancelled order {order.id}: {reason}")

        await self.reconciler.restore_inventory(order, correlation_id)
        await self.cache.invalidate(order.id)
        return True
