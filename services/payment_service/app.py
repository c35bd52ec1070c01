"""Payment Service FastAPI application."""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

import httpx
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from pydantic import BaseModel
from redis import asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import Settings
from shared.database import Database
from shared.message_broker import MessageBroker
from shared.outbox import OutboxPublisher

from .cache import OrderViewCache
from .checkout import CheckoutRequest, CheckoutResult, CheckoutService
from .dead_letters import DeadLetterLog
from .errors import (
    CancellationRejected,
    CheckoutValidationError,
    DeadLetterNotReplayable,
    GatewayRejected,
    GatewayUnavailable,
    InsufficientStock,
    InvalidTransition,
    OrderNotFound,
    ReferenceNotFound,
    SignatureInvalid,
)
from .gateway import PaystackClient, validate_gateway_config
from .inventory import InventoryCompensator
from .ledger import TransactionLedger
from .models import DeadLetterKind, OrderStatus
from .notifications import Notifier, build_email_sender
from .order_state import OrderStateMachine
from .payment_methods import PaymentMethodStore
from .reconciler import PaymentReconciler, VerificationResult

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

router = APIRouter()


# Request/Response models
class CancelOrderRequest(BaseModel):
    customer_email: str
    reason: str = "Cancelled by customer"


class SavedCardPaymentRequest(BaseModel):
    customer_email: str
    authorization_code: str


class AdvanceOrderRequest(BaseModel):
    status: OrderStatus


class FinalizationResponse(BaseModel):
    reference: str
    order_id: UUID
    status: str
    applied: bool


class TransactionResponse(BaseModel):
    """Ledger entry as exposed to the storefront."""
    id: UUID
    order_id: UUID
    reference: str
    amount_minor: int
    currency: str
    status: str
    channel: Optional[str] = None
    card_type: Optional[str] = None
    card_last4: Optional[str] = None
    failure_reason: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class PaymentMethodResponse(BaseModel):
    id: UUID
    card_type: str
    card_last4: str
    card_exp_month: str
    card_exp_year: str
    card_bank: Optional[str] = None
    card_brand: Optional[str] = None
    authorization_code: str
    is_default: bool

    class Config:
        from_attributes = True


class OrderResponse(BaseModel):
    id: UUID
    order_number: str
    status: str
    payment_status: str
    total_amount: float
    cancellation_reason: Optional[str] = None

    class Config:
        from_attributes = True


class OrderItemResponse(BaseModel):
    id: UUID
    product_id: UUID
    product_name: str
    product_image: Optional[str] = None
    product_sku: Optional[str] = None
    quantity: int
    price: float
    total: float

    class Config:
        from_attributes = True


class OrderSummaryResponse(BaseModel):
    """Order history row."""
    id: UUID
    order_number: str
    status: str
    payment_status: str
    total_amount: float
    created_at: datetime
    paid_at: Optional[datetime] = None
    items: List[OrderItemResponse] = []

    class Config:
        from_attributes = True


class OrderDetailResponse(OrderSummaryResponse):
    customer_email: str
    customer_first_name: str
    customer_last_name: str
    customer_phone: str
    shipping_address: Dict[str, Any]
    subtotal: float
    shipping_cost: float
    transaction_fee: float
    order_notes: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    transactions: List[TransactionResponse] = []


class PaginationResponse(BaseModel):
    page: int
    limit: int
    total: int
    has_more: bool
    total_pages: int


class CustomerOrdersResponse(BaseModel):
    orders: List[OrderSummaryResponse]
    pagination: PaginationResponse


class DeadLetterResponse(BaseModel):
    id: UUID
    kind: str
    reference: Optional[str] = None
    order_id: Optional[UUID] = None
    error_message: str
    payload: Optional[dict] = None
    created_at: str


def create_app(
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    redis_client: Optional[aioredis.Redis] = None,
) -> FastAPI:
    """
    Build the payment service application.

    Collaborators are created from settings unless passed in, and are kept
    on `app.state` for the request dependencies below.
    """
    settings = settings or Settings()
    logging.getLogger().setLevel(settings.log_level.upper())

    database = database or Database(settings.database_url)
    http_client = http_client or httpx.AsyncClient(timeout=settings.paystack_timeout_seconds)
    redis_client = redis_client or aioredis.from_url(settings.redis_url, decode_responses=True)
    message_broker = MessageBroker(settings.rabbitmq_url)

    dead_letters = DeadLetterLog(database.session_factory)
    gateway = PaystackClient.from_settings(settings, http_client)
    inventory = InventoryCompensator(database.session_factory)
    notifier = Notifier.from_settings(settings, build_email_sender(settings, http_client), dead_letters)
    cache = OrderViewCache(redis_client, settings.order_cache_ttl_seconds)
    reconciler = PaymentReconciler(
        database.session_factory, gateway, inventory, notifier, cache, dead_letters
    )
    checkout = CheckoutService(
        database.session_factory, settings, gateway, inventory, reconciler, notifier, cache
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifecycle manager for the application."""
        # Startup
        logger.info("Starting Payment Service...")

        config = validate_gateway_config(settings)
        if not config["is_valid"]:
            logger.warning(f"Paystack configuration incomplete: {config['errors']}")
        else:
            logger.info(f"Paystack configured ({config['environment']} mode)")

        await database.create_tables()

        outbox_publisher: Optional[OutboxPublisher] = None
        if settings.outbox_enabled:
            await message_broker.connect()
            outbox_publisher = OutboxPublisher(
                session_factory=database.session_factory,
                message_broker=message_broker,
            )
            await outbox_publisher.start()

        logger.info("Payment Service started successfully")

        yield

        # Shutdown
        logger.info("Shutting down Payment Service...")
        if outbox_publisher:
            await outbox_publisher.stop()
        await message_broker.disconnect()
        await http_client.aclose()
        await redis_client.aclose()
        await database.close()

    app = FastAPI(title="Payment Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.database = database
    app.state.dead_letters = dead_letters
    app.state.cache = cache
    app.state.reconciler = reconciler
    app.state.checkout = checkout
    app.include_router(router)
    return app


# Dependencies
async def get_session(request: Request) -> AsyncSession:
    """Get database session."""
    async for session in request.app.state.database.get_session():
        yield session


def get_reconciler(request: Request) -> PaymentReconciler:
    return request.app.state.reconciler


def get_checkout(request: Request) -> CheckoutService:
    return request.app.state.checkout


def get_dead_letters(request: Request) -> DeadLetterLog:
    return request.app.state.dead_letters


def get_cache(request: Request) -> OrderViewCache:
    return request.app.state.cache


# Payment endpoints
@router.post("/webhooks/paystack")
async def paystack_webhook(
    request: Request,
    x_paystack_signature: Optional[str] = Header(default=None),
    reconciler: PaymentReconciler = Depends(get_reconciler),
):
    """
    Paystack webhook.

    Only a bad signature is rejected. Every authenticated delivery is
    acknowledged so the gateway stops retrying; processing failures are
    dead-lettered for replay.
    """
    raw_body = await request.body()
    try:
        await reconciler.handle_webhook(raw_body, x_paystack_signature)
    except SignatureInvalid:
        raise HTTPException(status_code=400, detail="Invalid signature")
    return {"received": True}


@router.post(
    "/payments/{reference}/verify",
    response_model=VerificationResult,
    response_model_exclude_none=True,
)
async def verify_payment(reference: str, reconciler: PaymentReconciler = Depends(get_reconciler)):
    """Poll/verify a payment reference against the gateway."""
    return await reconciler.verify_payment(reference)


@router.get("/transactions/{reference}", response_model=TransactionResponse)
async def get_transaction(reference: str, session: AsyncSession = Depends(get_session)):
    """Get ledger entry by reference."""
    try:
        transaction = await TransactionLedger(session).get_by_reference(reference)
    except ReferenceNotFound:
        raise HTTPException(status_code=404, detail="Transaction not found")

    return transaction


# Checkout and order endpoints
@router.post("/checkout", response_model=CheckoutResult, status_code=201)
async def create_checkout(request: CheckoutRequest, checkout: CheckoutService = Depends(get_checkout)):
    """Create an order and start its payment."""
    try:
        return await checkout.create_order(request)
    except CheckoutValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except InsufficientStock as e:
        raise HTTPException(status_code=409, detail=str(e))
    except GatewayUnavailable:
        raise HTTPException(status_code=503, detail="Payment provider is unavailable, please try again")
    except GatewayRejected:
        raise HTTPException(status_code=502, detail="Failed to initialize payment")


@router.get("/orders/{order_id}/status")
async def get_order_status(order_id: UUID, checkout: CheckoutService = Depends(get_checkout)):
    """Order status view polled by the payment page."""
    try:
        return await checkout.get_order_status(order_id)
    except OrderNotFound:
        raise HTTPException(status_code=404, detail="Order not found")


@router.get("/orders/{order_id}", response_model=OrderDetailResponse)
async def get_order(
    order_id: UUID,
    customer_email: str,
    checkout: CheckoutService = Depends(get_checkout),
):
    """Order detail page; the email must match the order."""
    try:
        order, transactions = await checkout.get_order(order_id, customer_email)
    except OrderNotFound:
        raise HTTPException(status_code=404, detail="Order not found")

    detail = OrderDetailResponse.model_validate(order)
    detail.transactions = [TransactionResponse.model_validate(t) for t in transactions]
    return detail


@router.get("/customers/{email}/orders", response_model=CustomerOrdersResponse)
async def list_customer_orders(
    email: str,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=50),
    status: Optional[OrderStatus] = None,
    checkout: CheckoutService = Depends(get_checkout),
):
    """Order history for guests and registered customers, newest first."""
    result = await checkout.list_customer_orders(email, page=page, limit=limit, status=status)
    return CustomerOrdersResponse(
        orders=[OrderSummaryResponse.model_validate(order) for order in result["orders"]],
        pagination=PaginationResponse(**result["pagination"]),
    )


@router.post("/orders/{order_id}/cancel", response_model=OrderResponse)
async def cancel_order(
    order_id: UUID,
    request: CancelOrderRequest,
    checkout: CheckoutService = Depends(get_checkout),
):
    """Customer cancellation of an unpaid order."""
    try:
        return await checkout.cancel_order(order_id, request.reason, request.customer_email)
    except OrderNotFound:
        raise HTTPException(status_code=404, detail="Order not found")
    except CancellationRejected as e:
        raise HTTPException(
            status_code=409,
            detail={"message": str(e), "requires_support": e.requires_support},
        )


@router.post("/orders/{order_id}/pay-with-saved-card", response_model=FinalizationResponse)
async def pay_with_saved_card(
    order_id: UUID,
    request: SavedCardPaymentRequest,
    checkout: CheckoutService = Depends(get_checkout),
):
    """Charge a saved card for a pending order."""
    try:
        result = await checkout.pay_with_saved_card(
            order_id, request.authorization_code, request.customer_email
        )
    except OrderNotFound:
        raise HTTPException(status_code=404, detail="Order not found")
    except CheckoutValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except GatewayUnavailable:
        raise HTTPException(status_code=503, detail="Payment provider is unavailable, please try again")

    return FinalizationResponse(
        reference=result.reference,
        order_id=result.order_id,
        status=result.payment_status,
        applied=result.applied,
    )


# Saved payment methods
@router.get("/customers/{email}/payment-methods", response_model=List[PaymentMethodResponse])
async def list_payment_methods(email: str, session: AsyncSession = Depends(get_session)):
    """List a customer's active saved cards, default first."""
    return await PaymentMethodStore(session).list_active(email)


@router.delete("/customers/{email}/payment-methods/{method_id}")
async def delete_payment_method(email: str, method_id: UUID, session: AsyncSession = Depends(get_session)):
    """Deactivate a saved card."""
    if not await PaymentMethodStore(session).deactivate(method_id, email):
        raise HTTPException(status_code=404, detail="Payment method not found")
    await session.commit()
    return {"success": True}


@router.post("/customers/{email}/payment-methods/{method_id}/default")
async def set_default_payment_method(
    email: str, method_id: UUID, session: AsyncSession = Depends(get_session)
):
    """Make a saved card the customer's default."""
    if not await PaymentMethodStore(session).set_default(method_id, email):
        raise HTTPException(status_code=404, detail="Payment method not found")
    await session.commit()
    return {"success": True}


# Admin endpoints
@router.post("/admin/orders/{order_id}/status", response_model=OrderResponse)
async def advance_order_status(
    order_id: UUID,
    request: AdvanceOrderRequest,
    session: AsyncSession = Depends(get_session),
    cache: OrderViewCache = Depends(get_cache),
):
    """Move a paid order along fulfillment (processing -> shipped -> delivered)."""
    try:
        order = await OrderStateMachine(session).advance(order_id, request.status)
    except OrderNotFound:
        raise HTTPException(status_code=404, detail="Order not found")
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    await session.commit()
    await cache.invalidate(order_id)
    return order


@router.get("/admin/dead-letters", response_model=List[DeadLetterResponse])
async def list_dead_letters(
    kind: Optional[DeadLetterKind] = None,
    limit: int = 100,
    dead_letters: DeadLetterLog = Depends(get_dead_letters),
):
    """Unresolved post-commit failures awaiting follow-up."""
    entries = await dead_letters.list_unresolved(kind, limit)
    return [
        DeadLetterResponse(
            id=entry.id,
            kind=entry.kind,
            reference=entry.reference,
            order_id=entry.order_id,
            error_message=entry.error_message,
            payload=entry.payload,
            created_at=entry.created_at.isoformat(),
        )
        for entry in entries
    ]


@router.post("/admin/dead-letters/{dead_letter_id}/resolve")
async def resolve_dead_letter(dead_letter_id: UUID, dead_letters: DeadLetterLog = Depends(get_dead_letters)):
    if not await dead_letters.resolve(dead_letter_id):
        raise HTTPException(status_code=404, detail="Dead letter not found")
    return {"success": True}


@router.post("/admin/dead-letters/{dead_letter_id}/replay")
async def replay_dead_letter(dead_letter_id: UUID, reconciler: PaymentReconciler = Depends(get_reconciler)):
    """Re-run a dead-lettered webhook."""
    try:
        result = await reconciler.replay_webhook(dead_letter_id)
    except DeadLetterNotReplayable as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ReferenceNotFound:
        raise HTTPException(status_code=404, detail="Transaction not found")

    if result is None:
        return {"success": True, "status": None}
    return {"success": True, "status": result.payment_status, "applied": result.applied}


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "payment-service"}


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=app.state.settings.service_port)
