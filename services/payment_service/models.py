"""Database models for Payment Service."""
from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import relationship

from shared.database import Base, JSONType


class OrderStatus(str, Enum):
    """Fulfillment status of an order."""
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    """Financial status of an order."""
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"


class TransactionStatus(str, Enum):
    """Status of one payment attempt in the ledger."""
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_TRANSACTION_STATUSES


TERMINAL_TRANSACTION_STATUSES = frozenset(
    {TransactionStatus.SUCCESS, TransactionStatus.FAILED}
)


class DeadLetterKind(str, Enum):
    """What kind of post-commit work failed."""
    NOTIFICATION = "notification"
    COMPENSATION = "compensation"
    WEBHOOK = "webhook"


class Product(Base):
    """Catalog product; this service only adjusts its stock."""

    __tablename__ = "products"

    id = Column(Uuid, primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False)
    sku = Column(String(100), nullable=True, unique=True)
    price = Column(Float, nullable=False)
    stock_quantity = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Order(Base):
    """Order aggregate root."""

    __tablename__ = "orders"

    id = Column(Uuid, primary_key=True, default=uuid4)
    order_number = Column(String(50), nullable=False, unique=True)

    status = Column(String(20), default=OrderStatus.PENDING.value, nullable=False, index=True)
    payment_status = Column(
        String(20), default=PaymentStatus.PENDING.value, nullable=False, index=True
    )

    # Customer snapshot, denormalized so the order survives profile edits
    customer_id = Column(Uuid, nullable=True, index=True)  # NULL for guests
    customer_email = Column(String(255), nullable=False, index=True)
    customer_first_name = Column(String(100), nullable=False)
    customer_last_name = Column(String(100), nullable=False)
    customer_phone = Column(String(50), nullable=False)
    shipping_address = Column(JSONType, nullable=False)

    subtotal = Column(Float, nullable=False)
    shipping_cost = Column(Float, nullable=False, default=0)
    transaction_fee = Column(Float, nullable=False, default=0)
    total_amount = Column(Float, nullable=False)
    payment_method = Column(String(20), nullable=False, default="card")
    order_notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    paid_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    items = relationship("OrderItem", back_populates="order", lazy="selectin")

    __table_args__ = (
        Index("ix_orders_status_created", "status", "created_at"),
    )

    @property
    def customer_name(self) -> str:
        return f"{self.customer_first_name or ''} {self.customer_last_name or ''}".strip()


class OrderItem(Base):
    """Line item, with a product snapshot taken at order time."""

    __tablename__ = "order_items"

    id = Column(Uuid, primary_key=True, default=uuid4)
    order_id = Column(Uuid, ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(Uuid, nullable=False, index=True)

    product_name = Column(String(255), nullable=False)
    product_image = Column(Text, nullable=True)
    product_sku = Column(String(100), nullable=True)

    quantity = Column(Integer, nullable=False)
    price = Column(Float, nullable=False)
    total = Column(Float, nullable=False)

    order = relationship("Order", back_populates="items")


class PaymentTransaction(Base):
    """One payment attempt; the reference is the idempotency key."""

    __tablename__ = "payment_transactions"

    id = Column(Uuid, primary_key=True, default=uuid4)
    order_id = Column(Uuid, ForeignKey("orders.id"), nullable=False, index=True)
    reference = Column(String(100), nullable=False, unique=True)
    access_code = Column(String(100), nullable=True)

    amount_minor = Column(Integer, nullable=False)
    currency = Column(String(3), default="NGN", nullable=False)
    status = Column(
        String(20), default=TransactionStatus.PENDING.value, nullable=False, index=True
    )
    channel = Column(String(50), nullable=True)

    gateway_response = Column(Text, nullable=True)
    failure_reason = Column(Text, nullable=True)
    paid_at = Column(DateTime, nullable=True)

    # Captured when the gateway returns an authorization
    authorization_code = Column(String(100), nullable=True)
    card_type = Column(String(50), nullable=True)
    card_last4 = Column(String(4), nullable=True)
    card_exp_month = Column(String(2), nullable=True)
    card_exp_year = Column(String(4), nullable=True)
    card_bank = Column(String(100), nullable=True)

    webhook_received_at = Column(DateTime, nullable=True)
    webhook_payload = Column(JSONType, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_payment_transactions_status_created", "status", "created_at"),
    )


class SavedPaymentMethod(Base):
    """Reusable card authorization for a returning customer."""

    __tablename__ = "saved_payment_methods"

    id = Column(Uuid, primary_key=True, default=uuid4)
    customer_id = Column(Uuid, nullable=True, index=True)
    customer_email = Column(String(255), nullable=False, index=True)
    authorization_code = Column(String(100), nullable=False, unique=True)

    card_type = Column(String(50), nullable=False, default="unknown")
    card_last4 = Column(String(4), nullable=False, default="0000")
    card_exp_month = Column(String(2), nullable=False, default="12")
    card_exp_year = Column(String(4), nullable=False, default="99")
    card_bank = Column(String(100), nullable=True)
    card_brand = Column(String(50), nullable=True)
    channel = Column(String(50), nullable=False, default="card")

    is_active = Column(Boolean, nullable=False, default=True)
    is_default = Column(Boolean, nullable=False, default=False)
    last_used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class DeadLetter(Base):
    """Post-commit work that failed and needs manual follow-up."""

    __tablename__ = "dead_letters"

    id = Column(Uuid, primary_key=True, default=uuid4)
    kind = Column(String(20), nullable=False, index=True)
    reference = Column(String(100), nullable=True, index=True)
    order_id = Column(Uuid, nullable=True, index=True)
    payload = Column(JSONType, nullable=True)
    error_message = Column(Text, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    resolved_at = Column(DateTime, nullable=True)
