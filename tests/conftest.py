"""Pytest fixtures for payment service tests."""

import tempfile
from pathlib import Path

import httpx
import pytest
from sqlalchemy import select

from fakes import SECRET_KEY, FakeRedis, PaystackStub, RecordingEmailSender
from shared.config import Settings
from shared.database import Database
from shared.outbox import OutboxMessage  # noqa: F401  registers the outbox table

from services.payment_service.cache import OrderViewCache
from services.payment_service.checkout import CheckoutService
from services.payment_service.dead_letters import DeadLetterLog
from services.payment_service.gateway import PaystackClient, to_minor_units
from services.payment_service.inventory import InventoryCompensator
from services.payment_service.models import (
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    PaymentTransaction,
    Product,
    TransactionStatus,
)
from services.payment_service.notifications import Notifier
from services.payment_service.reconciler import PaymentReconciler


@pytest.fixture
def temp_dir():
    """Create a temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def settings(temp_dir):
    return Settings(
        sqlalchemy_url=f"sqlite+aiosqlite:///{temp_dir / 'payments.db'}",
        paystack_secret_key=SECRET_KEY,
        paystack_public_key="pk_test_public",
        resend_api_key="",
        app_url="https://shop.test",
        admin_email="admin@shop.test",
        support_email="support@shop.test",
        outbox_enabled=False,
    )


@pytest.fixture
async def database(settings):
    """A throwaway SQLite database with all tables created."""
    db = Database(settings.database_url)
    await db.create_tables()
    yield db
    await db.close()


@pytest.fixture
def paystack():
    return PaystackStub()


@pytest.fixture
async def http_client(paystack):
    async with httpx.AsyncClient(transport=httpx.MockTransport(paystack)) as client:
        yield client


@pytest.fixture
def gateway(http_client):
    return PaystackClient(http_client, SECRET_KEY, retry_wait=0)


@pytest.fixture
def dead_letters(database):
    return DeadLetterLog(database.session_factory)


@pytest.fixture
def email_sender():
    return RecordingEmailSender()


@pytest.fixture
def notifier(email_sender, dead_letters):
    return Notifier(
        email_sender,
        dead_letters,
        admin_email="admin@shop.test",
        support_email="support@shop.test",
        app_url="https://shop.test",
    )


@pytest.fixture
def redis():
    return FakeRedis()


@pytest.fixture
def cache(redis):
    return OrderViewCache(redis, ttl_seconds=30)


@pytest.fixture
def inventory(database):
    return InventoryCompensator(database.session_factory)


@pytest.fixture
def reconciler(database, gateway, inventory, notifier, cache, dead_letters):
    return PaymentReconciler(
        database.session_factory, gateway, inventory, notifier, cache, dead_letters
    )


@pytest.fixture
def checkout(database, settings, gateway, inventory, reconciler, notifier, cache):
    return CheckoutService(
        database.session_factory, settings, gateway, inventory, reconciler, notifier, cache
    )


@pytest.fixture
def make_product(database):
    """Insert a product and return it."""

    async def _make(name="Product X", stock=10, price=5000.0, sku=None, is_active=True):
        async with database.session_factory() as session:
            product = Product(
                name=name, sku=sku, price=price, stock_quantity=stock, is_active=is_active
            )
            session.add(product)
            await session.commit()
            return product

    return _make


@pytest.fixture
def make_order(database):
    """
    Insert a pending order with one ledger attempt, as checkout leaves it.

    `lines` is a list of (product, quantity); stock is reserved for them
    unless reserve=False.
    """

    async def _make(
        reference="REF-1",
        order_number="ORD-1",
        lines=(),
        total_amount=10000.0,
        email="ada@example.com",
        reserve=True,
        status=OrderStatus.PENDING,
        payment_status=PaymentStatus.PENDING,
    ):
        async with database.session_factory() as session:
            order = Order(
                order_number=order_number,
                status=status.value,
                payment_status=payment_status.value,
                customer_email=email,
                customer_first_name="Ada",
                customer_last_name="Obi",
                customer_phone="08030000000",
                shipping_address={"address": "1 Marina", "city": "Lagos", "state": "Lagos"},
                subtotal=total_amount,
                total_amount=total_amount,
                items=[
                    OrderItem(
                        product_id=product.id,
                        product_name=product.name,
                        quantity=quantity,
                        price=product.price,
                        total=product.price * quantity,
                    )
                    for product, quantity in lines
                ],
            )
            session.add(order)
            await session.flush()

            if reference:
                session.add(
                    PaymentTransaction(
                        order_id=order.id,
                        reference=reference,
                        amount_minor=to_minor_units(total_amount),
                        currency="NGN",
                        status=TransactionStatus.PENDING.value,
                        channel="card",
                    )
                )

            if reserve:
                for product, quantity in lines:
                    db_product = await session.get(Product, product.id)
                    db_product.stock_quantity -= quantity

            await session.commit()
            return order

    return _make


@pytest.fixture
def get_row(database):
    """Load a fresh copy of a row by primary key."""

    async def _get(model, key):
        async with database.session_factory() as session:
            return await session.get(model, key)

    return _get


@pytest.fixture
def get_transaction(database):
    async def _get(reference):
        async with database.session_factory() as session:
            result = await session.execute(
                select(PaymentTransaction).where(PaymentTransaction.reference == reference)
            )
            return result.scalar_one()

    return _get
