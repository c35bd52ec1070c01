"""Tests for email dispatch, the dead-letter log and the order view cache."""

import json
from uuid import uuid4

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from services.payment_service.cache import STALE_CHANNEL, OrderViewCache
from services.payment_service.errors import NotificationFailure
from services.payment_service.models import DeadLetterKind
from services.payment_service.notifications import (
    EmailMessage,
    LoggingEmailSender,
    ResendEmailSender,
    build_email_sender,
    format_naira,
)


class TestResendSender:
    async def test_posts_to_resend(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"id": "email_123"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            sender = ResendEmailSender(client, "re_key", "shop@shop.test")
            email_id = await sender.send(
                EmailMessage(to="ada@example.com", subject="Hi", html="<p>Hi</p>", reply_to="support@shop.test")
            )

        assert email_id == "email_123"
        body = json.loads(requests[0].content)
        assert requests[0].url.path == "/emails"
        assert requests[0].headers["Authorization"] == "Bearer re_key"
        assert body["to"] == ["ada@example.com"]
        assert body["reply_to"] == "support@shop.test"

    async def test_provider_error_raises(self):
        def handler(request):
            return httpx.Response(422, json={"message": "Invalid from address"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            sender = ResendEmailSender(client, "re_key", "shop@shop.test")
            with pytest.raises(NotificationFailure, match="422"):
                await sender.send(EmailMessage(to="ada@example.com", subject="Hi", html=""))

    async def test_falls_back_to_logging_without_api_key(self, settings, http_client):
        assert isinstance(build_email_sender(settings, http_client), LoggingEmailSender)

    def test_format_naira(self):
        assert format_naira(10000) == "₦10,000.00"


class TestNotifier:
    async def test_sends_order_emails(self, notifier, email_sender, make_product, make_order):
        product = await make_product()
        order = await make_order(lines=[(product, 2)])

        result = await notifier.dispatch(
            {
                "order_confirmation": notifier.send_order_confirmation_email(order),
                "order_cancellation": notifier.send_order_cancellation_email(order, "Changed my mind"),
            },
            order_id=order.id,
        )

        assert result == {"order_confirmation": True, "order_cancellation": True}
        assert email_sender.subjects() == ["Order Confirmation - ORD-1", "Order Cancelled - ORD-1"]
        assert "Product X" in email_sender.sent[0].html
        assert email_sender.sent[0].reply_to == "support@shop.test"

    async def test_one_failure_does_not_block_the_others(
        self, notifier, email_sender, dead_letters, make_order, get_transaction
    ):
        order = await make_order()
        transaction = await get_transaction("REF-1")
        email_sender.failing.add("New paid order")

        result = await notifier.dispatch(
            {
                "payment_success": notifier.send_payment_success_email(order, transaction),
                "admin_order_notification": notifier.send_admin_order_notification_email(order, transaction),
            },
            order_id=order.id,
            reference="REF-1",
        )

        assert result == {"payment_success": True, "admin_order_notification": False}
        assert email_sender.subjects() == ["Payment Received - ORD-1"]

        entries = await dead_letters.list_unresolved(DeadLetterKind.NOTIFICATION)
        assert len(entries) == 1
        assert entries[0].reference == "REF-1"
        assert entries[0].order_id == order.id
        assert entries[0].payload == {"email": "admin_order_notification"}

    async def test_admin_email_goes_to_admin(self, notifier, email_sender, make_order, get_transaction):
        order = await make_order()
        transaction = await get_transaction("REF-1")

        await notifier.send_admin_order_notification_email(order, transaction)

        assert email_sender.sent[0].to == "admin@shop.test"
        assert "REF-1" in email_sender.sent[0].html


class TestDeadLetterLog:
    async def test_record_list_resolve(self, dead_letters):
        await dead_letters.record(DeadLetterKind.COMPENSATION, "boom", reference="REF-1")
        await dead_letters.record(DeadLetterKind.WEBHOOK, "bad", reference="REF-2")

        compensation = await dead_letters.list_unresolved(DeadLetterKind.COMPENSATION)
        assert [e.reference for e in compensation] == ["REF-1"]
        assert len(await dead_letters.list_unresolved()) == 2

        assert await dead_letters.resolve(compensation[0].id) is True
        assert await dead_letters.list_unresolved(DeadLetterKind.COMPENSATION) == []

    async def test_resolve_unknown(self, dead_letters):
        assert await dead_letters.resolve(uuid4()) is False


class BrokenRedis:
    async def get(self, key):
        raise RedisConnectionError("redis down")

    async def set(self, key, value, ex=None):
        raise RedisConnectionError("redis down")

    async def delete(self, *keys):
        raise RedisConnectionError("redis down")

    async def publish(self, channel, message):
        raise RedisConnectionError("redis down")


class TestOrderViewCache:
    async def test_set_get_invalidate(self, cache, redis):
        order_id = uuid4()
        await cache.set_status(order_id, {"status": "pending"})
        assert await cache.get_status(order_id) == {"status": "pending"}

        await cache.invalidate(order_id)

        assert await cache.get_status(order_id) is None
        assert redis.published == [(STALE_CHANNEL, str(order_id))]

    async def test_redis_errors_are_misses(self):
        cache = OrderViewCache(BrokenRedis())
        order_id = uuid4()

        await cache.set_status(order_id, {"status": "pending"})
        await cache.invalidate(order_id)
        assert await cache.get_status(order_id) is None
