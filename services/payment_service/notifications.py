"""Transactional email for orders and payments."""
import asyncio
import logging
from typing import Awaitable, Dict, Optional
from uuid import UUID

import httpx
from pydantic import BaseModel

from shared.config import Settings

from .dead_letters import DeadLetterLog
from .errors import NotificationFailure
from .models import DeadLetterKind, Order, PaymentTransaction

logger = logging.getLogger(__name__)


class EmailMessage(BaseModel):
    to: str
    subject: str
    html: str
    reply_to: Optional[str] = None


class ResendEmailSender:
    """Sends email through the Resend HTTP API."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        api_key: str,
        from_email: str,
        base_url: str = "https://api.resend.com",
    ):
        self.http_client = http_client
        self.api_key = api_key
        self.from_email = from_email
        self.base_url = base_url.rstrip("/")

    async def send(self, message: EmailMessage) -> Optional[str]:
        payload = {
            "from": self.from_email,
            "to": [message.to],
            "subject": message.subject,
            "html": message.html,
        }
        if message.reply_to:
            payload["reply_to"] = message.reply_to

        try:
            response = await self.http_client.post(
                f"{self.base_url}/emails",
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        except httpx.HTTPError as e:
            raise NotificationFailure(f"Email provider unreachable: {e}") from e

        if response.status_code >= 400:
            raise NotificationFailure(
                f"Email provider returned HTTP {response.status_code}: {response.text[:200]}"
            )
        return response.json().get("id")


class LoggingEmailSender:
    """Logs emails instead of sending them; used when no provider is configured."""

    async def send(self, message: EmailMessage) -> Optional[str]:
        logger.info(f"[EMAIL] To: {message.to}")
        logger.info(f"[EMAIL] Subject: {message.subject}")
        logger.info("-" * 60)
        return None


def build_email_sender(settings: Settings, http_client: httpx.AsyncClient):
    if settings.resend_api_key:
        return ResendEmailSender(
            http_client,
            settings.resend_api_key,
            settings.resend_from_email,
            settings.resend_base_url,
        )
    logger.warning("RESEND_API_KEY not set, emails will only be logged")
    return LoggingEmailSender()


def format_naira(amount: float) -> str:
    return f"₦{amount:,.2f}"


class Notifier:
    """
    Builds and sends order/payment emails.

    Sends are best-effort: `dispatch` runs jobs concurrently, catches each
    failure on its own and records it in the dead-letter log. It never
    raises, so an email problem cannot undo or retry a payment transition.
    """

    def __init__(
        self,
        sender,
        dead_letters: DeadLetterLog,
        admin_email: str,
        support_email: str,
        app_url: str,
    ):
        self.sender = sender
        self.dead_letters = dead_letters
        self.admin_email = admin_email
        self.support_email = support_email
        self.app_url = app_url.rstrip("/")

    @classmethod
    def from_settings(cls, settings: Settings, sender, dead_letters: DeadLetterLog) -> "Notifier":
        return cls(
            sender,
            dead_letters,
            admin_email=settings.admin_email,
            support_email=settings.support_email,
            app_url=settings.app_url,
        )

    async def dispatch(
        self,
        jobs: Dict[str, Awaitable],
        order_id: Optional[UUID] = None,
        reference: Optional[str] = None,
    ) -> Dict[str, bool]:
        """Run email jobs concurrently; returns {job name: sent}."""
        names = list(jobs)
        results = await asyncio.gather(*jobs.values(), return_exceptions=True)

        outcome = {}
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                logger.error(
                    f"Failed to send {name} email for order {order_id} "
                    f"(reference={reference}): {result!r}"
                )
                await self.dead_letters.record(
                    DeadLetterKind.NOTIFICATION,
                    str(result),
                    reference=reference,
                    order_id=order_id,
                    payload={"email": name},
                )
                outcome[name] = False
            else:
                outcome[name] = True
        return outcome

    async def send_order_confirmation_email(self, order: Order):
        await self.sender.send(
            EmailMessage(
                to=order.customer_email,
                reply_to=self.support_email,
                subject=f"Order Confirmation - {order.order_number}",
                html=self._order_html(
                    order,
                    "Thanks for your order!",
                    "We have received your order and are waiting for payment confirmation.",
                ),
            )
        )

    async def send_payment_success_email(self, order: Order, transaction: PaymentTransaction):
        await self.sender.send(
            EmailMessage(
                to=order.customer_email,
                reply_to=self.support_email,
                subject=f"Payment Received - {order.order_number}",
                html=self._order_html(
                    order,
                    "Payment received",
                    f"We received your payment of {format_naira(order.total_amount)} "
                    f"(reference {transaction.reference}). Your order is now being processed.",
                ),
            )
        )

    async def send_admin_order_notification_email(self, order: Order, transaction: PaymentTransaction):
        await self.sender.send(
            EmailMessage(
                to=self.admin_email,
                subject=f"New paid order - {order.order_number}",
                html=self._order_html(
                    order,
                    "New paid order",
                    f"{order.customer_name} ({order.customer_email}, {order.customer_phone}) "
                    f"paid {format_naira(order.total_amount)} via "
                    f"{transaction.channel or 'card'}, reference {transaction.reference}.",
                    link=f"{self.app_url}/admin/orders/{order.id}",
                ),
            )
        )

    async def send_payment_failed_email(self, order: Order, reason: str):
        await self.sender.send(
            EmailMessage(
                to=order.customer_email,
                reply_to=self.support_email,
                subject=f"Payment Issue - {order.order_number}",
                html=self._order_html(
                    order,
                    "We could not confirm your payment",
                    f"Your payment for this order did not go through ({reason}). "
                    "No money has been taken for it. You can place the order again at any time.",
                ),
            )
        )

    async def send_order_cancellation_email(self, order: Order, reason: str):
        await self.sender.send(
            EmailMessage(
                to=order.customer_email,
                reply_to=self.support_email,
                subject=f"Order Cancelled - {order.order_number}",
                html=self._order_html(order, "Your order was cancelled", f"Reason: {reason}"),
            )
        )

    def _order_html(self, order: Order, heading: str, body: str, link: Optional[str] = None) -> str:
        rows = "".join(
            f"<tr><td>{item.product_name}</td><td>{item.quantity}</td>"
            f"<td>{format_naira(item.total)}</td></tr>"
            for item in order.items
        )
        link = link or f"{self.app_url}/orders/{order.id}"
        return (
            f"<h1>{heading}</h1>"
            f"<p>Hi {order.customer_first_name or 'there'},</p>"
            f"<p>{body}</p>"
            f"<p>Order <strong>{order.order_number}</strong></p>"
            f"<table><tr><th>Item</th><th>Qty</th><th>Total</th></tr>{rows}</table>"
            f"<p>Total: <strong>{format_naira(order.total_amount)}</strong></p>"
            f'<p><a href="{link}">View order</a></p>'
        )
