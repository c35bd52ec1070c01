"""
Payment reconciliation.

Two entry points converge on one finalization algorithm:

- the Paystack webhook (`handle_webhook`), pushed by the gateway with
  at-least-once delivery;
- the poll/verify call (`verify_payment`), made by the order-status page or
  an admin re-check.

For a given reference, whichever caller first flips the ledger row into a
terminal status applies the outcome to the order. Every later caller sees
the guard already tripped and does nothing, so stock is restored at most
once and emails are sent at most once.
"""
import json
import logging
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import SQLAlchemyError

from shared.events import (
    InventoryRestoredEvent,
    OrderCancelledEvent,
    OrderPaidEvent,
    PaymentFailedEvent,
    PaymentPendingEvent,
    PaymentSucceededEvent,
)
from shared.outbox import save_event_to_outbox

from .cache import OrderViewCache
from .dead_letters import DeadLetterLog
from .errors import (
    CompensationPartialFailure,
    DeadLetterNotReplayable,
    GatewayError,
    GatewayRejected,
    GatewayUnavailable,
    ReferenceNotFound,
    SignatureInvalid,
)
from .gateway import ChargeOutcome, GatewayTransaction, PaystackClient, WebhookEvent, to_naive_utc
from .inventory import InventoryCompensator
from .ledger import TransactionLedger
from .models import DeadLetterKind, Order, PaymentTransaction, TransactionStatus
from .notifications import Notifier
from .order_state import OrderStateMachine

logger = logging.getLogger(__name__)

PAYMENT_FAILED_REASON = "Payment failed"


class ReconciliationSource(str, Enum):
    WEBHOOK = "webhook"
    VERIFY = "verify"
    CHARGE = "charge"


class FinalizationResult(BaseModel):
    """What a finalization call did for one reference."""

    reference: str
    order_id: UUID
    outcome: ChargeOutcome
    transaction_status: TransactionStatus
    applied: bool  # False: the ledger row had already moved past this outcome

    @property
    def payment_status(self) -> str:
        if self.transaction_status == TransactionStatus.SUCCESS:
            return "paid"
        if self.transaction_status == TransactionStatus.FAILED:
            return "failed"
        return "pending"


class VerificationResult(BaseModel):
    success: bool
    status: Optional[str] = None  # paid, failed or pending
    order_id: Optional[UUID] = None
    error: Optional[str] = None
    retryable: bool = False


class PaymentReconciler:
    """Drives ledger, order and inventory to the gateway's outcome for a reference."""

    def __init__(
        self,
        session_factory,
        gateway: PaystackClient,
        inventory: InventoryCompensator,
        notifier: Notifier,
        cache: OrderViewCache,
        dead_letters: DeadLetterLog,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.inventory = inventory
        self.notifier = notifier
        self.cache = cache
        self.dead_letters = dead_letters

    # Entry A: webhook

    async def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> Optional[FinalizationResult]:
        """
        Authenticate and process a Paystack webhook.

        Raises SignatureInvalid for a missing or wrong signature. Once the
        body is authenticated nothing else is raised: processing errors are
        logged and dead-lettered so the endpoint can always acknowledge.
        """
        logger.info("[Webhook] Received webhook")

        if not signature:
            logger.error("[Webhook] Missing signature")
            raise SignatureInvalid("Missing signature")
        if not self.gateway.verify_webhook_signature(raw_body, signature):
            logger.error("[Webhook] Invalid signature")
            raise SignatureInvalid("Invalid signature")

        try:
            payload = json.loads(raw_body)
            event = WebhookEvent.model_validate(payload)
        except ValueError as e:  # json and pydantic errors are both ValueErrors
            logger.error(f"[Webhook] Unparseable payload: {str(e)}")
            await self.dead_letters.record(
                DeadLetterKind.WEBHOOK,
                f"Unparseable payload: {str(e)}",
                payload={"body": raw_body.decode("utf-8", errors="replace")},
            )
            return None

        logger.info(f"[Webhook] Event: {event.event}, Ref: {event.data.reference}")

        try:
            return await self._process_webhook_event(event, payload["data"])
        except ReferenceNotFound:
            logger.error(f"[Webhook] Transaction not found: {event.data.reference}")
            return None
        except Exception as e:
            logger.error(
                f"[Webhook] Error processing {event.event} for {event.data.reference}: {str(e)}",
                exc_info=True,
            )
            await self.dead_letters.record(
                DeadLetterKind.WEBHOOK,
                str(e),
                reference=event.data.reference,
                payload=payload,
            )
            return None

    async def replay_webhook(self, dead_letter_id: UUID) -> Optional[FinalizationResult]:
        """Re-run a dead-lettered webhook; errors propagate to the admin caller."""
        entry = await self.dead_letters.get(dead_letter_id)
        if entry is None or entry.kind != DeadLetterKind.WEBHOOK.value:
            raise DeadLetterNotReplayable(f"No webhook dead letter {dead_letter_id}")

        try:
            event = WebhookEvent.model_validate(entry.payload or {})
        except ValidationError as e:
            raise DeadLetterNotReplayable(f"Dead letter {dead_letter_id} has no webhook event") from e

        result = await self._process_webhook_event(event, entry.payload["data"])
        await self.dead_letters.resolve(dead_letter_id)
        logger.info(f"[Webhook] Replayed dead letter {dead_letter_id} for {event.data.reference}")
        return result

    async def _process_webhook_event(
        self, event: WebhookEvent, raw_data: Dict[str, Any]
    ) -> Optional[FinalizationResult]:
        outcome = event.outcome
        if outcome is None:
            logger.info(f"[Webhook] Unhandled event: {event.event}")
            return None

        return await self.finalize(
            event.data.reference,
            outcome,
            event.data,
            source=ReconciliationSource.WEBHOOK,
            webhook_payload=raw_data,
        )

    # Entry B: poll / verify

    async def verify_payment(self, reference: str) -> VerificationResult:
        """
        Check a reference with the gateway and apply the result.

        Errors never carry gateway text back to the caller; details stay in
        the logs.
        """
        logger.info(f"[Verify] Checking payment: {reference}")

        try:
            async with self.session_factory() as session:
                transaction = await TransactionLedger(session).get_by_reference(reference)
                current_status = TransactionStatus(transaction.status)
                order_id = transaction.order_id

            if current_status == TransactionStatus.SUCCESS:
                logger.info(f"[Verify] Already processed: {reference}")
                return VerificationResult(success=True, status="paid", order_id=order_id)
            if current_status == TransactionStatus.FAILED:
                logger.info(f"[Verify] Already failed: {reference}")
                return VerificationResult(success=True, status="failed", order_id=order_id)

            verification = await self.gateway.verify_transaction(reference)
            result = await self.finalize(
                reference,
                verification.outcome,
                verification,
                source=ReconciliationSource.VERIFY,
            )

        except ReferenceNotFound:
            logger.error(f"[Verify] Transaction not found: {reference}")
            return VerificationResult(success=False, error="Transaction not found")
        except GatewayUnavailable as e:
            logger.error(f"[Verify] Gateway unavailable for {reference}: {str(e)}")
            return VerificationResult(
                success=False,
                error="Payment provider is unavailable, please try again",
                retryable=True,
            )
        except GatewayRejected as e:
            logger.error(f"[Verify] Gateway rejected {reference}: {str(e)}")
            return VerificationResult(success=False, error="Failed to verify payment")
        except GatewayError as e:
            logger.error(f"[Verify] Gateway error for {reference}: {str(e)}")
            return VerificationResult(success=False, error="Failed to verify payment")
        except SQLAlchemyError as e:
            logger.error(f"[Verify] Database error for {reference}: {str(e)}", exc_info=True)
            return VerificationResult(success=False, error="Failed to verify payment", retryable=True)

        return VerificationResult(success=True, status=result.payment_status, order_id=result.order_id)

    # Shared finalization

    async def finalize(
        self,
        reference: str,
        outcome: ChargeOutcome,
        details: GatewayTransaction,
        source: ReconciliationSource,
        webhook_payload: Optional[Dict[str, Any]] = None,
    ) -> FinalizationResult:
        """
        Apply a gateway outcome to the ledger row for `reference` and its order.

        Raises before the ledger guard (unknown reference, database errors)
        leave nothing committed and are safe to retry. After the guard the
        financial state is committed and side-effect errors are absorbed.
        """
        if outcome == ChargeOutcome.SUCCESS:
            return await self._apply_success(reference, details, source, webhook_payload)
        if outcome == ChargeOutcome.FAILED:
            return await self._apply_failure(reference, details, source, webhook_payload)
        if outcome in (ChargeOutcome.PENDING, ChargeOutcome.PROCESSING):
            return await self._apply_interim(reference, outcome, details, webhook_payload)
        raise ValueError(f"Unhandled charge outcome: {outcome}")

    async def _apply_success(
        self,
        reference: str,
        details: GatewayTransaction,
        source: ReconciliationSource,
        webhook_payload: Optional[Dict[str, Any]],
    ) -> FinalizationResult:
        logger.info(f"[{source.value}] Processing success for {reference}")

        async with self.session_factory() as session:
            ledger = TransactionLedger(session)
            orders = OrderStateMachine(session)

            transaction = await ledger.get_by_reference(reference)
            won = await ledger.mark_success(transaction.id, details, webhook_payload)
            if not won:
                await session.rollback()
                await session.refresh(transaction)
            else:
                order_paid = await orders.mark_paid(transaction.order_id, to_naive_utc(details.paid_at))
                order = await orders.get(transaction.order_id)

                await save_event_to_outbox(
                    session,
                    PaymentSucceededEvent(
                        aggregate_id=order.id,
                        correlation_id=reference,
                        reference=reference,
                        amount_minor=details.amount or transaction.amount_minor,
                        currency=details.currency or transaction.currency,
                        channel=details.channel,
                        source=source.value,
                    ),
                )
                if order_paid:
                    await save_event_to_outbox(
                        session,
                        OrderPaidEvent(
                            aggregate_id=order.id,
                            correlation_id=reference,
                            order_number=order.order_number,
                            total_amount=order.total_amount,
                        ),
                    )

                await session.commit()
                await session.refresh(transaction)

        if not won:
            return await self._already_finalized(transaction, ChargeOutcome.SUCCESS)

        logger.info(f"[{source.value}] Success processed: {reference}")

        try:
            await self._after_success(order, transaction, details, order_paid)
        except Exception as e:
            logger.error(f"[{source.value}] Post-payment steps failed for {reference}: {str(e)}", exc_info=True)

        return FinalizationResult(
            reference=reference,
            order_id=order.id,
            outcome=ChargeOutcome.SUCCESS,
            transaction_status=TransactionStatus.SUCCESS,
            applied=True,
        )

    async def _after_success(
        self,
        order: Order,
        transaction: PaymentTransaction,
        details: GatewayTransaction,
        order_paid: bool,
    ):
        if not order_paid:
            # The money was taken but the order had already been closed
            logger.error(
                f"Payment {transaction.reference} succeeded for order {order.id} "
                f"in state {order.status}/{order.payment_status}; refund needed"
            )
            await self.dead_letters.record(
                DeadLetterKind.COMPENSATION,
                "Payment succeeded for a closed order; refund needed",
                reference=transaction.reference,
                order_id=order.id,
                payload={"action": "refund", "amount_minor": transaction.amount_minor},
            )
            await self.cache.invalidate(order.id)
            return

        if details.authorization is not None and details.authorization.is_saveable:
            try:
                async with self.session_factory() as session:
                    await TransactionLedger(session).upsert_saved_card(
                        order.customer_id,
                        order.customer_email,
                        details.authorization,
                        details.channel,
                    )
                    await session.commit()
            except SQLAlchemyError as e:
                logger.error(f"Failed to save card for {transaction.reference}: {str(e)}", exc_info=True)

        await self.notifier.dispatch(
            {
                "payment_success": self.notifier.send_payment_success_email(order, transaction),
                "admin_order_notification": self.notifier.send_admin_order_notification_email(
                    order, transaction
                ),
            },
            order_id=order.id,
            reference=transaction.reference,
        )

        await self.cache.invalidate(order.id)

    async def _apply_failure(
        self,
        reference: str,
        details: GatewayTransaction,
        source: ReconciliationSource,
        webhook_payload: Optional[Dict[str, Any]],
    ) -> FinalizationResult:
        logger.info(f"[{source.value}] Processing failure for {reference}")
        reason = details.gateway_response or details.message or PAYMENT_FAILED_REASON

        async with self.session_factory() as session:
            ledger = TransactionLedger(session)
            orders = OrderStateMachine(session)

            transaction = await ledger.get_by_reference(reference)
            won = await ledger.mark_failed(transaction.id, reason, details, webhook_payload)
            if not won:
                await session.rollback()
                await session.refresh(transaction)
            else:
                order_failed = await orders.mark_failed(transaction.order_id, PAYMENT_FAILED_REASON)
                order = await orders.get(transaction.order_id)

                await save_event_to_outbox(
                    session,
                    PaymentFailedEvent(
                        aggregate_id=order.id,
                        correlation_id=reference,
                        reference=reference,
                        reason=reason,
                        source=source.value,
                    ),
                )
                if order_failed:
                    await save_event_to_outbox(
                        session,
                        OrderCancelledEvent(
                            aggregate_id=order.id,
                            correlation_id=reference,
                            order_number=order.order_number,
                            reason=PAYMENT_FAILED_REASON,
                        ),
                    )

                await session.commit()

        if not won:
            return await self._already_finalized(transaction, ChargeOutcome.FAILED)

        logger.info(f"[{source.value}] Failure processed: {reference}")

        if order_failed:
            try:
                await self._after_failure(order, reference, reason)
            except Exception as e:
                logger.error(f"[{source.value}] Post-failure steps failed for {reference}: {str(e)}", exc_info=True)
        else:
            # Another attempt already settled this order; leave its stock alone
            logger.info(f"[{source.value}] Order {order.id} already settled, no compensation for {reference}")

        return FinalizationResult(
            reference=reference,
            order_id=order.id,
            outcome=ChargeOutcome.FAILED,
            transaction_status=TransactionStatus.FAILED,
            applied=True,
        )

    async def _after_failure(self, order: Order, reference: str, reason: str):
        # restore_inventory dead-letters its own database errors
        await self.restore_inventory(order, reference)

        await self.notifier.dispatch(
            {"payment_failed": self.notifier.send_payment_failed_email(order, reason)},
            order_id=order.id,
            reference=reference,
        )

        await self.cache.invalidate(order.id)

    async def restore_inventory(self, order: Order, correlation_id: str):
        """Compensate stock for a closed order; partial or total failures are dead-lettered."""
        try:
            restored = await self.inventory.restore(order.id)
        except CompensationPartialFailure as e:
            logger.error(str(e))
            await self.dead_letters.record(
                DeadLetterKind.COMPENSATION,
                str(e),
                reference=correlation_id,
                order_id=order.id,
                payload={"product_ids": [str(p) for p in e.product_ids]},
            )
            return
        except SQLAlchemyError as e:
            logger.error(f"Stock restoration failed for order {order.id}: {str(e)}", exc_info=True)
            await self.dead_letters.record(
                DeadLetterKind.COMPENSATION,
                f"Stock restoration failed: {str(e)}",
                reference=correlation_id,
                order_id=order.id,
                payload={"action": "restore_stock"},
            )
            return

        if not restored:
            return
        try:
            async with self.session_factory() as session:
                await save_event_to_outbox(
                    session,
                    InventoryRestoredEvent(
                        aggregate_id=order.id,
                        correlation_id=correlation_id,
                        items=[line.model_dump(mode="json") for line in restored],
                    ),
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Could not record inventory.restored for order {order.id}: {str(e)}", exc_info=True)

    async def _apply_interim(
        self,
        reference: str,
        outcome: ChargeOutcome,
        details: GatewayTransaction,
        webhook_payload: Optional[Dict[str, Any]],
    ) -> FinalizationResult:
        status = (
            TransactionStatus.PROCESSING
            if outcome == ChargeOutcome.PROCESSING
            else TransactionStatus.PENDING
        )

        async with self.session_factory() as session:
            ledger = TransactionLedger(session)
            orders = OrderStateMachine(session)

            transaction = await ledger.get_by_reference(reference)
            won = await ledger.mark_interim(transaction.id, status, details.channel, webhook_payload)
            if not won:
                await session.rollback()
                await session.refresh(transaction)
            else:
                if status == TransactionStatus.PROCESSING:
                    await orders.mark_processing(transaction.order_id)
                else:
                    await orders.mark_pending(transaction.order_id)

                await save_event_to_outbox(
                    session,
                    PaymentPendingEvent(
                        aggregate_id=transaction.order_id,
                        correlation_id=reference,
                        reference=reference,
                        status=status.value,
                    ),
                )
                await session.commit()

        if not won:
            return await self._already_finalized(transaction, outcome)

        logger.info(f"Pending processed: {reference} ({status.value})")
        await self.cache.invalidate(transaction.order_id)

        return FinalizationResult(
            reference=reference,
            order_id=transaction.order_id,
            outcome=outcome,
            transaction_status=status,
            applied=True,
        )

    async def _already_finalized(
        self, transaction: PaymentTransaction, outcome: ChargeOutcome
    ) -> FinalizationResult:
        logger.info(
            f"Already processed: {transaction.reference} is {transaction.status}, "
            f"ignoring {outcome.value}"
        )

        if outcome == ChargeOutcome.SUCCESS and transaction.status == TransactionStatus.FAILED.value:
            # e.g. the customer cancelled, then completed payment on the gateway page
            logger.error(f"Gateway reports success for failed attempt {transaction.reference}; refund needed")
            await self.dead_letters.record(
                DeadLetterKind.COMPENSATION,
                "Gateway reports success for an attempt already marked failed; refund needed",
                reference=transaction.reference,
                order_id=transaction.order_id,
                payload={"action": "refund", "amount_minor": transaction.amount_minor},
            )

        return FinalizationResult(
            reference=transaction.reference,
            order_id=transaction.order_id,
            outcome=outcome,
            transaction_status=TransactionStatus(transaction.status),
            applied=False,
        )
