"""Transaction ledger: one row per gateway reference, the unit of idempotency."""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import ReferenceNotFound
from .gateway import CardAuthorization, GatewayTransaction, to_naive_utc
from .models import (
    TERMINAL_TRANSACTION_STATUSES,
    PaymentTransaction,
    SavedPaymentMethod,
    TransactionStatus,
)

logger = logging.getLogger(__name__)

_UPSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}

_TERMINAL = [s.value for s in TERMINAL_TRANSACTION_STATUSES]

# Interim updates never move a processing row back to pending
_INTERIM_FROM = {
    TransactionStatus.PENDING: [TransactionStatus.PENDING.value],
    TransactionStatus.PROCESSING: [TransactionStatus.PENDING.value, TransactionStatus.PROCESSING.value],
}


class TransactionLedger:
    """
    Reads and writes payment transactions.

    Every transition into a terminal status is a single conditional UPDATE
    that only matches non-terminal rows. The caller whose UPDATE hits the
    row owns the finalization; every other caller gets False back.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        reference: str,
        order_id: UUID,
        amount_minor: int,
        currency: str = "NGN",
        access_code: Optional[str] = None,
        channel: Optional[str] = "card",
    ) -> PaymentTransaction:
        transaction = PaymentTransaction(
            order_id=order_id,
            reference=reference,
            access_code=access_code,
            amount_minor=amount_minor,
            currency=currency,
            channel=channel,
            status=TransactionStatus.PENDING.value,
        )
        self.session.add(transaction)
        await self.session.flush()

        logger.info(f"Created ledger entry {reference} for order {order_id}")
        return transaction

    async def get_by_reference(self, reference: str) -> PaymentTransaction:
        result = await self.session.execute(
            select(PaymentTransaction).where(PaymentTransaction.reference == reference)
        )
        transaction = result.scalar_one_or_none()
        if transaction is None:
            raise ReferenceNotFound(reference)
        return transaction

    async def list_for_order(self, order_id: UUID) -> List[PaymentTransaction]:
        result = await self.session.execute(
            select(PaymentTransaction)
            .where(PaymentTransaction.order_id == order_id)
            .order_by(PaymentTransaction.created_at)
        )
        return list(result.scalars().all())

    async def mark_success(
        self,
        transaction_id: UUID,
        details: GatewayTransaction,
        webhook_payload: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Finalize as success. False if the row was already terminal."""
        authorization = details.authorization or CardAuthorization()
        values = {
            "status": TransactionStatus.SUCCESS.value,
            "channel": details.channel,
            "gateway_response": details.gateway_response,
            "paid_at": to_naive_utc(details.paid_at) or datetime.utcnow(),
            "authorization_code": authorization.authorization_code,
            "card_type": authorization.card_type,
            "card_last4": authorization.last4,
            "card_exp_month": authorization.exp_month,
            "card_exp_year": authorization.exp_year,
            "card_bank": authorization.bank,
        }
        return await self._finalize(transaction_id, values, webhook_payload)

    async def mark_failed(
        self,
        transaction_id: UUID,
        reason: str,
        details: Optional[GatewayTransaction] = None,
        webhook_payload: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Finalize as failed. False if the row was already terminal."""
        values = {
            "status": TransactionStatus.FAILED.value,
            "failure_reason": reason,
        }
        if details is not None:
            values["gateway_response"] = details.gateway_response
            if details.channel:
                values["channel"] = details.channel
        return await self._finalize(transaction_id, values, webhook_payload)

    async def mark_interim(
        self,
        transaction_id: UUID,
        status: TransactionStatus,
        channel: Optional[str] = None,
        webhook_payload: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Record pending/processing. Never touches a terminal row or downgrades processing."""
        if status in TERMINAL_TRANSACTION_STATUSES:
            raise ValueError(f"{status.value} is terminal; use mark_success or mark_failed")

        values: Dict[str, Any] = {"status": status.value}
        if channel:
            values["channel"] = channel
        return await self._finalize(
            transaction_id, values, webhook_payload, from_statuses=_INTERIM_FROM[status]
        )

    async def fail_open_attempts(self, order_id: UUID, reason: str) -> int:
        """Fail every non-terminal attempt of an order; returns how many were flipped."""
        result = await self.session.execute(
            update(PaymentTransaction)
            .where(
                PaymentTransaction.order_id == order_id,
                PaymentTransaction.status.not_in(_TERMINAL),
            )
            .values(status=TransactionStatus.FAILED.value, failure_reason=reason)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def upsert_saved_card(
        self,
        customer_id: Optional[UUID],
        customer_email: str,
        authorization: CardAuthorization,
        channel: Optional[str] = None,
    ):
        """Insert or refresh a reusable card, keyed on its authorization code."""
        if not authorization.is_saveable:
            return

        values = {
            "customer_id": customer_id,
            "customer_email": customer_email,
            "authorization_code": authorization.authorization_code,
            "card_type": authorization.card_type or "unknown",
            "card_last4": authorization.last4 or "0000",
            "card_exp_month": authorization.exp_month or "12",
            "card_exp_year": authorization.exp_year or "99",
            "card_bank": authorization.bank,
            "card_brand": authorization.brand,
            "channel": channel or authorization.channel or "card",
            "is_active": True,
            "last_used_at": datetime.utcnow(),
        }

        insert = _UPSERTS[self.session.bind.dialect.name]
        stmt = insert(SavedPaymentMethod).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[SavedPaymentMethod.authorization_code],
            set_={
                key: stmt.excluded[key]
                for key in values
                if key != "authorization_code"
            },
        )
        await self.session.execute(stmt)

        logger.info(f"Saved card ending {values['card_last4']} for {customer_email}")

    async def _finalize(
        self,
        transaction_id: UUID,
        values: Dict[str, Any],
        webhook_payload: Optional[Dict[str, Any]],
        from_statuses: Optional[List[str]] = None,
    ) -> bool:
        if webhook_payload is not None:
            values["webhook_received_at"] = datetime.utcnow()
            values["webhook_payload"] = webhook_payload

        result = await self.session.execute(
            update(PaymentTransaction)
            .where(
                PaymentTransaction.id == transaction_id,
                (
                    PaymentTransaction.status.in_(from_statuses)
                    if from_statuses is not None
                    else PaymentTransaction.status.not_in(_TERMINAL)
                ),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
