"""Saved card lookups for returning customers."""
import logging
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import SavedPaymentMethod

logger = logging.getLogger(__name__)


class PaymentMethodStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_active(self, customer_email: str) -> List[SavedPaymentMethod]:
        result = await self.session.execute(
            select(SavedPaymentMethod)
            .where(
                SavedPaymentMethod.customer_email == customer_email.lower(),
                SavedPaymentMethod.is_active.is_(True),
            )
            .order_by(SavedPaymentMethod.is_default.desc(), SavedPaymentMethod.last_used_at.desc())
        )
        return list(result.scalars().all())

    async def get_active(self, customer_email: str, authorization_code: str) -> Optional[SavedPaymentMethod]:
        result = await self.session.execute(
            select(SavedPaymentMethod).where(
                SavedPaymentMethod.customer_email == customer_email.lower(),
                SavedPaymentMethod.authorization_code == authorization_code,
                SavedPaymentMethod.is_active.is_(True),
            )
        )
        return result.scalar_one_or_none()

    async def deactivate(self, method_id: UUID, customer_email: str) -> bool:
        result = await self.session.execute(
            update(SavedPaymentMethod)
            .where(
                SavedPaymentMethod.id == method_id,
                SavedPaymentMethod.customer_email == customer_email.lower(),
            )
            .values(is_active=False, is_default=False)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def set_default(self, method_id: UUID, customer_email: str) -> bool:
        email = customer_email.lower()
        target = await self.session.execute(
            select(SavedPaymentMethod.id).where(
                SavedPaymentMethod.id == method_id,
                SavedPaymentMethod.customer_email == email,
                SavedPaymentMethod.is_active.is_(True),
            )
        )
        if target.scalar_one_or_none() is None:
            return False

        await self.session.execute(
            update(SavedPaymentMethod)
            .where(SavedPaymentMethod.customer_email == email)
            .values(is_default=False)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(
            update(SavedPaymentMethod)
            .where(SavedPaymentMethod.id == method_id)
            .values(is_default=True)
            .execution_options(synchronize_session=False)
        )
        logger.info(f"Default payment method for {email} set to {method_id}")
        return True
