"""Dead-letter log for post-commit work that failed."""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from .models import DeadLetter, DeadLetterKind

logger = logging.getLogger(__name__)


class DeadLetterLog:
    """
    Records failures that happened after a payment state change was committed.

    Recording never raises: if the database write itself fails the entry
    is only logged.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def record(
        self,
        kind: DeadLetterKind,
        error: str,
        reference: Optional[str] = None,
        order_id: Optional[UUID] = None,
        payload: Optional[Dict[str, Any]] = None,
    ):
        try:
            async with self.session_factory() as session:
                session.add(
                    DeadLetter(
                        kind=kind.value,
                        reference=reference,
                        order_id=order_id,
                        payload=payload,
                        error_message=error,
                    )
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(
                f"Could not record {kind.value} dead letter "
                f"(reference={reference}, order={order_id}, error={error}): {str(e)}",
                exc_info=True,
            )
            return

        logger.warning(f"Dead letter [{kind.value}] reference={reference} order={order_id}: {error}")

    async def list_unresolved(
        self, kind: Optional[DeadLetterKind] = None, limit: int = 100
    ) -> List[DeadLetter]:
        async with self.session_factory() as session:
            query = select(DeadLetter).where(DeadLetter.resolved_at.is_(None))
            if kind is not None:
                query = query.where(DeadLetter.kind == kind.value)
            result = await session.execute(query.order_by(DeadLetter.created_at).limit(limit))
            return list(result.scalars().all())

    async def get(self, dead_letter_id: UUID) -> Optional[DeadLetter]:
        async with self.session_factory() as session:
            return await session.get(DeadLetter, dead_letter_id)

    async def resolve(self, dead_letter_id: UUID) -> bool:
        async with self.session_factory() as session:
            entry = await session.get(DeadLetter, dead_letter_id)
            if entry is None:
                return False
            if entry.resolved_at is None:
                entry.resolved_at = datetime.utcnow()
                await session.commit()
            return True
