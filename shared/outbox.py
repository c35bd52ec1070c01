"""
Transactional outbox for payment and order events.

The reconciler and checkout write events into the `outbox` table inside the
same commit as the ledger/order change they describe. A background task
then drains the table into RabbitMQ, so an event is published if and only
if its state change was committed:
1. `save_event_to_outbox` inside the business transaction
2. `OutboxPublisher` publishes pending rows in creation order
3. Rows are marked published, or parked as failed after `max_retries`
"""
import asyncio
import json
import logging
from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import uuid4

from sqlalchemy import Column, DateTime, Index, Integer, String, Text, Uuid, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .database import Base
from .events import BaseEvent, deserialize_event
from .message_broker import MessageBroker

logger = logging.getLogger(__name__)


class OutboxStatus(str, Enum):
    PENDING = "pending"
    PUBLISHED = "published"
    FAILED = "failed"


class OutboxMessage(Base):
    """One serialized event waiting for (or done with) publication."""

    __tablename__ = "outbox"

    id = Column(Uuid, primary_key=True, default=uuid4)
    event_id = Column(Uuid, nullable=False, unique=True)
    event_type = Column(String(100), nullable=False)
    aggregate_id = Column(Uuid, nullable=False)  # order id
    correlation_id = Column(String(100), nullable=True)  # payment reference or order number
    event_data = Column(Text, nullable=False)
    status = Column(String(20), default=OutboxStatus.PENDING.value, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    published_at = Column(DateTime, nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_outbox_status_created", "status", "created_at"),
        Index("ix_outbox_aggregate_id", "aggregate_id"),
        Index("ix_outbox_correlation_id", "correlation_id"),
    )


class OutboxPublisher:
    """Drains pending outbox rows into the message broker."""

    def __init__(
        self,
        session_factory,
        message_broker: MessageBroker,
        poll_interval: float = 1,
        batch_size: int = 100,
        max_retries: int = 3
    ):
        self.session_factory = session_factory
        self.message_broker = message_broker
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.max_retries = max_retries
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        if self._task is not None:
            logger.warning("Outbox publisher already running")
            return

        self._task = asyncio.create_task(self._run())
        logger.info("Outbox publisher started")

    async def stop(self):
        if self._task is None:
            return

        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

        logger.info("Outbox publisher stopped")

    async def _run(self):
        while True:
            try:
                await self.publish_pending_messages()
            except Exception as e:
                # Keep polling; the rows stay pending and are picked up next round
                logger.error(f"Error in outbox publisher: {str(e)}", exc_info=True)

            await asyncio.sleep(self.poll_interval)

    async def publish_pending_messages(self) -> int:
        """Publish one batch of pending rows; returns how many went out."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(OutboxMessage)
                .where(OutboxMessage.status == OutboxStatus.PENDING.value)
                .order_by(OutboxMessage.created_at)
                .limit(self.batch_size)
            )
            messages = result.scalars().all()
            if not messages:
                return 0

            logger.info(f"Processing {len(messages)} pending outbox messages")
            published = 0
            for message in messages:
                if await self._publish(message):
                    published += 1

            await session.commit()

        return published

    async def _publish(self, message: OutboxMessage) -> bool:
        try:
            event = deserialize_event(json.loads(message.event_data))
            await self.message_broker.publish_event(event)
        except Exception as e:
            message.retry_count += 1
            message.error_message = str(e)
            logger.error(
                f"Failed to publish {message.event_type} {message.event_id} "
                f"[{message.correlation_id}] (attempt {message.retry_count}): {str(e)}",
                exc_info=True
            )
            if message.retry_count >= self.max_retries:
                message.status = OutboxStatus.FAILED.value
                logger.error(f"Event {message.event_id} parked as failed after {message.retry_count} attempts")
            return False

        message.status = OutboxStatus.PUBLISHED.value
        message.published_at = datetime.utcnow()
        logger.info(f"Published {message.event_type} {message.event_id} [{message.correlation_id}]")
        return True

    async def retry_failed_messages(self) -> int:
        """Put parked rows back in the queue; returns how many were reset."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(OutboxMessage)
                .where(OutboxMessage.status == OutboxStatus.FAILED.value)
                .values(status=OutboxStatus.PENDING.value, retry_count=0, error_message=None)
            )
            await session.commit()

        logger.info(f"Reset {result.rowcount} failed outbox messages for retry")
        return result.rowcount


async def save_event_to_outbox(session: AsyncSession, event: BaseEvent):
    """Add `event` to the caller's transaction; nothing is committed here."""
    session.add(
        OutboxMessage(
            event_id=event.event_id,
            event_type=event.event_type.value,
            aggregate_id=event.aggregate_id,
            correlation_id=event.correlation_id,
            event_data=json.dumps(event.model_dump(mode="json")),
            status=OutboxStatus.PENDING.value,
            created_at=datetime.utcnow(),
        )
    )
    logger.debug(f"Saved {event.event_type.value} {event.event_id} to outbox [{event.correlation_id}]")
