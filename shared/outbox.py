"""
Transactional outbox for order events.

An order write stages its ``order.*`` event as an outbox row on the same
session, so the two commit or roll back together. ``OutboxPublisher`` then
drains pending rows to RabbitMQ in the background. A broker outage only
delays notifications; it never fails an order write.
"""
import asyncio
import json
import logging
from enum import Enum
from typing import Optional
from uuid import uuid4

from sqlalchemy import Column, DateTime, Index, Integer, String, Text, Uuid, select
from sqlalchemy.ext.asyncio import AsyncSession

from .database import Base, utcnow
from .events import BaseEvent, deserialize_event
from .message_broker import MessageBroker

logger = logging.getLogger(__name__)


class OutboxStatus(str, Enum):
    PENDING = "pending"
    PUBLISHED = "published"
    FAILED = "failed"


class OutboxMessage(Base):
    """One staged event; ``event_data`` holds the JSON-encoded event."""

    __tablename__ = "outbox"

    id = Column(Uuid, primary_key=True, default=uuid4)
    event_id = Column(Uuid, nullable=False, unique=True)
    event_type = Column(String(100), nullable=False)
    aggregate_id = Column(String(64), nullable=False)
    event_data = Column(Text, nullable=False)
    status = Column(String(20), default=OutboxStatus.PENDING.value, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    published_at = Column(DateTime(timezone=True), nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_outbox_status_created", "status", "created_at"),
        Index("ix_outbox_aggregate_id", "aggregate_id"),
    )


class OutboxPublisher:
    """
    Background task forwarding pending outbox rows to the broker.

    Rows are published oldest first. A row whose publish keeps failing is
    parked as ``failed`` after ``max_retries`` attempts and stays there
    until ``retry_failed_messages`` puts it back in the queue.
    """

    def __init__(
        self,
        session_factory,
        message_broker: MessageBroker,
        poll_interval: int = 1,
        batch_size: int = 100,
        max_retries: int = 3
    ):
        self.session_factory = session_factory
        self.message_broker = message_broker
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.max_retries = max_retries
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        if self.running:
            logger.warning("Outbox publisher is already draining")
            return

        self._task = asyncio.create_task(self._drain_forever())
        logger.info(f"Outbox publisher draining every {self.poll_interval}s")

    async def stop(self):
        if not self.running:
            return

        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Outbox publisher stopped draining")

    async def _drain_forever(self):
        while True:
            try:
                await self.publish_pending_messages()
            except Exception as e:
                logger.error(f"Outbox drain pass failed: {e}", exc_info=True)
            await asyncio.sleep(self.poll_interval)

    async def publish_pending_messages(self) -> int:
        """
        Run one drain pass over at most ``batch_size`` pending rows.

        Returns:
            How many rows reached the broker
        """
        async with self.session_factory() as session:
            # Several services drain the same outbox; rows locked by another publisher are skipped
            result = await session.execute(
                select(OutboxMessage)
                .where(OutboxMessage.status == OutboxStatus.PENDING.value)
                .order_by(OutboxMessage.created_at)
                .limit(self.batch_size)
                .with_for_update(skip_locked=True)
            )
            batch = result.scalars().all()
            if not batch:
                return 0

            published = 0
            for message in batch:
                if await self._publish(message):
                    published += 1

            await session.commit()

        logger.info(f"Outbox pass published {published} of {len(batch)} order event(s)")
        return published

    async def _publish(self, message: OutboxMessage) -> bool:
        """Publish one row and record the outcome on it."""
        try:
            event = deserialize_event(json.loads(message.event_data))
            await self.message_broker.publish_event(event)
        except Exception as e:
            message.retry_count += 1
            message.error_message = str(e)
            if message.retry_count >= self.max_retries:
                message.status = OutboxStatus.FAILED.value
                logger.error(
                    f"Parking {message.event_type} event {message.event_id} "
                    f"after {message.retry_count} failed publishes: {e}"
                )
            else:
                logger.warning(
                    f"Publishing {message.event_type} event {message.event_id} failed "
                    f"(attempt {message.retry_count}/{self.max_retries}): {e}"
                )
            return False

        message.status = OutboxStatus.PUBLISHED.value
        message.published_at = utcnow()
        return True

    async def retry_failed_messages(self, limit: int = 100) -> int:
        """Move parked rows back to pending with a fresh retry budget."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(OutboxMessage)
                .where(OutboxMessage.status == OutboxStatus.FAILED.value)
                .order_by(OutboxMessage.created_at)
                .limit(limit)
            )
            parked = result.scalars().all()

            for message in parked:
                message.status = OutboxStatus.PENDING.value
                message.retry_count = 0
                message.error_message = None

            await session.commit()

        logger.info(f"Requeued {len(parked)} parked outbox row(s)")
        return len(parked)


async def save_event_to_outbox(session: AsyncSession, event: BaseEvent):
    """Stage ``event`` on the session carrying the order write; the caller commits."""
    session.add(
        OutboxMessage(
            event_id=event.event_id,
            event_type=event.event_type.value,
            aggregate_id=event.aggregate_id,
            event_data=json.dumps(event.model_dump(mode='json')),
            status=OutboxStatus.PENDING.value,
            retry_count=0,
            created_at=utcnow()
        )
    )
    logger.debug(f"Staged {event.event_type.value} event {event.event_id} for order {event.aggregate_id}")
