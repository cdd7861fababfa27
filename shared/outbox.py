"""
Event outbox.

Order writes never talk to the broker directly. The event describing a write
is stored as an ``outbox`` row in the same transaction, and ``OutboxPublisher``
forwards stored rows to RabbitMQ afterwards. A row that cannot be published is
retried with exponential backoff and parked as ``failed`` once it runs out of
attempts; nothing is lost if the broker is down when the order changes.
"""
import json
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional
from uuid import uuid4

from sqlalchemy import Column, DateTime, Index, Integer, String, Text, Uuid, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .concurrency import PollingWorker, retry_delay
from .database import Base
from .events import BaseEvent, deserialize_event
from .message_broker import MessageBroker

logger = logging.getLogger(__name__)


class OutboxStatus(str, Enum):
    PENDING = "pending"
    PUBLISHED = "published"
    FAILED = "failed"


class OutboxMessage(Base):
    __tablename__ = "outbox"

    id = Column(Uuid, primary_key=True, default=uuid4)
    event_id = Column(Uuid, nullable=False, unique=True)
    event_type = Column(String(100), nullable=False)
    aggregate_id = Column(Uuid, nullable=False, index=True)
    payload = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default=OutboxStatus.PENDING.value)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    next_attempt_at = Column(DateTime, nullable=True)
    published_at = Column(DateTime, nullable=True)

    __table_args__ = (Index("ix_outbox_pending", "status", "created_at"),)

    def to_event(self) -> BaseEvent:
        return deserialize_event(json.loads(self.payload))


def save_event_to_outbox(session: AsyncSession, event: BaseEvent) -> OutboxMessage:
    """Queue ``event`` for publishing as part of the caller's transaction."""
    row = OutboxMessage(
        event_id=event.event_id,
        event_type=event.event_type.value,
        aggregate_id=event.aggregate_id,
        payload=event.model_dump_json(),
        status=OutboxStatus.PENDING.value,
        attempts=0,
        created_at=datetime.utcnow(),
    )
    session.add(row)
    logger.debug(f"Queued {event.event_type.value} for order {event.aggregate_id}")
    return row


class OutboxPublisher(PollingWorker):
    """Forwards pending outbox rows to the broker, oldest first."""

    name = "Outbox publisher"

    def __init__(
        self,
        session_factory: async_sessionmaker,
        message_broker: MessageBroker,
        poll_interval: float = 1,
        batch_size: int = 100,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
    ):
        """
        Args:
            session_factory: Session factory of the order database
            message_broker: Connected broker the events go to
            poll_interval: Seconds between two batches
            batch_size: Rows forwarded per batch
            max_retries: Failed publishes before a row is parked as failed
            base_delay: Backoff base in seconds between publish attempts of one row
            max_delay: Backoff cap in seconds
        """
        super().__init__(poll_interval)
        self.session_factory = session_factory
        self.message_broker = message_broker
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

    async def run_once(self) -> int:
        return await self.publish_pending_messages()

    async def publish_pending_messages(self, now: Optional[datetime] = None) -> int:
        """Forward one batch of due rows. Returns how many reached the broker."""
        now = now or datetime.utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                select(OutboxMessage)
                .where(OutboxMessage.status == OutboxStatus.PENDING.value)
                .where(or_(OutboxMessage.next_attempt_at.is_(None), OutboxMessage.next_attempt_at <= now))
                .order_by(OutboxMessage.created_at)
                .limit(self.batch_size)
            )
            rows = result.scalars().all()
            if not rows:
                return 0

            published = 0
            for row in rows:
                if await self._publish_one(row):
                    published += 1
            await session.commit()

        if published < len(rows):
            logger.warning(f"Outbox batch: {published}/{len(rows)} events published")
        else:
            logger.info(f"Outbox batch: {published} events published")
        return published

    async def _publish_one(self, row: OutboxMessage) -> bool:
        try:
            await self.message_broker.publish_event(row.to_event())
        except Exception as e:
            self._schedule_retry(row, e)
            return False

        row.status = OutboxStatus.PUBLISHED.value
        row.published_at = datetime.utcnow()
        row.last_error = None
        return True

    def _schedule_retry(self, row: OutboxMessage, error: Exception):
        row.attempts += 1
        row.last_error = str(error) or type(error).__name__

        if row.attempts >= self.max_retries:
            row.status = OutboxStatus.FAILED.value
            logger.critical(
                f"ALERT: {row.event_type} event {row.event_id} for order {row.aggregate_id} "
                f"could not be published after {row.attempts} attempts: {row.last_error}"
            )
            return

        delay = retry_delay(row.attempts, base=self.base_delay, cap=self.max_delay)
        row.next_attempt_at = datetime.utcnow() + timedelta(seconds=delay)
        logger.error(f"Publishing event {row.event_id} failed, next try in {delay:.0f}s: {row.last_error}")
