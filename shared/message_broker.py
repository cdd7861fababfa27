"""
RabbitMQ access for the order service.

Events go to the ``revcart_events`` topic exchange with the event type as
routing key. Every consumer queue dead-letters into ``revcart_events_dlx``;
a handler failure is first redelivered with an ``x-retry-count`` header and
only dead-lettered once that count passes the queue's retry limit.
"""
import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional

import aio_pika
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import AbstractChannel, AbstractConnection, AbstractExchange, AbstractIncomingMessage
from tenacity import retry, stop_after_attempt, wait_exponential

from .concurrency import retry_delay
from .events import BaseEvent, EventType, deserialize_event

logger = logging.getLogger(__name__)

EXCHANGE_NAME = "revcart_events"
DEAD_LETTER_EXCHANGE_NAME = "revcart_events_dlx"
DEAD_LETTER_QUEUE_NAME = "order_service_dead_letter"
RETRY_HEADER = "x-retry-count"

EventHandler = Callable[[BaseEvent], Awaitable[Any]]


def retry_count_of(message: AbstractIncomingMessage) -> int:
    return int((message.headers or {}).get(RETRY_HEADER, 0))


class MessageBroker:
    """Publishes order events and feeds collaborator events to handlers."""

    def __init__(self, rabbitmq_url: str):
        self.rabbitmq_url = rabbitmq_url
        self.connection: Optional[AbstractConnection] = None
        self.channel: Optional[AbstractChannel] = None
        self.exchange: Optional[AbstractExchange] = None
        self.dead_letter_exchange: Optional[AbstractExchange] = None

    @property
    def is_connected(self) -> bool:
        return self.connection is not None and not self.connection.is_closed

    @retry(stop=stop_after_attempt(5), wait=wait_exponential(multiplier=1, min=2, max=10))
    async def connect(self):
        logger.info(f"Connecting to broker, exchange {EXCHANGE_NAME}")
        self.connection = await aio_pika.connect_robust(self.rabbitmq_url)
        self.channel = await self.connection.channel()
        # Status events for one order must be handled in the order they arrive
        await self.channel.set_qos(prefetch_count=1)
        await self._declare_topology()
        logger.info("Broker connection ready")

    async def _declare_topology(self):
        self.exchange = await self.channel.declare_exchange(EXCHANGE_NAME, ExchangeType.TOPIC, durable=True)
        self.dead_letter_exchange = await self.channel.declare_exchange(
            DEAD_LETTER_EXCHANGE_NAME, ExchangeType.TOPIC, durable=True
        )
        parking = await self.channel.declare_queue(
            DEAD_LETTER_QUEUE_NAME, durable=True, arguments={"x-queue-type": "quorum"}
        )
        await parking.bind(self.dead_letter_exchange, routing_key="dlq.#")

    async def disconnect(self):
        if self.connection is None:
            return
        await self.connection.close()
        self.connection = self.channel = self.exchange = self.dead_letter_exchange = None
        logger.info("Broker connection closed")

    def _require_channel(self) -> AbstractChannel:
        if self.channel is None or self.exchange is None:
            raise RuntimeError("Message broker not connected")
        return self.channel

    async def publish_event(self, event: BaseEvent, routing_key: Optional[str] = None):
        self._require_channel()
        message = Message(
            body=event.model_dump_json().encode(),
            content_type="application/json",
            delivery_mode=DeliveryMode.PERSISTENT,
            message_id=str(event.event_id),
            correlation_id=str(event.correlation_id),
            headers={"event_type": event.event_type.value, "version": event.version},
        )
        await self.exchange.publish(message, routing_key=routing_key or event.event_type.value)
        logger.info(f"Sent {event.event_type.value} for order {event.aggregate_id} ({event.event_id})")

    async def subscribe_to_event(
        self,
        event_type: EventType,
        queue_name: str,
        handler: EventHandler,
        max_retries: int = 3
    ):
        """
        Bind ``queue_name`` to ``event_type`` and consume it with ``handler``.

        Args:
            event_type: Routing key the queue is bound to
            queue_name: Durable quorum queue owned by this service
            handler: Coroutine receiving the decoded event; raising triggers a redelivery
            max_retries: Redeliveries before the message goes to the dead letter queue
        """
        channel = self._require_channel()
        queue = await channel.declare_queue(
            queue_name,
            durable=True,
            arguments={
                "x-queue-type": "quorum",
                "x-dead-letter-exchange": DEAD_LETTER_EXCHANGE_NAME,
                "x-dead-letter-routing-key": f"dlq.{event_type.value}",
            },
        )
        await queue.bind(self.exchange, routing_key=event_type.value)

        async def on_message(message: AbstractIncomingMessage):
            # requeue=False: an exception escaping this block rejects into the DLX
            async with message.process(requeue=False):
                attempt = retry_count_of(message)
                try:
                    event = deserialize_event(json.loads(message.body))
                    await handler(event)
                except Exception as e:
                    logger.error(f"Handler for {event_type.value} failed (attempt {attempt + 1}): {e}", exc_info=True)
                    if attempt >= max_retries:
                        logger.critical(
                            f"ALERT: {event_type.value} message {message.message_id} dead-lettered "
                            f"after {attempt + 1} attempts"
                        )
                        raise
                    await self._redeliver(message, event_type, attempt + 1)

        await queue.consume(on_message)
        logger.info(f"Consuming {event_type.value} from {queue_name}")

    async def _redeliver(self, message: AbstractIncomingMessage, event_type: EventType, attempt: int):
        await asyncio.sleep(retry_delay(attempt))
        headers = dict(message.headers or {})
        headers[RETRY_HEADER] = attempt
        await self.exchange.publish(
            Message(
                body=message.body,
                content_type=message.content_type,
                delivery_mode=DeliveryMode.PERSISTENT,
                message_id=message.message_id,
                correlation_id=message.correlation_id,
                headers=headers,
            ),
            routing_key=event_type.value,
        )
