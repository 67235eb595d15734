"""
RabbitMQ transport for order events.

Events go to one durable topic exchange, routed by their event type. Each
consumer queue dead-letters into a shared DLX once a handler has failed
``max_retries`` times; earlier failures are republished with an
``x-retry-count`` header after an exponential pause.
"""
import asyncio
import json
import logging
from typing import Any, Callable, Optional

import aio_pika
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import AbstractChannel, AbstractConnection, AbstractExchange
from tenacity import retry, stop_after_attempt, wait_exponential

from .events import BaseEvent, EventType, deserialize_event

logger = logging.getLogger(__name__)

EXCHANGE_NAME = "fulfillment_events"
DEAD_LETTER_EXCHANGE_NAME = "fulfillment_events_dlx"
DEAD_LETTER_QUEUE_NAME = "fulfillment_dead_letter_queue"
RETRY_HEADER = "x-retry-count"


class MessageBroker:
    """Publishes order events and feeds them to subscribed handlers."""

    def __init__(self, rabbitmq_url: str):
        self.rabbitmq_url = rabbitmq_url
        self.connection: Optional[AbstractConnection] = None
        self.channel: Optional[AbstractChannel] = None
        self.exchange: Optional[AbstractExchange] = None
        self.dead_letter_exchange: Optional[AbstractExchange] = None

    @retry(
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=1, min=2, max=10)
    )
    async def connect(self):
        """Open a robust connection and declare the exchanges and DLQ."""
        logger.info(f"Connecting to RabbitMQ exchange {EXCHANGE_NAME}")
        self.connection = await aio_pika.connect_robust(self.rabbitmq_url)
        self.channel = await self.connection.channel()
        # Handlers see one event at a time
        await self.channel.set_qos(prefetch_count=1)

        self.exchange = await self.channel.declare_exchange(EXCHANGE_NAME, ExchangeType.TOPIC, durable=True)
        self.dead_letter_exchange = await self.channel.declare_exchange(
            DEAD_LETTER_EXCHANGE_NAME, ExchangeType.TOPIC, durable=True
        )
        dead_letter_queue = await self.channel.declare_queue(
            DEAD_LETTER_QUEUE_NAME, durable=True, arguments={"x-queue-type": "quorum"}
        )
        await dead_letter_queue.bind(self.dead_letter_exchange, routing_key="dlq.#")

        logger.info("RabbitMQ topology ready")

    async def disconnect(self):
        if self.connection:
            await self.connection.close()
            logger.info("RabbitMQ connection closed")

    async def publish_event(self, event: BaseEvent, routing_key: Optional[str] = None):
        """Publish ``event`` persistently, routed by its type unless told otherwise."""
        if not self.exchange:
            raise RuntimeError("Message broker not connected")

        message = Message(
            body=json.dumps(event.model_dump(mode='json')).encode(),
            delivery_mode=DeliveryMode.PERSISTENT,
            content_type="application/json",
            headers={
                "event_type": event.event_type.value,
                "event_id": str(event.event_id),
                "correlation_id": event.correlation_id,
                "version": event.version
            }
        )
        await self.exchange.publish(message, routing_key=routing_key or event.event_type.value)

        logger.info(
            f"Published {event.event_type.value} for order {event.aggregate_id} "
            f"(event={event.event_id}, correlation={event.correlation_id})"
        )

    async def subscribe_to_event(
        self,
        event_type: EventType,
        queue_name: str,
        handler: Callable[[BaseEvent], Any],
        max_retries: int = 3
    ):
        """
        Feed every ``event_type`` event to ``handler`` from a durable queue.

        Args:
            event_type: Routing key to bind the queue to
            queue_name: Durable quorum queue owned by the subscriber
            handler: Coroutine function receiving the decoded event
            max_retries: Handler failures tolerated before dead-lettering
        """
        if not self.channel:
            raise RuntimeError("Message broker not connected")

        queue = await self.channel.declare_queue(
            queue_name,
            durable=True,
            arguments={
                "x-dead-letter-exchange": DEAD_LETTER_EXCHANGE_NAME,
                "x-dead-letter-routing-key": f"dlq.{event_type.value}",
                "x-queue-type": "quorum"
            }
        )
        await queue.bind(self.exchange, routing_key=event_type.value)

        async def on_message(message: aio_pika.IncomingMessage):
            # Leaving the block with an exception rejects without requeue, which dead-letters
            async with message.process(requeue=False):
                headers = dict(message.headers or {})
                failures = int(headers.get(RETRY_HEADER, 0))
                try:
                    event = deserialize_event(json.loads(message.body.decode()))
                    await handler(event)
                except Exception as e:
                    failures += 1
                    if failures > max_retries:
                        logger.error(
                            f"Dead-lettering {event_type.value} message {headers.get('event_id')} "
                            f"from {queue_name} after {max_retries} retries: {e}",
                            exc_info=True
                        )
                        raise

                    logger.warning(
                        f"Handler on {queue_name} failed for {headers.get('event_id')} "
                        f"(retry {failures}/{max_retries}): {e}"
                    )
                    await asyncio.sleep(min(2 ** failures, 60))
                    headers[RETRY_HEADER] = failures
                    await self.exchange.publish(
                        Message(
                            body=message.body,
                            delivery_mode=DeliveryMode.PERSISTENT,
                            content_type=message.content_type,
                            headers=headers
                        ),
                        routing_key=event_type.value
                    )
                    return

                logger.info(f"{queue_name} handled {event.event_type.value} event {event.event_id}")

        await queue.consume(on_message)
        logger.info(f"Queue {queue_name} subscribed to {event_type.value}")
