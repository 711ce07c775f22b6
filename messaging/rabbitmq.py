import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import aio_pika
from aio_pika import DeliveryMode, Message
from aio_pika.abc import AbstractIncomingMessage
from aio_pika.exceptions import AMQPError, ChannelInvalidStateError

from messaging.base import (
    DELIVERY_COUNT_HEADER,
    Handler,
    QueueTransport,
    dead_letter_queue_name,
    decode_payload,
    encode_payload,
    exceeds_delivery_limit,
)

logger = logging.getLogger(__name__)


class RabbitMQTransport(QueueTransport):
    """Durable queues on a RabbitMQ broker via aio-pika"""

    backend = "rabbitmq"

    def __init__(self, url: str, prefetch_count: int = 1, max_deliveries: int = 0):
        super().__init__(max_deliveries)
        self.url = url
        self.prefetch_count = prefetch_count
        self._connection = None
        self._channel = None
        self._queues: Dict[str, Any] = {}
        self._consumer_tags: Dict[str, str] = {}

    @property
    def connected(self) -> bool:
        return self._channel is not None and not self._channel.is_closed

    async def _open(self) -> None:
        connection = await aio_pika.connect(self.url)
        try:
            channel = await connection.channel()
            # One unacknowledged message per consumer keeps each queue in delivery order
            await channel.set_qos(prefetch_count=self.prefetch_count)
        except Exception:
            await connection.close()
            raise
        self._connection = connection
        self._channel = channel

    async def declare(self, queue_name: str, ttl_ms: int, max_length: int) -> None:
        if not self.connected:
            logger.warning("[RabbitMQ] Channel not available, cannot declare %s", queue_name)
            return
        self._queues[queue_name] = await self._channel.declare_queue(
            queue_name,
            durable=True,
            arguments={"x-message-ttl": ttl_ms, "x-max-length": max_length},
        )
        if self.max_deliveries > 0:
            await self._channel.declare_queue(dead_letter_queue_name(queue_name), durable=True)
        logger.info("[RabbitMQ] Queue declared: %s", queue_name)

    async def _send(self, routing_key: str, body: bytes, message_type: str, headers: Optional[dict] = None) -> bool:
        if not self.connected:
            logger.warning("[RabbitMQ] Channel not available, skipping message publish to %s", routing_key)
            return False
        message = Message(
            body=body,
            content_type="application/json",
            delivery_mode=DeliveryMode.PERSISTENT,
            type=message_type,
            timestamp=datetime.now(timezone.utc),
            headers=headers or {},
        )
        try:
            await self._channel.default_exchange.publish(message, routing_key=routing_key)
        except (AMQPError, ChannelInvalidStateError, OSError) as exc:
            logger.error("[RabbitMQ] Error publishing message to %s: %s", routing_key, exc)
            return False
        return True

    async def publish(self, queue_name: str, payload: Dict[str, Any]) -> bool:
        published = await self._send(queue_name, encode_payload(payload), queue_name)
        if published:
            logger.info("[RabbitMQ] Published to %s: %s", queue_name, payload)
        return published

    async def consume(self, queue_name: str, handler: Handler) -> None:
        if not self.connected:
            logger.warning("[RabbitMQ] Channel not available, cannot consume %s", queue_name)
            return
        queue = self._queues.get(queue_name)
        if queue is None:
            queue = await self._channel.declare_queue(queue_name, passive=True)
            self._queues[queue_name] = queue

        async def on_message(message: AbstractIncomingMessage) -> None:
            await self.handle_delivery(queue_name, message, handler)

        self._consumer_tags[queue_name] = await queue.consume(on_message)
        logger.info("[RabbitMQ] Consumer started for %s", queue_name)

    async def handle_delivery(self, queue_name: str, message: AbstractIncomingMessage, handler: Handler) -> None:
        try:
            payload = decode_payload(message.body)
            logger.info("[%s] Received: %s", queue_name, payload)
            await handler(payload, message.type or queue_name)
        except Exception as exc:
            logger.error("[%s] Error processing message: %s", queue_name, exc, exc_info=True)
            await self._reject(queue_name, message)
            return
        await message.ack()
        logger.info("[%s] Processed and acknowledged", queue_name)

    async def _reject(self, queue_name: str, message: AbstractIncomingMessage) -> None:
        if self.max_deliveries <= 0:
            await message.nack(requeue=True)
            logger.warning("[%s] Message requeued", queue_name)
            return

        headers = dict(message.headers or {})
        deliveries = int(headers.get(DELIVERY_COUNT_HEADER, 0)) + 1
        headers[DELIVERY_COUNT_HEADER] = deliveries
        if exceeds_delivery_limit(deliveries, self.max_deliveries):
            target = dead_letter_queue_name(queue_name)
        else:
            target = queue_name

        # Broker-side requeue cannot carry a counter, so the message is re-sent with one
        if await self._send(target, message.body, message.type or queue_name, headers):
            await message.ack()
            if target == queue_name:
                logger.warning("[%s] Message requeued (delivery %d/%d)", queue_name, deliveries, self.max_deliveries)
            else:
                logger.error("[%s] Message dead-lettered to %s after %d deliveries", queue_name, target, deliveries)
        else:
            await message.nack(requeue=True)

    async def queue_stats(self, queue_name: str) -> Optional[Dict[str, Any]]:
        if not self.connected:
            return None
        queue = await self._channel.declare_queue(queue_name, passive=True)
        result = queue.declaration_result
        return {
            "queue": queue_name,
            "messages": result.message_count,
            "consumers": result.consumer_count,
        }

    async def close(self) -> None:
        if self._channel is not None and not self._channel.is_closed:
            await self._channel.close()
        if self._connection is not None and not self._connection.is_closed:
            await self._connection.close()
        self._channel = None
        self._connection = None
        logger.info("[RabbitMQ] Connection closed")
