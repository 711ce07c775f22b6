"""
Queue transport contract shared by the RabbitMQ and SQS implementations.

Delivery is at-least-once: a message is acknowledged (or deleted) only after
its handler returns. A handler exception sends the message back for
redelivery. With ``max_deliveries`` > 0 a message that keeps failing is moved
to a dead-letter destination once its delivery count reaches the ceiling;
with the default of 0 it is redelivered for as long as it keeps failing.
"""

import abc
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from retries import retry_fixed

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any], str], Awaitable[None]]

DELIVERY_COUNT_HEADER = "x-delivery-count"


def encode_payload(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload, default=str).encode("utf-8")


def decode_payload(body) -> Dict[str, Any]:
    if isinstance(body, (bytes, bytearray)):
        body = body.decode("utf-8")
    return json.loads(body)


def dead_letter_queue_name(queue_name: str) -> str:
    return f"{queue_name}.dead-letter"


def exceeds_delivery_limit(deliveries: int, max_deliveries: int) -> bool:
    return max_deliveries > 0 and deliveries >= max_deliveries


class QueueTransport(abc.ABC):
    backend = "none"

    def __init__(self, max_deliveries: int = 0):
        self.max_deliveries = max_deliveries

    @property
    @abc.abstractmethod
    def connected(self) -> bool:
        ...

    async def connect(self, retry_count: int, delay: float) -> bool:
        """Connect with bounded fixed-delay retries; never raises."""
        try:
            await retry_fixed(self.backend, self._open, attempts=retry_count, delay=delay)
        except Exception as exc:
            logger.error("Failed to connect to %s after %d attempts: %s", self.backend, retry_count, exc)
            return False
        logger.info("Connected to %s successfully", self.backend)
        return True

    @abc.abstractmethod
    async def _open(self) -> None:
        ...

    @abc.abstractmethod
    async def declare(self, queue_name: str, ttl_ms: int, max_length: int) -> None:
        ...

    @abc.abstractmethod
    async def publish(self, queue_name: str, payload: Dict[str, Any]) -> bool:
        ...

    @abc.abstractmethod
    async def consume(self, queue_name: str, handler: Handler) -> None:
        ...

    @abc.abstractmethod
    async def queue_stats(self, queue_name: str) -> Optional[Dict[str, Any]]:
        ...

    @abc.abstractmethod
    async def close(self) -> None:
        ...


class DisabledTransport(QueueTransport):
    """Used when QUEUE_BACKEND=none: every operation is a logged no-op."""

    @property
    def connected(self) -> bool:
        return False

    async def connect(self, retry_count: int, delay: float) -> bool:
        logger.warning("Queue backend disabled. Notifications will not be delivered.")
        return False

    async def _open(self) -> None:
        return None

    async def declare(self, queue_name: str, ttl_ms: int, max_length: int) -> None:
        return None

    async def publish(self, queue_name: str, payload: Dict[str, Any]) -> bool:
        logger.warning("Queue backend disabled. Skipping message to %s.", queue_name)
        return False

    async def consume(self, queue_name: str, handler: Handler) -> None:
        logger.warning("Queue backend disabled. Cannot consume %s.", queue_name)

    async def queue_stats(self, queue_name: str) -> Optional[Dict[str, Any]]:
        return None

    async def close(self) -> None:
        return None
