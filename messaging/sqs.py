import asyncio
import contextlib
import logging
import time
from typing import Any, Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from messaging.base import Handler, QueueTransport, decode_payload, encode_payload, exceeds_delivery_limit

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 10


class SQSTransport(QueueTransport):
    """
    Managed queue on AWS SQS.

    All event types share one SQS queue; the ``messageType`` message attribute
    carries the logical queue name so consumers can dispatch on it. Queue
    expiry and capacity are configured on the SQS queue itself, so
    ``declare`` has nothing to do. A message whose handler fails is left
    in the queue and becomes visible again after its visibility timeout.
    """

    backend = "sqs"

    def __init__(
        self,
        queue_url: Optional[str],
        region: str = "us-east-1",
        dead_letter_queue_url: Optional[str] = None,
        max_deliveries: int = 0,
        batch_size: int = MAX_BATCH_SIZE,
        wait_seconds: int = 20,
        client=None,
    ):
        super().__init__(max_deliveries)
        self.queue_url = queue_url
        self.region = region
        self.dead_letter_queue_url = dead_letter_queue_url
        self.batch_size = batch_size
        self.wait_seconds = wait_seconds
        self._client = client
        self._connected = False
        self._closed = False
        self._handlers: Dict[str, Handler] = {}
        self._poll_task: Optional[asyncio.Task] = None

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self, retry_count: int, delay: float) -> bool:
        if not self.queue_url:
            logger.warning("SQS_QUEUE_URL not configured. Messages will be skipped.")
            return False
        return await super().connect(retry_count, delay)

    async def _open(self) -> None:
        if self._client is None:
            self._client = boto3.client("sqs", region_name=self.region)
        await asyncio.to_thread(
            self._client.get_queue_attributes,
            QueueUrl=self.queue_url,
            AttributeNames=["QueueArn"],
        )
        self._connected = True

    async def declare(self, queue_name: str, ttl_ms: int, max_length: int) -> None:
        logger.debug("SQS queue is provisioned externally; nothing to declare for %s", queue_name)

    async def publish(self, queue_name: str, payload: Dict[str, Any]) -> bool:
        if not self._connected:
            logger.warning("SQS not connected. Skipping message to %s.", queue_name)
            return False
        params = {
            "QueueUrl": self.queue_url,
            "MessageBody": encode_payload(payload).decode("utf-8"),
            "MessageAttributes": {
                "messageType": {"DataType": "String", "StringValue": queue_name},
                "timestamp": {"DataType": "Number", "StringValue": str(int(time.time() * 1000))},
            },
        }
        try:
            result = await asyncio.to_thread(self._client.send_message, **params)
        except (BotoCoreError, ClientError) as exc:
            logger.error("Error sending message to SQS: %s", exc)
            return False
        logger.info("Message sent to SQS: %s %s", queue_name, result.get("MessageId"))
        return True

    async def consume(self, queue_name: str, handler: Handler) -> None:
        if not self._connected:
            logger.warning("SQS not connected. Cannot consume %s.", queue_name)
            return
        self._handlers[queue_name] = handler
        if self._poll_task is None:
            self._poll_task = asyncio.create_task(
                self.poll_loop(self._dispatch, self.batch_size, self.wait_seconds)
            )

    async def _dispatch(self, payload: Dict[str, Any], message_type: str) -> None:
        handler = self._handlers.get(message_type)
        if handler is None:
            raise LookupError(f"No handler registered for message type {message_type!r}")
        await handler(payload, message_type)

    async def poll_once(self, handler: Handler, batch_size: int = MAX_BATCH_SIZE, wait_seconds: int = 20) -> int:
        """One long-poll receive; returns the number of messages fetched."""
        response = await asyncio.to_thread(
            self._client.receive_message,
            QueueUrl=self.queue_url,
            MaxNumberOfMessages=max(1, min(batch_size, MAX_BATCH_SIZE)),
            WaitTimeSeconds=wait_seconds,
            MessageAttributeNames=["All"],
            AttributeNames=["ApproximateReceiveCount"],
        )
        messages = response.get("Messages") or []
        for message in messages:
            await self._process(message, handler)
        return len(messages)

    async def poll_loop(
        self,
        handler: Handler,
        batch_size: int = MAX_BATCH_SIZE,
        wait_seconds: int = 20,
        error_delay: float = 5.0,
    ) -> None:
        logger.info("Starting SQS message polling...")
        while not self._closed:
            try:
                await self.poll_once(handler, batch_size, wait_seconds)
            except (BotoCoreError, ClientError) as exc:
                logger.error("Polling error: %s", exc)
                await asyncio.sleep(error_delay)
            except Exception as exc:
                # The poll task is never awaited; keep polling whatever the failure
                logger.error("Unexpected polling error: %s", exc, exc_info=True)
                await asyncio.sleep(error_delay)

    async def _process(self, message: Dict[str, Any], handler: Handler) -> None:
        attributes = message.get("MessageAttributes") or {}
        message_type = attributes.get("messageType", {}).get("StringValue", "unknown")
        try:
            payload = decode_payload(message["Body"])
            logger.info("[%s] Received: %s", message_type, payload)
            await handler(payload, message_type)
        except Exception as exc:
            logger.error("[%s] Error processing message %s: %s", message_type, message.get("MessageId"), exc, exc_info=True)
            receive_count = int((message.get("Attributes") or {}).get("ApproximateReceiveCount", 1))
            if self.dead_letter_queue_url and exceeds_delivery_limit(receive_count, self.max_deliveries):
                await self._dead_letter(message, message_type, receive_count)
            return
        await self.delete_message(message["ReceiptHandle"])
        logger.info("Message processed and deleted: %s", message.get("MessageId"))

    async def _dead_letter(self, message: Dict[str, Any], message_type: str, receive_count: int) -> None:
        try:
            await asyncio.to_thread(
                self._client.send_message,
                QueueUrl=self.dead_letter_queue_url,
                MessageBody=message["Body"],
                MessageAttributes=message.get("MessageAttributes") or {},
            )
        except (BotoCoreError, ClientError) as exc:
            logger.error("Error dead-lettering message %s: %s", message.get("MessageId"), exc)
            return
        await self.delete_message(message["ReceiptHandle"])
        logger.error("[%s] Message %s dead-lettered after %d receives", message_type, message.get("MessageId"), receive_count)

    async def delete_message(self, receipt_handle: str) -> None:
        await asyncio.to_thread(
            self._client.delete_message,
            QueueUrl=self.queue_url,
            ReceiptHandle=receipt_handle,
        )

    async def queue_stats(self, queue_name: str) -> Optional[Dict[str, Any]]:
        if not self._connected:
            return None
        try:
            data = await asyncio.to_thread(
                self._client.get_queue_attributes,
                QueueUrl=self.queue_url,
                AttributeNames=[
                    "ApproximateNumberOfMessages",
                    "ApproximateNumberOfMessagesNotVisible",
                    "ApproximateNumberOfMessagesDelayed",
                ],
            )
        except (BotoCoreError, ClientError) as exc:
            logger.error("Error getting queue stats: %s", exc)
            return None
        attributes = data.get("Attributes", {})
        return {
            "queue": queue_name,
            "available": int(attributes.get("ApproximateNumberOfMessages", 0)),
            "inFlight": int(attributes.get("ApproximateNumberOfMessagesNotVisible", 0)),
            "delayed": int(attributes.get("ApproximateNumberOfMessagesDelayed", 0)),
        }

    async def close(self) -> None:
        self._closed = True
        self._connected = False
        if self._poll_task is not None:
            self._poll_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._poll_task
            self._poll_task = None
