import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict

from messaging.base import QueueTransport
from messaging.events import QUEUES

logger = logging.getLogger(__name__)


async def process_timesheet_submitted(data: Dict[str, Any]):
    logger.info("Processing timesheet submission for employee %s", data.get("employeeId"))
    logger.info("Sending email notification to manager about timesheet for %s", data.get("date"))
    logger.info("Total hours: %s", data.get("totalHours"))
    # Simulated delivery work
    await asyncio.sleep(0.1)
    logger.info("Notification sent for timesheet submission")


async def process_timesheet_saved(data: Dict[str, Any]):
    logger.info("Timesheet draft saved for employee %s on %s", data.get("employeeId"), data.get("date"))
    await asyncio.sleep(0.05)


async def process_user_registered(data: Dict[str, Any]):
    logger.info("Sending welcome email to %s", data.get("email"))
    logger.info("New user: %s %s (%s)", data.get("firstName"), data.get("lastName"), data.get("employeeId"))
    await asyncio.sleep(0.2)
    logger.info("Welcome email sent")


HANDLERS: Dict[str, Callable[[Dict[str, Any]], Awaitable[None]]] = {
    QUEUES["TIMESHEET_SUBMITTED"]: process_timesheet_submitted,
    QUEUES["TIMESHEET_SAVED"]: process_timesheet_saved,
    QUEUES["USER_REGISTERED"]: process_user_registered,
}


async def handle_notification(payload: Dict[str, Any], message_type: str):
    """Dispatch one decoded message. Raising here sends it back for redelivery."""
    handler = HANDLERS.get(message_type)
    if handler is None:
        raise LookupError(f"No handler for message type {message_type!r}")
    await handler(payload)


async def start_consumers(transport: QueueTransport):
    for queue_name in QUEUES.values():
        await transport.consume(queue_name, handle_notification)
        logger.info("Consumer started for %s", queue_name)
    logger.info("All consumers started successfully")
