import logging
from datetime import datetime, timezone
from typing import Any, Dict

from config import Settings
from messaging.base import DisabledTransport, QueueTransport
from model import Timesheet, User

logger = logging.getLogger(__name__)

# Queue names - centralized for consistency
QUEUES = {
    "TIMESHEET_SUBMITTED": "timesheet.submitted",
    "TIMESHEET_SAVED": "timesheet.saved",
    "USER_REGISTERED": "user.registered",
}


def create_transport(settings: Settings) -> QueueTransport:
    if settings.queue_backend == "rabbitmq":
        from messaging.rabbitmq import RabbitMQTransport

        return RabbitMQTransport(
            settings.rabbitmq_url,
            prefetch_count=settings.queue_prefetch_count,
            max_deliveries=settings.max_deliveries,
        )
    if settings.queue_backend == "sqs":
        from messaging.sqs import SQSTransport

        return SQSTransport(
            settings.sqs_queue_url,
            region=settings.aws_region,
            dead_letter_queue_url=settings.sqs_dead_letter_queue_url,
            max_deliveries=settings.max_deliveries,
            batch_size=settings.sqs_batch_size,
            wait_seconds=settings.sqs_wait_seconds,
        )
    return DisabledTransport()


async def start_transport(transport: QueueTransport, settings: Settings) -> bool:
    """Connect and declare every queue. False means the process runs without notifications."""
    if not await transport.connect(settings.queue_connect_retries, settings.queue_connect_delay):
        return False
    for queue_name in QUEUES.values():
        await transport.declare(queue_name, settings.queue_message_ttl_ms, settings.queue_max_length)
    return True


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def timesheet_event(timesheet: Timesheet) -> Dict[str, Any]:
    return {
        "employeeId": timesheet.employee_id,
        "date": timesheet.date.isoformat(),
        "hours": timesheet.hours,
        "totalHours": timesheet.hours,
        "recordType": timesheet.record_type,
        "wfh": bool(timesheet.wfh),
        "status": timesheet.status,
        "timestamp": _now(),
    }


def user_event(user: User) -> Dict[str, Any]:
    return {
        "employeeId": user.employee_id,
        "email": user.email,
        "firstName": user.first_name,
        "lastName": user.last_name,
        "timestamp": _now(),
    }


async def publish_timesheet_submitted(transport: QueueTransport, timesheet: Timesheet) -> bool:
    return await transport.publish(QUEUES["TIMESHEET_SUBMITTED"], timesheet_event(timesheet))


async def publish_timesheet_saved(transport: QueueTransport, timesheet: Timesheet) -> bool:
    return await transport.publish(QUEUES["TIMESHEET_SAVED"], timesheet_event(timesheet))


async def publish_user_registered(transport: QueueTransport, user: User) -> bool:
    return await transport.publish(QUEUES["USER_REGISTERED"], user_event(user))
