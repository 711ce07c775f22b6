import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse

from dependencies import get_transport
from messaging.base import QueueTransport
from messaging.events import QUEUES
from schemas import ErrorResponse, PublishRequest, PublishResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["notifications"])


def transport_unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=ErrorResponse(
            code=503,
            error="QUEUE_UNAVAILABLE",
            message="Queue transport not connected",
        ).model_dump(mode="json"),
    )


@router.get("/health")
async def health(transport: QueueTransport = Depends(get_transport)):
    connected = transport.connected
    return JSONResponse(
        status_code=status.HTTP_200_OK if connected else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "OK" if connected else "ERROR",
            "service": "notification-service",
            "queue": "connected" if connected else "disconnected",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )


@router.get("/stats")
async def stats(transport: QueueTransport = Depends(get_transport)):
    if not transport.connected:
        raise transport_unavailable()

    queues = {}
    for key, queue_name in QUEUES.items():
        queues[key] = await transport.queue_stats(queue_name)
    return {"queues": queues, "timestamp": datetime.now(timezone.utc).isoformat()}


@router.post("/test/publish", response_model=PublishResponse)
async def test_publish(payload: PublishRequest, transport: QueueTransport = Depends(get_transport)):
    """Push an arbitrary message onto one of the known queues"""
    queue_name = QUEUES.get(payload.queue)
    if queue_name is None:
        detail = ErrorResponse(code=400, error="INVALID_QUEUE", message="Invalid queue name").model_dump(mode="json")
        detail["availableQueues"] = list(QUEUES)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)

    if not transport.connected:
        raise transport_unavailable()

    data = {**payload.message, "timestamp": datetime.now(timezone.utc).isoformat()}
    if not await transport.publish(queue_name, data):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=ErrorResponse(
                code=503,
                error="PUBLISH_FAILED",
                message=f"Failed to publish message to {queue_name}",
            ).model_dump(mode="json"),
        )

    logger.info("Test message published to %s", queue_name)
    return PublishResponse(message="Test message published", queue=queue_name, data=data)
