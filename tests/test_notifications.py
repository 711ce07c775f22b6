from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

import notifications
from conftest import FakeTransport
from main import create_app
from messaging.events import QUEUES


class TestNotificationEndpoints:
    def test_health_when_connected(self, notification_client):
        resp = notification_client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["queue"] == "connected"

    def test_health_when_disconnected(self, settings):
        with TestClient(create_app("notification", settings, FakeTransport(connected=False))) as client:
            resp = client.get("/health")
        assert resp.status_code == 503
        assert resp.json()["queue"] == "disconnected"

    def test_stats(self, notification_client):
        resp = notification_client.get("/stats")
        assert resp.status_code == 200
        assert set(resp.json()["queues"]) == set(QUEUES)
        assert resp.json()["queues"]["TIMESHEET_SAVED"]["queue"] == "timesheet.saved"

    def test_publish(self, notification_client, transport):
        resp = notification_client.post(
            "/test/publish", json={"queue": "TIMESHEET_SAVED", "message": {"employeeId": "EMP123456"}}
        )
        assert resp.status_code == 200
        assert resp.json()["queue"] == "timesheet.saved"

        events = transport.published_to("timesheet.saved")
        assert len(events) == 1
        assert events[0]["employeeId"] == "EMP123456"
        assert "timestamp" in events[0]

    def test_publish_unknown_queue(self, notification_client, transport):
        resp = notification_client.post("/test/publish", json={"queue": "NOPE", "message": {}})
        assert resp.status_code == 400
        assert resp.json()["availableQueues"] == list(QUEUES)
        assert transport.published == []

    def test_publish_when_disconnected(self, settings):
        with TestClient(create_app("notification", settings, FakeTransport(connected=False))) as client:
            resp = client.post("/test/publish", json={"queue": "USER_REGISTERED", "message": {}})
        assert resp.status_code == 503

    def test_root_lists_queues(self, notification_client):
        body = notification_client.get("/").json()
        assert body["queues"] == QUEUES
        assert "POST /test/publish" in body["availableEndpoints"]


class TestConsumers:
    async def test_start_consumers_registers_every_queue(self):
        transport = FakeTransport()
        await notifications.start_consumers(transport)
        assert set(transport.consumers) == set(QUEUES.values())

    @pytest.mark.parametrize("queue_name", list(QUEUES.values()))
    async def test_dispatch_by_message_type(self, queue_name):
        with patch("notifications.asyncio.sleep", AsyncMock()) as sleep:
            await notifications.handle_notification({"employeeId": "EMP123456"}, queue_name)
        sleep.assert_awaited_once()

    async def test_unknown_message_type_fails(self):
        with pytest.raises(LookupError):
            await notifications.handle_notification({}, "timesheet.deleted")
