from typing import Any, Dict, List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient

from config import Settings
from main import create_app
from messaging.base import Handler, QueueTransport


class FakeTransport(QueueTransport):
    """Records publishes in memory instead of talking to a broker"""

    backend = "fake"

    def __init__(self, connected: bool = True):
        super().__init__()
        self._connected = connected
        self.published: List[Tuple[str, Dict[str, Any]]] = []
        self.declared: List[str] = []
        self.consumers: Dict[str, Handler] = {}
        self.closed = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self, retry_count: int, delay: float) -> bool:
        return self._connected

    async def _open(self) -> None:
        return None

    async def declare(self, queue_name: str, ttl_ms: int, max_length: int) -> None:
        self.declared.append(queue_name)

    async def publish(self, queue_name: str, payload: Dict[str, Any]) -> bool:
        if not self._connected:
            return False
        self.published.append((queue_name, payload))
        return True

    async def consume(self, queue_name: str, handler: Handler) -> None:
        self.consumers[queue_name] = handler

    async def queue_stats(self, queue_name: str) -> Optional[Dict[str, Any]]:
        return {"queue": queue_name, "messages": 0, "consumers": int(queue_name in self.consumers)}

    async def close(self) -> None:
        self.closed = True

    def published_to(self, queue_name: str) -> List[Dict[str, Any]]:
        return [payload for name, payload in self.published if name == queue_name]


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'timesheet.db'}",
        db_connect_retries=1,
        db_connect_delay=0,
        queue_backend="none",
        jwt_secret="test-secret",
        bcrypt_rounds=4,
        rate_limit_enabled=False,
    )


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def auth_client(settings, transport):
    with TestClient(create_app("auth", settings, transport)) as client:
        yield client


@pytest.fixture
def save_client(settings, transport):
    with TestClient(create_app("save", settings, transport)) as client:
        yield client


@pytest.fixture
def submit_client(settings, transport):
    with TestClient(create_app("submit", settings, transport)) as client:
        yield client


@pytest.fixture
def notification_client(settings, transport):
    with TestClient(create_app("notification", settings, transport)) as client:
        yield client
