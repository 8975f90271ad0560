import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from carelink.config import ClientSettings
from carelink.errors import ChannelError, SessionExpiredError
from carelink.realtime.channel import RealtimeChannel
from carelink.realtime.state import BackoffPolicy
from carelink.realtime.transport import encode_frame
from carelink.services.api_client import CareLinkApiClient
from carelink.session.manager import SessionLifecycleManager
from carelink.session.store import MemoryBackend, PersistentSessionStore

T0 = datetime(2025, 1, 15, 10, 30, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingSleep:
    """Stands in for asyncio.sleep: records the delay, yields once, returns."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakeConnection:
    def __init__(self) -> None:
        self.sent: list[str] = []
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def send(self, message: str) -> None:
        if self.closed:
            raise ChannelError("connection closed")
        self.sent.append(message)

    async def recv(self):
        item = await self.inbox.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.inbox.put_nowait(ChannelError("closed by client"))

    def push(self, event: str, data) -> None:
        self.inbox.put_nowait(encode_frame(event, data))

    def push_raw(self, raw: str) -> None:
        self.inbox.put_nowait(raw)

    def drop(self) -> None:
        self.inbox.put_nowait(ChannelError("connection reset by peer"))


class FakeTransport:
    """Fails the next `failures` opens (all of them if `always_fail`), then connects."""

    def __init__(self, failures: int = 0, always_fail: bool = False) -> None:
        self.failures = failures
        self.always_fail = always_fail
        self.opens: list[tuple[str, str]] = []
        self.connections: list[FakeConnection] = []

    async def open(self, url: str, token: str) -> FakeConnection:
        self.opens.append((url, token))
        if self.always_fail or self.failures > 0:
            self.failures -= 1
            raise ChannelError("connection refused")
        connection = FakeConnection()
        self.connections.append(connection)
        return connection

    @property
    def last(self) -> FakeConnection:
        return self.connections[-1]


class FakeSessionReader:
    def __init__(self, token: str | None = "tok-123") -> None:
        self.token = token

    async def require_token(self) -> str:
        if self.token is None:
            raise SessionExpiredError()
        return self.token

    async def active_token(self) -> str | None:
        return self.token


async def wait_until(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.001)


@pytest.fixture
def settings():
    return ClientSettings(
        env="test",
        api_base_url="http://test/api",
        ws_url="ws://test/ws",
        storage_scope="@test:",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def backend():
    return MemoryBackend()


@pytest.fixture
def store(backend):
    return PersistentSessionStore(backend, scope="@test:")


@pytest.fixture
def transport():
    return FakeTransport()


@pytest_asyncio.fixture
async def channel(transport, sleep):
    ch = RealtimeChannel("ws://test/ws", transport=transport, policy=BackoffPolicy(), sleep=sleep)
    yield ch
    await ch.disconnect()


@pytest.fixture
def sample_login_data():
    return {
        "token": "tok-123",
        "user": {"id": 42, "fullName": "Nimal Perera", "role": "Lab-Technician "},
        "sessionId": "sess-001",
    }


@pytest.fixture
def mock_api(sample_login_data):
    api = AsyncMock(spec=CareLinkApiClient)
    api.base_url = "http://test/api"
    api.login.return_value = sample_login_data
    api.logout.return_value = None
    api.refresh_session.return_value = {"token": "tok-456"}
    api.list_notifications.return_value = []
    api.mark_notification_read.return_value = None
    api.mark_all_notifications_read.return_value = None
    api.delete_notification.return_value = None
    return api


@pytest_asyncio.fixture
async def manager(settings, store, mock_api, channel, clock, sleep):
    mgr = SessionLifecycleManager(settings, store, mock_api, channel, clock=clock, sleep=sleep)
    yield mgr
    await mgr.close()


@pytest.fixture
def session_reader():
    return FakeSessionReader()


@pytest.fixture
def sample_notifications():
    return [
        {
            "id": "n1",
            "type": "appointment",
            "title": "Appointment confirmed",
            "message": "Dr. Silva confirmed your appointment for Friday 10:00.",
            "createdAt": "2025-01-15T09:00:00Z",
            "read": False,
            "metadata": {"event": "appointment_confirmed"},
        },
        {
            "id": "n2",
            "type": "lab",
            "title": "Lab results ready",
            "message": "Your CBC results are available.",
            "createdAt": "2025-01-15T10:00:00Z",
            "read": True,
            "readAt": "2025-01-15T10:05:00Z",
            "metadata": {"event": "lab_result_uploaded"},
        },
        {
            "id": "n3",
            "type": "system",
            "title": "Welcome",
            "message": "Your account has been created.",
            "createdAt": "2025-01-14T08:00:00Z",
            "read": False,
            "metadata": None,
        },
    ]
