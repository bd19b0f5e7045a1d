"""pytest configuration and shared fixtures for Door Relay tests."""

from __future__ import annotations

import asyncio

import httpx
import pytest
import pytest_asyncio

from doorrelay.core.config import Settings
from doorrelay.core.database import close_db, init_db
from doorrelay.main import create_app


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


class FakeClock:
    """Manually advanced replacement for time.time"""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeChannel:
    """Records everything the server sends to devices."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, object]] = []
        self.broadcasts: list[tuple[str, object]] = []
        self.failing: set[str] = set()
        # set both to pause every send until hold is released
        self.entered: asyncio.Event | None = None
        self.hold: asyncio.Event | None = None

    async def send(self, transport_handle, event, data=None):
        if self.entered is not None:
            self.entered.set()
        if self.hold is not None:
            await self.hold.wait()
        if transport_handle in self.failing:
            raise ConnectionError(f"socket {transport_handle} closed")
        self.sent.append((transport_handle, event, data))

    async def broadcast(self, event, data=None):
        self.broadcasts.append((event, data))

    def transport_name(self, transport_handle):
        return "websocket"

    def triggers(self) -> list[tuple[str, dict]]:
        return [(h, d) for h, e, d in self.sent if e == "door_trigger"]

    def events(self, event: str) -> list[tuple[str, object]]:
        return [(h, d) for h, e, d in self.sent if e == event]


# ── Fixtures ──────────────────────────────────────────────────────


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        STATIC_DIR=str(tmp_path / "public"),
    )


@pytest_asyncio.fixture
async def app(test_settings, channel):
    """Fresh application and temp database for each test."""
    application = create_app(test_settings, channel=channel)
    await init_db()
    yield application
    await close_db()


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def gateway(app):
    return app.state.gateway


@pytest.fixture
def registry(app):
    return app.state.registry


@pytest.fixture
def dispatcher(app):
    return app.state.dispatcher
