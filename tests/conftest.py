"""
Pytest configuration and shared fixtures.

Test environment variables are set here before any app import, and the
settings cache is cleared so they take effect. Telegram traffic never
leaves the process: the relay is built on an httpx.MockTransport.
"""

import json
import os

import httpx
import pytest

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_telegram_relay.db")
os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "123456:TEST-TOKEN")

# Clear settings cache before any app imports to ensure test env vars are used
from app.config import get_settings
get_settings.cache_clear()

from fastapi.testclient import TestClient  # noqa: E402

from app.main import app, get_relay  # noqa: E402
from app.relay import OutboundRelay  # noqa: E402
from app.storage import Base, engine  # noqa: E402
from app.telegram import TelegramBotClient  # noqa: E402

TEST_BOT_TOKEN = os.environ["TELEGRAM_BOT_TOKEN"]


class TelegramStub:
    """
    Fake Bot API behind httpx.MockTransport.

    Each queued outcome is either a response body (dict) or an exception
    to raise; once the queue is empty every call succeeds.
    """

    def __init__(self):
        self.requests = []
        self.outcomes = []
        self.next_message_id = 100

    def queue(self, *outcomes):
        self.outcomes.extend(outcomes)

    @property
    def payloads(self) -> list:
        return [json.loads(request.content) for request in self.requests]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is None:
            self.next_message_id += 1
            outcome = {"ok": True, "result": {"message_id": self.next_message_id}}

        return httpx.Response(200, json=outcome)


class RecordingSleep:
    """Stands in for asyncio.sleep and remembers requested delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def connect_error(message: str = "connection refused") -> httpx.ConnectError:
    return httpx.ConnectError(message, request=httpx.Request("POST", "https://api.telegram.org"))


def build_relay(telegram: TelegramStub, sleep: RecordingSleep, **kwargs) -> OutboundRelay:
    bot = TelegramBotClient(token=TEST_BOT_TOKEN, transport=httpx.MockTransport(telegram))
    return OutboundRelay(bot=bot, sleep=sleep, **kwargs)


@pytest.fixture
def telegram() -> TelegramStub:
    return TelegramStub()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def relay(telegram, sleep) -> OutboundRelay:
    return build_relay(telegram, sleep)


@pytest.fixture(scope="function")
def client(relay):
    """Create test client with fresh database and fake Telegram for each test."""
    Base.metadata.create_all(bind=engine)
    app.dependency_overrides[get_relay] = lambda: relay

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    """Plain session on a fresh schema, for repository-level tests."""
    from app.storage import SessionLocal
    from app.models import TelegramUserRecord  # noqa: F401

    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
