import json
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal

os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("RESERVATION_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.pop("RABBIT_URL", None)

import fakeredis
import pytest
from fakeredis import aioredis

from shared.database import Base, get_engine, get_session

from app.accommodations import AccommodationService
from app.bookings import BookingService
from app.errors import PaymentProcessorError
from app.notifications import Notifier
from app.payments import PaymentService
from app.processor import CheckoutSession, SessionState
from app.rbac import Requester

START = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class RecordingPublisher:
    enabled = True

    def __init__(self):
        self.events = []

    async def publish(self, routing_key: str, message_body: str):
        self.events.append((routing_key, json.loads(message_body)))

    def of(self, routing_key: str) -> list[dict]:
        return [event["data"] for key, event in self.events if key == routing_key]


class FakeProcessor:
    def __init__(self):
        self.opened = []
        self.paid_sessions = set()
        self.fail = False

    async def open_session(self, **kwargs) -> CheckoutSession:
        if self.fail:
            raise PaymentProcessorError("Payment processor error: unavailable")
        self.opened.append(kwargs)
        n = len(self.opened)
        return CheckoutSession(session_id=f"cs_test_{n}", session_url=f"https://checkout.test/cs_test_{n}")

    async def retrieve_session(self, session_id: str) -> SessionState:
        if session_id in self.paid_sessions:
            return SessionState(status="complete", payment_status="paid", payment_reference=f"pi_{session_id}")
        return SessionState(status="open", payment_status="unpaid")

    def pay(self, session_id: str):
        self.paid_sessions.add(session_id)


@pytest.fixture
async def session_factory(tmp_path):
    engine = get_engine(f"sqlite+aiosqlite:///{tmp_path}/reservations.db")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield get_session(engine)
    await engine.dispose()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def notifier(publisher):
    return Notifier(publisher)


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def accommodations(session_factory):
    return AccommodationService(session_factory)


@pytest.fixture
def bookings(session_factory, notifier, clock):
    return BookingService(session_factory, notifier, clock=clock)


@pytest.fixture
def payments(session_factory, processor, notifier, clock):
    return PaymentService(
        session_factory, processor, notifier, clock=clock, base_url="http://testserver"
    )


@pytest.fixture
def alice():
    return Requester(user_id="user-1", email="alice@example.com")


@pytest.fixture
def bob():
    return Requester(user_id="user-2")


@pytest.fixture
def manager():
    return Requester(user_id="manager-1", is_elevated=True)


@pytest.fixture
def make_accommodation(accommodations):
    async def _make(units: int = 1, rate: str = "100.00", location: str = "Kyiv"):
        return await accommodations.create({
            "type": "APARTMENT",
            "location": location,
            "size": "2 rooms",
            "amenities": "wifi",
            "daily_rate": Decimal(rate),
            "available_units": units,
        })
    return _make


@pytest.fixture
def redis_client():
    return aioredis.FakeRedis(decode_responses=True)


@pytest.fixture
def down_redis():
    server = fakeredis.FakeServer()
    server.connected = False
    return aioredis.FakeRedis(server=server, decode_responses=True)
