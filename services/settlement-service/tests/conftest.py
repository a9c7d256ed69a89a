import json
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio

from app.config import Settings
from app.engines import build_engines
from shared.database import create_all, get_engine, get_session

# a Monday
NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
SATURDAY = date(2026, 3, 7)
WEDNESDAY = date(2026, 3, 4)


class RecordingPublisher:
    enabled = True

    def __init__(self):
        self.messages = []

    async def connect(self):
        pass

    async def close(self):
        pass

    async def publish(self, routing_key: str, message_body: str):
        self.messages.append((routing_key, json.loads(message_body)))

    def routing_keys(self) -> list[str]:
        return [k for k, _ in self.messages]

    def of_type(self, routing_key: str) -> list[dict]:
        return [m["data"] for k, m in self.messages if k == routing_key]


class FakeRedis:
    def __init__(self):
        self.store = {}

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
        return removed


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return Clock(NOW)


@pytest.fixture
def settings():
    return Settings(payout_scheduler_interval_seconds=0)


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def redis_client():
    return FakeRedis()


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = get_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'settlement.db'}",
        connect_args={"timeout": 30},
    )
    await create_all(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return get_session(db_engine)


@pytest.fixture
def engines(session_factory, settings, publisher, redis_client, clock):
    return build_engines(session_factory, settings, publisher, redis_client, clock=clock)


class Scenario:
    """Shortcuts for walking bookings through their lifecycle."""

    def __init__(self, engines, clock):
        self.engines = engines
        self.clock = clock

    async def service(self, client_price="120.00", provider_fee="100.00", commission="20.00", weekend_bonus=None, **kw):
        return await self.engines.catalog.create_service(
            name=kw.pop("name", "Deep clean"),
            client_price=Decimal(client_price),
            provider_fee=Decimal(provider_fee),
            commission_percentage=Decimal(commission),
            weekend_bonus=None if weekend_bonus is None else Decimal(weekend_bonus),
            **kw,
        )

    async def booking(self, service, client_id="client-1", booking_date=WEDNESDAY, **kw):
        return await self.engines.bookings.create(
            client_id=client_id,
            service_id=service.id,
            booking_date=booking_date,
            booking_time=time(10, 0),
            **kw,
        )

    async def completed(self, service, provider_id="provider-1", client_id="client-1", booking_date=WEDNESDAY, rating=None, **kw):
        bookings = self.engines.bookings
        booking = await self.booking(service, client_id=client_id, booking_date=booking_date, **kw)
        await bookings.assign(booking.id, provider_id)
        await bookings.start(booking.id, provider_id)
        result = await bookings.complete(booking.id, provider_id, notes="All rooms done", quality_score=5)
        if rating is not None:
            await bookings.rate(booking.id, client_id, rating)
        return result

    async def package(self, service, quantity=4, client_id="client-1", cycle_days=30):
        return await self.engines.ledger.activate_package(
            client_id=client_id,
            package_id="gold",
            start_date=NOW.date(),
            expiry_date=NOW.date() + timedelta(days=365),
            entitlements=[(service.id, quantity, cycle_days)],
        )

    async def rule(self, **kw):
        kw.setdefault("rule_name", "Weekly")
        kw.setdefault("payout_frequency", "weekly")
        kw.setdefault("payout_day", 1)
        return await self.engines.batches.create_rule(activate=True, **kw)


@pytest.fixture
def scenario(engines, clock):
    return Scenario(engines, clock)
