"""
tests/conftest.py
Shared fixtures: in-memory SQLite database, fake Redis, recording
delivery channel, HTTP client and a cast of users and events.

The app, the fixtures and the tests all share one AsyncSession per test
so state written through the API is visible to assertions immediately.
"""

import os

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, List, Optional

import pytest
import pytest_asyncio
from fakeredis import aioredis as fake_aioredis
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from config.database import Base, get_db
from config.redis_client import get_redis
from main import app
from services.notification.delivery import DeliveryResult, get_delivery_channel
from shared.models.models import (
    ApprovalStatus,
    Event,
    EventCategory,
    Registration,
    TicketTier,
    User,
)
from shared.utils.security import create_access_token, hash_password

CRON_HEADERS = {"X-Cron-Token": "test-cron-secret"}
PASSWORD = "correct-horse-battery"


class FakeDeliveryChannel:
    """Records every send instead of calling Resend/Twilio. Set fail=True to simulate an outage."""

    def __init__(self):
        self.sent: List[dict] = []
        self.fail = False

    async def _record(self, kind: str, to: str, subject: Optional[str], body: str) -> DeliveryResult:
        if self.fail:
            return DeliveryResult(success=False, error="provider down")
        self.sent.append({"channel": kind, "to": to, "subject": subject, "body": body})
        return DeliveryResult(success=True)

    async def send_email(self, to, subject, body, html_body=None) -> DeliveryResult:
        return await self._record("email", to, subject, body)

    async def send_sms(self, to, body) -> DeliveryResult:
        return await self._record("sms", to, None, body)

    async def send_whatsapp(self, to, body) -> DeliveryResult:
        return await self._record("whatsapp", to, None, body)

    def subjects_to(self, address: str) -> List[str]:
        return [m["subject"] for m in self.sent if m["to"] == address]


# ── Infrastructure ────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def db() -> AsyncGenerator[AsyncSession, None]:
    """Fresh in-memory schema per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def redis():
    client = fake_aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def channel() -> FakeDeliveryChannel:
    return FakeDeliveryChannel()


@pytest_asyncio.fixture
async def client(db: AsyncSession, redis, channel: FakeDeliveryChannel) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client with DB, Redis and delivery dependencies overridden."""

    async def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = lambda: redis
    app.dependency_overrides[get_delivery_channel] = lambda: channel

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def auth_headers(user: User) -> dict:
    """Bearer headers carrying a fresh access token for the user."""
    token, _ = create_access_token(str(user.id), user.username, user.is_admin)
    return {"Authorization": f"Bearer {token}"}


# ── Users ─────────────────────────────────────────────────────────────────────

async def make_user(db: AsyncSession, username: str, **flags) -> User:
    user = User(
        username=username,
        email=f"{username}@example.com",
        phone=flags.pop("phone", None),
        hashed_password=hash_password(PASSWORD),
        **flags,
    )
    db.add(user)
    await db.commit()
    return user


@pytest_asyncio.fixture
async def user(db: AsyncSession) -> User:
    return await make_user(db, "alice", phone="+15550001111")


@pytest_asyncio.fixture
async def other_user(db: AsyncSession) -> User:
    return await make_user(db, "bob")


@pytest_asyncio.fixture
async def organizer(db: AsyncSession) -> User:
    return await make_user(db, "olivia")


@pytest_asyncio.fixture
async def verified_organizer(db: AsyncSession) -> User:
    return await make_user(db, "victor", is_verified_organizer=True)


@pytest_asyncio.fixture
async def admin_user(db: AsyncSession) -> User:
    return await make_user(db, "root", is_admin=True)


# ── Events ────────────────────────────────────────────────────────────────────

async def make_event(
    db: AsyncSession,
    organizer: User,
    status: ApprovalStatus = ApprovalStatus.APPROVED,
    start_at: Optional[datetime] = None,
    tiers: Optional[List[tuple]] = None,
    **fields,
) -> Event:
    """Insert an event directly, bypassing moderation."""
    start_at = start_at or datetime.now(timezone.utc) + timedelta(days=7)
    event = Event(
        organizer_id=organizer.id,
        title=fields.pop("title", "Neighbourhood Garage Sale"),
        description=fields.pop("description", "Bargains on every driveway."),
        location_address=fields.pop("location_address", "12 Elm Street"),
        category=fields.pop("category", EventCategory.GARAGE_SALE),
        start_at=start_at,
        is_free=not tiers,
        approval_status=status,
        **fields,
    )
    event.ticket_tiers = [TicketTier(name=name, price=price) for name, price in (tiers or [])]
    db.add(event)
    await db.commit()
    await db.refresh(event, attribute_names=["organizer", "ticket_tiers"])
    return event


async def make_registration(db: AsyncSession, event: Event, attendee: User, additional_attendees: int = 0) -> Registration:
    """Insert a registration without the confirmation/reminder side effects."""
    registration = Registration(
        event_id=event.id,
        user_id=attendee.id,
        name=attendee.username,
        email=attendee.email,
        phone=attendee.phone,
        additional_attendees=additional_attendees,
    )
    db.add(registration)
    await db.commit()
    return registration


def event_payload(**overrides) -> dict:
    start = datetime.now(timezone.utc) + timedelta(days=14)
    payload = {
        "title": "Saturday Pickup Football",
        "description": "Friendly 5-a-side, all levels welcome.",
        "location_address": "Riverside Park, Pitch 2",
        "category": "SPORTS",
        "start_at": start.isoformat(),
        "end_at": (start + timedelta(hours=2)).isoformat(),
        "is_free": True,
        "ticket_tiers": [],
    }
    payload.update(overrides)
    return payload


@pytest_asyncio.fixture
async def approved_event(db: AsyncSession, organizer: User) -> Event:
    return await make_event(db, organizer)


@pytest_asyncio.fixture
async def pending_event(db: AsyncSession, organizer: User) -> Event:
    return await make_event(db, organizer, status=ApprovalStatus.PENDING, title="Community Pottery Class")
