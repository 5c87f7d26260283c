#!/usr/bin/env python3
"""
Shared pytest fixtures: a throwaway SQLite database per test, an in-memory
session store, a recording notifier and an ASGI client wired to all three.
"""

import os
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal

# Add the project root to Python path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

# Settings are read at import time, so the test environment goes in first
os.environ.update({
    'APP_ENV': 'testing',
    'DATABASE_URL': 'sqlite+aiosqlite:///:memory:',
    'REDIS_URL': '',
    'ADMIN_KEY': 'test_admin_key',
    'TWILIO_AUTH_TOKEN': '',
    'TWILIO_PHONE_NUMBER': '+15551234567',
    'SENDGRID_API_KEY': '',
    'PUBLIC_BASE_URL': '',
})

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import app.db.base  # noqa: F401  registers every model on Base.metadata
from app.core.config import settings
from app.db.models.account import Account, Plan
from app.db.session import Base, get_session
from app.services.billing import BillingEngine
from app.services.call_flow import CallFlow
from app.services.notifications import LogNotifier, get_notifier
from app.services.otp import OtpService
from app.services.redis_session import MemorySessionStore, get_session_store

CALLER = "+14165551234"
PIN = "123456"
ADMIN_HEADERS = {"X-Admin-Key": "test_admin_key"}


class FakeClock:
    """Wall clock the tests can move forward."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'teld_test.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def store():
    return MemorySessionStore()


@pytest.fixture
def notifier():
    return LogNotifier()


@pytest.fixture
def make_account(session_factory, clock):
    """Insert an account with a known PIN and plans given as (name, minutes, days_left)."""

    async def _make(phone=CALLER, email="caller@example.com", pin=PIN,
                    wallet="0", plans=()):
        async with session_factory() as session:
            account = Account(
                phone=phone,
                email=email,
                pin=pin,
                referral_code=f"R{phone[-5:]}",
                wallet_balance=Decimal(wallet),
                total_minutes_used=Decimal("0"),
                created_at=clock(),
            )
            account.plans = [
                Plan(
                    name=name,
                    minutes_granted=Decimal(minutes),
                    minutes_remaining=Decimal(minutes),
                    purchased_at=clock(),
                    expires_at=clock() + timedelta(days=days),
                )
                for name, minutes, days in plans
            ]
            session.add(account)
            await session.commit()
            return account.id

    return _make


@pytest.fixture
def billing(notifier, clock):
    return BillingEngine(rate=Decimal("0.10"), notifier=notifier, clock=clock, max_retries=2)


@pytest.fixture
def flow(db, store, notifier, billing, clock):
    return CallFlow(
        db=db,
        store=store,
        notifier=notifier,
        otp=OtpService(store, ttl_seconds=settings.OTP_TTL, clock=clock),
        billing=billing,
        config=settings,
        clock=clock,
    )


@pytest_asyncio.fixture
async def client(session_factory, store, notifier):
    from app.main import app
    from app.api.routes.twilio import get_billing_engine

    async def _session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = _session
    app.dependency_overrides[get_session_store] = lambda: store
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_billing_engine] = lambda: BillingEngine(
        rate=Decimal("0.10"), notifier=notifier, max_retries=0,
    )

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c
    app.dependency_overrides.clear()


def last_otp(notifier: LogNotifier) -> str:
    """Pull the code out of the most recent OTP email."""
    for _, subject, context in reversed(notifier.sent):
        if subject == "Your OTP Code":
            return context["message"].split("OTP: ", 1)[1]
    raise AssertionError("no OTP email sent")
