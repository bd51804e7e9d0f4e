"""
Test configuration and fixtures.
Uses SQLite in-memory for fast tests. Mocks the push gateway, Redis and alerting.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("PUSH_GATEWAY_URL", "https://push.example.test/v1/send")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("ALERT_WEBHOOK_URL", "")

import itertools
import uuid
from datetime import datetime, timezone
from typing import Optional

import pytest
from unittest.mock import AsyncMock, patch
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB

from src.config import get_settings
from src.database import Base
from src.models import AppUser, DeviceToken, NotificationLog

get_settings.cache_clear()

FIXED_NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


@pytest.fixture
async def db():
    """In-memory SQLite database for tests."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session
    await engine.dispose()


@pytest.fixture
def now():
    return FIXED_NOW


@pytest.fixture
def make_user(db):
    """Factory: create an app user with `tokens` active device tokens."""
    counter = itertools.count(1)

    async def _make(
        tokens: int = 1,
        plan: str = "free",
        country: Optional[str] = "BO",
        is_active: bool = True,
        push_enabled: bool = True,
        marketing_opt_in: bool = True,
        reminder_opt_in: bool = True,
        transaction_opt_in: bool = True,
        subscription_expires_at: Optional[datetime] = None,
        inactive_tokens: int = 0,
    ) -> AppUser:
        n = next(counter)
        user = AppUser(
            id=uuid.uuid4(),
            email=f"user{n}@example.com",
            plan=plan,
            country=country,
            is_active=is_active,
            push_enabled=push_enabled,
            marketing_opt_in=marketing_opt_in,
            reminder_opt_in=reminder_opt_in,
            transaction_opt_in=transaction_opt_in,
            subscription_expires_at=subscription_expires_at,
        )
        db.add(user)
        for i in range(tokens):
            db.add(DeviceToken(user_id=user.id, token=f"ExponentPushToken[u{n}-t{i}]", platform="android"))
        for i in range(inactive_tokens):
            db.add(DeviceToken(
                user_id=user.id, token=f"ExponentPushToken[u{n}-old{i}]", platform="ios", is_active=False,
            ))
        await db.flush()
        return user

    return _make


@pytest.fixture
def make_log(db):
    """Factory: insert a notification log row directly."""

    async def _make(**fields) -> NotificationLog:
        values = {
            "type": "system",
            "title": "Hello",
            "body": "World",
            "status": "sent",
            "sent_at": FIXED_NOW,
        }
        values.update(fields)
        log = NotificationLog(**values)
        db.add(log)
        await db.flush()
        return log

    return _make


@pytest.fixture
def mock_push():
    """Mock for async send_push - every token is accepted with a unique delivery id."""
    counter = itertools.count(1)

    async def _accept(token, title, body, data=None, client=None):
        return {"delivery_id": f"dlv_{next(counter)}", "error": None, "error_type": None}

    with patch("src.services.push.send_push", new_callable=AsyncMock) as mock:
        mock.side_effect = _accept
        yield mock


@pytest.fixture
def mock_redis():
    """Mock for async Redis - prevents real Redis calls in tests."""
    with patch("src.utils.cache.get_redis", new_callable=AsyncMock) as mock:
        redis_mock = AsyncMock()
        redis_mock.get = AsyncMock(return_value=None)
        redis_mock.set = AsyncMock(return_value=True)
        redis_mock.ping = AsyncMock(return_value=True)
        mock.return_value = redis_mock
        yield redis_mock


@pytest.fixture
def mock_alert():
    """Mock for send_alert as used by the scheduler cycle."""
    with patch("src.services.cron_health.send_alert", new_callable=AsyncMock) as mock:
        mock.return_value = True
        yield mock
