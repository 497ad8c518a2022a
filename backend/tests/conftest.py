"""Shared test fixtures for all test groups."""

import os

# Must be set before hookly.core.config.get_settings() is first called
WEBHOOK_SECRET = "whsec_hookly_test"
os.environ["LEMONSQUEEZY_WEBHOOK_SECRET"] = WEBHOOK_SECRET
os.environ["METRICS_ENABLED"] = "false"
os.environ.setdefault("DEBUG", "false")

import json

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from hookly.core.config import Settings, get_settings
from hookly.core.signatures import compute_signature
from hookly.db.base import Base
from hookly.db.repository import SqlAlchemyBillingRepository
from hookly.domain.plans import Plan
from hookly.services.billing import build_billing_services

get_settings.cache_clear()


class FakeAnalytics:
    """AnalyticsPort double that records conversions in memory."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.conversions: list[dict] = []

    async def record_conversion(self, user_id, from_plan, to_plan, amount, source):
        if self.fail:
            raise ConnectionError("analytics backend unavailable")
        self.conversions.append({
            "user_id": user_id,
            "from_plan": from_plan,
            "to_plan": to_plan,
            "amount": amount,
            "source": source,
        })


@pytest.fixture
def db_url(tmp_path) -> str:
    """SQLite file per test; TEST_DATABASE_URL points the suite at Postgres instead."""
    return os.getenv("TEST_DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'hookly_test.db'}")


@pytest.fixture
async def engine(db_url) -> AsyncEngine:
    """Create the test engine and tables, and set the global session factory.

    Routes call get_session_factory(); in-process AsyncClient tests share this
    event loop, so the globals point at this engine for the test's duration.
    """
    import hookly.db.base as db_mod
    import hookly.db.models  # noqa: F401

    engine = create_async_engine(db_url, echo=False, **db_mod._engine_kwargs(db_url))
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    db_mod._engine = engine
    db_mod._session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    db_mod._engine = None
    db_mod._session_factory = None
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def repository(session_factory) -> SqlAlchemyBillingRepository:
    return SqlAlchemyBillingRepository(session_factory)


@pytest.fixture
def analytics() -> FakeAnalytics:
    return FakeAnalytics()


@pytest.fixture
def failing_analytics() -> FakeAnalytics:
    return FakeAnalytics(fail=True)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        lemonsqueezy_webhook_secret=WEBHOOK_SECRET,
        metrics_enabled=False,
        webhook_max_attempts=3,
    )


@pytest.fixture
def services(session_factory, test_settings, analytics):
    """Fully wired billing services with in-memory analytics."""
    return build_billing_services(session_factory, test_settings, analytics=analytics)


@pytest.fixture
def make_account(repository):
    """Factory: create an account, optionally with usage already on it."""

    async def _make(user_id="user_1", email="owner@example.com", plan=Plan.TRIAL, usage_count=0):
        account = await repository.create_account(user_id, email, plan)
        if usage_count:
            account.usage_count = usage_count
            account = await repository.save_account_state(account)
        return account

    return _make


@pytest.fixture
def make_event():
    """Factory: LemonSqueezy-shaped webhook payload dict."""

    def _make(
        event_name: str = "subscription_created",
        *,
        data_id: str = "sub_001",
        status: str = "active",
        email: str = "owner@example.com",
        user_id: str | None = "user_1",
        product_name: str | None = None,
        variant_name: str | None = None,
        custom_plan: str | None = None,
        updated_at: str | None = "2026-10-01T12:00:00.000000Z",
    ) -> dict:
        custom_data = {}
        if user_id is not None:
            custom_data["user_id"] = user_id
        if custom_plan is not None:
            custom_data["plan"] = custom_plan

        attributes = {"status": status, "user_email": email}
        if product_name is not None:
            attributes["product_name"] = product_name
        if variant_name is not None:
            attributes["variant_name"] = variant_name
        if updated_at is not None:
            attributes["updated_at"] = updated_at

        return {
            "meta": {"event_name": event_name, "custom_data": custom_data},
            "data": {"type": "subscriptions", "id": data_id, "attributes": attributes},
        }

    return _make


def sign(payload: dict, secret: str = WEBHOOK_SECRET) -> tuple[bytes, str]:
    """Serialize payload and return (raw_body, hex signature)."""
    raw = json.dumps(payload).encode("utf-8")
    return raw, compute_signature(raw, secret)


@pytest.fixture
def signed():
    return sign

