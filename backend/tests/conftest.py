from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable, Sequence
from datetime import datetime

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from backend.src.config import Settings
from backend.src.contracts.models import (
    Base,
    NotificationPreferences,
    Plan,
    Product,
    TrackedSubscription,
    User,
)
from backend.src.users.repository import UserRepository

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


# ── Database (in-memory SQLite) ───────────────────────────────────────────────


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    # StaticPool so every session sees the same in-memory database
    engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture()
def test_settings() -> Settings:
    return Settings(
        database_url=TEST_DATABASE_URL,
        admin_api_key="test-admin-key",
        resend_api_key="re_test_key",
        frontend_url="https://pricewatch.test",
        max_concurrent_extractions=1,
        scrape_max_attempts=3,
        scrape_retry_base_delay_seconds=0,
        scrape_delay_min_ms=0,
        scrape_delay_max_ms=0,
        extraction_timeout_seconds=5.0,
    )


# ── Row factories ─────────────────────────────────────────────────────────────


@pytest.fixture()
def make_product(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[Product]]:
    async def _make(
        slug: str = "slack",
        name: str = "Slack",
        plans: Sequence[str] = ("Pro",),
        *,
        last_extracted_at: datetime | None = None,
        is_active: bool = True,
        plans_active: bool = True,
    ) -> Product:
        async with session_factory() as session:
            product = Product(
                id=uuid.uuid4(),
                slug=slug,
                name=name,
                source_url=f"https://{slug}.example.com/pricing",
                is_active=is_active,
                last_extracted_at=last_extracted_at,
            )
            product.plans = [
                Plan(id=uuid.uuid4(), name=plan_name, is_active=plans_active)
                for plan_name in plans
            ]
            session.add(product)
            await session.commit()
            return product

    return _make


@pytest.fixture()
def make_user(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[User]]:
    async def _make(
        email: str = "user@example.com",
        preferences: NotificationPreferences | None = None,
    ) -> User:
        async with session_factory() as session:
            user = await UserRepository(session).create(email, preferences=preferences)
            await session.commit()
            return user

    return _make


@pytest.fixture()
def make_subscription(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[TrackedSubscription]]:
    async def _make(
        user_id: uuid.UUID,
        plan_id: uuid.UUID,
        **fields: object,
    ) -> TrackedSubscription:
        async with session_factory() as session:
            subscription = TrackedSubscription(
                id=uuid.uuid4(),
                user_id=user_id,
                plan_id=plan_id,
                alert_on_increase=True,
                alert_on_decrease=True,
                alert_on_new_features=False,
                is_active=True,
            )
            for key, value in fields.items():
                setattr(subscription, key, value)
            session.add(subscription)
            await session.commit()
            return subscription

    return _make
