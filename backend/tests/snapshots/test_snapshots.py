from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.src.contracts.errors import PersistenceError
from backend.src.contracts.models import Plan, PriceSnapshotRow, Product, RawPlanSnapshot
from backend.src.snapshots.repository import SnapshotStore

T0 = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


def _raw(price: float, features: list[str] | None = None) -> RawPlanSnapshot:
    return RawPlanSnapshot(plan_name="Pro", price=price, features=features or [])


class TestSnapshotStore:
    @pytest.mark.asyncio
    async def test_append_updates_plan_cache(
        self,
        db_session: AsyncSession,
        make_product: Callable[..., Awaitable[Product]],
    ) -> None:
        product = await make_product()
        plan_id = product.plans[0].id
        store = SnapshotStore(db_session)

        snapshot = await store.append(plan_id, _raw(8.75, ["Huddles"]), T0)

        assert snapshot.plan_id == plan_id
        assert snapshot.price == 8.75
        assert snapshot.observed_at == T0
        plan = await db_session.get(Plan, plan_id)
        assert plan is not None
        assert plan.current_price == 8.75
        assert plan.features == ["Huddles"]

    @pytest.mark.asyncio
    async def test_history_is_newest_first(
        self,
        db_session: AsyncSession,
        make_product: Callable[..., Awaitable[Product]],
    ) -> None:
        product = await make_product()
        plan_id = product.plans[0].id
        store = SnapshotStore(db_session)
        for minutes, price in ((0, 10.0), (10, 11.0), (20, 12.0)):
            await store.append(plan_id, _raw(price), T0 + timedelta(minutes=minutes))

        history = await store.history(plan_id)
        assert [s.price for s in history] == [12.0, 11.0, 10.0]

        current, previous = await store.latest_two(plan_id)
        assert current is not None and previous is not None
        assert (current.price, previous.price) == (12.0, 11.0)

    @pytest.mark.asyncio
    async def test_observed_at_strictly_increases(
        self,
        db_session: AsyncSession,
        make_product: Callable[..., Awaitable[Product]],
    ) -> None:
        product = await make_product()
        plan_id = product.plans[0].id
        store = SnapshotStore(db_session)

        first = await store.append(plan_id, _raw(10.0), T0)
        second = await store.append(plan_id, _raw(12.0), T0)
        third = await store.append(plan_id, _raw(14.0), T0 - timedelta(hours=1))

        assert first.observed_at < second.observed_at < third.observed_at
        current, previous = await store.latest_two(plan_id)
        assert current is not None and previous is not None
        assert (current.price, previous.price) == (14.0, 12.0)

    @pytest.mark.asyncio
    async def test_latest_two_empty(
        self,
        db_session: AsyncSession,
        make_product: Callable[..., Awaitable[Product]],
    ) -> None:
        product = await make_product()
        current, previous = await SnapshotStore(db_session).latest_two(product.plans[0].id)
        assert current is None
        assert previous is None

    @pytest.mark.asyncio
    async def test_unknown_plan_raises(self, db_session: AsyncSession) -> None:
        with pytest.raises(PersistenceError):
            await SnapshotStore(db_session).append(uuid.uuid4(), _raw(10.0), T0)

    @pytest.mark.asyncio
    async def test_append_never_rewrites_existing_rows(
        self,
        db_session: AsyncSession,
        make_product: Callable[..., Awaitable[Product]],
    ) -> None:
        product = await make_product()
        plan_id = product.plans[0].id
        store = SnapshotStore(db_session)
        await store.append(plan_id, _raw(10.0), T0)
        await store.append(plan_id, _raw(10.0), T0 + timedelta(minutes=1))

        count = await db_session.scalar(
            select(func.count()).select_from(PriceSnapshotRow).where(
                PriceSnapshotRow.plan_id == plan_id
            )
        )
        assert count == 2
