from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from backend.src.contracts.models import (
    ChangeDirection,
    ChangeStatus,
    Product,
    RawPlanSnapshot,
    Snapshot,
)
from backend.src.differ.differ import ChangeDetector, compare
from backend.src.snapshots.repository import SnapshotStore

T0 = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


def _snapshot(plan_id: uuid.UUID, price: float, minutes: int = 0) -> Snapshot:
    return Snapshot(
        id=uuid.uuid4(),
        plan_id=plan_id,
        price=price,
        currency="USD",
        features=[],
        source="web_scraping",
        observed_at=T0 + timedelta(minutes=minutes),
    )


# ── compare() ─────────────────────────────────────────────────────────────────


class TestCompare:
    def test_no_previous_is_no_history(self) -> None:
        plan_id = uuid.uuid4()
        result = compare(plan_id, _snapshot(plan_id, 10.0), None)
        assert result.status == ChangeStatus.NO_HISTORY
        assert result.changed is False
        assert result.old_price is None

    def test_no_snapshots_is_no_history(self) -> None:
        result = compare(uuid.uuid4(), None, None)
        assert result.status == ChangeStatus.NO_HISTORY

    def test_equal_price_is_no_change(self) -> None:
        plan_id = uuid.uuid4()
        result = compare(plan_id, _snapshot(plan_id, 10.0, 5), _snapshot(plan_id, 10.0))
        assert result.status == ChangeStatus.NO_CHANGE
        assert result.delta_abs == 0.0
        assert result.direction is None

    def test_increase(self) -> None:
        plan_id = uuid.uuid4()
        result = compare(plan_id, _snapshot(plan_id, 12.0, 5), _snapshot(plan_id, 10.0))
        assert result.status == ChangeStatus.CHANGED
        assert result.direction == ChangeDirection.INCREASE
        assert result.old_price == 10.0
        assert result.new_price == 12.0
        assert result.delta_abs == 2.0
        assert result.delta_percent == 20.0

    def test_decrease(self) -> None:
        plan_id = uuid.uuid4()
        result = compare(plan_id, _snapshot(plan_id, 7.5, 5), _snapshot(plan_id, 10.0))
        assert result.direction == ChangeDirection.DECREASE
        assert result.delta_abs == -2.5
        assert result.delta_percent == -25.0

    def test_from_zero_has_no_percent(self) -> None:
        plan_id = uuid.uuid4()
        result = compare(plan_id, _snapshot(plan_id, 5.0, 5), _snapshot(plan_id, 0.0))
        assert result.status == ChangeStatus.CHANGED
        assert result.direction == ChangeDirection.INCREASE
        assert result.delta_abs == 5.0
        assert result.delta_percent is None

    def test_to_zero(self) -> None:
        plan_id = uuid.uuid4()
        result = compare(plan_id, _snapshot(plan_id, 0.0, 5), _snapshot(plan_id, 8.0))
        assert result.direction == ChangeDirection.DECREASE
        assert result.delta_percent == -100.0

    def test_percent_is_rounded(self) -> None:
        plan_id = uuid.uuid4()
        result = compare(plan_id, _snapshot(plan_id, 10.0, 5), _snapshot(plan_id, 3.0))
        assert result.delta_percent == 233.33


# ── ChangeDetector ────────────────────────────────────────────────────────────


class TestChangeDetector:
    @pytest.mark.asyncio
    async def test_first_observation_is_no_history(
        self,
        db_session: AsyncSession,
        make_product: Callable[..., Awaitable[Product]],
    ) -> None:
        product = await make_product()
        plan_id = product.plans[0].id
        store = SnapshotStore(db_session)
        await store.append(plan_id, RawPlanSnapshot(plan_name="Pro", price=10.0), T0)

        result = await ChangeDetector(store).detect(plan_id)
        assert result.status == ChangeStatus.NO_HISTORY

    @pytest.mark.asyncio
    async def test_compares_only_latest_two(
        self,
        db_session: AsyncSession,
        make_product: Callable[..., Awaitable[Product]],
    ) -> None:
        product = await make_product()
        plan_id = product.plans[0].id
        store = SnapshotStore(db_session)
        for minutes, price in ((0, 5.0), (10, 10.0), (20, 12.0)):
            await store.append(
                plan_id,
                RawPlanSnapshot(plan_name="Pro", price=price),
                T0 + timedelta(minutes=minutes),
            )

        result = await ChangeDetector(store).detect(plan_id)
        assert result.status == ChangeStatus.CHANGED
        assert result.old_price == 10.0
        assert result.new_price == 12.0
        assert result.delta_percent == 20.0
