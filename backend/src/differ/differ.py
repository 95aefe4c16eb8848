from __future__ import annotations

import uuid

import structlog

from backend.src.contracts.models import (
    ChangeDirection,
    ChangeResult,
    ChangeStatus,
    Snapshot,
)
from backend.src.snapshots.repository import SnapshotStore

logger = structlog.get_logger(__name__)


def compare(
    plan_id: uuid.UUID,
    current: Snapshot | None,
    previous: Snapshot | None,
) -> ChangeResult:
    """Classify the delta between the two most recent snapshots of a plan.

    Prices are compared exactly as stored. ``delta_percent`` is None when
    the old price is zero, since no meaningful percentage exists.
    """
    if current is None or previous is None:
        return ChangeResult(plan_id=plan_id, status=ChangeStatus.NO_HISTORY)

    old_price = previous.price
    new_price = current.price
    if new_price == old_price:
        return ChangeResult(
            plan_id=plan_id,
            status=ChangeStatus.NO_CHANGE,
            old_price=old_price,
            new_price=new_price,
            delta_abs=0.0,
            delta_percent=0.0,
        )

    delta_abs = round(new_price - old_price, 2)
    delta_percent = (
        round((new_price - old_price) / old_price * 100.0, 2) if old_price != 0 else None
    )
    direction = (
        ChangeDirection.INCREASE if new_price > old_price else ChangeDirection.DECREASE
    )
    return ChangeResult(
        plan_id=plan_id,
        status=ChangeStatus.CHANGED,
        old_price=old_price,
        new_price=new_price,
        delta_abs=delta_abs,
        delta_percent=delta_percent,
        direction=direction,
    )


class ChangeDetector:
    """Compares a plan's newest snapshot with the one immediately before it."""

    def __init__(self, store: SnapshotStore) -> None:
        self._store = store

    async def detect(self, plan_id: uuid.UUID) -> ChangeResult:
        current, previous = await self._store.latest_two(plan_id)
        result = compare(plan_id, current, previous)

        if result.changed:
            logger.info(
                "price_change_detected",
                plan_id=str(plan_id),
                old_price=result.old_price,
                new_price=result.new_price,
                delta_percent=result.delta_percent,
                direction=result.direction.value if result.direction else None,
            )
        else:
            logger.debug("no_price_change", plan_id=str(plan_id), status=result.status.value)
        return result
