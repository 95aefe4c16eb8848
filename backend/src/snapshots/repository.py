from __future__ import annotations

import uuid
from datetime import datetime, timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.src.contracts.errors import PersistenceError
from backend.src.contracts.models import (
    Plan,
    PriceSnapshotRow,
    RawPlanSnapshot,
    Snapshot,
    as_utc,
    utcnow,
)

logger = structlog.get_logger(__name__)

_MIN_TICK = timedelta(microseconds=1)


class SnapshotStore:
    """Append-only price history per plan.

    ``append`` is the only write path. It inserts the snapshot and refreshes
    the plan's cached price and features in the same session, so both land
    in the caller's commit together.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def _latest_rows(self, plan_id: uuid.UUID, limit: int) -> list[PriceSnapshotRow]:
        stmt = (
            select(PriceSnapshotRow)
            .where(PriceSnapshotRow.plan_id == plan_id)
            .order_by(PriceSnapshotRow.observed_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def append(
        self,
        plan_id: uuid.UUID,
        raw: RawPlanSnapshot,
        observed_at: datetime | None = None,
    ) -> Snapshot:
        log = logger.bind(plan_id=str(plan_id))
        try:
            plan = await self._session.get(Plan, plan_id)
            if plan is None:
                raise PersistenceError(f"Plan {plan_id} not found")

            observed = as_utc(observed_at) if observed_at is not None else utcnow()
            latest = await self._latest_rows(plan_id, limit=1)
            if latest:
                previous_at = as_utc(latest[0].observed_at)
                if observed <= previous_at:
                    # Keep the per-plan series strictly ordered even if the clock stalls.
                    observed = previous_at + _MIN_TICK

            row = PriceSnapshotRow(
                id=uuid.uuid4(),
                plan_id=plan_id,
                price=raw.price,
                currency=raw.currency,
                features=list(raw.features),
                source=raw.source,
                observed_at=observed,
            )
            self._session.add(row)

            plan.current_price = raw.price
            plan.currency = raw.currency
            plan.features = list(raw.features)

            await self._session.flush()
        except SQLAlchemyError as exc:
            log.error("snapshot_append_failed", error=str(exc))
            raise PersistenceError(f"Could not store snapshot for plan {plan_id}") from exc

        log.info("snapshot_appended", price=raw.price, currency=raw.currency)
        return row.to_schema()

    async def latest_two(
        self, plan_id: uuid.UUID
    ) -> tuple[Snapshot | None, Snapshot | None]:
        rows = await self._latest_rows(plan_id, limit=2)
        snapshots = [row.to_schema() for row in rows]
        current = snapshots[0] if snapshots else None
        previous = snapshots[1] if len(snapshots) > 1 else None
        return current, previous

    async def history(self, plan_id: uuid.UUID, limit: int = 100) -> list[Snapshot]:
        rows = await self._latest_rows(plan_id, limit=limit)
        return [row.to_schema() for row in rows]
