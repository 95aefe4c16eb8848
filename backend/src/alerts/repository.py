from __future__ import annotations

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.src.contracts.models import PriceAlert


class AlertRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add_many(self, alerts: list[PriceAlert]) -> list[PriceAlert]:
        self._session.add_all(alerts)
        await self._session.flush()
        return alerts

    async def list_for_plan(self, plan_id: uuid.UUID) -> list[PriceAlert]:
        stmt = select(PriceAlert).where(PriceAlert.plan_id == plan_id)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())
