from __future__ import annotations

import uuid
from datetime import datetime, timedelta

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from backend.src.contracts.models import ExtractionStatus, Plan, Product


class ProductRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_due(
        self, now: datetime, staleness: timedelta, limit: int
    ) -> list[Product]:
        """Active products with at least one active plan not attempted within ``staleness``.

        A failed run stamps ``last_attempted_at`` too, so a product that keeps
        failing waits out the window like any other and cannot hold the head
        of the queue. Ordering is deterministic (never attempted first, then
        least recently attempted, then slug) so repeated calls with no
        intervening run agree.
        """
        cutoff = now - staleness
        has_active_plan = (
            select(Plan.id)
            .where(Plan.product_id == Product.id, Plan.is_active.is_(True))
            .exists()
        )
        stmt = (
            select(Product)
            .options(selectinload(Product.plans))
            .where(
                Product.is_active.is_(True),
                has_active_plan,
                or_(
                    Product.last_extracted_at.is_(None),
                    Product.last_extracted_at < cutoff,
                ),
                or_(
                    Product.last_attempted_at.is_(None),
                    Product.last_attempted_at < cutoff,
                ),
            )
            .order_by(
                Product.last_attempted_at.is_(None).desc(),
                Product.last_attempted_at.asc(),
                Product.last_extracted_at.is_(None).desc(),
                Product.last_extracted_at.asc(),
                Product.slug.asc(),
            )
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def get_by_slug(self, slug: str) -> Product | None:
        stmt = (
            select(Product)
            .options(selectinload(Product.plans))
            .where(Product.slug == slug)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def set_status(
        self,
        product_id: uuid.UUID,
        status: ExtractionStatus,
        *,
        extracted_at: datetime | None = None,
        attempted_at: datetime | None = None,
        error: str | None = None,
    ) -> None:
        product = await self._session.get(Product, product_id)
        if product is None:
            raise ValueError(f"Product {product_id} not found")
        product.extraction_status = status
        product.last_error = error
        if extracted_at is not None:
            product.last_extracted_at = extracted_at
        if attempted_at is not None:
            product.last_attempted_at = attempted_at
        await self._session.flush()
