from __future__ import annotations

import uuid

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.src.contracts.models import TrackedSubscription

logger = structlog.get_logger(__name__)


class SubscriptionIndex:
    """Who is tracking a plan, and what they want to hear about.

    Always reads through to the database so opt-outs take effect on the
    very next change.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def subscribers_for(self, plan_id: uuid.UUID) -> list[TrackedSubscription]:
        stmt = (
            select(TrackedSubscription)
            .where(
                TrackedSubscription.plan_id == plan_id,
                TrackedSubscription.is_active.is_(True),
            )
            .order_by(TrackedSubscription.created_at, TrackedSubscription.id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def get(self, user_id: uuid.UUID, plan_id: uuid.UUID) -> TrackedSubscription | None:
        stmt = select(TrackedSubscription).where(
            TrackedSubscription.user_id == user_id,
            TrackedSubscription.plan_id == plan_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def track(
        self,
        user_id: uuid.UUID,
        plan_id: uuid.UUID,
        *,
        alert_on_increase: bool = True,
        alert_on_decrease: bool = True,
        alert_on_new_features: bool = False,
        target_price: float | None = None,
    ) -> TrackedSubscription:
        """Create a subscription, or re-activate and update an untracked one."""
        subscription = await self.get(user_id, plan_id)
        if subscription is None:
            subscription = TrackedSubscription(
                id=uuid.uuid4(),
                user_id=user_id,
                plan_id=plan_id,
            )
            self._session.add(subscription)

        subscription.alert_on_increase = alert_on_increase
        subscription.alert_on_decrease = alert_on_decrease
        subscription.alert_on_new_features = alert_on_new_features
        subscription.target_price = target_price
        subscription.is_active = True
        await self._session.flush()

        logger.info("plan_tracked", user_id=str(user_id), plan_id=str(plan_id))
        return subscription

    async def untrack(self, user_id: uuid.UUID, plan_id: uuid.UUID) -> bool:
        """Soft-delete; the row stays because alerts may reference it."""
        subscription = await self.get(user_id, plan_id)
        if subscription is None or not subscription.is_active:
            return False
        subscription.is_active = False
        await self._session.flush()

        logger.info("plan_untracked", user_id=str(user_id), plan_id=str(plan_id))
        return True
