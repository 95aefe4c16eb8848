from __future__ import annotations

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.src.contracts.models import NotificationPreferences, User


class UserRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, user_id: uuid.UUID) -> User | None:
        stmt = select(User).where(User.id == user_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(
        self,
        email: str,
        name: str | None = None,
        preferences: NotificationPreferences | None = None,
    ) -> User:
        user = User(
            id=uuid.uuid4(),
            email=email,
            name=name,
            notification_preferences=(preferences or NotificationPreferences()).model_dump(),
        )
        self._session.add(user)
        await self._session.flush()
        return user
