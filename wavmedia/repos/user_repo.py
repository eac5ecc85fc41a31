from __future__ import annotations

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from wavmedia.models import User


class UserRepo:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, **fields) -> User:
        user = User(**fields)
        self.db.add(user)
        await self.db.flush()
        return user

    async def get(self, user_id: uuid.UUID) -> User | None:
        res = await self.db.execute(select(User).where(User.id == user_id))
        return res.scalar_one_or_none()

    async def get_for_update(self, user_id: uuid.UUID) -> User | None:
        # row lock on postgres; sqlite serialises writers anyway
        res = await self.db.execute(select(User).where(User.id == user_id).with_for_update())
        return res.scalar_one_or_none()
