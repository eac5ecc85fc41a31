from __future__ import annotations

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from wavmedia.models import Notification


class NotificationRepo:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        *,
        user_id: uuid.UUID,
        type: str,
        title: str,
        message: str,
        metadata: dict | None = None,
    ) -> Notification:
        row = Notification(
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            metadata_json=metadata,
        )
        self.db.add(row)
        await self.db.flush()
        return row

    async def list_for_user(self, user_id: uuid.UUID, *, type: str | None = None) -> list[Notification]:
        stmt = select(Notification).where(Notification.user_id == user_id)
        if type is not None:
            stmt = stmt.where(Notification.type == type)
        res = await self.db.execute(stmt.order_by(Notification.created_at.asc()))
        return list(res.scalars().all())
