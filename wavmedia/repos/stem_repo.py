from __future__ import annotations

import uuid

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from wavmedia.models import Stem


class StemRepo:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        *,
        track_id: uuid.UUID,
        index: int,
        name: str,
        type: str = "audio",
        **fields,
    ) -> Stem:
        stem = Stem(track_id=track_id, index=index, name=name, type=type, **fields)
        self.db.add(stem)
        await self.db.flush()
        return stem

    async def get(self, stem_id: uuid.UUID, *, for_update: bool = False) -> Stem | None:
        stmt = select(Stem).where(Stem.id == stem_id)
        if for_update:
            stmt = stmt.with_for_update()
        res = await self.db.execute(stmt)
        return res.scalar_one_or_none()

    async def list_for_track(self, track_id: uuid.UUID) -> list[Stem]:
        res = await self.db.execute(
            select(Stem).where(Stem.track_id == track_id).order_by(Stem.index.asc())
        )
        return list(res.scalars().all())

    async def next_index(self, track_id: uuid.UUID) -> int:
        res = await self.db.execute(select(func.max(Stem.index)).where(Stem.track_id == track_id))
        current = res.scalar_one_or_none()
        return 0 if current is None else int(current) + 1
