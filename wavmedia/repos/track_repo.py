from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import and_, delete, exists, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from wavmedia.models import Stem, Track
from wavmedia.models.enums import MODULE_FORMATS, TrackStatus


class TrackRepo:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, **fields) -> Track:
        track = Track(**fields)
        self.db.add(track)
        await self.db.flush()  # assign track.id
        return track

    async def get(self, track_id: uuid.UUID, *, for_update: bool = False) -> Track | None:
        """``for_update`` locks the row until the transaction ends (commit-time re-reads)."""
        stmt = select(Track).where(Track.id == track_id)
        if for_update:
            stmt = stmt.with_for_update()
        res = await self.db.execute(stmt)
        return res.scalar_one_or_none()

    async def get_with_stems(self, track_id: uuid.UUID, *, for_update: bool = False) -> Track | None:
        stmt = select(Track).options(selectinload(Track.stems)).where(Track.id == track_id)
        if for_update:
            stmt = stmt.with_for_update(of=Track)
        res = await self.db.execute(stmt)
        return res.scalar_one_or_none()

    async def list_pending_deletion(self, track_ids: list[uuid.UUID]) -> list[Track]:
        if not track_ids:
            return []
        res = await self.db.execute(
            select(Track)
            .options(selectinload(Track.stems))
            .where(Track.id.in_(track_ids), Track.status == TrackStatus.PENDING_DELETION)
        )
        return list(res.scalars().all())

    async def delete_tracks(self, track_ids: list[uuid.UUID]) -> int:
        if not track_ids:
            return 0
        await self.db.execute(delete(Stem).where(Stem.track_id.in_(track_ids)))
        res = await self.db.execute(delete(Track).where(Track.id.in_(track_ids)))
        await self.db.flush()
        return res.rowcount or 0

    async def count_url_references(
        self,
        url: str,
        *,
        exclude_track_ids: list[uuid.UUID] | None = None,
        exclude_stem_ids: list[uuid.UUID] | None = None,
    ) -> int:
        """How many other tracks/stems point at ``url`` (forks share their upstream files)."""
        track_q = select(func.count()).select_from(Track).where(
            or_(
                Track.original_url == url,
                Track.cover_art_url == url,
                Track.full_track_wav_url == url,
                Track.full_track_mp3_url == url,
                Track.full_track_flac_url == url,
            )
        )
        if exclude_track_ids:
            track_q = track_q.where(Track.id.not_in(exclude_track_ids))

        stem_q = select(func.count()).select_from(Stem).where(
            or_(Stem.wav_url == url, Stem.mp3_url == url, Stem.flac_url == url)
        )
        if exclude_stem_ids:
            stem_q = stem_q.where(Stem.id.not_in(exclude_stem_ids))

        tracks = (await self.db.execute(track_q)).scalar_one()
        stems = (await self.db.execute(stem_q)).scalar_one()
        return int(tracks) + int(stems)

    async def find_cleanup_candidates(self, *, threshold: datetime, limit: int) -> list[Track]:
        """Tracks owning at least one reclaimable WAV/FLAC rendition requested before ``threshold``.

        WAV is reclaimable on non-fork module tracks or wherever FLAC is the
        lossless source; FLAC only on non-fork module tracks, where it can be
        re-rendered from the module.
        """
        module_origin = and_(Track.original_format.in_(sorted(MODULE_FORMATS)), Track.is_fork.is_(False))

        track_wav = and_(
            Track.full_track_wav_url.is_not(None),
            Track.wav_last_requested_at.is_not(None),
            Track.wav_last_requested_at < threshold,
            or_(module_origin, Track.is_flac_source.is_(True)),
        )
        track_flac = and_(
            Track.full_track_flac_url.is_not(None),
            Track.flac_last_requested_at.is_not(None),
            Track.flac_last_requested_at < threshold,
            Track.is_flac_source.is_(False),
            module_origin,
        )
        stem_wav = exists().where(
            Stem.track_id == Track.id,
            Stem.wav_url.is_not(None),
            Stem.wav_last_requested_at.is_not(None),
            Stem.wav_last_requested_at < threshold,
            or_(module_origin, Stem.is_flac_source.is_(True)),
        )
        stem_flac = exists().where(
            Stem.track_id == Track.id,
            Stem.flac_url.is_not(None),
            Stem.flac_last_requested_at.is_not(None),
            Stem.flac_last_requested_at < threshold,
            Stem.is_flac_source.is_(False),
            module_origin,
        )

        res = await self.db.execute(
            select(Track)
            .options(selectinload(Track.stems))
            .where(
                Track.status == TrackStatus.ACTIVE,
                or_(track_wav, track_flac, stem_wav, stem_flac),
            )
            .order_by(Track.created_at.asc(), Track.id.asc())
            .limit(limit)
        )
        return list(res.scalars().all())
