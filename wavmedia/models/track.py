from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from wavmedia.models.base import Base, JSONType
from wavmedia.models.enums import (
    AudioFormat,
    ConversionStatus,
    SourceFormat,
    TrackStatus,
    check_transition,
)


def _status_column() -> Mapped[ConversionStatus]:
    return mapped_column(
        Enum(ConversionStatus, name="conversion_status"),
        nullable=False,
        default=ConversionStatus.NOT_STARTED,
    )


class RenditionColumns:
    """Columns and helpers shared by tracks (full mix) and stems.

    WAV and FLAC renditions may be derived on demand and reclaimed later; the
    MP3 rendition is durable.
    """

    mp3_size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    wav_size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    flac_size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    wav_conversion_status: Mapped[ConversionStatus] = _status_column()
    flac_conversion_status: Mapped[ConversionStatus] = _status_column()
    wav_created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    wav_last_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    flac_created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    flac_last_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    waveform_data: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    duration: Mapped[float | None] = mapped_column(Float, nullable=True)

    # FLAC was produced from user-supplied audio and is the lossless source of truth
    is_flac_source: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # ---- per-format accessors; subclasses map the url columns ----

    def rendition_url(self, fmt: AudioFormat) -> str | None:
        raise NotImplementedError

    def _assign_url(self, fmt: AudioFormat, url: str | None) -> None:
        raise NotImplementedError

    def conversion_status(self, fmt: AudioFormat) -> ConversionStatus:
        if fmt is AudioFormat.WAV:
            return self.wav_conversion_status or ConversionStatus.NOT_STARTED
        if fmt is AudioFormat.FLAC:
            return self.flac_conversion_status or ConversionStatus.NOT_STARTED
        raise ValueError(f"{fmt.value} renditions have no conversion status")

    def set_conversion_status(self, fmt: AudioFormat, status: ConversionStatus) -> None:
        check_transition(self.conversion_status(fmt), status)
        if fmt is AudioFormat.WAV:
            self.wav_conversion_status = status
        elif fmt is AudioFormat.FLAC:
            self.flac_conversion_status = status
        else:
            raise ValueError(f"{fmt.value} renditions have no conversion status")

    def size_bytes(self, fmt: AudioFormat) -> int | None:
        if fmt is AudioFormat.WAV:
            return self.wav_size_bytes
        if fmt is AudioFormat.FLAC:
            return self.flac_size_bytes
        return self.mp3_size_bytes

    def last_requested_at(self, fmt: AudioFormat) -> datetime | None:
        if fmt is AudioFormat.WAV:
            return self.wav_last_requested_at
        if fmt is AudioFormat.FLAC:
            return self.flac_last_requested_at
        return None

    def store_rendition(
        self,
        fmt: AudioFormat,
        *,
        url: str,
        size_bytes: int,
        now: datetime | None = None,
        requested: bool = True,
    ) -> None:
        """Point the rendition at a freshly uploaded file.

        ``requested`` initialises last-requested to creation time so cleanup
        only has to look at one timestamp.
        """
        self._assign_url(fmt, url)
        if fmt is AudioFormat.MP3:
            self.mp3_size_bytes = size_bytes
        elif fmt is AudioFormat.WAV:
            self.wav_size_bytes = size_bytes
            self.wav_created_at = now
            self.wav_last_requested_at = now if requested else None
        else:
            self.flac_size_bytes = size_bytes
            self.flac_created_at = now
            self.flac_last_requested_at = now if requested else None

    def clear_rendition(self, fmt: AudioFormat) -> None:
        if fmt is AudioFormat.MP3:
            raise ValueError("the MP3 rendition is durable and is never cleared")
        self._assign_url(fmt, None)
        if fmt is AudioFormat.WAV:
            self.wav_size_bytes = None
            self.wav_created_at = None
            self.wav_last_requested_at = None
        else:
            self.flac_size_bytes = None
            self.flac_created_at = None
            self.flac_last_requested_at = None
        self.set_conversion_status(fmt, ConversionStatus.NOT_STARTED)

    def mark_rendition_ready(self, fmt: AudioFormat) -> None:
        """Record a rendition written by a pipeline stage rather than an on-demand request."""
        if self.conversion_status(fmt) is not ConversionStatus.IN_PROGRESS:
            self.set_conversion_status(fmt, ConversionStatus.IN_PROGRESS)
        self.set_conversion_status(fmt, ConversionStatus.COMPLETED)

    def file_urls(self) -> list[str]:
        return [
            url
            for url in (
                self.rendition_url(AudioFormat.WAV),
                self.rendition_url(AudioFormat.MP3),
                self.rendition_url(AudioFormat.FLAC),
            )
            if url
        ]


class Track(RenditionColumns, Base):
    __tablename__ = "tracks"
    __table_args__ = (
        Index("ix_tracks_status", "status"),
        Index("ix_tracks_user_id", "user_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)

    original_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    original_format: Mapped[SourceFormat] = mapped_column(Enum(SourceFormat, name="source_format"), nullable=False)
    cover_art_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    full_track_wav_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    full_track_mp3_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    full_track_flac_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_fork: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    forked_from_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("tracks.id"), nullable=True)
    status: Mapped[TrackStatus] = mapped_column(
        Enum(TrackStatus, name="track_status"), nullable=False, default=TrackStatus.ACTIVE
    )

    # audio seconds this track has been charged against its owner's quota
    quota_seconds_charged: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    stems: Mapped[list["Stem"]] = relationship(
        back_populates="track",
        cascade="all, delete-orphan",
        order_by="Stem.index",
    )

    def rendition_url(self, fmt: AudioFormat) -> str | None:
        if fmt is AudioFormat.WAV:
            return self.full_track_wav_url
        if fmt is AudioFormat.FLAC:
            return self.full_track_flac_url
        return self.full_track_mp3_url

    def _assign_url(self, fmt: AudioFormat, url: str | None) -> None:
        if fmt is AudioFormat.WAV:
            self.full_track_wav_url = url
        elif fmt is AudioFormat.FLAC:
            self.full_track_flac_url = url
        else:
            self.full_track_mp3_url = url

    @property
    def is_module(self) -> bool:
        return self.original_format.is_module

    def file_urls(self) -> list[str]:
        urls = super().file_urls()
        urls.extend(u for u in (self.original_url, self.cover_art_url) if u)
        return urls


class Stem(RenditionColumns, Base):
    __tablename__ = "stems"
    __table_args__ = (
        Index("ix_stems_track_id_index", "track_id", "index"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    track_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("tracks.id", ondelete="CASCADE"), nullable=False)
    index: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(Text, nullable=False, default="audio")

    wav_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    mp3_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    flac_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    track: Mapped["Track"] = relationship(back_populates="stems")

    def rendition_url(self, fmt: AudioFormat) -> str | None:
        if fmt is AudioFormat.WAV:
            return self.wav_url
        if fmt is AudioFormat.FLAC:
            return self.flac_url
        return self.mp3_url

    def _assign_url(self, fmt: AudioFormat, url: str | None) -> None:
        if fmt is AudioFormat.WAV:
            self.wav_url = url
        elif fmt is AudioFormat.FLAC:
            self.flac_url = url
        else:
            self.mp3_url = url
