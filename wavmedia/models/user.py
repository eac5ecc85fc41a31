import uuid
from datetime import datetime

from sqlalchemy import BigInteger, Boolean, DateTime, Float, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from wavmedia.models.base import Base


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # seconds of audio the user may keep; free allotment plus purchased
    free_quota_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    paid_quota_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    used_quota_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    # disposable WAV/FLAC derivatives, reported but never gating
    used_storage_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    is_over_quota: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    @property
    def total_quota_seconds(self) -> float:
        return (self.free_quota_seconds or 0.0) + (self.paid_quota_seconds or 0.0)

    @property
    def available_quota_seconds(self) -> float:
        return self.total_quota_seconds - (self.used_quota_seconds or 0.0)
