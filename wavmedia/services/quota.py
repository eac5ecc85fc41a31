from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from wavmedia.core.errors import JobDataError
from wavmedia.models import Notification, User
from wavmedia.repos.notification_repo import NotificationRepo
from wavmedia.repos.user_repo import UserRepo

STORAGE_QUOTA_WARNING = "STORAGE_QUOTA_WARNING"


def format_bytes(n: float) -> str:
    """1536 -> '1.5 KB'"""
    units = ["B", "KB", "MB", "GB", "TB"]
    value = float(n)
    i = 0
    while value >= 1024 and i < len(units) - 1:
        value /= 1024
        i += 1
    return f"{round(value, 1):g} {units[i]}"


def format_seconds(seconds: float) -> str:
    """90 -> '1.5 m'"""
    steps = [("s", 60), ("m", 60), ("h", 24), ("d", None)]
    value = float(seconds)
    for unit, factor in steps:
        if factor is None or value < factor:
            return f"{round(value, 1):g} {unit}"
        value /= factor
    return f"{round(value, 1):g} d"  # pragma: no cover


@dataclass(frozen=True)
class UsageResult:
    user: User
    notification: Notification | None = None


class QuotaAccountant:
    """
    Per-user quota bookkeeping. Audio seconds gate work; derivative bytes are
    tracked for reporting only.

    Every method runs inside the caller's transaction so the usage change
    commits (or rolls back) together with the artifact write that caused it.
    """

    def __init__(self) -> None:
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def check_capacity(self, db: AsyncSession, user_id: uuid.UUID, seconds_delta: float) -> bool:
        if seconds_delta <= 0:
            return True
        user = await UserRepo(db).get(user_id)
        if user is None:
            raise JobDataError(f"User {user_id} not found")
        return user.used_quota_seconds + seconds_delta <= user.total_quota_seconds

    async def apply_usage(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        *,
        seconds_delta: float = 0.0,
        bytes_delta: int = 0,
    ) -> UsageResult:
        user = await UserRepo(db).get_for_update(user_id)
        if user is None:
            raise JobDataError(f"User {user_id} not found")

        was_over = bool(user.is_over_quota)
        user.used_quota_seconds = max(0.0, (user.used_quota_seconds or 0.0) + float(seconds_delta))
        user.used_storage_bytes = max(0, (user.used_storage_bytes or 0) + int(bytes_delta))

        total = user.total_quota_seconds
        is_over = user.used_quota_seconds > total
        user.is_over_quota = is_over
        await db.flush()

        notification = None
        if is_over and not was_over:
            self.logger.warning(
                "User %s went over quota: %.1fs used of %.1fs", user_id, user.used_quota_seconds, total
            )
            notification = await NotificationRepo(db).create(
                user_id=user.id,
                type=STORAGE_QUOTA_WARNING,
                title="Storage Quota Warning",
                message=(
                    f"You have exceeded your audio quota of {format_seconds(total)}. "
                    f"Your current usage is {format_seconds(user.used_quota_seconds)} "
                    f"({format_bytes(user.used_storage_bytes)} of derived files). "
                    "Please free up some space to continue uploading."
                ),
                metadata={
                    "currentUsageSeconds": user.used_quota_seconds,
                    "quotaSeconds": total,
                    "usedStorageBytes": user.used_storage_bytes,
                },
            )
        return UsageResult(user=user, notification=notification)
