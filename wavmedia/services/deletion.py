from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable

from wavmedia.core.errors import DeletionError, StorageError
from wavmedia.services.storage_service import BlobStorageGateway


@dataclass(frozen=True)
class DeletionFailure:
    url: str
    error: str


@dataclass
class DeletionReport:
    deleted: list[str] = field(default_factory=list)
    failures: list[DeletionFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def failed_urls(self) -> set[str]:
        return {f.url for f in self.failures}


class FileDeleter:
    """
    Best-effort deletion of stored files.

    Each file gets ``max_retries`` attempts with exponential backoff capped at
    ``backoff_cap_s``. Batches collect per-file failures instead of raising,
    so callers can act on partial success.
    """

    def __init__(
        self,
        storage: BlobStorageGateway,
        *,
        max_retries: int = 3,
        base_delay_s: float = 1.0,
        backoff_cap_s: float = 5.0,
        batch_size: int = 3,
    ):
        self.storage = storage
        self.max_retries = max(1, int(max_retries))
        self.base_delay_s = float(base_delay_s)
        self.backoff_cap_s = float(backoff_cap_s)
        self.batch_size = max(1, int(batch_size))
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def retry_delay(self, attempt: int) -> float:
        """Delay after failed attempt ``attempt`` (1-based)."""
        return min(self.base_delay_s * 2 ** (attempt - 1), self.backoff_cap_s)

    async def delete_with_retry(self, url: str) -> None:
        last: StorageError | None = None
        for attempt in range(1, self.max_retries + 1):
            try:
                await self.storage.delete(url)
                return
            except StorageError as e:
                last = e
                self.logger.warning(
                    "Delete attempt %d/%d failed for %s: %s", attempt, self.max_retries, url, e
                )
                if attempt < self.max_retries:
                    await asyncio.sleep(self.retry_delay(attempt))
        raise DeletionError(url, last)

    async def delete_many(self, urls: Iterable[str]) -> DeletionReport:
        report = DeletionReport()
        unique = list(dict.fromkeys(u for u in urls if u))
        for start in range(0, len(unique), self.batch_size):
            batch = unique[start:start + self.batch_size]
            results = await asyncio.gather(
                *(self.delete_with_retry(u) for u in batch), return_exceptions=True
            )
            for url, res in zip(batch, results):
                if isinstance(res, DeletionError):
                    report.failures.append(DeletionFailure(url=url, error=str(res)))
                elif isinstance(res, BaseException):
                    raise res
                else:
                    report.deleted.append(url)
        if report.failures:
            self.logger.error(
                "Failed to delete %d of %d files: %s",
                len(report.failures),
                len(unique),
                [f.url for f in report.failures],
            )
        return report

    async def discard(self, urls: Iterable[str], *, context: str) -> DeletionReport:
        """Compensating delete of artifacts uploaded by a failed attempt; never raises for file errors."""
        report = await self.delete_many(urls)
        if report.deleted:
            self.logger.info("Removed %d orphaned uploads (%s)", len(report.deleted), context)
        return report
