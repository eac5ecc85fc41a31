from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import AsyncIterator, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wavmedia.analyzers.waveform import WaveformExtractor, WaveformSummary
from wavmedia.converters.format_converter import FormatConverter
from wavmedia.core.config import Settings
from wavmedia.core.errors import TransactionError
from wavmedia.models import Stem, Track
from wavmedia.models.enums import AudioFormat, ConversionStatus
from wavmedia.queue.definitions import definition_for
from wavmedia.queue.job_queue import JobContext, JobQueue, QueueDefinition
from wavmedia.renderers.track_mixer import TrackMixer
from wavmedia.repos.stem_repo import StemRepo
from wavmedia.repos.track_repo import TrackRepo
from wavmedia.services.deletion import DeletionReport, FileDeleter
from wavmedia.services.quota import QuotaAccountant
from wavmedia.services.storage_service import BlobStorageGateway, StoredFile, sanitize_filename


@dataclass
class PipelineDeps:
    """Everything a worker needs, built once per process and passed in."""
    session_factory: async_sessionmaker[AsyncSession]
    storage: BlobStorageGateway
    deleter: FileDeleter
    converter: FormatConverter
    extractor: WaveformExtractor
    mixer: TrackMixer
    quota: QuotaAccountant
    queue: JobQueue
    settings: Settings


@dataclass(frozen=True)
class DerivedAudio:
    wav: bytes
    mp3: bytes
    waveform: WaveformSummary

    @property
    def duration(self) -> float:
        return self.waveform.duration


class UploadSet:
    """Artifacts uploaded by one attempt. Discarded unless the attempt commits."""

    def __init__(self, storage: BlobStorageGateway):
        self.storage = storage
        self._urls: list[str] = []

    @property
    def urls(self) -> list[str]:
        return list(self._urls)

    async def put(self, data: bytes, *, prefix: str, name: str, fmt: AudioFormat | None = None) -> StoredFile:
        filename = f"{name}.{fmt.value}" if fmt is not None else name
        stored = await self.storage.upload(
            data, prefix=prefix, filename=filename, mime=fmt.mime if fmt is not None else None
        )
        self._urls.append(stored.url)
        return stored

    def absorb(self, other: "UploadSet") -> None:
        """Take over the files of a nested set; they now live or die with this one."""
        self._urls.extend(other._urls)
        other._urls = []

    def keep(self) -> None:
        self._urls.clear()

    async def discard(self, deleter: FileDeleter, *, context: str) -> DeletionReport | None:
        if not self._urls:
            return None
        urls, self._urls = self._urls, []
        return await deleter.discard(urls, context=context)


def file_ext(name: str) -> str:
    return PurePosixPath(name.split("?", 1)[0]).suffix.lower().lstrip(".")


def safe_name(title: str) -> str:
    return sanitize_filename(title) or "track"


def disposable_bytes(item: Track | Stem) -> int:
    """Bytes held by derivative WAV/FLAC renditions (the quota's byte dimension)."""
    total = 0
    if item.rendition_url(AudioFormat.WAV):
        total += item.wav_size_bytes or 0
    if item.rendition_url(AudioFormat.FLAC) and not item.is_flac_source:
        total += item.flac_size_bytes or 0
    return total


class PipelineWorker:
    """Common plumbing for queue handlers: transactions, derivation, compensation."""

    queue_name: str = ""

    def __init__(self, deps: PipelineDeps):
        self.deps = deps
        self.settings = deps.settings
        self.storage = deps.storage
        self.deleter = deps.deleter
        self.converter = deps.converter
        self.extractor = deps.extractor
        self.quota = deps.quota
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def definition(self) -> QueueDefinition:
        return definition_for(self.queue_name, on_exhausted=self.on_exhausted)

    async def handle(self, ctx: JobContext) -> dict | None:
        raise NotImplementedError

    async def on_exhausted(self, payload, error: BaseException) -> None:
        """Runs once when the queue gives up on a job."""

    # ---------- helpers ----------

    @contextlib.asynccontextmanager
    async def transaction(self, context: str) -> AsyncIterator[AsyncSession]:
        async with self.deps.session_factory() as db:
            try:
                async with db.begin():
                    yield db
            except SQLAlchemyError as e:
                raise TransactionError(f"Persisting results failed ({context}): {e}") from e

    async def derive(self, wav: bytes, *, kbps: int) -> DerivedAudio:
        waveform, mp3 = await asyncio.gather(
            self.extractor.extract(wav),
            self.converter.wav_to_mp3(wav, kbps),
        )
        return DerivedAudio(wav=wav, mp3=mp3, waveform=waveform)

    async def wav_from(self, data: bytes, ext: str) -> bytes:
        if ext in ("wav", "wave"):
            return data
        return await self.converter.to_wav(data, ext)

    async def set_rendition_status(
        self,
        *,
        track_id: uuid.UUID,
        stem_id: uuid.UUID | None,
        fmt: AudioFormat,
        status: ConversionStatus,
        only_from: Iterable[ConversionStatus] | None = None,
    ) -> None:
        async with self.transaction(f"status {fmt.value} -> {status.value}") as db:
            if stem_id is not None:
                item = await StemRepo(db).get(stem_id, for_update=True)
            else:
                item = await TrackRepo(db).get(track_id, for_update=True)
            if item is None:
                return
            if only_from is not None and item.conversion_status(fmt) not in set(only_from):
                return
            item.set_conversion_status(fmt, status)

    async def release_files(self, urls: Iterable[str], *, context: str) -> DeletionReport:
        """Delete superseded files that no record points at any more (forks share upstream files)."""
        candidates = [u for u in dict.fromkeys(urls) if u]
        orphaned: list[str] = []
        if candidates:
            async with self.deps.session_factory() as db:
                repo = TrackRepo(db)
                for url in candidates:
                    if await repo.count_url_references(url) == 0:
                        orphaned.append(url)
                    else:
                        self.logger.info("Keeping %s: still referenced (%s)", url, context)
        report = await self.deleter.delete_many(orphaned)
        for failure in report.failures:
            self.logger.error("Could not delete superseded file %s (%s): %s", failure.url, context, failure.error)
        return report
