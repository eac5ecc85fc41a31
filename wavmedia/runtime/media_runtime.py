from __future__ import annotations

import logging

from redis import Redis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from wavmedia.analyzers.waveform import WaveformExtractor
from wavmedia.converters.format_converter import FormatConverter
from wavmedia.converters.process import ToolInvoker
from wavmedia.core.config import Settings
from wavmedia.core.db import create_engine, create_session_factory
from wavmedia.queue.job_queue import JobOptions, JobQueue
from wavmedia.renderers.track_mixer import TrackMixer
from wavmedia.services.deletion import FileDeleter
from wavmedia.services.quota import QuotaAccountant
from wavmedia.services.storage_service import BlobStorageGateway
from wavmedia.workers import PipelineDeps, PipelineWorker, register_workers, schedule_daily_cleanup


class MediaRuntime:
    """
    One worker process: engine, storage, converters, queue and every handler.

    Built explicitly from settings; nothing here is a module-level singleton.
    Tests pass their own engine, Redis connection and tool invoker.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        engine: AsyncEngine | None = None,
        invoker: ToolInvoker | None = None,
        storage: BlobStorageGateway | None = None,
        redis: Redis | None = None,
    ):
        self.settings = settings
        self._owns_engine = engine is None
        self.engine = engine or create_engine(settings.DATABASE_URL_ASYNC)
        self.session_factory: async_sessionmaker[AsyncSession] = create_session_factory(self.engine)

        self.invoker = invoker or ToolInvoker(
            timeout_s=settings.TOOL_TIMEOUT_SECONDS, temp_prefix=settings.TEMP_DIR_PREFIX
        )
        self.storage = storage or BlobStorageGateway.from_settings(settings)
        self.deleter = FileDeleter(
            self.storage,
            max_retries=settings.DELETE_MAX_RETRIES,
            base_delay_s=settings.DELETE_BASE_DELAY_SECONDS,
            backoff_cap_s=settings.DELETE_BACKOFF_CAP_SECONDS,
            batch_size=settings.DELETE_BATCH_SIZE,
        )
        self.converter = FormatConverter.from_settings(self.invoker, settings)
        self.extractor = WaveformExtractor(samples_per_peak=settings.WAVEFORM_SAMPLES_PER_PEAK)
        self.mixer = TrackMixer(target_sample_rate=settings.MIX_SAMPLE_RATE)
        self.quota = QuotaAccountant()
        self._owns_redis = redis is None
        self.redis = redis or Redis.from_url(settings.REDIS_URL)
        self.queue = JobQueue(
            self.redis,
            poll_interval_s=settings.QUEUE_POLL_INTERVAL_SECONDS,
            job_timeout_s=settings.JOB_TIMEOUT_SECONDS,
            result_ttl_s=settings.JOB_RESULT_TTL_SECONDS,
            failure_ttl_s=settings.JOB_FAILURE_TTL_SECONDS,
            default_options=JobOptions(attempts=settings.JOB_ATTEMPTS, backoff_ms=settings.JOB_BACKOFF_MS),
        )
        self.deps = PipelineDeps(
            session_factory=self.session_factory,
            storage=self.storage,
            deleter=self.deleter,
            converter=self.converter,
            extractor=self.extractor,
            mixer=self.mixer,
            quota=self.quota,
            queue=self.queue,
            settings=settings,
        )
        self.workers: dict[str, PipelineWorker] = register_workers(self.deps)
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def start(self, *, consume: bool = True) -> None:
        """Schedule the daily sweep and, with ``consume``, start pulling jobs."""
        job_id = await schedule_daily_cleanup(
            self.queue, attempts=self.settings.JOB_ATTEMPTS, backoff_ms=self.settings.JOB_BACKOFF_MS
        )
        self.logger.info("Daily cleanup scheduled (job %s)", job_id)
        if consume:
            await self.queue.start()

    async def close(self) -> None:
        await self.queue.close()
        if self._owns_redis:
            self.redis.close()
        if self._owns_engine:
            await self.engine.dispose()
        self.logger.info("Media runtime closed")

    async def __aenter__(self) -> "MediaRuntime":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()
