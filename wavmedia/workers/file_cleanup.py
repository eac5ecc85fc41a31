from __future__ import annotations

from datetime import datetime, timedelta, timezone

from wavmedia.core.errors import DeletionError
from wavmedia.core.timeutil import as_utc, utcnow
from wavmedia.models import Stem, Track
from wavmedia.models.enums import AudioFormat
from wavmedia.queue.definitions import DAILY_CLEANUP_KEY, FILE_CLEANUP
from wavmedia.queue.job_queue import JobContext, JobOptions, JobQueue
from wavmedia.repos.track_repo import TrackRepo
from wavmedia.schemas.jobs import FileCleanupPayload
from wavmedia.workers.base import PipelineWorker

_COUNTER_KEYS = {
    (False, AudioFormat.WAV): "fullTrackWav",
    (False, AudioFormat.FLAC): "fullTrackFlac",
    (True, AudioFormat.WAV): "stemWav",
    (True, AudioFormat.FLAC): "stemFlac",
}


def is_reclaimable(item: Track | Stem, fmt: AudioFormat, *, module_origin: bool, threshold: datetime) -> bool:
    """WAV/FLAC that can be regenerated from a durable source and was not requested since ``threshold``."""
    if not item.rendition_url(fmt):
        return False
    last = as_utc(item.last_requested_at(fmt))
    if last is None or last >= threshold:
        return False
    if fmt is AudioFormat.WAV:
        return module_origin or bool(item.is_flac_source)
    if fmt is AudioFormat.FLAC:
        return module_origin and not item.is_flac_source
    return False


def next_utc_midnight(now: datetime | None = None) -> datetime:
    now = as_utc(now) if now is not None else utcnow()
    midnight = datetime(now.year, now.month, now.day, tzinfo=timezone.utc)
    return midnight + timedelta(days=1)


async def schedule_daily_cleanup(queue: JobQueue, *, attempts: int = 3, backoff_ms: int = 1000):
    return await queue.schedule_repeating(
        FILE_CLEANUP,
        FileCleanupPayload(),
        timedelta(days=1),
        key=DAILY_CLEANUP_KEY,
        first_run_at=next_utc_midnight(),
        options=JobOptions(attempts=attempts, backoff_ms=backoff_ms),
    )


class FileCleanupWorker(PipelineWorker):
    """
    Reclaims derivative WAV/FLAC files nobody asked for within the retention window.

    MP3 renditions and originals are never touched. Per-file failures are
    collected into the result; the sweep itself does not fail on them.
    """

    queue_name = FILE_CLEANUP

    async def handle(self, ctx: JobContext[FileCleanupPayload]) -> dict:
        payload = ctx.payload
        window = (
            payload.timeframe.to_timedelta()
            if payload.timeframe is not None
            else timedelta(days=self.settings.CLEANUP_RETENTION_DAYS)
        )
        threshold = utcnow() - window
        batch_size = max(1, self.settings.CLEANUP_BATCH_SIZE)

        async with self.deps.session_factory() as db:
            candidates = await TrackRepo(db).find_cleanup_candidates(threshold=threshold, limit=batch_size + 1)
        has_more = len(candidates) > batch_size
        candidates = candidates[:batch_size]

        counts = {key: 0 for key in _COUNTER_KEYS.values()}
        failures: list[dict] = []
        for track in candidates:
            await self._sweep_track(track, threshold, counts, failures)

        continuation = None
        if has_more:
            continuation = await self.deps.queue.enqueue(
                FILE_CLEANUP,
                payload,
                JobOptions(delay_s=float(self.settings.CLEANUP_CONTINUATION_DELAY_SECONDS)),
                name=f"{FILE_CLEANUP}:continuation",
            )
            self.logger.info("More cleanup candidates remain; continuation job %s", continuation)

        self.logger.info(
            "Cleanup before %s: %s across %d track(s), %d failure(s)",
            threshold.isoformat(), counts, len(candidates), len(failures),
        )
        return {
            "threshold": threshold.isoformat(),
            "tracks": len(candidates),
            "deleted": counts,
            "failures": failures,
            "continuationJobId": str(continuation) if continuation else None,
        }

    async def _sweep_track(self, track: Track, threshold: datetime, counts: dict, failures: list[dict]) -> None:
        module_origin = track.is_module and not track.is_fork
        targets: list[tuple[bool, Track | Stem, AudioFormat]] = []
        for fmt in (AudioFormat.WAV, AudioFormat.FLAC):
            if is_reclaimable(track, fmt, module_origin=module_origin, threshold=threshold):
                targets.append((False, track, fmt))
        for stem in track.stems:
            for fmt in (AudioFormat.WAV, AudioFormat.FLAC):
                if is_reclaimable(stem, fmt, module_origin=module_origin, threshold=threshold):
                    targets.append((True, stem, fmt))
        if not targets:
            return

        reclaimed: list[tuple[bool, Track | Stem, AudioFormat]] = []
        async with self.deps.session_factory() as db:
            repo = TrackRepo(db)
            for is_stem, item, fmt in targets:
                url = item.rendition_url(fmt)
                shared = await repo.count_url_references(
                    url,
                    exclude_track_ids=None if is_stem else [item.id],
                    exclude_stem_ids=[item.id] if is_stem else None,
                )
                if shared:
                    self.logger.info("Unlinking shared %s from %s without deleting it", url, item.id)
                else:
                    try:
                        await self.deleter.delete_with_retry(url)
                    except DeletionError as e:
                        self.logger.error("Cleanup could not delete %s (%s %s): %s", url, item.id, fmt.value, e)
                        failures.append({"trackId": str(track.id), "url": url, "error": str(e)})
                        continue
                reclaimed.append((is_stem, item, fmt))

        if not reclaimed:
            return
        async with self.transaction(f"cleanup of track {track.id}") as db:
            row = await TrackRepo(db).get_with_stems(track.id, for_update=True)
            if row is None:
                return
            stems = {s.id: s for s in row.stems}
            released = 0
            for is_stem, item, fmt in reclaimed:
                target = stems.get(item.id) if is_stem else row
                if target is None or target.rendition_url(fmt) != item.rendition_url(fmt):
                    continue
                if not target.is_flac_source or fmt is AudioFormat.WAV:
                    released += target.size_bytes(fmt) or 0
                target.clear_rendition(fmt)
                counts[_COUNTER_KEYS[(is_stem, fmt)]] += 1
            if released:
                await self.quota.apply_usage(db, row.user_id, bytes_delta=-released)
