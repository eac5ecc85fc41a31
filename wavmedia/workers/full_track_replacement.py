from __future__ import annotations

from wavmedia.core.errors import ConversionError, JobDataError, MediaError, QuotaExceededError
from wavmedia.core.timeutil import utcnow
from wavmedia.models.enums import AudioFormat, TrackStatus
from wavmedia.queue.definitions import FULL_TRACK_REPLACEMENT
from wavmedia.queue.job_queue import JobContext
from wavmedia.repos.track_repo import TrackRepo
from wavmedia.schemas.jobs import FullTrackReplacementPayload
from wavmedia.workers.base import PipelineWorker, UploadSet, disposable_bytes, file_ext, safe_name


class FullTrackReplacementWorker(PipelineWorker):
    """
    Swaps a track's full mix for a newly uploaded WAV/FLAC.

    Capacity for the extra seconds is checked before the FLAC is encoded and
    anything is uploaded; a user without capacity gets a skipped job, not a
    failed one.
    """

    queue_name = FULL_TRACK_REPLACEMENT

    async def handle(self, ctx: JobContext[FullTrackReplacementPayload]) -> dict:
        payload = ctx.payload
        ext = file_ext(payload.audio_file_url)
        if ext not in ("wav", "flac"):
            raise ConversionError(f"Full track replacement needs WAV or FLAC, got {ext or 'unknown'!r}", "UNSUPPORTED_FORMAT")

        async with self.deps.session_factory() as db:
            track = await TrackRepo(db).get(payload.track_id)
        if track is None:
            raise JobDataError(f"Track {payload.track_id} not found")
        if track.status is TrackStatus.PENDING_DELETION:
            return {"status": "skipped", "reason": "pending_deletion"}

        data = await self.storage.get_local_staged_file(payload.audio_file_url)
        wav = data if ext == "wav" else await self.converter.flac_to_wav(data)
        derived = await self.derive(wav, kbps=self.settings.MP3_FULL_TRACK_KBPS)

        seconds_delta = derived.duration - (track.duration or 0.0)
        try:
            async with self.deps.session_factory() as db:
                if not await self.quota.check_capacity(db, track.user_id, seconds_delta):
                    raise QuotaExceededError(str(track.user_id), seconds_delta)
        except QuotaExceededError as e:
            self.logger.warning("Skipping replacement of track %s: %s", track.id, e)
            await self._remove_staged(payload.audio_file_url)
            return {"status": "skipped", "reason": "quota_exceeded", "secondsNeeded": seconds_delta}

        flac = data if ext == "flac" else await self.converter.wav_to_flac(wav)

        base = safe_name(track.title)
        uploads = UploadSet(self.storage)
        superseded: list[str] = []
        try:
            mp3_file = await uploads.put(derived.mp3, prefix="tracks", name=base, fmt=AudioFormat.MP3)
            flac_file = await uploads.put(flac, prefix="tracks", name=base, fmt=AudioFormat.FLAC)

            async with self.transaction(f"replace track {track.id}") as db:
                row = await TrackRepo(db).get(track.id, for_update=True)
                if row is None or row.status is TrackStatus.PENDING_DELETION:
                    stale = True
                else:
                    stale = False
                    superseded = [
                        u
                        for u in (row.original_url, row.full_track_wav_url, row.full_track_mp3_url, row.full_track_flac_url)
                        if u
                    ]
                    released = disposable_bytes(row)
                    delta = derived.duration - (row.duration or 0.0)

                    row.original_url = None
                    row.clear_rendition(AudioFormat.WAV)
                    row.store_rendition(AudioFormat.MP3, url=mp3_file.url, size_bytes=mp3_file.size_bytes)
                    row.store_rendition(
                        AudioFormat.FLAC, url=flac_file.url, size_bytes=flac_file.size_bytes, now=utcnow()
                    )
                    row.flac_last_requested_at = None
                    row.mark_rendition_ready(AudioFormat.FLAC)
                    row.waveform_data = derived.waveform.to_json()
                    row.duration = derived.duration
                    row.is_flac_source = True

                    row.quota_seconds_charged = max(0.0, (row.quota_seconds_charged or 0.0) + delta)
                    await self.quota.apply_usage(db, row.user_id, seconds_delta=delta, bytes_delta=-released)
            if stale:
                await uploads.discard(self.deleter, context=f"stale replacement {track.id}")
                return {"status": "skipped", "reason": "superseded"}
            uploads.keep()
        except Exception:
            await uploads.discard(self.deleter, context=f"full track replacement {track.id}")
            raise

        await self.release_files(superseded, context=f"replaced track {track.id}")
        await self._remove_staged(payload.audio_file_url)
        self.logger.info(
            "Replaced full track of %s: %.2fs (%+.2fs)", track.id, derived.duration, seconds_delta
        )
        return {
            "status": "completed",
            "trackId": str(track.id),
            "duration": derived.duration,
            "secondsDelta": seconds_delta,
            "mp3Url": mp3_file.url,
            "flacUrl": flac_file.url,
        }

    async def on_exhausted(self, payload: FullTrackReplacementPayload, error: BaseException) -> None:
        self.logger.error("Full track replacement for %s gave up: %s", payload.track_id, error)
        await self._remove_staged(payload.audio_file_url)

    async def _remove_staged(self, ref: str) -> None:
        try:
            await self.storage.delete_local_staged_file(ref)
        except MediaError as e:
            self.logger.warning("Could not remove staged file %s: %s", ref, e)
