from __future__ import annotations

from wavmedia.core.errors import JobDataError, MediaError
from wavmedia.core.timeutil import utcnow
from wavmedia.models.enums import AudioFormat, TrackStatus
from wavmedia.queue.definitions import STEM_PROCESSING, TRACK_REGENERATION
from wavmedia.queue.job_queue import JobContext
from wavmedia.repos.stem_repo import StemRepo
from wavmedia.repos.track_repo import TrackRepo
from wavmedia.schemas.jobs import StemProcessingPayload, TrackRegenerationPayload
from wavmedia.workers.base import PipelineWorker, UploadSet, disposable_bytes, file_ext, safe_name


class StemProcessingWorker(PipelineWorker):
    """(Re)processes one added or replaced stem, then asks for the full mix to be regenerated."""

    queue_name = STEM_PROCESSING

    async def handle(self, ctx: JobContext[StemProcessingPayload]) -> dict:
        payload = ctx.payload
        async with self.deps.session_factory() as db:
            stem = await StemRepo(db).get(payload.stem_id)
            track = await TrackRepo(db).get(payload.track_id)
        if stem is None or track is None or stem.track_id != track.id:
            raise JobDataError(f"Stem {payload.stem_id} of track {payload.track_id} not found")
        if track.status is TrackStatus.PENDING_DELETION:
            return {"status": "skipped", "reason": "pending_deletion"}
        if payload.operation == "add_stem" and stem.mp3_url:
            self.logger.info("Stem %s already processed; skipping", stem.id)
            return {"status": "skipped", "reason": "already_processed"}

        data = await self.storage.get_local_staged_file(payload.stem_file_url)
        ext = file_ext(payload.stem_file_name) or file_ext(payload.stem_file_url)
        if ext == "flac":
            wav, flac = await self.converter.flac_to_wav(data), data
        else:
            wav = await self.wav_from(data, ext)
            flac = await self.converter.wav_to_flac(wav)
        derived = await self.derive(wav, kbps=self.settings.MP3_STEM_KBPS)

        name = f"{safe_name(track.title)}_stem_{stem.index:02d}"
        uploads = UploadSet(self.storage)
        superseded: list[str] = []
        try:
            mp3 = await uploads.put(derived.mp3, prefix="stems", name=name, fmt=AudioFormat.MP3)
            flac_file = await uploads.put(flac, prefix="stems", name=name, fmt=AudioFormat.FLAC)

            async with self.transaction(f"stem {stem.id}") as db:
                owner = await TrackRepo(db).get(track.id, for_update=True)
                row = await StemRepo(db).get(stem.id, for_update=True)
                if (
                    row is None
                    or owner is None
                    or owner.status is TrackStatus.PENDING_DELETION
                    or (payload.operation == "add_stem" and row.mp3_url)
                ):
                    stale = True
                else:
                    stale = False
                    superseded = row.file_urls()
                    previous = row.duration or 0.0
                    released_bytes = disposable_bytes(row)
                    seconds_delta = derived.duration if payload.operation == "add_stem" else derived.duration - previous

                    now = utcnow()
                    row.store_rendition(AudioFormat.MP3, url=mp3.url, size_bytes=mp3.size_bytes)
                    row.store_rendition(AudioFormat.FLAC, url=flac_file.url, size_bytes=flac_file.size_bytes, now=now)
                    row.flac_last_requested_at = None
                    row.clear_rendition(AudioFormat.WAV)
                    row.mark_rendition_ready(AudioFormat.FLAC)
                    row.waveform_data = derived.waveform.to_json()
                    row.duration = derived.duration
                    row.is_flac_source = True

                    charged = max(0.0, seconds_delta)
                    if charged > 0:
                        owner.quota_seconds_charged = (owner.quota_seconds_charged or 0.0) + charged
                    if charged > 0 or released_bytes:
                        await self.quota.apply_usage(
                            db, payload.user_id, seconds_delta=charged, bytes_delta=-released_bytes
                        )
            if stale:
                await uploads.discard(self.deleter, context=f"stale stem {stem.id}")
                return {"status": "skipped", "reason": "superseded"}
            uploads.keep()
        except Exception:
            await uploads.discard(self.deleter, context=f"stem processing {stem.id}")
            raise

        await self.release_files(
            [u for u in superseded if u not in (mp3.url, flac_file.url)], context=f"stem {stem.id}"
        )
        try:
            await self.storage.delete_local_staged_file(payload.stem_file_url)
        except MediaError as e:
            self.logger.warning("Could not remove staged stem %s: %s", payload.stem_file_url, e)

        reason = "stem_added" if payload.operation == "add_stem" else "stem_updated"
        regen_id = await self.deps.queue.enqueue(
            TRACK_REGENERATION,
            TrackRegenerationPayload(track_id=track.id, reason=reason, updated_stem_id=stem.id),
        )
        self.logger.info(
            "Processed stem %s of track %s (%.2fs); regeneration job %s", stem.id, track.id, derived.duration, regen_id
        )
        return {
            "status": "completed",
            "stemId": str(stem.id),
            "duration": derived.duration,
            "mp3Url": mp3.url,
            "flacUrl": flac_file.url,
            "regenerationJobId": str(regen_id),
        }

    async def on_exhausted(self, payload: StemProcessingPayload, error: BaseException) -> None:
        self.logger.error("Stem processing for %s gave up: %s", payload.stem_id, error)
        try:
            await self.storage.delete_local_staged_file(payload.stem_file_url)
        except MediaError as e:
            self.logger.warning("Could not remove staged stem %s: %s", payload.stem_file_url, e)
