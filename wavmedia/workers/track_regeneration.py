from __future__ import annotations

from wavmedia.core.errors import JobDataError, is_retryable
from wavmedia.core.timeutil import utcnow
from wavmedia.models import Stem
from wavmedia.models.enums import AudioFormat, ConversionStatus, TrackStatus
from wavmedia.queue.definitions import TRACK_REGENERATION
from wavmedia.queue.job_queue import JobContext
from wavmedia.renderers.track_mixer import StemAudio
from wavmedia.repos.track_repo import TrackRepo
from wavmedia.schemas.jobs import TrackRegenerationPayload
from wavmedia.workers.base import PipelineWorker, UploadSet, disposable_bytes, file_ext, safe_name

# best rendition first
_STEM_PREFERENCE = (AudioFormat.WAV, AudioFormat.FLAC, AudioFormat.MP3)


def best_rendition(stem: Stem) -> tuple[str, str] | None:
    for fmt in _STEM_PREFERENCE:
        url = stem.rendition_url(fmt)
        if url:
            return url, file_ext(url) or fmt.value
    return None


class TrackRegenerationWorker(PipelineWorker):
    """Re-mixes a fork's current stems into a new full track."""

    queue_name = TRACK_REGENERATION

    async def handle(self, ctx: JobContext[TrackRegenerationPayload]) -> dict:
        payload = ctx.payload
        async with self.deps.session_factory() as db:
            track = await TrackRepo(db).get_with_stems(payload.track_id)
            if track is None:
                raise JobDataError(f"Track {payload.track_id} not found")
            if track.status is TrackStatus.PENDING_DELETION:
                return {"status": "skipped", "reason": "pending_deletion"}
            if not track.is_fork:
                self.logger.info("Track %s is not a fork; nothing to regenerate", track.id)
                return {"status": "skipped", "reason": "not_a_fork"}
            sources = [(s.name, best_rendition(s)) for s in track.stems]
            title = track.title

        sources = [(name, src) for name, src in sources if src is not None]
        if not sources:
            self.logger.info("Track %s has no stem audio; nothing to regenerate", payload.track_id)
            return {"status": "skipped", "reason": "no_stems"}

        await self._mark(payload, ConversionStatus.IN_PROGRESS)
        try:
            return await self._regenerate(payload, title, sources)
        except Exception as e:
            if ctx.is_last_attempt or not is_retryable(e):
                await self._mark(payload, ConversionStatus.FAILED, only_from=[ConversionStatus.IN_PROGRESS])
            raise

    async def on_exhausted(self, payload: TrackRegenerationPayload, error: BaseException) -> None:
        await self._mark(payload, ConversionStatus.FAILED, only_from=[ConversionStatus.IN_PROGRESS])

    async def _mark(self, payload: TrackRegenerationPayload, status: ConversionStatus, only_from=None) -> None:
        for fmt in (AudioFormat.WAV, AudioFormat.FLAC):
            await self.set_rendition_status(
                track_id=payload.track_id, stem_id=None, fmt=fmt, status=status, only_from=only_from
            )

    async def _regenerate(self, payload: TrackRegenerationPayload, title: str, sources) -> dict:
        stems: list[StemAudio] = []
        for name, (url, ext) in sources:
            data = await self.storage.read(url)
            stems.append(StemAudio(name=name, wav=await self.wav_from(data, ext)))

        mixed = await self.deps.mixer.mix(stems)
        derived = await self.derive(mixed.wav, kbps=self.settings.MP3_FULL_TRACK_KBPS)
        flac = await self.converter.wav_to_flac(mixed.wav)

        base = safe_name(title)
        uploads = UploadSet(self.storage)
        superseded: list[str] = []
        try:
            wav_file = await uploads.put(mixed.wav, prefix="tracks", name=base, fmt=AudioFormat.WAV)
            mp3_file = await uploads.put(derived.mp3, prefix="tracks", name=base, fmt=AudioFormat.MP3)
            flac_file = await uploads.put(flac, prefix="tracks", name=base, fmt=AudioFormat.FLAC)

            async with self.transaction(f"regenerate track {payload.track_id}") as db:
                row = await TrackRepo(db).get(payload.track_id, for_update=True)
                if (
                    row is None
                    or row.status is TrackStatus.PENDING_DELETION
                    or row.wav_conversion_status is not ConversionStatus.IN_PROGRESS
                ):
                    stale = True
                else:
                    stale = False
                    superseded = [
                        u for u in (row.full_track_wav_url, row.full_track_mp3_url, row.full_track_flac_url) if u
                    ]
                    released = disposable_bytes(row)
                    now = utcnow()
                    row.store_rendition(AudioFormat.WAV, url=wav_file.url, size_bytes=wav_file.size_bytes, now=now)
                    row.store_rendition(AudioFormat.MP3, url=mp3_file.url, size_bytes=mp3_file.size_bytes)
                    row.store_rendition(AudioFormat.FLAC, url=flac_file.url, size_bytes=flac_file.size_bytes, now=now)
                    row.set_conversion_status(AudioFormat.WAV, ConversionStatus.COMPLETED)
                    row.set_conversion_status(AudioFormat.FLAC, ConversionStatus.COMPLETED)
                    row.waveform_data = derived.waveform.to_json()
                    row.duration = derived.duration
                    row.is_flac_source = True
                    # stems were charged when they were uploaded; only the disposable WAV counts here
                    await self.quota.apply_usage(db, row.user_id, bytes_delta=wav_file.size_bytes - released)
            if stale:
                await uploads.discard(self.deleter, context=f"stale regeneration {payload.track_id}")
                return {"status": "skipped", "reason": "superseded"}
            uploads.keep()
        except Exception:
            await uploads.discard(self.deleter, context=f"regeneration {payload.track_id}")
            raise

        await self.release_files(superseded, context=f"regenerated track {payload.track_id}")
        self.logger.info(
            "Regenerated track %s from %d stems (%s): %.2fs",
            payload.track_id, len(stems), payload.reason, derived.duration,
        )
        return {
            "status": "completed",
            "trackId": str(payload.track_id),
            "reason": payload.reason,
            "stems": len(stems),
            "duration": derived.duration,
            "wavUrl": wav_file.url,
            "mp3Url": mp3_file.url,
            "flacUrl": flac_file.url,
        }
