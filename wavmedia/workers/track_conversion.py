from __future__ import annotations

import uuid
from dataclasses import dataclass, field

from wavmedia.core.errors import ConversionError, JobDataError, MediaError
from wavmedia.core.timeutil import utcnow
from wavmedia.models import Track
from wavmedia.models.enums import AudioFormat, SourceFormat, TrackStatus
from wavmedia.queue.definitions import TRACK_CONVERSION
from wavmedia.queue.job_queue import JobContext
from wavmedia.repos.stem_repo import StemRepo
from wavmedia.repos.track_repo import TrackRepo
from wavmedia.schemas.jobs import StemFileIn, TrackConversionPayload
from wavmedia.workers.base import DerivedAudio, PipelineWorker, UploadSet, file_ext, safe_name


@dataclass
class _PreparedStem:
    index: int
    name: str
    type: str
    derived: DerivedAudio
    mp3_url: str
    mp3_size: int
    flac_url: str | None = None
    flac_size: int | None = None


@dataclass
class _StemOutcome:
    prepared: list[_PreparedStem] = field(default_factory=list)
    failures: list[dict] = field(default_factory=list)


class TrackConversionWorker(PipelineWorker):
    """
    First processing of a freshly uploaded track.

    Module tracks are rendered into a full mix and one stem per channel.
    Raw WAV/FLAC tracks become the full mix directly, with any stems uploaded
    alongside processed one by one.
    """

    queue_name = TRACK_CONVERSION

    async def handle(self, ctx: JobContext[TrackConversionPayload]) -> dict:
        payload = ctx.payload
        async with self.deps.session_factory() as db:
            track = await TrackRepo(db).get(payload.track_id)
        if track is None:
            raise JobDataError(f"Track {payload.track_id} not found")
        if track.status is TrackStatus.PENDING_DELETION:
            self.logger.info("Track %s is pending deletion; skipping conversion", track.id)
            return {"status": "skipped", "reason": "pending_deletion"}
        if track.full_track_mp3_url:
            # re-delivery of a job that already committed
            self.logger.info("Track %s already converted; skipping", track.id)
            return {"status": "skipped", "reason": "already_converted"}
        if not track.original_url:
            raise JobDataError(f"Track {track.id} has no staged original")

        if track.is_module:
            return await self._convert_module(track, payload)
        return await self._convert_raw(track, payload)

    async def on_exhausted(self, payload: TrackConversionPayload, error: BaseException) -> None:
        self.logger.error("Track conversion for %s gave up: %s", payload.track_id, error)
        staged = [s.url for s in payload.stem_files]
        if payload.cover_art_url:
            staged.append(payload.cover_art_url)
        async with self.deps.session_factory() as db:
            track = await TrackRepo(db).get(payload.track_id)
            if track is not None and track.original_url and not track.full_track_mp3_url:
                staged.append(track.original_url)
        await self._remove_staged(staged)

    # ---------- module tracks ----------

    async def _convert_module(self, track: Track, payload: TrackConversionPayload) -> dict:
        staged_original = track.original_url
        source = await self.storage.get_local_staged_file(staged_original)
        render = await self.converter.module_to_wav(source, track.original_format)

        full = await self.derive(render.full_mix_wav, kbps=self.settings.MP3_FULL_TRACK_KBPS)
        stems = [(s, await self.derive(s.wav, kbps=self.settings.MP3_STEM_KBPS)) for s in render.stems]

        base = safe_name(track.title)
        uploads = UploadSet(self.storage)
        try:
            original = await uploads.put(
                source, prefix="originals", name=f"{base}.{track.original_format.value.lower()}"
            )
            cover_url = await self._promote_cover(uploads, payload.cover_art_url)
            mp3 = await uploads.put(full.mp3, prefix="tracks", name=base, fmt=AudioFormat.MP3)
            stem_files = []
            for rendered, derived in stems:
                stored = await uploads.put(
                    derived.mp3, prefix="stems", name=f"{base}_stem_{rendered.index:02d}", fmt=AudioFormat.MP3
                )
                stem_files.append((rendered, derived, stored))

            async with self.transaction(f"module track {track.id}") as db:
                repo = TrackRepo(db)
                row = await repo.get(track.id, for_update=True)
                if row is None or row.status is TrackStatus.PENDING_DELETION or row.full_track_mp3_url:
                    stale = True
                else:
                    stale = False
                    row.original_url = original.url
                    if cover_url:
                        row.cover_art_url = cover_url
                    row.store_rendition(AudioFormat.MP3, url=mp3.url, size_bytes=mp3.size_bytes)
                    row.waveform_data = full.waveform.to_json()
                    row.duration = full.duration
                    row.is_flac_source = False

                    stem_repo = StemRepo(db)
                    for rendered, derived, stored in stem_files:
                        await stem_repo.create(
                            track_id=row.id,
                            index=rendered.index,
                            name=rendered.name,
                            type=rendered.type,
                            mp3_url=stored.url,
                            mp3_size_bytes=stored.size_bytes,
                            waveform_data=derived.waveform.to_json(),
                            duration=derived.duration,
                        )

                    row.quota_seconds_charged = (row.quota_seconds_charged or 0.0) + full.duration
                    await self.quota.apply_usage(db, row.user_id, seconds_delta=full.duration)
            if stale:
                await uploads.discard(self.deleter, context=f"stale module conversion {track.id}")
                return {"status": "skipped", "reason": "superseded"}
            uploads.keep()
        except Exception:
            await uploads.discard(self.deleter, context=f"module conversion {track.id}")
            raise

        await self._remove_staged([staged_original, payload.cover_art_url])
        self.logger.info(
            "Converted %s module track %s: %.2fs, %d stems", track.original_format.value, track.id,
            full.duration, len(stems),
        )
        return {
            "status": "completed",
            "trackId": str(track.id),
            "duration": full.duration,
            "stems": len(stems),
        }

    # ---------- raw WAV/FLAC tracks ----------

    async def _convert_raw(self, track: Track, payload: TrackConversionPayload) -> dict:
        staged_original = track.original_url
        source = await self.storage.get_local_staged_file(staged_original)
        if track.original_format is SourceFormat.WAV:
            wav, flac = source, await self.converter.wav_to_flac(source)
        elif track.original_format is SourceFormat.FLAC:
            wav, flac = await self.converter.flac_to_wav(source), source
        else:
            raise ConversionError(f"Unsupported source format {track.original_format.value}", "UNSUPPORTED_FORMAT")
        full = await self.derive(wav, kbps=self.settings.MP3_FULL_TRACK_KBPS)

        base = safe_name(track.title)
        uploads = UploadSet(self.storage)
        try:
            cover_url = await self._promote_cover(uploads, payload.cover_art_url)
            mp3 = await uploads.put(full.mp3, prefix="tracks", name=base, fmt=AudioFormat.MP3)
            flac_file = await uploads.put(flac, prefix="tracks", name=base, fmt=AudioFormat.FLAC)
            outcome = await self._prepare_stems(track, payload.stem_files, uploads)

            stem_seconds = sum(p.derived.duration for p in outcome.prepared)
            charge = full.duration + stem_seconds
            async with self.transaction(f"raw track {track.id}") as db:
                repo = TrackRepo(db)
                row = await repo.get(track.id, for_update=True)
                if row is None or row.status is TrackStatus.PENDING_DELETION or row.full_track_mp3_url:
                    stale = True
                else:
                    stale = False
                    now = utcnow()
                    # the FLAC is the lossless source from here on
                    row.original_url = None
                    if cover_url:
                        row.cover_art_url = cover_url
                    row.store_rendition(AudioFormat.MP3, url=mp3.url, size_bytes=mp3.size_bytes)
                    row.store_rendition(
                        AudioFormat.FLAC, url=flac_file.url, size_bytes=flac_file.size_bytes, now=now
                    )
                    row.mark_rendition_ready(AudioFormat.FLAC)
                    row.waveform_data = full.waveform.to_json()
                    row.duration = full.duration
                    row.is_flac_source = True

                    stem_repo = StemRepo(db)
                    for prepared in outcome.prepared:
                        stem = await stem_repo.create(
                            track_id=row.id,
                            index=prepared.index,
                            name=prepared.name,
                            type=prepared.type,
                            waveform_data=prepared.derived.waveform.to_json(),
                            duration=prepared.derived.duration,
                            is_flac_source=True,
                        )
                        stem.store_rendition(AudioFormat.MP3, url=prepared.mp3_url, size_bytes=prepared.mp3_size)
                        stem.store_rendition(
                            AudioFormat.FLAC, url=prepared.flac_url, size_bytes=prepared.flac_size, now=now
                        )
                        stem.mark_rendition_ready(AudioFormat.FLAC)

                    row.quota_seconds_charged = (row.quota_seconds_charged or 0.0) + charge
                    # raw uploads are never blocked; crossing the quota only raises a warning
                    usage = await self.quota.apply_usage(db, row.user_id, seconds_delta=charge)
                    if usage.notification is not None:
                        self.logger.warning("User %s is over quota after track %s", row.user_id, row.id)
            if stale:
                await uploads.discard(self.deleter, context=f"stale raw conversion {track.id}")
                return {"status": "skipped", "reason": "superseded"}
            uploads.keep()
        except Exception:
            await uploads.discard(self.deleter, context=f"raw conversion {track.id}")
            raise

        await self._remove_staged([staged_original, payload.cover_art_url, *(s.url for s in payload.stem_files)])
        self.logger.info(
            "Converted raw %s track %s: %.2fs, %d/%d stems", track.original_format.value, track.id,
            full.duration, len(outcome.prepared), len(payload.stem_files),
        )
        return {
            "status": "completed",
            "trackId": str(track.id),
            "duration": full.duration,
            "stems": len(outcome.prepared),
            "stemFailures": outcome.failures,
        }

    async def _prepare_stems(self, track: Track, stem_files: list[StemFileIn], uploads: UploadSet) -> _StemOutcome:
        """Stems are numbered in the order they succeed; failures keep their upload position."""
        outcome = _StemOutcome()
        base = safe_name(track.title)
        for i, stem_file in enumerate(stem_files):
            stem_uploads = UploadSet(self.storage)
            try:
                prepared = await self._prepare_stem(len(outcome.prepared), stem_file, base, stem_uploads)
            except Exception as e:
                await stem_uploads.discard(self.deleter, context=f"stem {i} of track {track.id}")
                if not isinstance(e, MediaError):
                    raise
                self.logger.error(
                    "Stem %d (%s) of track %s failed: %s", i, stem_file.original_name, track.id, e
                )
                outcome.failures.append({"index": i, "name": stem_file.original_name, "error": str(e)})
                continue
            uploads.absorb(stem_uploads)
            outcome.prepared.append(prepared)
        return outcome

    async def _prepare_stem(self, index: int, stem_file: StemFileIn, base: str, uploads: UploadSet) -> _PreparedStem:
        data = await self.storage.get_local_staged_file(stem_file.url)
        ext = file_ext(stem_file.original_name) or file_ext(stem_file.url)
        if ext == "flac":
            wav, flac = await self.converter.flac_to_wav(data), data
        elif ext in ("wav", "wave"):
            wav, flac = data, await self.converter.wav_to_flac(data)
        else:
            wav = await self.converter.to_wav(data, ext)
            flac = await self.converter.wav_to_flac(wav)
        derived = await self.derive(wav, kbps=self.settings.MP3_STEM_KBPS)

        name = stem_file.name or stem_file.original_name.rsplit(".", 1)[0] or f"Stem {index + 1}"
        mp3 = await uploads.put(derived.mp3, prefix="stems", name=f"{base}_stem_{index:02d}", fmt=AudioFormat.MP3)
        flac_file = await uploads.put(flac, prefix="stems", name=f"{base}_stem_{index:02d}", fmt=AudioFormat.FLAC)
        return _PreparedStem(
            index=index,
            name=name,
            type=stem_file.type,
            derived=derived,
            mp3_url=mp3.url,
            mp3_size=mp3.size_bytes,
            flac_url=flac_file.url,
            flac_size=flac_file.size_bytes,
        )

    # ---------- shared ----------

    async def _promote_cover(self, uploads: UploadSet, cover_art_url: str | None) -> str | None:
        if not cover_art_url:
            return None
        data = await self.storage.get_local_staged_file(cover_art_url)
        stored = await uploads.put(data, prefix="covers", name=file_name(cover_art_url))
        return stored.url

    async def _remove_staged(self, refs) -> None:
        for ref in refs:
            if not ref:
                continue
            try:
                await self.storage.delete_local_staged_file(ref)
            except MediaError as e:
                self.logger.warning("Could not remove staged file %s: %s", ref, e)


def file_name(ref: str) -> str:
    return ref.split("?", 1)[0].rstrip("/").rsplit("/", 1)[-1] or f"cover-{uuid.uuid4().hex}"
