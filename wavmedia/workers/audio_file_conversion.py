from __future__ import annotations

from wavmedia.core.errors import ConversionError, JobDataError, is_retryable
from wavmedia.core.timeutil import utcnow
from wavmedia.models import Stem, Track
from wavmedia.models.enums import AudioFormat, ConversionStatus, TrackStatus
from wavmedia.queue.definitions import AUDIO_FILE_CONVERSION
from wavmedia.queue.job_queue import JobContext
from wavmedia.repos.stem_repo import StemRepo
from wavmedia.repos.track_repo import TrackRepo
from wavmedia.schemas.jobs import AudioFileConversionPayload
from wavmedia.workers.base import PipelineWorker, UploadSet, file_ext, safe_name


class AudioFileConversionWorker(PipelineWorker):
    """
    On-demand WAV or FLAC rendition of a full track or one stem.

    Decodes from the sibling lossless rendition when it exists, otherwise
    re-renders the module original and picks the stem at its position.
    """

    queue_name = AUDIO_FILE_CONVERSION

    async def handle(self, ctx: JobContext[AudioFileConversionPayload]) -> dict:
        payload = ctx.payload
        fmt = AudioFormat(payload.format)
        stem_id = payload.stem_id if payload.type == "stem" else None

        async with self.deps.session_factory() as db:
            track = await TrackRepo(db).get_with_stems(payload.track_id)
            if track is None:
                raise JobDataError(f"Track {payload.track_id} not found")
            target = self._target(track, stem_id)
            if track.status is TrackStatus.PENDING_DELETION:
                return {"status": "skipped", "reason": "pending_deletion"}
            if fmt is AudioFormat.FLAC and target.is_flac_source and target.rendition_url(fmt):
                # the user-supplied FLAC is the rendition; nothing to derive
                self.logger.info("FLAC of %s is its lossless source", _label(payload))
                return {"status": "skipped", "reason": "already_completed", "url": target.rendition_url(fmt)}
            if target.conversion_status(fmt) is ConversionStatus.COMPLETED and target.rendition_url(fmt):
                self.logger.info("%s rendition of %s already exists", fmt.value, _label(payload))
                return {"status": "skipped", "reason": "already_completed", "url": target.rendition_url(fmt)}
            sibling_fmt = AudioFormat.FLAC if fmt is AudioFormat.WAV else AudioFormat.WAV
            sibling_url = target.rendition_url(sibling_fmt)
            position = next((i for i, s in enumerate(track.stems) if s.id == stem_id), None)
            original_url = track.original_url if track.is_module else None
            original_format = track.original_format
            title = track.title
            user_id = track.user_id

        await self.set_rendition_status(
            track_id=payload.track_id, stem_id=stem_id, fmt=fmt, status=ConversionStatus.IN_PROGRESS
        )
        try:
            return await self._convert(
                payload,
                fmt=fmt,
                stem_id=stem_id,
                sibling_url=sibling_url,
                original_url=original_url,
                original_format=original_format,
                position=position,
                title=title,
                user_id=user_id,
            )
        except Exception as e:
            if ctx.is_last_attempt or not is_retryable(e):
                await self.set_rendition_status(
                    track_id=payload.track_id, stem_id=stem_id, fmt=fmt, status=ConversionStatus.FAILED,
                    only_from=[ConversionStatus.IN_PROGRESS],
                )
            raise

    async def on_exhausted(self, payload: AudioFileConversionPayload, error: BaseException) -> None:
        await self.set_rendition_status(
            track_id=payload.track_id,
            stem_id=payload.stem_id if payload.type == "stem" else None,
            fmt=AudioFormat(payload.format),
            status=ConversionStatus.FAILED,
            only_from=[ConversionStatus.IN_PROGRESS],
        )

    async def _convert(
        self,
        payload: AudioFileConversionPayload,
        *,
        fmt: AudioFormat,
        stem_id,
        sibling_url: str | None,
        original_url: str | None,
        original_format,
        position: int | None,
        title: str,
        user_id,
    ) -> dict:
        if sibling_url:
            sibling = await self.storage.read(sibling_url)
            if fmt is AudioFormat.WAV:
                output = await self.converter.flac_to_wav(sibling)
            else:
                output = await self.converter.wav_to_flac(await self.wav_from(sibling, file_ext(sibling_url)))
            source = "sibling"
        elif original_url:
            render = await self.converter.module_to_wav(await self.storage.read(original_url), original_format)
            if stem_id is None:
                wav = render.full_mix_wav
            else:
                if position is None or position >= len(render.stems):
                    raise ConversionError(
                        f"Module render has {len(render.stems)} stems, no stem at position {position}",
                        "STEM_ORDER_UNKNOWN",
                    )
                wav = render.stems[position].wav
            output = wav if fmt is AudioFormat.WAV else await self.converter.wav_to_flac(wav)
            source = "module"
        else:
            raise ConversionError(f"No source available for {fmt.value} rendition of {_label(payload)}", "NO_SOURCE")

        suffix = f"_stem_{position:02d}" if stem_id is not None else ""
        uploads = UploadSet(self.storage)
        try:
            stored = await uploads.put(
                output,
                prefix="stems" if stem_id is not None else "tracks",
                name=f"{safe_name(title)}{suffix}",
                fmt=fmt,
            )
            async with self.transaction(f"{fmt.value} rendition of {_label(payload)}") as db:
                item = await self._load(db, payload.track_id, stem_id)
                if (
                    item is None
                    or item.conversion_status(fmt) is not ConversionStatus.IN_PROGRESS
                    or (fmt is AudioFormat.FLAC and item.is_flac_source)
                ):
                    stale = True
                else:
                    stale = False
                    item.store_rendition(fmt, url=stored.url, size_bytes=stored.size_bytes, now=utcnow())
                    item.set_conversion_status(fmt, ConversionStatus.COMPLETED)
                    await self.quota.apply_usage(db, user_id, bytes_delta=stored.size_bytes)
            if stale:
                await uploads.discard(self.deleter, context=f"stale {fmt.value} rendition")
                return {"status": "skipped", "reason": "superseded"}
            uploads.keep()
        except Exception:
            await uploads.discard(self.deleter, context=f"{fmt.value} rendition of {_label(payload)}")
            raise

        self.logger.info(
            "Created %s rendition of %s from %s (%d bytes)", fmt.value, _label(payload), source, stored.size_bytes
        )
        return {"status": "completed", "url": stored.url, "sizeBytes": stored.size_bytes, "source": source}

    @staticmethod
    def _target(track: Track, stem_id) -> Track | Stem:
        if stem_id is None:
            return track
        for stem in track.stems:
            if stem.id == stem_id:
                return stem
        raise JobDataError(f"Stem {stem_id} not found on track {track.id}")

    @staticmethod
    async def _load(db, track_id, stem_id) -> Track | Stem | None:
        if stem_id is not None:
            return await StemRepo(db).get(stem_id, for_update=True)
        return await TrackRepo(db).get(track_id, for_update=True)


def _label(payload: AudioFileConversionPayload) -> str:
    if payload.type == "stem":
        return f"stem {payload.stem_id} of track {payload.track_id}"
    return f"track {payload.track_id}"
