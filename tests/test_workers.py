import asyncio
from datetime import timedelta
from pathlib import Path

import pytest

from wavmedia.core.errors import StorageError
from wavmedia.core.timeutil import utcnow
from wavmedia.models.enums import ConversionStatus, SourceFormat, TrackStatus
from wavmedia.queue.definitions import (
    AUDIO_FILE_CONVERSION,
    FILE_CLEANUP,
    FULL_TRACK_REPLACEMENT,
    STEM_PROCESSING,
    TRACK_CONVERSION,
    TRACK_DELETION,
)
from wavmedia.queue.job_queue import JobContext
from wavmedia.repos.track_repo import TrackRepo
from wavmedia.repos.user_repo import UserRepo
from wavmedia.runtime import MediaRuntime
from wavmedia.schemas.jobs import StemFileIn, TrackConversionPayload
from wavmedia.services.storage_service import BlobStorageGateway, LocalObjectStore

from conftest import FlakyDeleteStore, audio_duration, make_flac, make_module, make_wav

pytestmark = pytest.mark.anyio


async def run_job(runtime, queue, payload):
    job_id = await runtime.queue.enqueue(queue, payload)
    await runtime.queue.drain()
    return await runtime.queue.get_job(job_id)


async def load_track(runtime, track_id):
    async with runtime.session_factory() as db:
        return await TrackRepo(db).get_with_stems(track_id)


async def load_user(runtime, user_id):
    async with runtime.session_factory() as db:
        return await UserRepo(db).get(user_id)


def staged_files(settings):
    return list(Path(settings.STAGING_DIR).iterdir())


async def upload(runtime, data, prefix, filename):
    return await runtime.storage.upload(data, prefix=prefix, filename=filename)


# ---------- track conversion ----------

async def test_module_track_is_rendered_into_mix_and_stems(runtime, settings, make_user, make_track):
    user = await make_user()
    track = await make_track(user, fmt=SourceFormat.XM, source=make_module([2.0, 1.5]), title="Chip Tune")

    job = await run_job(runtime, TRACK_CONVERSION, TrackConversionPayload(track_id=track.id))

    assert job.state == "completed"
    assert job.result["stems"] == 2
    row = await load_track(runtime, track.id)
    assert row.full_track_mp3_url.startswith("http://media.test/storage/tracks/")
    assert row.original_url.startswith("http://media.test/storage/originals/")
    assert row.duration == pytest.approx(2.0)
    assert row.waveform_data
    assert [s.index for s in row.stems] == [0, 1]
    assert [s.duration for s in row.stems] == pytest.approx([2.0, 1.5])
    assert all(s.mp3_url and s.waveform_data for s in row.stems)
    assert row.quota_seconds_charged == pytest.approx(2.0)
    assert (await load_user(runtime, user.id)).used_quota_seconds == pytest.approx(2.0)
    assert staged_files(settings) == []

    again = await run_job(runtime, TRACK_CONVERSION, TrackConversionPayload(track_id=track.id))
    assert again.result == {"status": "skipped", "reason": "already_converted"}
    assert (await load_user(runtime, user.id)).used_quota_seconds == pytest.approx(2.0)
    assert len((await load_track(runtime, track.id)).stems) == 2


async def test_raw_track_keeps_going_when_one_stem_is_bad(runtime, settings, make_user, make_track):
    user = await make_user()
    track = await make_track(user, fmt=SourceFormat.WAV, source=make_wav(3.0), title="Live Take")
    drums = await runtime.storage.stage(make_wav(3.0), "drums.wav")
    bass = await runtime.storage.stage(make_flac(2.0), "bass.flac")
    notes = await runtime.storage.stage(b"not audio", "notes.txt")

    payload = TrackConversionPayload(
        track_id=track.id,
        stem_files=[
            StemFileIn(url=str(drums), original_name="drums.wav"),
            StemFileIn(url=str(bass), original_name="bass.flac", name="Bass"),
            StemFileIn(url=str(notes), original_name="notes.txt"),
        ],
    )
    job = await run_job(runtime, TRACK_CONVERSION, payload)

    assert job.state == "completed"
    assert job.result["stems"] == 2
    assert [(f["index"], f["name"]) for f in job.result["stemFailures"]] == [(2, "notes.txt")]

    row = await load_track(runtime, track.id)
    assert row.original_url is None
    assert row.is_flac_source
    assert row.full_track_flac_url and row.full_track_mp3_url
    assert [s.name for s in row.stems] == ["drums", "Bass"]
    assert [s.index for s in row.stems] == [0, 1]
    assert all(s.flac_url and s.mp3_url and s.is_flac_source for s in row.stems)
    assert row.flac_conversion_status is ConversionStatus.COMPLETED
    assert all(s.flac_conversion_status is ConversionStatus.COMPLETED for s in row.stems)
    assert (await load_user(runtime, user.id)).used_quota_seconds == pytest.approx(8.0)
    assert staged_files(settings) == []


async def test_raw_upload_over_quota_still_converts_and_warns(runtime, make_user, make_track):
    user = await make_user(free_quota_seconds=1.0)
    track = await make_track(user, fmt=SourceFormat.WAV, source=make_wav(2.0))

    job = await run_job(runtime, TRACK_CONVERSION, TrackConversionPayload(track_id=track.id))

    assert job.state == "completed"
    assert (await load_user(runtime, user.id)).is_over_quota


# ---------- on-demand renditions ----------

async def test_wav_and_flac_are_rendered_on_demand_from_the_module(runtime, make_user, make_track):
    user = await make_user()
    track = await make_track(user, fmt=SourceFormat.IT, source=make_module([1.0, 0.5, 0.75]))
    await run_job(runtime, TRACK_CONVERSION, TrackConversionPayload(track_id=track.id))

    full = await run_job(runtime, AUDIO_FILE_CONVERSION, {"trackId": str(track.id), "type": "full", "format": "wav"})
    assert full.result["source"] == "module"

    row = await load_track(runtime, track.id)
    assert row.wav_conversion_status is ConversionStatus.COMPLETED
    assert audio_duration(await runtime.storage.read(row.full_track_wav_url)) == pytest.approx(1.0)
    assert row.wav_last_requested_at is not None

    second = row.stems[1]
    stem_job = await run_job(
        runtime,
        AUDIO_FILE_CONVERSION,
        {"trackId": str(track.id), "type": "stem", "stemId": str(second.id), "format": "flac"},
    )
    assert stem_job.state == "completed"
    row = await load_track(runtime, track.id)
    flac_url = row.stems[1].flac_url
    assert row.stems[1].flac_conversion_status is ConversionStatus.COMPLETED
    assert audio_duration(await runtime.storage.read(flac_url)) == pytest.approx(0.5)

    user_row = await load_user(runtime, user.id)
    assert user_row.used_storage_bytes == full.result["sizeBytes"] + stem_job.result["sizeBytes"]

    repeat = await run_job(runtime, AUDIO_FILE_CONVERSION, {"trackId": str(track.id), "type": "full", "format": "wav"})
    assert repeat.result["reason"] == "already_completed"


async def test_wav_is_decoded_from_the_sibling_flac(runtime, make_user, make_track):
    user = await make_user()
    track = await make_track(user, fmt=SourceFormat.FLAC, source=make_flac(1.25))
    await run_job(runtime, TRACK_CONVERSION, TrackConversionPayload(track_id=track.id))

    job = await run_job(runtime, AUDIO_FILE_CONVERSION, {"trackId": str(track.id), "type": "full", "format": "wav"})

    assert job.result["source"] == "sibling"
    row = await load_track(runtime, track.id)
    assert audio_duration(await runtime.storage.read(row.full_track_wav_url)) == pytest.approx(1.25)


async def test_missing_source_fails_the_rendition_immediately(runtime, make_user, make_track):
    user = await make_user()
    track = await make_track(user, fmt=SourceFormat.WAV, full_track_mp3_url="http://media.test/storage/tracks/x.mp3")

    job = await run_job(runtime, AUDIO_FILE_CONVERSION, {"trackId": str(track.id), "type": "full", "format": "flac"})

    assert job.state == "failed"
    assert job.attempts_made == 1
    assert job.last_error.startswith("NO_SOURCE")
    row = await load_track(runtime, track.id)
    assert row.flac_conversion_status is ConversionStatus.FAILED


async def test_transient_failures_mark_failed_only_on_the_last_attempt(runtime, invoker, make_user, make_track):
    user = await make_user()
    track = await make_track(user, fmt=SourceFormat.FLAC, source=make_flac(0.5))
    await run_job(runtime, TRACK_CONVERSION, TrackConversionPayload(track_id=track.id))

    invoker.fail("ffmpeg", times=10)
    job_id = await runtime.queue.enqueue(
        AUDIO_FILE_CONVERSION, {"trackId": str(track.id), "type": "full", "format": "wav"}
    )
    assert await runtime.queue.run_once(AUDIO_FILE_CONVERSION)
    assert (await load_track(runtime, track.id)).wav_conversion_status is ConversionStatus.IN_PROGRESS

    await runtime.queue.drain()
    job = await runtime.queue.get_job(job_id)
    assert job.state == "failed"
    assert job.attempts_made == runtime.settings.JOB_ATTEMPTS
    assert (await load_track(runtime, track.id)).wav_conversion_status is ConversionStatus.FAILED


# ---------- stems and regeneration ----------

async def test_replacing_a_fork_stem_regenerates_the_mix(runtime, make_user, make_track, make_stem):
    user = await make_user()
    a = await upload(runtime, make_flac(1.0), "stems", "a.flac")
    b = await upload(runtime, make_flac(2.0), "stems", "b.flac")
    fork = await make_track(
        user, fmt=SourceFormat.WAV, title="Remix", is_fork=True, duration=2.0, is_flac_source=True
    )
    stem_a = await make_stem(fork, index=0, name="A", flac_url=a.url, duration=1.0, is_flac_source=True)
    await make_stem(fork, index=1, name="B", flac_url=b.url, duration=2.0, is_flac_source=True)

    replacement = await runtime.storage.stage(make_wav(4.0), "a_new.wav")
    job = await run_job(
        runtime,
        STEM_PROCESSING,
        {
            "stemId": str(stem_a.id),
            "stemFileUrl": str(replacement),
            "stemFileName": "a_new.wav",
            "trackId": str(fork.id),
            "userId": str(user.id),
            "operation": "replace_stem",
        },
    )

    assert job.state == "completed"
    regen = await runtime.queue.get_job(job.result["regenerationJobId"])
    assert regen.state == "completed"
    assert regen.result["reason"] == "stem_updated"

    row = await load_track(runtime, fork.id)
    assert row.stems[0].duration == pytest.approx(4.0)
    assert row.duration == pytest.approx(4.0)
    assert row.wav_conversion_status is ConversionStatus.COMPLETED
    assert row.flac_conversion_status is ConversionStatus.COMPLETED
    assert audio_duration(await runtime.storage.read(row.full_track_wav_url)) == pytest.approx(4.0)
    assert row.full_track_mp3_url

    with pytest.raises(StorageError):
        await runtime.storage.read(a.url)
    user_row = await load_user(runtime, user.id)
    assert user_row.used_quota_seconds == pytest.approx(3.0)
    assert row.quota_seconds_charged == pytest.approx(3.0)


async def test_shorter_replacement_does_not_refund_quota(runtime, make_user, make_track, make_stem):
    user = await make_user(used_quota_seconds=5.0)
    a = await upload(runtime, make_flac(3.0), "stems", "a.flac")
    fork = await make_track(user, fmt=SourceFormat.WAV, is_fork=True, is_flac_source=True)
    stem = await make_stem(fork, index=0, flac_url=a.url, duration=3.0, is_flac_source=True)

    replacement = await runtime.storage.stage(make_wav(1.0), "short.wav")
    await run_job(
        runtime,
        STEM_PROCESSING,
        {
            "stemId": str(stem.id),
            "stemFileUrl": str(replacement),
            "stemFileName": "short.wav",
            "trackId": str(fork.id),
            "userId": str(user.id),
        },
    )

    assert (await load_user(runtime, user.id)).used_quota_seconds == pytest.approx(5.0)


# ---------- full track replacement ----------

async def test_full_track_replacement_respects_quota(runtime, settings, make_user, make_track):
    user = await make_user(free_quota_seconds=10.0, used_quota_seconds=5.0)
    old_mp3 = await upload(runtime, b"ID3old", "tracks", "old.mp3")
    old_flac = await upload(runtime, make_flac(3.0), "tracks", "old.flac")
    track = await make_track(
        user,
        fmt=SourceFormat.WAV,
        duration=3.0,
        quota_seconds_charged=3.0,
        is_flac_source=True,
        full_track_mp3_url=old_mp3.url,
        full_track_flac_url=old_flac.url,
    )

    too_long = await runtime.storage.stage(make_wav(20.0), "long.wav")
    skipped = await run_job(
        runtime, FULL_TRACK_REPLACEMENT, {"trackId": str(track.id), "audioFileUrl": str(too_long)}
    )
    assert skipped.state == "completed"
    assert skipped.result["reason"] == "quota_exceeded"
    assert (await load_track(runtime, track.id)).full_track_mp3_url == old_mp3.url
    assert staged_files(settings) == []

    fits = await runtime.storage.stage(make_flac(6.0), "new.flac")
    done = await run_job(runtime, FULL_TRACK_REPLACEMENT, {"trackId": str(track.id), "audioFileUrl": str(fits)})
    assert done.result["status"] == "completed"

    row = await load_track(runtime, track.id)
    assert row.duration == pytest.approx(6.0)
    assert row.full_track_mp3_url != old_mp3.url
    assert row.flac_conversion_status is ConversionStatus.COMPLETED
    assert row.quota_seconds_charged == pytest.approx(6.0)
    assert (await load_user(runtime, user.id)).used_quota_seconds == pytest.approx(8.0)
    for url in (old_mp3.url, old_flac.url):
        with pytest.raises(StorageError):
            await runtime.storage.read(url)


async def test_full_track_replacement_rejects_other_formats(runtime, make_user, make_track):
    user = await make_user()
    track = await make_track(user, fmt=SourceFormat.WAV)
    staged = await runtime.storage.stage(b"ID3", "new.mp3")

    job = await run_job(runtime, FULL_TRACK_REPLACEMENT, {"trackId": str(track.id), "audioFileUrl": str(staged)})

    assert job.state == "failed"
    assert job.last_error.startswith("UNSUPPORTED_FORMAT")
    assert staged_files(runtime.settings) == []


# ---------- deletion ----------

async def test_deletion_keeps_tracks_whose_files_could_not_be_removed(
    settings, engine, invoker, redis, make_user, make_track, make_stem
):
    store = FlakyDeleteStore(LocalObjectStore(settings.STORAGE_DIR), broken=["covers/"])
    storage = BlobStorageGateway(store, base_url=settings.STORAGE_BASE_URL, staging_dir=settings.STAGING_DIR)
    flaky = MediaRuntime(settings, engine=engine, invoker=invoker, storage=storage, redis=redis)
    try:
        user = await make_user(used_quota_seconds=10.0)
        a_mp3 = await upload(flaky, b"ID3a", "tracks", "a.mp3")
        a_stem = await upload(flaky, b"ID3s", "stems", "a_stem.mp3")
        shared = await upload(flaky, make_flac(0.1), "tracks", "shared.flac")
        b_cover = await upload(flaky, b"png", "covers", "b.png")

        a = await make_track(
            user, fmt=SourceFormat.WAV, status=TrackStatus.PENDING_DELETION, quota_seconds_charged=4.0,
            full_track_mp3_url=a_mp3.url, full_track_flac_url=shared.url,
        )
        await make_stem(a, index=0, mp3_url=a_stem.url)
        b = await make_track(
            user, fmt=SourceFormat.WAV, status=TrackStatus.PENDING_DELETION, quota_seconds_charged=6.0,
            cover_art_url=b_cover.url,
        )
        keeper = await make_track(user, fmt=SourceFormat.WAV, is_fork=True, full_track_flac_url=shared.url)

        job = await run_job(flaky, TRACK_DELETION, {"trackIds": [str(a.id), str(b.id), str(keeper.id)]})

        assert job.result["deleted"] == [str(a.id)]
        [failure] = job.result["failed"]
        assert failure["trackId"] == str(b.id)
        assert [f["url"] for f in failure["failures"]] == [b_cover.url]

        assert await load_track(flaky, a.id) is None
        assert (await load_track(flaky, b.id)).status is TrackStatus.PENDING_DELETION
        assert await load_track(flaky, keeper.id) is not None
        assert await flaky.storage.read(shared.url)
        for url in (a_mp3.url, a_stem.url):
            with pytest.raises(StorageError):
                await flaky.storage.read(url)
        assert (await load_user(flaky, user.id)).used_quota_seconds == pytest.approx(6.0)
    finally:
        await flaky.close()


# ---------- cleanup ----------

async def test_cleanup_reclaims_only_stale_regenerable_files(runtime, make_user, make_track, make_stem):
    user = await make_user(used_storage_bytes=1_000_000)
    old = utcnow() - timedelta(days=60)
    recent = utcnow() - timedelta(days=1)

    mod_wav = await upload(runtime, make_wav(0.2), "tracks", "m.wav")
    mod_flac = await upload(runtime, make_flac(0.2), "tracks", "m.flac")
    mod_mp3 = await upload(runtime, b"ID3m", "tracks", "m.mp3")
    stem_wav = await upload(runtime, make_wav(0.2), "stems", "s.wav")
    raw_wav = await upload(runtime, make_wav(0.2), "tracks", "r.wav")
    raw_flac = await upload(runtime, make_flac(0.2), "tracks", "r.flac")

    module_track = await make_track(
        user,
        fmt=SourceFormat.XM,
        original_url="http://media.test/storage/originals/m.xm",
        full_track_mp3_url=mod_mp3.url,
        full_track_wav_url=mod_wav.url,
        wav_size_bytes=mod_wav.size_bytes,
        wav_last_requested_at=old,
        wav_conversion_status=ConversionStatus.COMPLETED,
        full_track_flac_url=mod_flac.url,
        flac_size_bytes=mod_flac.size_bytes,
        flac_last_requested_at=recent,
        flac_conversion_status=ConversionStatus.COMPLETED,
    )
    await make_stem(
        module_track, index=0, wav_url=stem_wav.url, wav_size_bytes=stem_wav.size_bytes,
        wav_last_requested_at=old, wav_conversion_status=ConversionStatus.COMPLETED,
    )
    raw_track = await make_track(
        user,
        fmt=SourceFormat.WAV,
        is_flac_source=True,
        full_track_wav_url=raw_wav.url,
        wav_size_bytes=raw_wav.size_bytes,
        wav_last_requested_at=old,
        full_track_flac_url=raw_flac.url,
        flac_size_bytes=raw_flac.size_bytes,
        flac_last_requested_at=old,
    )

    job = await run_job(runtime, FILE_CLEANUP, {"timeframe": {"value": 30, "unit": "days"}})

    assert job.result["deleted"] == {"fullTrackWav": 2, "fullTrackFlac": 0, "stemWav": 1, "stemFlac": 0}
    assert job.result["failures"] == []
    assert job.result["continuationJobId"] is None

    module_row = await load_track(runtime, module_track.id)
    assert module_row.full_track_wav_url is None
    assert module_row.wav_conversion_status is ConversionStatus.NOT_STARTED
    assert module_row.full_track_flac_url == mod_flac.url
    assert module_row.stems[0].wav_url is None
    raw_row = await load_track(runtime, raw_track.id)
    assert raw_row.full_track_wav_url is None
    assert raw_row.full_track_flac_url == raw_flac.url

    assert await runtime.storage.read(mod_mp3.url)
    assert await runtime.storage.read(raw_flac.url)
    for url in (mod_wav.url, stem_wav.url, raw_wav.url):
        with pytest.raises(StorageError):
            await runtime.storage.read(url)

    released = mod_wav.size_bytes + stem_wav.size_bytes + raw_wav.size_bytes
    assert (await load_user(runtime, user.id)).used_storage_bytes == 1_000_000 - released


async def test_cleanup_continues_in_a_follow_up_job(runtime, settings, make_user, make_track):
    settings.CLEANUP_BATCH_SIZE = 1
    user = await make_user()
    old = utcnow() - timedelta(days=60)
    for i in range(2):
        wav = await upload(runtime, make_wav(0.1), "tracks", f"{i}.wav")
        await make_track(
            user, fmt=SourceFormat.MOD, full_track_wav_url=wav.url, wav_size_bytes=wav.size_bytes,
            wav_last_requested_at=old,
        )

    job_id = await runtime.queue.enqueue(FILE_CLEANUP, {})
    assert await runtime.queue.run_once(FILE_CLEANUP)
    job = await runtime.queue.get_job(job_id)

    assert job.result["tracks"] == 1
    continuation = await runtime.queue.get_job(job.result["continuationJobId"])
    assert continuation.state == "waiting"
    assert continuation.name == "file-cleanup:continuation"


# ---------- lossless sources ----------

async def test_flac_request_for_a_raw_track_returns_its_source(runtime, make_user, make_track):
    user = await make_user()
    track = await make_track(user, fmt=SourceFormat.WAV, source=make_wav(1.0))
    await run_job(runtime, TRACK_CONVERSION, TrackConversionPayload(track_id=track.id))
    converted = await load_track(runtime, track.id)
    assert converted.flac_conversion_status is ConversionStatus.COMPLETED

    job = await run_job(runtime, AUDIO_FILE_CONVERSION, {"trackId": str(track.id), "type": "full", "format": "flac"})

    assert job.state == "completed"
    assert job.result == {"status": "skipped", "reason": "already_completed", "url": converted.full_track_flac_url}
    row = await load_track(runtime, track.id)
    assert row.full_track_flac_url == converted.full_track_flac_url
    assert row.flac_conversion_status is ConversionStatus.COMPLETED
    assert (await load_user(runtime, user.id)).used_storage_bytes == 0


async def test_flac_request_never_fails_a_track_that_only_has_its_source(runtime, make_user, make_track):
    user = await make_user()
    flac = await upload(runtime, make_flac(0.5), "tracks", "source.flac")
    track = await make_track(
        user, fmt=SourceFormat.FLAC, is_flac_source=True, full_track_flac_url=flac.url,
        full_track_mp3_url="http://media.test/storage/tracks/source.mp3",
    )

    job = await run_job(runtime, AUDIO_FILE_CONVERSION, {"trackId": str(track.id), "type": "full", "format": "flac"})

    assert job.state == "completed"
    assert job.result["reason"] == "already_completed"
    row = await load_track(runtime, track.id)
    assert row.flac_conversion_status is not ConversionStatus.FAILED
    assert row.full_track_flac_url == flac.url


async def test_replaced_module_stem_keeps_its_uploaded_flac(runtime, make_user, make_track):
    user = await make_user()
    track = await make_track(user, fmt=SourceFormat.XM, source=make_module([2.0, 1.0]))
    await run_job(runtime, TRACK_CONVERSION, TrackConversionPayload(track_id=track.id))
    lead = (await load_track(runtime, track.id)).stems[0]

    replacement = await runtime.storage.stage(make_wav(3.0), "lead.wav")
    await run_job(
        runtime,
        STEM_PROCESSING,
        {
            "stemId": str(lead.id),
            "stemFileUrl": str(replacement),
            "stemFileName": "lead.wav",
            "trackId": str(track.id),
            "userId": str(user.id),
            "operation": "replace_stem",
        },
    )
    replaced = (await load_track(runtime, track.id)).stems[0]
    assert replaced.is_flac_source
    assert replaced.flac_conversion_status is ConversionStatus.COMPLETED

    job = await run_job(
        runtime,
        AUDIO_FILE_CONVERSION,
        {"trackId": str(track.id), "type": "stem", "stemId": str(lead.id), "format": "flac"},
    )

    assert job.result["reason"] == "already_completed"
    stem = (await load_track(runtime, track.id)).stems[0]
    assert stem.flac_url == replaced.flac_url
    assert audio_duration(await runtime.storage.read(stem.flac_url)) == pytest.approx(3.0)


# ---------- duplicate deliveries ----------

async def test_overlapping_deliveries_of_one_conversion_commit_once(
    runtime, settings, make_user, make_track, monkeypatch
):
    user = await make_user()
    track = await make_track(user, fmt=SourceFormat.XM, source=make_module([2.0, 1.0]), title="Twice")
    worker = runtime.workers[TRACK_CONVERSION]

    paused, resume = asyncio.Event(), asyncio.Event()
    derive = worker.derive
    calls = 0

    async def first_derive_waits(wav, *, kbps):
        nonlocal calls
        calls += 1
        if calls == 1:
            paused.set()
            await resume.wait()
        return await derive(wav, kbps=kbps)

    locked_reads = []
    get = TrackRepo.get

    async def recording_get(self, track_id, *, for_update=False):
        locked_reads.append(for_update)
        return await get(self, track_id, for_update=for_update)

    monkeypatch.setattr(worker, "derive", first_derive_waits)
    monkeypatch.setattr(TrackRepo, "get", recording_get)

    def delivery(n):
        return JobContext(
            job_id=f"delivery-{n}", queue=TRACK_CONVERSION, name=TRACK_CONVERSION,
            attempt=1, max_attempts=3, payload=TrackConversionPayload(track_id=track.id),
        )

    first = asyncio.create_task(worker.handle(delivery(1)))
    await paused.wait()
    second = await worker.handle(delivery(2))
    resume.set()
    first_result = await first

    assert second["status"] == "completed"
    assert first_result == {"status": "skipped", "reason": "superseded"}
    assert True in locked_reads

    row = await load_track(runtime, track.id)
    assert [s.index for s in row.stems] == [0, 1]
    assert row.quota_seconds_charged == pytest.approx(2.0)
    assert (await load_user(runtime, user.id)).used_quota_seconds == pytest.approx(2.0)
    storage_root = Path(settings.STORAGE_DIR)
    assert len([p for p in (storage_root / "tracks").rglob("*.mp3")]) == 1
    assert len([p for p in (storage_root / "stems").rglob("*.mp3")]) == 2
    assert len([p for p in (storage_root / "originals").rglob("*") if p.is_file()]) == 1


# ---------- partial stem failures ----------

async def test_failed_stem_leaves_no_files_and_no_index_gap(runtime, settings, make_user, make_track, monkeypatch):
    user = await make_user()
    track = await make_track(user, fmt=SourceFormat.WAV, source=make_wav(1.0), title="Demo")
    keys = await runtime.storage.stage(make_wav(1.0), "keys.wav")
    vox = await runtime.storage.stage(make_wav(0.5), "vox.wav")
    upload_file = runtime.storage.upload
    refused = []

    async def first_stem_flac_refused(data, *, prefix, filename, mime=None):
        if prefix == "stems" and filename.endswith(".flac") and not refused:
            refused.append(filename)
            raise StorageError(f"bucket refused {filename}")
        return await upload_file(data, prefix=prefix, filename=filename, mime=mime)

    monkeypatch.setattr(runtime.storage, "upload", first_stem_flac_refused)
    payload = TrackConversionPayload(
        track_id=track.id,
        stem_files=[
            StemFileIn(url=str(keys), original_name="keys.wav"),
            StemFileIn(url=str(vox), original_name="vox.wav"),
        ],
    )
    job = await run_job(runtime, TRACK_CONVERSION, payload)

    assert job.state == "completed"
    assert job.result["stems"] == 1
    assert [(f["index"], f["name"]) for f in job.result["stemFailures"]] == [(0, "keys.wav")]
    row = await load_track(runtime, track.id)
    assert [(s.index, s.name) for s in row.stems] == [(0, "vox")]
    stem_files = [p for p in (Path(settings.STORAGE_DIR) / "stems").rglob("*") if p.is_file()]
    assert sorted(p.suffix for p in stem_files) == [".flac", ".mp3"]


# ---------- deletion batches ----------

async def test_deletion_removes_files_shared_only_inside_the_batch(runtime, make_user, make_track, make_stem):
    user = await make_user()
    shared_mp3 = await upload(runtime, b"ID3shared", "tracks", "shared.mp3")
    shared_stem = await upload(runtime, b"ID3stem", "stems", "shared_stem.mp3")
    original = await make_track(
        user, fmt=SourceFormat.WAV, status=TrackStatus.PENDING_DELETION, full_track_mp3_url=shared_mp3.url,
    )
    await make_stem(original, index=0, mp3_url=shared_stem.url)
    fork = await make_track(
        user, fmt=SourceFormat.WAV, status=TrackStatus.PENDING_DELETION, is_fork=True,
        full_track_mp3_url=shared_mp3.url,
    )
    await make_stem(fork, index=0, mp3_url=shared_stem.url)

    job = await run_job(runtime, TRACK_DELETION, {"trackIds": [str(original.id), str(fork.id)]})

    assert sorted(job.result["deleted"]) == sorted([str(original.id), str(fork.id)])
    assert job.result["failed"] == []
    for url in (shared_mp3.url, shared_stem.url):
        with pytest.raises(StorageError):
            await runtime.storage.read(url)
