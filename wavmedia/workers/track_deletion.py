from __future__ import annotations

from wavmedia.models import Track
from wavmedia.queue.definitions import TRACK_DELETION
from wavmedia.queue.job_queue import JobContext
from wavmedia.repos.track_repo import TrackRepo
from wavmedia.schemas.jobs import TrackDeletionPayload
from wavmedia.workers.base import PipelineWorker, disposable_bytes


class TrackDeletionWorker(PipelineWorker):
    """
    Removes tracks marked PENDING_DELETION together with their files.

    A track's rows go only when every one of its files was deleted. Files
    still referenced by a track or stem outside the batch (fork sharing) are
    left alone.
    """

    queue_name = TRACK_DELETION

    async def handle(self, ctx: JobContext[TrackDeletionPayload]) -> dict:
        track_ids = list(dict.fromkeys(ctx.payload.track_ids))
        async with self.deps.session_factory() as db:
            tracks = await TrackRepo(db).list_pending_deletion(track_ids)
            if len(tracks) != len(track_ids):
                self.logger.info(
                    "%d of %d tracks are not pending deletion; ignoring them",
                    len(track_ids) - len(tracks), len(track_ids),
                )
            plans = [(t, await self._owned_urls(TrackRepo(db), t, tracks)) for t in tracks]

        deleted: list[str] = []
        failed: list[dict] = []
        batch_size = max(1, self.settings.TRACK_DELETION_BATCH_SIZE)
        for start in range(0, len(plans), batch_size):
            batch = plans[start:start + batch_size]
            ok, bad = await self._delete_batch(batch)
            deleted.extend(ok)
            failed.extend(bad)

        if failed:
            self.logger.error(
                "Track deletion left %d track(s) in place: %s", len(failed), [f["trackId"] for f in failed]
            )
        self.logger.info("Deleted %d track(s)", len(deleted))
        return {"deleted": deleted, "failed": failed}

    async def _owned_urls(self, repo: TrackRepo, track: Track, batch: list[Track]) -> list[str]:
        """Files of ``track`` that no record outside this deletion batch points at."""
        batch_track_ids = [t.id for t in batch]
        batch_stem_ids = [s.id for t in batch for s in t.stems]
        urls = list(track.file_urls())
        for stem in track.stems:
            urls.extend(stem.file_urls())
        owned = []
        for url in dict.fromkeys(urls):
            shared = await repo.count_url_references(
                url, exclude_track_ids=batch_track_ids, exclude_stem_ids=batch_stem_ids
            )
            if shared:
                self.logger.info("Keeping %s of track %s: shared with %d other record(s)", url, track.id, shared)
            else:
                owned.append(url)
        return owned

    async def _delete_batch(self, batch: list[tuple[Track, list[str]]]) -> tuple[list[str], list[dict]]:
        report = await self.deleter.delete_many(url for _, urls in batch for url in urls)
        errors = {f.url: f.error for f in report.failures}

        done: list[Track] = []
        failed: list[dict] = []
        for track, urls in batch:
            failures = [{"url": u, "error": errors[u]} for u in urls if u in errors]
            if failures:
                failed.append({"trackId": str(track.id), "failures": failures})
            else:
                done.append(track)

        if done:
            async with self.transaction(f"delete {len(done)} track(s)") as db:
                for track in done:
                    released = disposable_bytes(track) + sum(disposable_bytes(s) for s in track.stems)
                    await self.quota.apply_usage(
                        db, track.user_id,
                        seconds_delta=-(track.quota_seconds_charged or 0.0),
                        bytes_delta=-released,
                    )
                await TrackRepo(db).delete_tracks([t.id for t in done])
        return [str(t.id) for t in done], failed
