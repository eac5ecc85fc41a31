from wavmedia.workers.audio_file_conversion import AudioFileConversionWorker
from wavmedia.workers.base import PipelineDeps, PipelineWorker
from wavmedia.workers.file_cleanup import FileCleanupWorker, schedule_daily_cleanup
from wavmedia.workers.full_track_replacement import FullTrackReplacementWorker
from wavmedia.workers.stem_processing import StemProcessingWorker
from wavmedia.workers.track_conversion import TrackConversionWorker
from wavmedia.workers.track_deletion import TrackDeletionWorker
from wavmedia.workers.track_regeneration import TrackRegenerationWorker

WORKER_CLASSES: tuple[type[PipelineWorker], ...] = (
    TrackConversionWorker,
    AudioFileConversionWorker,
    StemProcessingWorker,
    FullTrackReplacementWorker,
    TrackRegenerationWorker,
    TrackDeletionWorker,
    FileCleanupWorker,
)


def register_workers(deps: PipelineDeps) -> dict[str, PipelineWorker]:
    """Instantiate every worker and register its handler on ``deps.queue``."""
    workers: dict[str, PipelineWorker] = {}
    for cls in WORKER_CLASSES:
        worker = cls(deps)
        deps.queue.process(worker.definition(), worker.handle)
        workers[worker.queue_name] = worker
    return workers


__all__ = [
    "AudioFileConversionWorker",
    "FileCleanupWorker",
    "FullTrackReplacementWorker",
    "PipelineDeps",
    "PipelineWorker",
    "StemProcessingWorker",
    "TrackConversionWorker",
    "TrackDeletionWorker",
    "TrackRegenerationWorker",
    "WORKER_CLASSES",
    "register_workers",
    "schedule_daily_cleanup",
]
