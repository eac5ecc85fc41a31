from __future__ import annotations

from dataclasses import dataclass

from pydantic import BaseModel

from wavmedia.queue.job_queue import ExhaustedHook, QueueDefinition
from wavmedia.schemas.jobs import (
    AudioFileConversionPayload,
    FileCleanupPayload,
    FullTrackReplacementPayload,
    StemProcessingPayload,
    TrackConversionPayload,
    TrackDeletionPayload,
    TrackRegenerationPayload,
)

TRACK_CONVERSION = "audio-conversion"
AUDIO_FILE_CONVERSION = "audio-file-conversion"
STEM_PROCESSING = "stem-processing"
FULL_TRACK_REPLACEMENT = "full-track-replacement"
TRACK_REGENERATION = "track-regeneration"
TRACK_DELETION = "track-deletion"
FILE_CLEANUP = "file-cleanup"

DAILY_CLEANUP_KEY = "file-cleanup-daily"


@dataclass(frozen=True)
class QueueSpec:
    name: str
    payload_model: type[BaseModel]
    concurrency: int


# regeneration writes a track's full-mix slot, so it runs one job at a time
QUEUE_SPECS: dict[str, QueueSpec] = {
    s.name: s
    for s in (
        QueueSpec(TRACK_CONVERSION, TrackConversionPayload, 2),
        QueueSpec(AUDIO_FILE_CONVERSION, AudioFileConversionPayload, 2),
        QueueSpec(STEM_PROCESSING, StemProcessingPayload, 2),
        QueueSpec(FULL_TRACK_REPLACEMENT, FullTrackReplacementPayload, 2),
        QueueSpec(TRACK_REGENERATION, TrackRegenerationPayload, 1),
        QueueSpec(TRACK_DELETION, TrackDeletionPayload, 1),
        QueueSpec(FILE_CLEANUP, FileCleanupPayload, 1),
    )
}


def definition_for(name: str, *, on_exhausted: ExhaustedHook | None = None) -> QueueDefinition:
    spec = QUEUE_SPECS[name]
    return QueueDefinition(
        name=spec.name,
        payload_model=spec.payload_model,
        concurrency=spec.concurrency,
        on_exhausted=on_exhausted,
    )
