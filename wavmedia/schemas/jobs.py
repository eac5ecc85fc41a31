"""Typed job payloads, one model per queue.

Payloads travel as camelCase JSON (``trackId``); Python code uses the
snake_case attribute names.
"""
from __future__ import annotations

import uuid
from datetime import timedelta
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class JobPayload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class StemFileIn(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    url: str
    original_name: str
    name: Optional[str] = None
    type: str = "audio"


class TrackConversionPayload(JobPayload):
    track_id: uuid.UUID
    # staged stems uploaded alongside a raw WAV/FLAC track
    stem_files: List[StemFileIn] = Field(default_factory=list)
    cover_art_url: Optional[str] = None


class AudioFileConversionPayload(JobPayload):
    track_id: uuid.UUID
    type: Literal["full", "stem"]
    stem_id: Optional[uuid.UUID] = None
    format: Literal["wav", "flac"]

    @model_validator(mode="after")
    def _stem_id_for_stem(self):
        if self.type == "stem" and self.stem_id is None:
            raise ValueError("stemId is required when type is 'stem'")
        return self


class StemProcessingPayload(JobPayload):
    stem_id: uuid.UUID
    stem_file_url: str
    stem_file_name: str
    track_id: uuid.UUID
    user_id: uuid.UUID
    operation: Literal["add_stem", "replace_stem"] = "replace_stem"


class TrackRegenerationPayload(JobPayload):
    track_id: uuid.UUID
    reason: Literal["stem_added", "stem_updated", "stem_deleted", "manual"] = "manual"
    updated_stem_id: Optional[uuid.UUID] = None


class TrackDeletionPayload(JobPayload):
    track_ids: List[uuid.UUID]


class Timeframe(BaseModel):
    value: int = Field(gt=0)
    unit: Literal["days", "hours", "minutes", "seconds"] = "days"

    def to_timedelta(self) -> timedelta:
        return timedelta(**{self.unit: self.value})


class FileCleanupPayload(JobPayload):
    type: Literal["scheduled-cleanup"] = "scheduled-cleanup"
    timeframe: Optional[Timeframe] = None


class FullTrackReplacementPayload(JobPayload):
    track_id: uuid.UUID
    audio_file_url: str
