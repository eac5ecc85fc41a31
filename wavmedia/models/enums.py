from __future__ import annotations

import enum

from wavmedia.core.errors import InvalidStatusTransition


class SourceFormat(str, enum.Enum):
    XM = "XM"
    IT = "IT"
    MOD = "MOD"
    WAV = "WAV"
    FLAC = "FLAC"

    @property
    def is_module(self) -> bool:
        return self in MODULE_FORMATS


MODULE_FORMATS = frozenset({SourceFormat.XM, SourceFormat.IT, SourceFormat.MOD})


class AudioFormat(str, enum.Enum):
    WAV = "wav"
    MP3 = "mp3"
    FLAC = "flac"

    @property
    def mime(self) -> str:
        if self is AudioFormat.MP3:
            return "audio/mpeg"
        if self is AudioFormat.WAV:
            return "audio/wav"
        return "audio/flac"


class TrackStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    PENDING_DELETION = "PENDING_DELETION"


class ConversionStatus(str, enum.Enum):
    """Lifecycle of one derived rendition (per artifact and target format)."""

    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# A new job always restarts at IN_PROGRESS. NOT_STARTED is the reset state used
# when the source audio is replaced and the old rendition is invalidated.
_TRANSITIONS: dict[ConversionStatus, frozenset[ConversionStatus]] = {
    ConversionStatus.NOT_STARTED: frozenset({ConversionStatus.IN_PROGRESS, ConversionStatus.NOT_STARTED}),
    ConversionStatus.IN_PROGRESS: frozenset(
        {
            ConversionStatus.IN_PROGRESS,
            ConversionStatus.COMPLETED,
            ConversionStatus.FAILED,
            ConversionStatus.NOT_STARTED,
        }
    ),
    ConversionStatus.COMPLETED: frozenset({ConversionStatus.IN_PROGRESS, ConversionStatus.NOT_STARTED}),
    ConversionStatus.FAILED: frozenset({ConversionStatus.IN_PROGRESS, ConversionStatus.NOT_STARTED}),
}

_missing = set(ConversionStatus) - set(_TRANSITIONS)
if _missing:  # pragma: no cover
    raise RuntimeError(f"conversion status transitions missing for {sorted(s.value for s in _missing)}")


def check_transition(current: ConversionStatus | None, target: ConversionStatus) -> ConversionStatus:
    """Return ``target`` if ``current -> target`` is allowed, raise otherwise."""
    current = current or ConversionStatus.NOT_STARTED
    if target not in _TRANSITIONS[current]:
        raise InvalidStatusTransition(current.value, target.value)
    return target
