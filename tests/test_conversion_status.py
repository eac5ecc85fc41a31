import pytest

from wavmedia.core.errors import InvalidStatusTransition
from wavmedia.models import Stem, Track
from wavmedia.models.enums import AudioFormat, ConversionStatus as S, SourceFormat, check_transition


@pytest.mark.parametrize(
    "current, target",
    [
        (S.NOT_STARTED, S.IN_PROGRESS),
        (S.IN_PROGRESS, S.COMPLETED),
        (S.IN_PROGRESS, S.FAILED),
        (S.COMPLETED, S.IN_PROGRESS),
        (S.FAILED, S.IN_PROGRESS),
        (S.COMPLETED, S.NOT_STARTED),
        (None, S.IN_PROGRESS),
    ],
)
def test_allowed_transitions(current, target):
    assert check_transition(current, target) is target


@pytest.mark.parametrize(
    "current, target",
    [
        (S.NOT_STARTED, S.COMPLETED),
        (S.NOT_STARTED, S.FAILED),
        (S.COMPLETED, S.COMPLETED),
        (S.COMPLETED, S.FAILED),
        (S.FAILED, S.FAILED),
        (S.FAILED, S.COMPLETED),
    ],
)
def test_never_skips_in_progress(current, target):
    with pytest.raises(InvalidStatusTransition):
        check_transition(current, target)


def test_store_and_clear_rendition_on_stem():
    stem = Stem(index=0, name="Track 01", wav_conversion_status=S.NOT_STARTED, flac_conversion_status=S.NOT_STARTED)
    stem.set_conversion_status(AudioFormat.WAV, S.IN_PROGRESS)
    stem.store_rendition(AudioFormat.WAV, url="http://x/a.wav", size_bytes=10)
    stem.set_conversion_status(AudioFormat.WAV, S.COMPLETED)
    assert stem.wav_url == "http://x/a.wav"
    assert stem.size_bytes(AudioFormat.WAV) == 10

    stem.clear_rendition(AudioFormat.WAV)
    assert stem.wav_url is None
    assert stem.wav_size_bytes is None
    assert stem.conversion_status(AudioFormat.WAV) is S.NOT_STARTED


def test_mp3_rendition_is_never_cleared():
    track = Track(title="t", original_format=SourceFormat.XM, full_track_mp3_url="http://x/a.mp3")
    with pytest.raises(ValueError):
        track.clear_rendition(AudioFormat.MP3)
    with pytest.raises(ValueError):
        track.conversion_status(AudioFormat.MP3)


def test_track_file_urls_include_original_and_cover():
    track = Track(
        title="t",
        original_format=SourceFormat.IT,
        original_url="http://x/o.it",
        cover_art_url="http://x/c.png",
        full_track_mp3_url="http://x/a.mp3",
    )
    assert set(track.file_urls()) == {"http://x/o.it", "http://x/c.png", "http://x/a.mp3"}
    assert track.is_module
