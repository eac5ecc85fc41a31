import io

import numpy as np
import pytest
import soundfile as sf

from wavmedia.core.errors import MixError
from wavmedia.renderers.track_mixer import StemAudio, TrackMixer

from conftest import audio_duration, make_wav

pytestmark = pytest.mark.anyio


async def test_output_is_as_long_as_longest_stem():
    stems = [
        StemAudio("drums", make_wav(1.0)),
        StemAudio("bass", make_wav(2.5)),
        StemAudio("lead", make_wav(0.4, channels=2)),
    ]
    result = await TrackMixer().mix(stems)

    assert result.duration == pytest.approx(2.5)
    assert audio_duration(result.wav) == pytest.approx(2.5)
    info = sf.info(io.BytesIO(result.wav))
    assert info.channels == 2
    assert info.samplerate == 8000


async def test_equal_weight_average():
    ones = np.full((100, 1), 0.5)
    buf = io.BytesIO()
    sf.write(buf, ones, 8000, format="WAV", subtype="PCM_16")
    silence = io.BytesIO()
    sf.write(silence, np.zeros((100, 1)), 8000, format="WAV", subtype="PCM_16")

    result = await TrackMixer().mix([StemAudio("a", buf.getvalue()), StemAudio("b", silence.getvalue())])
    data, _ = sf.read(io.BytesIO(result.wav), dtype="float32")
    assert data[:, 0] == pytest.approx(np.full(100, 0.25), abs=1e-3)


async def test_zero_stems_is_an_error():
    with pytest.raises(MixError):
        await TrackMixer().mix([])


async def test_rate_mismatch_without_normalisation_fails():
    stems = [StemAudio("a", make_wav(0.5, sample_rate=8000)), StemAudio("b", make_wav(0.5, sample_rate=16000))]
    with pytest.raises(MixError):
        await TrackMixer(normalize=False).mix(stems)


async def test_rate_mismatch_is_resampled_to_target():
    stems = [StemAudio("a", make_wav(0.5, sample_rate=8000)), StemAudio("b", make_wav(1.0, sample_rate=16000))]
    result = await TrackMixer(target_sample_rate=8000).mix(stems)
    assert result.sample_rate == 8000
    assert result.duration == pytest.approx(1.0, abs=1e-3)


async def test_more_than_two_channels_is_rejected():
    buf = io.BytesIO()
    sf.write(buf, np.zeros((10, 4)), 8000, format="WAV", subtype="PCM_16")
    with pytest.raises(MixError):
        await TrackMixer().mix([StemAudio("quad", buf.getvalue())])
