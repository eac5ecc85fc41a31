from __future__ import annotations

import asyncio
import io
import logging
import wave
from dataclasses import dataclass
from typing import cast

import librosa
import numpy as np
import soundfile as sf

from wavmedia.core.errors import MixError


@dataclass(frozen=True)
class StemAudio:
    name: str
    wav: bytes


@dataclass(frozen=True)
class MixResult:
    wav: bytes
    sample_rate: int
    frames: int

    @property
    def duration(self) -> float:
        return self.frames / self.sample_rate if self.sample_rate else 0.0


class TrackMixer:
    """
    Equal-weight mix of N stem WAVs into one stereo 16-bit WAV.

    The output is as long as the longest stem; shorter stems are padded with
    silence. Mono stems are duplicated to stereo. Stems at a different sample
    rate are resampled to ``target_sample_rate`` (librosa) when ``normalize``
    is on, otherwise a rate mismatch raises MixError.
    """

    CHANNELS = 2
    SAMPWIDTH = 2  # 16-bit

    def __init__(self, *, target_sample_rate: int | None = None, normalize: bool = True):
        self.target_sample_rate = target_sample_rate
        self.normalize = normalize
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def mix(self, stems: list[StemAudio]) -> MixResult:
        return await asyncio.to_thread(self._mix_sync, stems)

    def _mix_sync(self, stems: list[StemAudio]) -> MixResult:
        if not stems:
            raise MixError("Cannot mix zero stems")

        decoded = [self._decode(s) for s in stems]
        rates = {sr for _, sr in decoded}

        if self.target_sample_rate is not None:
            target_sr = int(self.target_sample_rate)
        else:
            target_sr = decoded[0][1]

        if not self.normalize and (len(rates) > 1 or target_sr not in rates):
            raise MixError(f"Stems have mismatched sample rates {sorted(rates)}; decode must normalise them first")

        buffers: list[np.ndarray] = []
        for (audio, sr), stem in zip(decoded, stems):
            if sr != target_sr:
                self.logger.info("Resampling stem %r from %d Hz to %d Hz", stem.name, sr, target_sr)
                audio = self._resample_stereo(audio, orig_sr=sr, target_sr=target_sr)
            buffers.append(audio)

        frames = max(b.shape[0] for b in buffers)
        acc = np.zeros((frames, self.CHANNELS), dtype=np.float64)
        for b in buffers:
            acc[: b.shape[0]] += b
        acc /= len(buffers)

        self.logger.info("Mixed %d stems: %d frames at %d Hz", len(buffers), frames, target_sr)
        return MixResult(wav=self._float_stereo_to_wav_bytes(acc, target_sr), sample_rate=target_sr, frames=frames)

    def _decode(self, stem: StemAudio) -> tuple[np.ndarray, int]:
        try:
            read_result = sf.read(io.BytesIO(stem.wav), dtype="float32", always_2d=True)
        except sf.SoundFileError as e:
            raise MixError(f"Stem {stem.name!r} is not decodable audio: {e}") from e
        y = cast(np.ndarray, read_result[0])
        sr = int(read_result[1])

        if y.shape[1] == 1:
            y = np.repeat(y, 2, axis=1)
        elif y.shape[1] != 2:
            raise MixError(f"Stem {stem.name!r} has {y.shape[1]} channels; only mono or stereo can be mixed")
        return y, sr

    def _resample_stereo(self, y: np.ndarray, *, orig_sr: int, target_sr: int) -> np.ndarray:
        if y.size == 0:
            return np.zeros((0, 2), dtype=np.float32)
        # both channels in one call keeps them aligned
        out = librosa.resample(np.ascontiguousarray(y.T), orig_sr=orig_sr, target_sr=target_sr)
        return np.asarray(out, dtype=np.float32).T

    def _float_stereo_to_wav_bytes(self, audio: np.ndarray, sample_rate: int) -> bytes:
        pcm = np.clip(audio, -1.0, 1.0)
        pcm = (pcm * 32767.0).astype(np.int16)

        buf = io.BytesIO()
        with wave.open(buf, "wb") as wf:
            wf.setnchannels(self.CHANNELS)
            wf.setsampwidth(self.SAMPWIDTH)
            wf.setframerate(sample_rate)
            wf.writeframes(pcm.tobytes())
        return buf.getvalue()
