from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass

import numpy as np
import soundfile as sf

from wavmedia.core.errors import ConversionError


@dataclass(frozen=True)
class WaveformSummary:
    """Flat ``[max0, min0, max1, min1, ...]`` peaks plus the exact duration."""

    peaks: tuple[float, ...]
    duration: float
    sample_rate: int
    channels: int
    total_samples: int

    def pairs(self) -> list[tuple[float, float]]:
        return [(self.peaks[i], self.peaks[i + 1]) for i in range(0, len(self.peaks), 2)]

    def to_json(self) -> list[float]:
        return list(self.peaks)


class WaveformExtractor:
    """
    Downsampled min/max summary of a 16-bit PCM WAV.

    Samples are taken as one interleaved stream (channels are not separated)
    and grouped in fixed blocks of ``samples_per_peak``. The running max/min
    start at zero and reset to zero after every flush, so each max is >= 0
    and each min is <= 0.
    """

    def __init__(self, *, samples_per_peak: int = 1000, read_frames: int = 65536):
        if samples_per_peak <= 0:
            raise ValueError("samples_per_peak must be positive")
        self.samples_per_peak = int(samples_per_peak)
        self.read_frames = int(read_frames)
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def extract(self, wav_bytes: bytes) -> WaveformSummary:
        return await asyncio.to_thread(self._extract_sync, wav_bytes)

    def _extract_sync(self, wav_bytes: bytes) -> WaveformSummary:
        spp = self.samples_per_peak
        peaks: list[float] = []
        carry = np.zeros(0, dtype=np.float64)
        total = 0

        try:
            with sf.SoundFile(io.BytesIO(wav_bytes)) as f:
                sr = int(f.samplerate)
                channels = int(f.channels)
                while True:
                    block = f.read(frames=self.read_frames, dtype="int16", always_2d=True)
                    if block.size == 0:
                        break
                    samples = block.reshape(-1).astype(np.float64) / 32768.0
                    total += samples.size

                    if carry.size:
                        samples = np.concatenate([carry, samples])
                    n_full = samples.size // spp
                    if n_full:
                        grid = samples[: n_full * spp].reshape(n_full, spp)
                        maxes = np.maximum(grid.max(axis=1), 0.0)
                        mins = np.minimum(grid.min(axis=1), 0.0)
                        peaks.extend(np.column_stack([maxes, mins]).reshape(-1).tolist())
                    carry = samples[n_full * spp:]
        except sf.SoundFileError as e:
            raise ConversionError(f"Cannot decode WAV for waveform: {e}", "WAVEFORM_DECODE_FAILED") from e

        if carry.size:
            peaks.append(max(float(carry.max()), 0.0))
            peaks.append(min(float(carry.min()), 0.0))

        if sr <= 0 or channels <= 0:
            raise ConversionError("WAV header reports no channels or sample rate", "WAVEFORM_DECODE_FAILED")

        duration = total / channels / sr
        return WaveformSummary(
            peaks=tuple(peaks),
            duration=duration,
            sample_rate=sr,
            channels=channels,
            total_samples=total,
        )
