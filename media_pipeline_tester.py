#!/usr/bin/env python
"""Run module rendering, MP3/FLAC encoding, waveform extraction and stem mixing on local files, no DB needed."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Any

from wavmedia.analyzers.waveform import WaveformExtractor
from wavmedia.converters.format_converter import FormatConverter
from wavmedia.converters.process import ToolInvoker
from wavmedia.core.config import settings
from wavmedia.models.enums import SourceFormat
from wavmedia.renderers.track_mixer import StemAudio, TrackMixer

MODULE_EXTENSIONS = {".xm": SourceFormat.XM, ".it": SourceFormat.IT, ".mod": SourceFormat.MOD}
AUDIO_EXTENSIONS = {".wav", ".flac", ".mp3", ".ogg", ".aiff", ".aif", ".m4a"}


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Render a tracker module (or mix a directory of stems) and derive MP3/FLAC/waveforms."
    )
    parser.add_argument(
        "input",
        help="A .xm/.it/.mod module file, or a directory of stem audio files to mix.",
    )
    parser.add_argument(
        "--output-dir",
        default="media_pipeline_outputs",
        help="Where rendered files and the JSON summary go.",
    )
    parser.add_argument(
        "--full-kbps",
        type=int,
        default=settings.MP3_FULL_TRACK_KBPS,
        help="MP3 bitrate for the full mix.",
    )
    parser.add_argument(
        "--stem-kbps",
        type=int,
        default=settings.MP3_STEM_KBPS,
        help="MP3 bitrate for stems.",
    )
    parser.add_argument(
        "--samples-per-peak",
        type=int,
        default=settings.WAVEFORM_SAMPLES_PER_PEAK,
        help="Waveform block size in samples.",
    )
    parser.add_argument(
        "--skip-flac",
        action="store_true",
        help="Do not encode the full mix to FLAC.",
    )
    return parser.parse_args()


def _collect_stems(input_dir: Path) -> list[Path]:
    stems = [p.resolve() for p in input_dir.iterdir() if p.is_file() and p.suffix.lower() in AUDIO_EXTENSIONS]
    stems.sort(key=lambda p: (p.name.lower(), str(p)))
    return stems


async def _run(args: argparse.Namespace, source: Path, out_dir: Path) -> dict[str, Any]:
    invoker = ToolInvoker(timeout_s=settings.TOOL_TIMEOUT_SECONDS, temp_prefix=settings.TEMP_DIR_PREFIX)
    converter = FormatConverter.from_settings(invoker, settings)
    extractor = WaveformExtractor(samples_per_peak=args.samples_per_peak)
    mixer = TrackMixer(target_sample_rate=settings.MIX_SAMPLE_RATE)

    stems: list[tuple[str, bytes]] = []
    if source.is_file():
        fmt = MODULE_EXTENSIONS.get(source.suffix.lower())
        if fmt is None:
            raise ValueError(f"Not a module file: {source} (expected one of {sorted(MODULE_EXTENSIONS)})")
        render = await converter.module_to_wav(source.read_bytes(), fmt)
        full_wav = render.full_mix_wav
        stems = [(s.name, s.wav) for s in render.stems]
        mode = f"module:{fmt.value}"
    else:
        paths = _collect_stems(source)
        if not paths:
            raise ValueError(f"No stem audio found in {source}. Supported extensions: {sorted(AUDIO_EXTENSIONS)}")
        for p in paths:
            ext = p.suffix.lower().lstrip(".")
            data = p.read_bytes()
            stems.append((p.stem, data if ext == "wav" else await converter.to_wav(data, ext)))
        mixed = await mixer.mix([StemAudio(name=name, wav=wav) for name, wav in stems])
        full_wav = mixed.wav
        mode = "mix"

    out_dir.mkdir(parents=True, exist_ok=True)
    full_wave = await extractor.extract(full_wav)
    full_mp3 = await converter.wav_to_mp3(full_wav, args.full_kbps)
    (out_dir / "full_track.wav").write_bytes(full_wav)
    (out_dir / "full_track.mp3").write_bytes(full_mp3)
    flac_bytes = None
    if not args.skip_flac:
        flac_bytes = await converter.wav_to_flac(full_wav)
        (out_dir / "full_track.flac").write_bytes(flac_bytes)

    stem_summaries = []
    for i, (name, wav) in enumerate(stems):
        wave_summary = await extractor.extract(wav)
        mp3 = await converter.wav_to_mp3(wav, args.stem_kbps)
        mp3_path = out_dir / f"stem_{i:02d}.mp3"
        mp3_path.write_bytes(mp3)
        stem_summaries.append(
            {
                "index": i,
                "name": name,
                "duration": wave_summary.duration,
                "peaks": len(wave_summary.peaks),
                "mp3_path": str(mp3_path),
                "mp3_bytes": len(mp3),
            }
        )

    return {
        "mode": mode,
        "input": str(source),
        "full_track": {
            "duration": full_wave.duration,
            "sample_rate": full_wave.sample_rate,
            "channels": full_wave.channels,
            "peaks": len(full_wave.peaks),
            "wav_bytes": len(full_wav),
            "mp3_bytes": len(full_mp3),
            "flac_bytes": len(flac_bytes) if flac_bytes is not None else None,
        },
        "stems": stem_summaries,
    }


def main() -> int:
    args = parse_args()

    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")

    source = Path(args.input).expanduser().resolve()
    if not source.exists():
        raise FileNotFoundError(f"Input does not exist: {source}")
    out_dir = Path(args.output_dir).expanduser().resolve()

    summary = asyncio.run(_run(args, source, out_dir))
    summary_path = out_dir / "summary.json"
    summary_path.write_text(json.dumps(summary, indent=2), encoding="utf-8")

    print(f"[OK] Full track: {summary['full_track']['duration']:.2f}s -> {out_dir}")
    print(f"[OK] Stems: {len(summary['stems'])}")
    print(f"[OK] Summary: {summary_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
