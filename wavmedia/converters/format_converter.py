from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from pathlib import Path

from wavmedia.converters.process import PipeStage, ToolInvoker
from wavmedia.core.errors import ConversionError
from wavmedia.models.enums import SourceFormat

# the players append _NN before the extension in multi-track mode
_STEM_FILE_RE = re.compile(r"^stems_(\d+)\.wav$")

_INPUT_SUFFIXES = {
    "wav": ".wav",
    "wave": ".wav",
    "flac": ".flac",
    "mp3": ".mp3",
    "ogg": ".ogg",
    "aiff": ".aiff",
    "aif": ".aiff",
    "m4a": ".m4a",
}


@dataclass(frozen=True)
class RenderedStem:
    index: int          # position in channel order, 0-based
    name: str
    type: str
    wav: bytes


@dataclass(frozen=True)
class ModuleRender:
    full_mix_wav: bytes
    stems: list[RenderedStem]


@dataclass(frozen=True)
class PlayerSpec:
    tool: str
    path: str


class FormatConverter:
    """
    WAV/FLAC/MP3 and tracker-module conversions over byte buffers.

    Each call writes its input into a fresh scratch directory owned by that
    call only; the directory is removed however the call ends.
    """

    def __init__(
        self,
        invoker: ToolInvoker,
        *,
        ffmpeg_path: str = "ffmpeg",
        lame_path: str = "lame",
        export_to_wav_path: str = "/usr/local/bin/export-to-wav",
        it_export_path: str = "/usr/local/bin/it-export-wav",
        flac_compression_level: int = 5,
    ):
        self.invoker = invoker
        self.ffmpeg_path = ffmpeg_path
        self.lame_path = lame_path
        self.flac_compression_level = int(flac_compression_level)
        # XM and MOD share one player; IT has its own
        shared = PlayerSpec(tool="export-to-wav", path=export_to_wav_path)
        self.players: dict[SourceFormat, PlayerSpec] = {
            SourceFormat.XM: shared,
            SourceFormat.MOD: shared,
            SourceFormat.IT: PlayerSpec(tool="it-export-wav", path=it_export_path),
        }
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @classmethod
    def from_settings(cls, invoker: ToolInvoker, settings) -> "FormatConverter":
        return cls(
            invoker,
            ffmpeg_path=settings.FFMPEG_PATH,
            lame_path=settings.LAME_PATH,
            export_to_wav_path=settings.EXPORT_TO_WAV_PATH,
            it_export_path=settings.IT_EXPORT_PATH,
            flac_compression_level=settings.FLAC_COMPRESSION_LEVEL,
        )

    # ---- async API ----

    async def module_to_wav(self, data: bytes, fmt: SourceFormat) -> ModuleRender:
        return await asyncio.to_thread(self._module_to_wav_sync, data, fmt)

    async def wav_to_mp3(self, data: bytes, bitrate_kbps: int) -> bytes:
        return await asyncio.to_thread(self._wav_to_mp3_sync, data, bitrate_kbps)

    async def wav_to_flac(self, data: bytes) -> bytes:
        return await asyncio.to_thread(self._wav_to_flac_sync, data)

    async def flac_to_wav(self, data: bytes) -> bytes:
        return await asyncio.to_thread(self._to_wav_sync, data, "flac")

    async def to_wav(self, data: bytes, ext: str) -> bytes:
        """Decode any audio the transcoder understands into 16-bit PCM WAV."""
        return await asyncio.to_thread(self._to_wav_sync, data, ext)

    # ---- module rendering ----

    def _module_to_wav_sync(self, data: bytes, fmt: SourceFormat) -> ModuleRender:
        player = self.players.get(fmt)
        if player is None:
            raise ConversionError(f"Unsupported module format: {getattr(fmt, 'value', fmt)}", "UNSUPPORTED_FORMAT")

        with self.invoker.scratch_dir() as tmp:
            src = tmp / f"input.{fmt.value.lower()}"
            src.write_bytes(data)

            full_out = tmp / "full_track.wav"
            self.invoker.run(player.tool, [player.path, src, "--output", full_out])
            if not full_out.exists():
                raise ConversionError(f"{player.tool} produced no full mix", "MODULE_RENDER_FAILED")
            full_mix = full_out.read_bytes()

            stems_dir = tmp / "stems"
            stems_dir.mkdir()
            self.invoker.run(
                player.tool,
                [player.path, src, "--output", stems_dir / "stems.wav", "--multi-track"],
            )
            stems = self._collect_stems(stems_dir)

        self.logger.info("Rendered %s module: full mix + %d stems", fmt.value, len(stems))
        return ModuleRender(full_mix_wav=full_mix, stems=stems)

    def _collect_stems(self, stems_dir: Path) -> list[RenderedStem]:
        numbered: list[tuple[int, str, Path]] = []
        for p in stems_dir.iterdir():
            m = _STEM_FILE_RE.match(p.name)
            if m is None:
                raise ConversionError(f"Cannot determine stem order from output file {p.name!r}", "STEM_ORDER_UNKNOWN")
            numbered.append((int(m.group(1)), m.group(1), p))

        if not numbered:
            raise ConversionError("Module player produced no stems", "STEM_ORDER_UNKNOWN")

        numbered.sort(key=lambda t: t[0])
        seen = [n for n, _, _ in numbered]
        if len(set(seen)) != len(seen):
            raise ConversionError(f"Duplicate stem indexes in player output: {seen}", "STEM_ORDER_UNKNOWN")

        return [
            RenderedStem(index=i, name=f"Track {label}", type="audio", wav=path.read_bytes())
            for i, (_, label, path) in enumerate(numbered)
        ]

    # ---- PCM conversions ----

    def _wav_to_mp3_sync(self, data: bytes, bitrate_kbps: int) -> bytes:
        with self.invoker.scratch_dir() as tmp:
            src = tmp / "input.wav"
            out = tmp / "output.mp3"
            src.write_bytes(data)
            # decoder output goes straight into the encoder so the MP3 starts
            # without encoder padding; seek offsets downstream depend on it
            self.invoker.pipe(
                [
                    PipeStage("ffmpeg", [self.ffmpeg_path, "-loglevel", "error", "-i", src, "-f", "wav", "-"]),
                    PipeStage(
                        "lame",
                        [self.lame_path, "-b", str(int(bitrate_kbps)), "--cbr", "--noreplaygain", "--pad-id3v2", "-", "-"],
                    ),
                ],
                stdout_path=out,
            )
            return _read_output(out, "lame")

    def _wav_to_flac_sync(self, data: bytes) -> bytes:
        with self.invoker.scratch_dir() as tmp:
            src = tmp / "input.wav"
            out = tmp / "output.flac"
            src.write_bytes(data)
            self.invoker.run(
                "ffmpeg",
                [
                    self.ffmpeg_path, "-y", "-loglevel", "error",
                    "-i", src,
                    "-c:a", "flac", "-compression_level", str(self.flac_compression_level),
                    out,
                ],
            )
            return _read_output(out, "ffmpeg")

    def _to_wav_sync(self, data: bytes, ext: str) -> bytes:
        suffix = _INPUT_SUFFIXES.get(ext.lower().lstrip("."))
        if suffix is None:
            raise ConversionError(f"Unsupported audio format: {ext}", "UNSUPPORTED_FORMAT")
        with self.invoker.scratch_dir() as tmp:
            src = tmp / f"input{suffix}"
            out = tmp / "output.wav"
            src.write_bytes(data)
            self.invoker.run(
                "ffmpeg",
                [self.ffmpeg_path, "-y", "-loglevel", "error", "-i", src, "-c:a", "pcm_s16le", out],
            )
            return _read_output(out, "ffmpeg")


def _read_output(path: Path, tool: str) -> bytes:
    if not path.exists() or path.stat().st_size == 0:
        raise ConversionError(f"{tool} produced no output", "EMPTY_OUTPUT")
    return path.read_bytes()
