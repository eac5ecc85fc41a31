from __future__ import annotations

import contextlib
import io
import json
import re
from pathlib import Path
from typing import Sequence

import fakeredis
import numpy as np
import pytest
import soundfile as sf
from sqlalchemy.ext.asyncio import create_async_engine

from wavmedia.converters.process import PipeStage, ToolInvoker, ToolResult
from wavmedia.core.config import Settings
from wavmedia.core.errors import ToolExecutionError
from wavmedia.models import Base, Track, User
from wavmedia.models.enums import SourceFormat
from wavmedia.repos.stem_repo import StemRepo
from wavmedia.repos.track_repo import TrackRepo
from wavmedia.repos.user_repo import UserRepo
from wavmedia.runtime import MediaRuntime

SAMPLE_RATE = 8000


def make_wav(duration_s: float, *, sample_rate: int = SAMPLE_RATE, channels: int = 1, freq: float = 220.0) -> bytes:
    frames = int(round(duration_s * sample_rate))
    t = np.arange(frames, dtype=np.float64) / sample_rate
    tone = 0.5 * np.sin(2 * np.pi * freq * t)
    data = np.repeat(tone[:, None], channels, axis=1)
    buf = io.BytesIO()
    sf.write(buf, data, sample_rate, format="WAV", subtype="PCM_16")
    return buf.getvalue()


def make_flac(duration_s: float, **kwargs) -> bytes:
    data, sr = sf.read(io.BytesIO(make_wav(duration_s, **kwargs)), dtype="int16")
    buf = io.BytesIO()
    sf.write(buf, data, sr, format="FLAC", subtype="PCM_16")
    return buf.getvalue()


def make_module(stem_durations: Sequence[float], *, sample_rate: int = SAMPLE_RATE) -> bytes:
    """Stand-in module file understood by FakeToolInvoker's players."""
    return json.dumps({"stems": list(stem_durations), "sample_rate": sample_rate}).encode()


def audio_duration(data: bytes) -> float:
    info = sf.info(io.BytesIO(data))
    return info.frames / info.samplerate


class FakeToolInvoker(ToolInvoker):
    """
    Replaces ffmpeg, lame and the module players.

    ffmpeg transcodes with soundfile by output extension; players read the
    JSON "module" made by make_module; lame writes a tagged fake MP3.
    """

    PLAYERS = ("export-to-wav", "it-export-wav")

    def __init__(self, *, stem_file_pattern: str = "stems_{n:02d}.wav"):
        super().__init__(timeout_s=5.0, temp_prefix="wavmedia-test-")
        self.stem_file_pattern = stem_file_pattern
        self.calls: list[tuple[str, list[str]]] = []
        self.failures: dict[str, int] = {}
        self.scratch_dirs: list[Path] = []

    def fail(self, tool: str, times: int = 1) -> None:
        self.failures[tool] = times

    def _maybe_fail(self, tool: str) -> None:
        left = self.failures.get(tool, 0)
        if left:
            self.failures[tool] = left - 1
            raise ToolExecutionError(tool, "exit code 1", "simulated failure")

    @contextlib.contextmanager
    def scratch_dir(self):
        with super().scratch_dir() as path:
            self.scratch_dirs.append(path)
            yield path

    def run(self, tool: str, argv: Sequence[str], *, timeout: float | None = None) -> ToolResult:
        argv = [str(a) for a in argv]
        self.calls.append((tool, argv))
        self._maybe_fail(tool)
        if tool == "ffmpeg":
            self._ffmpeg(argv)
        elif tool in self.PLAYERS:
            self._player(argv)
        else:
            raise ToolExecutionError(tool, f"binary not found: {argv[0]}")
        return ToolResult(tool=tool, returncode=0, stdout="", stderr="")

    def pipe(self, stages: Sequence[PipeStage], *, stdout_path: Path, timeout: float | None = None) -> None:
        for stage in stages:
            self.calls.append((stage.tool, [str(a) for a in stage.argv]))
            self._maybe_fail(stage.tool)
        first = [str(a) for a in stages[0].argv]
        src = Path(first[first.index("-i") + 1])
        frames = sf.info(str(src)).frames
        Path(stdout_path).write_bytes(b"ID3FAKEMP3" + str(frames).encode())

    def _ffmpeg(self, argv: list[str]) -> None:
        src = Path(argv[argv.index("-i") + 1])
        out = Path(argv[-1])
        data, sr = sf.read(str(src), dtype="int16", always_2d=True)
        fmt = "FLAC" if out.suffix == ".flac" else "WAV"
        sf.write(str(out), data, sr, format=fmt, subtype="PCM_16")

    def _player(self, argv: list[str]) -> None:
        spec = json.loads(Path(argv[1]).read_text())
        out = Path(argv[argv.index("--output") + 1])
        sr = int(spec["sample_rate"])
        durations = spec["stems"]
        if "--multi-track" in argv:
            for i, d in enumerate(durations):
                name = self.stem_file_pattern.format(n=i + 1)
                out.parent.joinpath(name).write_bytes(make_wav(d, sample_rate=sr, freq=110.0 * (i + 1)))
        else:
            out.write_bytes(make_wav(max(durations), sample_rate=sr))


class FlakyDeleteStore:
    """Wraps a store; deletes of keys containing any ``broken`` marker always fail."""

    def __init__(self, inner, broken: Sequence[str] = ()):
        self.inner = inner
        self.broken = list(broken)
        self.deleted: list[str] = []

    def put(self, key, data, mime):
        self.inner.put(key, data, mime)

    def open(self, key):
        return self.inner.open(key)

    def delete(self, key):
        if any(marker in key for marker in self.broken):
            raise OSError(f"simulated delete failure for {key}")
        self.deleted.append(key)
        self.inner.delete(key)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        DATABASE_URL_ASYNC=f"sqlite+aiosqlite:///{tmp_path / 'media.db'}",
        DATABASE_URL_SYNC=f"sqlite:///{tmp_path / 'media.db'}",
        STORAGE_BACKEND="local",
        STORAGE_DIR=str(tmp_path / "storage"),
        STORAGE_BASE_URL="http://media.test/storage",
        STAGING_DIR=str(tmp_path / "staging"),
        JOB_ATTEMPTS=3,
        JOB_BACKOFF_MS=0,
        DELETE_BASE_DELAY_SECONDS=0.0,
        DELETE_BACKOFF_CAP_SECONDS=0.0,
        MIX_SAMPLE_RATE=SAMPLE_RATE,
        WAVEFORM_SAMPLES_PER_PEAK=100,
        API_RUNS_WORKERS=False,
    )


@pytest.fixture
async def engine(settings: Settings):
    eng = create_async_engine(settings.DATABASE_URL_ASYNC)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def invoker() -> FakeToolInvoker:
    return FakeToolInvoker()


@pytest.fixture
def redis():
    # one in-memory server per test keeps queues isolated
    return fakeredis.FakeRedis(server=fakeredis.FakeServer())


@pytest.fixture
async def runtime(settings: Settings, engine, invoker: FakeToolInvoker, redis):
    rt = MediaRuntime(settings, engine=engine, invoker=invoker, redis=redis)
    yield rt
    await rt.close()


@pytest.fixture
def make_user(runtime: MediaRuntime):
    async def _make(*, free_quota_seconds: float = 600.0, **fields) -> User:
        async with runtime.session_factory() as db:
            async with db.begin():
                return await UserRepo(db).create(free_quota_seconds=free_quota_seconds, **fields)

    return _make


@pytest.fixture
def make_track(runtime: MediaRuntime):
    async def _make(user: User, *, fmt: SourceFormat, source: bytes | None = None, title: str = "Song", **fields) -> Track:
        if source is not None:
            staged = await runtime.storage.stage(source, f"upload.{fmt.value.lower()}")
            fields.setdefault("original_url", str(staged))
        async with runtime.session_factory() as db:
            async with db.begin():
                return await TrackRepo(db).create(user_id=user.id, title=title, original_format=fmt, **fields)

    return _make


@pytest.fixture
def make_stem(runtime: MediaRuntime):
    async def _make(track: Track, *, index: int, name: str | None = None, **fields):
        async with runtime.session_factory() as db:
            async with db.begin():
                return await StemRepo(db).create(
                    track_id=track.id, index=index, name=name or f"Stem {index}", **fields
                )

    return _make


def stored_key(url: str) -> str:
    return re.sub(r"^http://media\.test/storage/", "", url)
