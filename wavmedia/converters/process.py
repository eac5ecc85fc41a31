from __future__ import annotations

import contextlib
import logging
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Iterator, Sequence

from wavmedia.core.errors import ToolExecutionError


@dataclass(frozen=True)
class ToolResult:
    tool: str
    returncode: int
    stdout: str
    stderr: str


@dataclass(frozen=True)
class PipeStage:
    tool: str          # label used in logs and errors
    argv: Sequence[str]


class ToolInvoker:
    """
    Runs external binaries from argument vectors (never through a shell).

    No retries here: a failing tool raises ToolExecutionError and the job
    queue decides whether to try again.
    """

    def __init__(self, *, timeout_s: float = 600.0, temp_prefix: str = "wavmedia-"):
        self.timeout_s = timeout_s
        self.temp_prefix = temp_prefix
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @contextlib.contextmanager
    def scratch_dir(self) -> Iterator[Path]:
        """Exclusively owned temp directory, removed on every exit path."""
        path = Path(tempfile.mkdtemp(prefix=self.temp_prefix))
        try:
            yield path
        finally:
            shutil.rmtree(path, ignore_errors=True)

    def run(self, tool: str, argv: Sequence[str], *, timeout: float | None = None) -> ToolResult:
        argv = [str(a) for a in argv]
        self.logger.debug("run %s: %s", tool, argv)
        try:
            proc = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=timeout or self.timeout_s,
            )
        except FileNotFoundError as e:
            raise ToolExecutionError(tool, f"binary not found: {argv[0]}") from e
        except subprocess.TimeoutExpired as e:
            raise ToolExecutionError(tool, f"timed out after {e.timeout}s", _decode(e.stderr)) from e

        if proc.returncode != 0:
            self.logger.error("%s exited with %s: %s", tool, proc.returncode, proc.stderr.strip())
            raise ToolExecutionError(tool, _exit_info(proc.returncode), proc.stderr)

        if proc.stderr:
            self.logger.debug("%s stderr: %s", tool, proc.stderr.strip())
        return ToolResult(tool=tool, returncode=proc.returncode, stdout=proc.stdout, stderr=proc.stderr)

    def pipe(self, stages: Sequence[PipeStage], *, stdout_path: Path, timeout: float | None = None) -> None:
        """
        Chain stages stdout -> stdin and stream the last stage's stdout into
        ``stdout_path``. No intermediate file is written between stages.
        """
        if not stages:
            raise ValueError("pipe needs at least one stage")

        timeout = timeout or self.timeout_s
        procs: list[tuple[PipeStage, subprocess.Popen, IO[bytes]]] = []

        with open(stdout_path, "wb") as sink:
            try:
                upstream = None
                for i, stage in enumerate(stages):
                    last = i == len(stages) - 1
                    err = tempfile.TemporaryFile()
                    argv = [str(a) for a in stage.argv]
                    self.logger.debug("pipe stage %s: %s", stage.tool, argv)
                    try:
                        proc = subprocess.Popen(
                            argv,
                            stdin=upstream,
                            stdout=sink if last else subprocess.PIPE,
                            stderr=err,
                        )
                    except FileNotFoundError as e:
                        err.close()
                        raise ToolExecutionError(stage.tool, f"binary not found: {argv[0]}") from e
                    # let the upstream process see SIGPIPE if we exit early
                    if upstream is not None:
                        upstream.close()
                    upstream = proc.stdout
                    procs.append((stage, proc, err))

                failure: ToolExecutionError | None = None
                for stage, proc, err in reversed(procs):
                    try:
                        code = proc.wait(timeout=timeout)
                    except subprocess.TimeoutExpired:
                        proc.kill()
                        proc.wait()
                        failure = failure or ToolExecutionError(stage.tool, f"timed out after {timeout}s")
                        continue
                    if code != 0 and failure is None:
                        err.seek(0)
                        stderr = err.read().decode("utf-8", errors="replace")
                        self.logger.error("%s exited with %s: %s", stage.tool, code, stderr.strip())
                        failure = ToolExecutionError(stage.tool, _exit_info(code), stderr)
                if failure is not None:
                    raise failure
            finally:
                for _, proc, err in procs:
                    if proc.poll() is None:
                        proc.kill()
                        proc.wait()
                    err.close()


def _exit_info(returncode: int) -> str:
    if returncode < 0:
        return f"killed by signal {-returncode}"
    return f"exit code {returncode}"


def _decode(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return str(data)
