"""
Subprocess runner for fuzzing sessions.

Starts one isolated process per fuzz target and copies its stdout and
stderr to log files while it runs. Each stream gets its own reader thread:
draining only one of them lets the other pipe fill (64KB on Linux) and the
child blocks forever. Both readers are joined before the exit code is
reported.
"""

from __future__ import annotations

import logging
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Mapping, Sequence

from ..errors import StreamIOFailure

logger = logging.getLogger(__name__)

_KILL_WAIT_SECONDS = 10.0


@dataclass()
class ProcessResult:
    """Result of a single subprocess run."""

    returncode: int
    duration_seconds: float
    stdout_log: Path
    stderr_log: Path
    timed_out: bool = False
    stream_errors: list[str] = field(default_factory=list)

    @property
    def log_files(self) -> tuple[Path, Path]:
        return (self.stdout_log, self.stderr_log)


class _StreamPump(threading.Thread):
    """Copy one child stream to a log file until EOF."""

    def __init__(self, stream: IO[bytes], log_path: Path, label: str, echo: bool) -> None:
        super().__init__(name=f"fuzzorch-{label}-pump", daemon=True)
        self.stream = stream
        self.log_path = log_path
        self.label = label
        self.echo = echo
        self.bytes_read = 0
        self.error: StreamIOFailure | None = None

    def _fail(self, exc: OSError) -> None:
        if self.error is None:
            self.error = StreamIOFailure(f"Cannot write {self.label} log {self.log_path}: {exc}")
            logger.error("%s", self.error)

    def run(self) -> None:
        sink: IO[bytes] | None = None
        try:
            sink = self.log_path.open("wb")
        except OSError as e:
            self._fail(e)

        try:
            # The stream must be read to EOF even when the log is unwritable
            for line in iter(self.stream.readline, b""):
                self.bytes_read += len(line)
                if sink is not None:
                    try:
                        sink.write(line)
                    except OSError as e:
                        self._fail(e)
                        sink.close()
                        sink = None
                if self.echo:
                    logger.info("[%s] %s", self.label, line.decode("utf-8", errors="replace").rstrip())
        finally:
            self.stream.close()
            if sink is not None:
                try:
                    sink.close()
                except OSError as e:
                    self._fail(e)


class SubprocessRunner:
    """
    Runs a command with both output streams persisted to log files.

    Usage:
        runner = SubprocessRunner(detailed_logging=True)
        result = runner.run(cmd, env=env, stdout_log=out, stderr_log=err)
    """

    def __init__(self, detailed_logging: bool = False) -> None:
        self.detailed_logging = detailed_logging

    def run(
        self,
        command: Sequence[str],
        *,
        stdout_log: Path,
        stderr_log: Path,
        env: Mapping[str, str] | None = None,
        cwd: Path | None = None,
        timeout: float | None = None,
    ) -> ProcessResult:
        """
        Run ``command`` to completion.

        ``timeout`` is a wall-clock limit; when it elapses the process is
        killed and the result is marked ``timed_out``. Raises OSError if the
        process cannot be started.
        """
        stdout_log.parent.mkdir(parents=True, exist_ok=True)
        stderr_log.parent.mkdir(parents=True, exist_ok=True)

        logger.debug("Starting subprocess: %s", " ".join(command))
        start_time = time.perf_counter()
        process = subprocess.Popen(
            list(command),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=dict(env) if env is not None else None,
            cwd=cwd,
        )

        pumps = [
            _StreamPump(process.stdout, stdout_log, "stdout", self.detailed_logging),
            _StreamPump(process.stderr, stderr_log, "stderr", self.detailed_logging),
        ]
        for pump in pumps:
            pump.start()

        timed_out = False
        try:
            returncode = process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            logger.warning("Subprocess exceeded %.1fs wall-clock limit, killing it", timeout)
            process.kill()
            returncode = process.wait(timeout=_KILL_WAIT_SECONDS)

        # The exit code is only trusted once both streams reached EOF
        for pump in pumps:
            pump.join()

        duration = time.perf_counter() - start_time
        logger.debug(
            "Subprocess exited with %s after %.1fs (%d stdout bytes, %d stderr bytes)",
            returncode, duration, pumps[0].bytes_read, pumps[1].bytes_read,
        )
        return ProcessResult(
            returncode=returncode,
            duration_seconds=duration,
            stdout_log=stdout_log,
            stderr_log=stderr_log,
            timed_out=timed_out,
            stream_errors=[str(p.error) for p in pumps if p.error is not None],
        )
