"""Tests for the subprocess runner."""

import logging
import os
import sys
import tempfile
import textwrap
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from fuzzorch.src.tools.process_runner import SubprocessRunner

LINE_SIZE = 1024
LINE_COUNT = 2048  # 2 MB per stream

NOISY_CHILD = textwrap.dedent(
    f"""
    import sys
    line = b"x" * {LINE_SIZE - 1} + b"\\n"
    for _ in range({LINE_COUNT}):
        sys.stdout.buffer.write(line)
        sys.stderr.buffer.write(line)
    sys.stdout.flush()
    sys.stderr.flush()
    """
)


def _python(code: str) -> list[str]:
    return [sys.executable, "-c", code]


def test_drains_both_streams_without_deadlock():
    """More than a pipe buffer on both streams at once still completes."""
    with tempfile.TemporaryDirectory() as tmpdir:
        out, err = Path(tmpdir) / "out.log", Path(tmpdir) / "out.err"
        result = SubprocessRunner().run(_python(NOISY_CHILD), stdout_log=out, stderr_log=err, timeout=60)

        assert not result.timed_out
        assert result.returncode == 0
        assert result.duration_seconds < 30
        assert out.stat().st_size == LINE_SIZE * LINE_COUNT
        assert err.stat().st_size == LINE_SIZE * LINE_COUNT
        assert result.stream_errors == []
        assert result.log_files == (out, err)


def test_nonzero_exit_code_is_reported():
    with tempfile.TemporaryDirectory() as tmpdir:
        result = SubprocessRunner().run(
            _python("import sys; print('bye'); sys.exit(3)"),
            stdout_log=Path(tmpdir) / "out.log",
            stderr_log=Path(tmpdir) / "out.err",
        )

        assert result.returncode == 3
        assert (Path(tmpdir) / "out.log").read_text() == "bye\n"


def test_timeout_kills_child():
    with tempfile.TemporaryDirectory() as tmpdir:
        result = SubprocessRunner().run(
            _python("import time; print('started', flush=True); time.sleep(30)"),
            stdout_log=Path(tmpdir) / "out.log",
            stderr_log=Path(tmpdir) / "out.err",
            timeout=1,
        )

        assert result.timed_out
        assert result.returncode != 0
        assert result.duration_seconds < 15


def test_environment_and_cwd_are_passed():
    with tempfile.TemporaryDirectory() as tmpdir:
        out = Path(tmpdir) / "logs" / "out.log"
        env = dict(os.environ, FUZZORCH_TEST_VALUE="forwarded")
        result = SubprocessRunner().run(
            _python("import os; print(os.environ['FUZZORCH_TEST_VALUE']); print(os.getcwd())"),
            stdout_log=out,
            stderr_log=Path(tmpdir) / "logs" / "out.err",
            env=env,
            cwd=Path(tmpdir),
        )

        assert result.returncode == 0
        lines = out.read_text().splitlines()
        assert lines[0] == "forwarded"
        assert Path(lines[1]).resolve() == Path(tmpdir).resolve()


def test_detailed_logging_echoes_lines(caplog):
    with tempfile.TemporaryDirectory() as tmpdir:
        with caplog.at_level(logging.INFO, logger="fuzzorch.src.tools.process_runner"):
            SubprocessRunner(detailed_logging=True).run(
                _python("import sys; print('hello'); print('oops', file=sys.stderr)"),
                stdout_log=Path(tmpdir) / "out.log",
                stderr_log=Path(tmpdir) / "out.err",
            )

        messages = [r.getMessage() for r in caplog.records]
        assert "[stdout] hello" in messages
        assert "[stderr] oops" in messages


def test_unwritable_log_does_not_block_child():
    """Output is still drained when its log file cannot be opened."""
    with tempfile.TemporaryDirectory() as tmpdir:
        blocked = Path(tmpdir) / "blocked"
        blocked.mkdir()
        err = Path(tmpdir) / "out.err"

        result = SubprocessRunner().run(_python(NOISY_CHILD), stdout_log=blocked, stderr_log=err, timeout=60)

        assert not result.timed_out
        assert result.returncode == 0
        assert len(result.stream_errors) == 1
        assert "stdout" in result.stream_errors[0]
        assert err.stat().st_size == LINE_SIZE * LINE_COUNT


def test_missing_executable_raises():
    with tempfile.TemporaryDirectory() as tmpdir:
        with pytest.raises(OSError):
            SubprocessRunner().run(
                [str(Path(tmpdir) / "no-such-binary")],
                stdout_log=Path(tmpdir) / "out.log",
                stderr_log=Path(tmpdir) / "out.err",
            )
