"""
On-disk session layout.

    <work_dir>/
        corpus/<full target name>/            # engine corpus, append-only
        logs/<full target name>.{log,err}     # child stdout / stderr
        logs/session.log                      # orchestrator event log
        exceptions/<full target name>.exception
        reproducers/<declaring type>/<method>/
            crash-<sha1>                      # raw crashing input
            stacktrace-<sha1>                 # unclustered stack trace
            cluster-<sha1>/stacktrace-<sha1>  # clustered stack traces
            clusters.json                     # last cluster report
        coverage/<full target name>.coverage
        stats/<full target name>.csv

Every path is derived from the work dir and the target name; nothing
else indexes these files. Directories are never removed.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from ..targets import FuzzTargetId

SUBDIRS = ("corpus", "logs", "exceptions", "reproducers", "coverage", "stats")


def ensure_layout(work_dir: Path) -> "SessionPaths":
    """Create the session subtrees; a no-op for those already present."""
    paths = SessionPaths(Path(work_dir))
    for name in SUBDIRS:
        (paths.work_dir / name).mkdir(parents=True, exist_ok=True)
    return paths


@dataclass(frozen=True)
class SessionPaths:
    work_dir: Path

    @property
    def corpus_dir(self) -> Path:
        return self.work_dir / "corpus"

    @property
    def logs_dir(self) -> Path:
        return self.work_dir / "logs"

    @property
    def exceptions_dir(self) -> Path:
        return self.work_dir / "exceptions"

    @property
    def reproducers_dir(self) -> Path:
        return self.work_dir / "reproducers"

    @property
    def coverage_dir(self) -> Path:
        return self.work_dir / "coverage"

    @property
    def stats_dir(self) -> Path:
        return self.work_dir / "stats"

    def corpus_for(self, target: FuzzTargetId) -> Path:
        return self.corpus_dir / target.full_name

    def reproducer_for(self, target: FuzzTargetId) -> Path:
        return self.reproducers_dir / target.declaring_type / target.method

    def stdout_log_for(self, target: FuzzTargetId) -> Path:
        return self.logs_dir / f"{target.full_name}.log"

    def stderr_log_for(self, target: FuzzTargetId) -> Path:
        return self.logs_dir / f"{target.full_name}.err"

    def exception_path_for(self, target: FuzzTargetId) -> Path:
        return self.exceptions_dir / f"{target.full_name}.exception"

    def coverage_file_for(self, target: FuzzTargetId) -> Path:
        return (self.coverage_dir / f"{target.full_name}.coverage").absolute()

    def stats_file_for(self, name: str) -> Path:
        return self.stats_dir / f"{name}.csv"
