from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence


@dataclass()
class CrashRecord:
    """One persisted artifact per unique crashing input."""

    crash_hash: str  # SHA-1 of the raw input bytes
    stack_trace_path: Path
    input_path: Path | None = None
    is_new: bool = True


@dataclass()
class ClusterInfo:
    """A cluster directory and the stack traces it holds."""

    name: str  # "cluster-<representative hash>"
    directory: Path
    representative: str
    members: list[str] = field(default_factory=list)  # crash hashes
    error_type: str = "unknown"
    frames: tuple[str, ...] = ()

    @property
    def count(self) -> int:
        return len(self.members)


@dataclass()
class SessionResult:
    """Outcome of one fuzzing subprocess run."""

    target: str
    returncode: int
    duration_seconds: float
    failure: BaseException | None = None
    stdout_log: Path | None = None
    stderr_log: Path | None = None
    timed_out: bool = False
    clusters_before: int = 0
    clusters_after: int = 0

    @property
    def failed(self) -> bool:
        return self.failure is not None

    @property
    def new_clusters(self) -> int:
        return max(0, self.clusters_after - self.clusters_before)


@dataclass()
class StatsRow:
    """One periodic engine status report."""

    elapsed_seconds: float
    iteration: int
    execs_per_sec: int
    corpus_files: int
    corpus_size_bytes: int
    coverage: int
    features: int = 0
    rss_mb: int = 0


@dataclass()
class TargetOutcome:
    """Pass/fail record of one fuzz target, as reported upstream."""

    target: str
    passed: bool
    duration_seconds: float
    failure_kind: str = ""
    failure_message: str = ""
    clusters: int = 0
    new_clusters: int = 0


@dataclass()
class BatchResult:
    """Results of fuzzing a sequence of targets."""

    work_dir: Path
    outcomes: Sequence[TargetOutcome]
    summary: str = ""

    @property
    def failed_targets(self) -> list[str]:
        return [o.target for o in self.outcomes if not o.passed]

    @property
    def passed(self) -> bool:
        return not self.failed_targets
