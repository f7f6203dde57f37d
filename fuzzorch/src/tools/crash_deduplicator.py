"""
Crash Deduplication for fuzzing sessions.

Persists one stack trace per unique crashing input and groups the traces
into clusters with a similarity oracle. All state lives in the target's
reproducer directory, so a session can resume after the orchestrator dies:

    reproducer_dir/
        crash-<sha1>               raw crashing input
        stacktrace-<sha1>          recorded, not yet clustered
        cluster-<sha1>/            named after its representative member
            stacktrace-<sha1>
            ...
"""

from __future__ import annotations

import functools
import hashlib
import importlib
import logging
import numbers
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Sequence

from ..errors import ClusteringOracleError, ConfigurationError
from ..storage.models import ClusterInfo, CrashRecord
from .exception_transport import TRACEBACK_HEADER, format_failure, is_internal_frame

logger = logging.getLogger(__name__)

STACKTRACE_PREFIX = "stacktrace-"
CRASH_PREFIX = "crash-"
CLUSTER_PREFIX = "cluster-"

# Ordered list of normalized traces in, parallel list of cluster ids out
ClusteringOracle = Callable[[Sequence[str]], Sequence[int]]


def hash_input(data: bytes) -> str:
    """Content hash naming every artifact of one crashing input."""
    return hashlib.sha1(data).hexdigest()


# ============================================================================
# Stack trace parsing
# ============================================================================

_PY_FRAME = re.compile(r'^\s*File "(?P<file>[^"]+)", line (?P<line>\d+), in (?P<func>.+?)\s*$')
_PY_EXCEPTION = re.compile(r"^(?P<type>[A-Za-z_][\w.]*)(?::\s.*|:)?$")
_PY_CHAIN = re.compile(
    r"\n\s*(?:The above exception was the direct cause of the following exception:"
    r"|During handling of the above exception, another exception occurred:)\s*\n"
)


def normalize_stack_trace(text: str) -> str:
    """
    Canonical form of a persisted stack trace.

    Python traces always start with the traceback header, even when the
    recorder only captured the frames or the exception line.
    """
    lines = [line.rstrip() for line in text.replace("\r\n", "\n").split("\n")]
    while lines and not lines[0].strip():
        lines.pop(0)
    while lines and not lines[-1].strip():
        lines.pop()
    if not lines:
        return TRACEBACK_HEADER + "\n"
    if lines[0] != TRACEBACK_HEADER:
        lines.insert(0, TRACEBACK_HEADER)
    return "\n".join(lines) + "\n"


@dataclass()
class CrashSignature:
    """
    A crash signature derived from its stack trace.

    The signature is the error type plus the top N innermost frames that
    belong to target code, each written as ``function@file:line``.
    """

    error_type: str  # e.g. "ValueError", "mypkg.ParseError"
    frames: tuple[str, ...]
    signature_hash: str

    @classmethod
    def from_stack_trace(cls, stack_trace: str, num_frames: int = 3) -> "CrashSignature":
        error_type, frames = _python_signature(stack_trace, num_frames)

        sig_str = f"{error_type}|{'|'.join(frames)}"
        sig_hash = hashlib.sha1(sig_str.encode()).hexdigest()[:16]
        return cls(error_type=error_type, frames=tuple(frames), signature_hash=sig_hash)

    def __hash__(self) -> int:
        return hash(self.signature_hash)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CrashSignature):
            return False
        return self.signature_hash == other.signature_hash


def _python_signature(stack_trace: str, num_frames: int) -> tuple[str, list[str]]:
    # The last segment of a chained traceback is the exception that escaped
    segment = _PY_CHAIN.split(stack_trace)[-1]

    error_type: str | None = None
    parsed: list[tuple[str, str, str]] = []
    for line in segment.split("\n"):
        match = _PY_FRAME.match(line)
        if match:
            parsed.append((match.group("func"), match.group("file"), match.group("line")))
            error_type = None
            continue
        # First unindented line after the frames names the exception
        if error_type is None and line and not line[0].isspace() and line != TRACEBACK_HEADER:
            exc_match = _PY_EXCEPTION.match(line)
            if exc_match:
                error_type = exc_match.group("type")
    error_type = error_type or "unknown"

    frames: list[str] = []
    for func, filename, lineno in reversed(parsed):
        if is_internal_frame(filename):
            continue
        frames.append(f"{func}@{os.path.basename(filename)}:{lineno}")
        if len(frames) >= num_frames:
            break
    return error_type, frames


# ============================================================================
# Oracles
# ============================================================================


def signature_oracle(traces: Sequence[str], num_frames: int = 3) -> list[int]:
    """
    Default similarity oracle: traces with equal signatures share an id.

    Ids are contiguous from 1, in order of first appearance.
    """
    ids_by_signature: dict[str, int] = {}
    result: list[int] = []
    for trace in traces:
        sig = CrashSignature.from_stack_trace(trace, num_frames).signature_hash
        if sig not in ids_by_signature:
            ids_by_signature[sig] = len(ids_by_signature) + 1
        result.append(ids_by_signature[sig])
    return result


def load_oracle(import_path: str | None, num_frames: int = 3) -> ClusteringOracle:
    """Resolve ``"module:callable"``; None selects ``signature_oracle``."""
    if not import_path:
        return functools.partial(signature_oracle, num_frames=num_frames)
    module_name, sep, attr = import_path.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigurationError(f"Invalid clustering oracle '{import_path}', expected 'module:callable'")
    try:
        obj: Any = importlib.import_module(module_name)
        for part in attr.split("."):
            obj = getattr(obj, part)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot load clustering oracle '{import_path}': {e}") from e
    if not callable(obj):
        raise ConfigurationError(f"Clustering oracle '{import_path}' is not callable")
    return obj


# ============================================================================
# Deduplicator
# ============================================================================


def _hash_of(path: Path) -> str:
    return path.name[len(STACKTRACE_PREFIX):]


class CrashDeduplicator:
    """
    File-backed crash deduplication for one fuzz target.

    Usage:
        dedup = CrashDeduplicator(reproducer_dir)
        if dedup.record_if_new(data, exc):
            clusters = dedup.cluster()
    """

    def __init__(
        self,
        reproducer_dir: Path,
        oracle: ClusteringOracle | None = None,
        num_frames: int = 3,
    ) -> None:
        self.directory = Path(reproducer_dir)
        self.num_frames = num_frames
        self.oracle = oracle or functools.partial(signature_oracle, num_frames=num_frames)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _cluster_dirs(self) -> list[Path]:
        if not self.directory.is_dir():
            return []
        return sorted(
            p for p in self.directory.iterdir()
            if p.is_dir() and p.name.startswith(CLUSTER_PREFIX)
        )

    def _stack_trace_files(self) -> list[Path]:
        """Every persisted stack trace, unclustered first, in stable order."""
        if not self.directory.is_dir():
            return []
        top_level = sorted(
            p for p in self.directory.iterdir()
            if p.is_file() and p.name.startswith(STACKTRACE_PREFIX)
        )
        clustered = [
            p
            for cluster_dir in self._cluster_dirs()
            for p in sorted(cluster_dir.iterdir())
            if p.is_file() and p.name.startswith(STACKTRACE_PREFIX)
        ]
        return top_level + clustered

    def find_stack_trace(self, crash_hash: str) -> Path | None:
        name = f"{STACKTRACE_PREFIX}{crash_hash}"
        top_level = self.directory / name
        if top_level.is_file():
            return top_level
        for cluster_dir in self._cluster_dirs():
            candidate = cluster_dir / name
            if candidate.is_file():
                return candidate
        return None

    def known_hashes(self) -> set[str]:
        return {_hash_of(p) for p in self._stack_trace_files()}

    def unclustered_count(self) -> int:
        return sum(1 for p in self._stack_trace_files() if p.parent == self.directory)

    def cluster_count(self) -> int:
        return len(self._cluster_dirs())

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record(self, data: bytes, failure: BaseException | str) -> CrashRecord:
        """
        Persist the stack trace of a crashing input unless its hash is known.

        Re-observing a hash is a no-op and yields ``is_new=False``.
        """
        crash_hash = hash_input(data)
        self.directory.mkdir(parents=True, exist_ok=True)
        input_path = self.directory / f"{CRASH_PREFIX}{crash_hash}"

        existing = self.find_stack_trace(crash_hash)
        if existing is not None:
            return CrashRecord(crash_hash, existing, input_path, is_new=False)

        text = failure if isinstance(failure, str) else format_failure(failure)
        trace_path = self.directory / f"{STACKTRACE_PREFIX}{crash_hash}"
        try:
            with trace_path.open("x", encoding="utf-8") as fp:
                fp.write(text)
        except FileExistsError:
            return CrashRecord(crash_hash, trace_path, input_path, is_new=False)

        try:
            with input_path.open("xb") as fp:
                fp.write(data)
        except FileExistsError:
            pass  # the engine already saved this artifact

        logger.debug("Recorded new crash %s in %s", crash_hash, self.directory)
        return CrashRecord(crash_hash, trace_path, input_path, is_new=True)

    def record_if_new(self, data: bytes, failure: BaseException | str) -> bool:
        return self.record(data, failure).is_new

    # ------------------------------------------------------------------
    # Clustering
    # ------------------------------------------------------------------

    def _call_oracle(self, texts: list[str]) -> list[int]:
        try:
            raw = list(self.oracle(texts))
        except ClusteringOracleError:
            raise
        except Exception as e:
            raise ClusteringOracleError(f"Clustering oracle raised {e!r}") from e

        if len(raw) != len(texts):
            raise ClusteringOracleError(
                f"Clustering oracle returned {len(raw)} ids for {len(texts)} traces"
            )
        ids: list[int] = []
        for value in raw:
            if isinstance(value, bool) or not isinstance(value, numbers.Integral):
                raise ClusteringOracleError(f"Clustering oracle returned non-integer id {value!r}")
            ids.append(int(value))
        return ids

    def cluster(self) -> int:
        """
        Re-cluster every persisted stack trace.

        Cluster directories are keyed by representative hash, not by the
        oracle's numeric ids, which may change between passes: a group
        reuses an existing ``cluster-<h>`` directory when ``<h>`` is one of
        its members, otherwise a new one is named after its first member.

        Returns the number of distinct clusters.
        """
        traces = self._stack_trace_files()
        if not traces:
            return 0

        texts = [
            normalize_stack_trace(p.read_text(encoding="utf-8", errors="replace"))
            for p in traces
        ]
        try:
            ids = self._call_oracle(texts)
        except ClusteringOracleError as e:
            logger.warning(
                "Clustering failed for %s, keeping new traces as singleton clusters: %s",
                self.directory, e,
            )
            return self._cluster_singletons()

        groups: dict[int, list[Path]] = {}
        for path, cluster_id in zip(traces, ids):
            groups.setdefault(cluster_id, []).append(path)

        for members in groups.values():
            hashes = [_hash_of(p) for p in members]
            existing = sorted(
                h for h in hashes if (self.directory / f"{CLUSTER_PREFIX}{h}").is_dir()
            )
            representative = existing[0] if existing else hashes[0]
            cluster_dir = self.directory / f"{CLUSTER_PREFIX}{representative}"
            cluster_dir.mkdir(exist_ok=True)
            for path in members:
                destination = cluster_dir / path.name
                if path != destination:
                    os.replace(path, destination)

        self._remove_empty_cluster_dirs()
        return len(groups)

    def _cluster_singletons(self) -> int:
        for path in self._stack_trace_files():
            if path.parent != self.directory:
                continue
            cluster_dir = self.directory / f"{CLUSTER_PREFIX}{_hash_of(path)}"
            cluster_dir.mkdir(exist_ok=True)
            os.replace(path, cluster_dir / path.name)
        return self.cluster_count()

    def _remove_empty_cluster_dirs(self) -> None:
        for cluster_dir in self._cluster_dirs():
            try:
                cluster_dir.rmdir()
            except OSError:
                pass  # not empty

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def clusters(self) -> list[ClusterInfo]:
        result: list[ClusterInfo] = []
        for cluster_dir in self._cluster_dirs():
            members = sorted(
                _hash_of(p) for p in cluster_dir.iterdir()
                if p.is_file() and p.name.startswith(STACKTRACE_PREFIX)
            )
            if not members:
                continue
            named = cluster_dir.name[len(CLUSTER_PREFIX):]
            representative = named if named in members else members[0]
            trace = (cluster_dir / f"{STACKTRACE_PREFIX}{representative}").read_text(
                encoding="utf-8", errors="replace"
            )
            sig = CrashSignature.from_stack_trace(normalize_stack_trace(trace), self.num_frames)
            result.append(
                ClusterInfo(
                    name=cluster_dir.name,
                    directory=cluster_dir,
                    representative=representative,
                    members=members,
                    error_type=sig.error_type,
                    frames=sig.frames,
                )
            )
        return result

    def summary(self) -> dict[str, Any]:
        """JSON-ready report of the current clusters."""
        clusters = self.clusters()
        unique = len(self.known_hashes())
        return {
            "reproducer_dir": str(self.directory),
            "unique_crashes": unique,
            "unclustered": self.unclustered_count(),
            "cluster_count": len(clusters),
            "reduction_ratio": 1 - (len(clusters) / unique) if unique else 0,
            "clusters": [
                {
                    "name": c.name,
                    "representative": c.representative,
                    "error_type": c.error_type,
                    "frames": list(c.frames),
                    "crash_count": c.count,
                    "members": c.members,
                    "reproducer": str(self.directory / f"{CRASH_PREFIX}{c.representative}"),
                }
                for c in sorted(clusters, key=lambda c: c.count, reverse=True)
            ],
        }


class EarlyStopPolicy:
    """
    Decide when a session has found enough new bugs.

    The cluster count is recorded once when the session starts; after each
    new unique crash the traces are re-clustered, and the session stops when
    ``keep_going`` new clusters have appeared. ``keep_going == 0`` never stops.
    """

    def __init__(self, deduplicator: CrashDeduplicator, keep_going: int) -> None:
        self.deduplicator = deduplicator
        self.keep_going = keep_going
        self._baseline: int | None = None
        self.current = 0
        self.findings = 0
        self.unique_findings = 0

    @property
    def baseline(self) -> int | None:
        return self._baseline

    def start(self) -> int:
        if self._baseline is not None:
            raise RuntimeError("Session baseline cluster count is already recorded")
        self._baseline = self.deduplicator.cluster()
        self.current = self._baseline
        return self._baseline

    def should_stop(self, current_clusters: int) -> bool:
        if self._baseline is None:
            raise RuntimeError("EarlyStopPolicy.start() was not called")
        return self.keep_going != 0 and current_clusters - self._baseline >= self.keep_going

    def on_finding(self, data: bytes, failure: BaseException | str) -> bool:
        """Record a finding; True when the engine should stop."""
        if self._baseline is None:
            raise RuntimeError("EarlyStopPolicy.start() was not called")
        self.findings += 1
        if not self.deduplicator.record_if_new(data, failure):
            return False
        self.unique_findings += 1
        self.current = self.deduplicator.cluster()
        return self.should_stop(self.current)
