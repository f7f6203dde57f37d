"""
Exception transport between a fuzzing subprocess and the orchestrator.

The child serializes the failing exception to a well-known path before it
exits nonzero; the parent reads it back as a ``TargetFailure``. The wire
format is plain JSON and does not depend on pickling live objects:

    {
        "format": 1,
        "target": "pkg.mod.Class.method",
        "kind": "ValueError",
        "module": "builtins",
        "message": "boom",
        "frames": [{"filename": ..., "lineno": ..., "name": ..., "line": ...}],
        "cause": { ...same shape... } | null
    }

Frames run outermost to innermost, with orchestrator and engine frames
stripped from the outer end so reports show target code only.
"""

from __future__ import annotations

import functools
import importlib.util
import json
import logging
import os
import traceback
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence

logger = logging.getLogger(__name__)

WIRE_FORMAT_VERSION = 1
TRACEBACK_HEADER = "Traceback (most recent call last):"
CAUSE_SEPARATOR = "\n\nThe above exception was the direct cause of the following exception:\n\n"

_PACKAGE_DIR = os.path.realpath(Path(__file__).resolve().parents[2])
_ENGINE_PACKAGE = "atheris"
_SITE_DIRS = ("site-packages", "dist-packages")
_MAX_CAUSE_DEPTH = 16


@dataclass(frozen=True)
class FrameRecord:
    filename: str
    lineno: int
    name: str
    line: str = ""


class TargetFailure(Exception):
    """A failure raised by a fuzz target in another process."""

    def __init__(
        self,
        kind: str,
        message: str,
        frames: Sequence[FrameRecord] = (),
        module: str = "builtins",
        target: str = "",
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.frames = tuple(frames)
        self.module = module
        self.target = target

    @property
    def qualified_kind(self) -> str:
        if self.module in ("builtins", "__main__", ""):
            return self.kind
        return f"{self.module}.{self.kind}"

    def __str__(self) -> str:
        return f"{self.qualified_kind}: {self.message}" if self.message else self.qualified_kind

    def format_remote(self) -> str:
        """Render the remote traceback the way Python prints one."""
        return format_payload(encode_failure(self))


@functools.lru_cache(maxsize=None)
def _engine_dir() -> str | None:
    """Directory of the installed engine package, None when not installed."""
    try:
        spec = importlib.util.find_spec(_ENGINE_PACKAGE)
    except (ImportError, ValueError):
        return None
    if spec is None or not spec.origin:
        return None
    return os.path.realpath(os.path.dirname(spec.origin))


def _is_within(path: str, directory: str) -> bool:
    return path == directory or path.startswith(directory + os.sep)


def _is_engine_path(path: str) -> bool:
    # Only an installed copy counts; a user directory named fuzz_atheris does not
    parts = Path(path).parts
    return any(
        part == _ENGINE_PACKAGE and parts[index - 1] in _SITE_DIRS
        for index, part in enumerate(parts)
        if index > 0
    )


def is_internal_frame(filename: str) -> bool:
    """Whether a frame belongs to the orchestrator or the engine."""
    if filename.startswith("<"):
        return False
    real = os.path.realpath(filename)
    if _is_within(real, _PACKAGE_DIR):
        return True
    engine_dir = _engine_dir()
    if engine_dir is not None and _is_within(real, engine_dir):
        return True
    return _is_engine_path(filename) or _is_engine_path(real)


def strip_inner_frames(frames: Sequence[FrameRecord]) -> list[FrameRecord]:
    """Drop leading orchestrator/engine frames, keeping target frames."""
    index = 0
    while index < len(frames) and is_internal_frame(frames[index].filename):
        index += 1
    if index == len(frames):
        # Raised inside the orchestrator itself; keep everything
        return list(frames)
    return list(frames[index:])


def _frames_of(exc: BaseException) -> list[FrameRecord]:
    if isinstance(exc, TargetFailure):
        return list(exc.frames)
    return [
        FrameRecord(
            filename=fs.filename,
            lineno=fs.lineno or 0,
            name=fs.name,
            line=(fs.line or "").strip(),
        )
        for fs in traceback.extract_tb(exc.__traceback__)
    ]


def _cause_of(exc: BaseException) -> BaseException | None:
    if exc.__cause__ is not None:
        return exc.__cause__
    if exc.__suppress_context__:
        return None
    return exc.__context__


def encode_failure(exc: BaseException, target: str = "") -> dict[str, Any]:
    """Convert an exception and its cause chain into the wire format."""
    seen: set[int] = set()

    def encode(current: BaseException, depth: int) -> dict[str, Any]:
        seen.add(id(current))
        if isinstance(current, TargetFailure):
            kind, module, message = current.kind, current.module, current.message
        else:
            kind = type(current).__qualname__
            module = type(current).__module__
            message = str(current)
        cause = _cause_of(current)
        encoded_cause = None
        if cause is not None and id(cause) not in seen and depth < _MAX_CAUSE_DEPTH:
            encoded_cause = encode(cause, depth + 1)
        return {
            "format": WIRE_FORMAT_VERSION,
            "target": target,
            "kind": kind,
            "module": module,
            "message": message,
            "frames": [
                {"filename": f.filename, "lineno": f.lineno, "name": f.name, "line": f.line}
                for f in strip_inner_frames(_frames_of(current))
            ],
            "cause": encoded_cause,
        }

    return encode(exc, 0)


def decode_failure(payload: dict[str, Any]) -> TargetFailure:
    """
    Rebuild a ``TargetFailure`` chain from the wire format.

    Raises KeyError, TypeError or ValueError on malformed payloads. Causes
    nested deeper than the encoder writes are dropped.
    """
    if payload.get("format") != WIRE_FORMAT_VERSION:
        raise ValueError(f"Unsupported failure format: {payload.get('format')!r}")

    root = previous = _decode_one(payload)
    current = payload.get("cause")
    depth = 1
    while current is not None and depth <= _MAX_CAUSE_DEPTH:
        failure = _decode_one(current)
        previous.__cause__ = failure
        previous = failure
        current = current.get("cause")
        depth += 1
    return root


def _decode_one(entry: dict[str, Any]) -> TargetFailure:
    frames = [
        FrameRecord(
            filename=str(f["filename"]),
            lineno=int(f["lineno"]),
            name=str(f["name"]),
            line=str(f.get("line") or ""),
        )
        for f in entry["frames"]
    ]
    return TargetFailure(
        kind=str(entry["kind"]),
        message=str(entry["message"]),
        frames=frames,
        module=str(entry.get("module") or "builtins"),
        target=str(entry.get("target") or ""),
    )


def format_payload(payload: dict[str, Any]) -> str:
    """Python-style traceback text for an encoded failure chain."""
    chain: list[dict[str, Any]] = []
    current: dict[str, Any] | None = payload
    while current is not None:
        chain.append(current)
        current = current.get("cause")

    segments: list[str] = []
    for entry in reversed(chain):
        summary = traceback.StackSummary.from_list(
            [(f["filename"], f["lineno"], f["name"], f.get("line") or None) for f in entry["frames"]]
        )
        module = entry.get("module") or "builtins"
        kind = entry["kind"] if module in ("builtins", "__main__") else f"{module}.{entry['kind']}"
        last = f"{kind}: {entry['message']}" if entry["message"] else kind
        segments.append(TRACEBACK_HEADER + "\n" + "".join(summary.format()) + last)
    return CAUSE_SEPARATOR.join(segments) + "\n"


def format_failure(exc: BaseException) -> str:
    """Stack trace text with orchestrator frames stripped."""
    return format_payload(encode_failure(exc))


def persist(failure: BaseException, path: Path, target: str = "") -> Path:
    """Write ``failure`` to ``path``; the file appears atomically."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_text(json.dumps(encode_failure(failure, target), indent=2), encoding="utf-8")
    os.replace(tmp, path)
    return path


def recover(path: Path) -> TargetFailure | None:
    """
    Read a failure persisted by ``persist``.

    Returns None when the file is missing or cannot be decoded; callers
    substitute their own error in that case.
    """
    path = Path(path)
    if not path.exists():
        logger.debug("No persisted failure at %s", path)
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
        return decode_failure(payload)
    except (OSError, ValueError, KeyError, TypeError, AttributeError, RecursionError) as e:
        logger.error("Failed to decode persisted failure %s: %s", path, e)
        return None
