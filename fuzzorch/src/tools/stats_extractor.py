"""
Statistics extraction from engine logs.

libFuzzer (and atheris, which embeds it) prints a status line per event:

    #4096   pulse  cov: 112 ft: 180 corp: 21/340b lim: 43 exec/s: 2048 rss: 41Mb

The lines carry no timestamps. libFuzzer computes exec/s as runs since
start divided by seconds since start, so ``iteration / exec_s`` recovers
the elapsed time of each report.
"""

from __future__ import annotations

import csv
import logging
import re
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any, Iterable, Sequence

import numpy as np

from ..storage.models import StatsRow

logger = logging.getLogger(__name__)

_PROGRESS_RE = re.compile(
    r"#(?P<iter>\d+)\s+"
    r"(?P<kind>[A-Z]+|pulse)\s+"
    r"cov:\s*(?P<cov>\d+)\s+"
    r"(?:ft:\s*(?P<ft>\d+)\s+)?"
    r"corp:\s*(?P<corp_files>\d+)/(?P<corp_size>\S+)"
    r"(?:.*?exec/s:\s*(?P<execs>\d+))?"
    r"(?:.*?rss:\s*(?P<rss>\d+)Mb)?"
)


def parse_size(token: str) -> int:
    """Convert libFuzzer size tokens such as ``340b``, ``12Kb``, ``3Mb``."""
    match = re.match(r"^([0-9]+(?:\.[0-9]+)?)([kmg]?)(?:i?b)?$", (token or "").strip(), re.IGNORECASE)
    if not match:
        return 0
    scale = {"": 1, "k": 1024, "m": 1024 ** 2, "g": 1024 ** 3}[match.group(2).lower()]
    return int(float(match.group(1)) * scale)


def parse_line(line: str) -> dict[str, int] | None:
    """Parse one status line; None when the line is not a status report."""
    match = _PROGRESS_RE.search(line)
    if not match:
        return None
    return {
        "iteration": int(match.group("iter")),
        "coverage": int(match.group("cov")),
        "features": int(match.group("ft") or 0),
        "corpus_files": int(match.group("corp_files")),
        "corpus_size_bytes": parse_size(match.group("corp_size")),
        "execs_per_sec": int(match.group("execs") or 0),
        "rss_mb": int(match.group("rss") or 0),
    }


def extract_lines(lines: Iterable[str], session_duration: float) -> list[StatsRow]:
    parsed = []
    for line in lines:
        try:
            entry = parse_line(line)
        except (ValueError, KeyError):
            entry = None
        if entry is not None:
            parsed.append(entry)
    if not parsed:
        return []

    iterations = np.array([p["iteration"] for p in parsed], dtype=float)
    execs = np.array([p["execs_per_sec"] for p in parsed], dtype=float)
    elapsed = np.divide(iterations, execs, out=np.zeros_like(iterations), where=execs > 0)
    upper = session_duration if session_duration > 0 else np.inf
    elapsed = np.maximum.accumulate(np.clip(elapsed, 0.0, upper))

    return [
        StatsRow(
            elapsed_seconds=round(float(t), 3),
            iteration=p["iteration"],
            execs_per_sec=p["execs_per_sec"],
            corpus_files=p["corpus_files"],
            corpus_size_bytes=p["corpus_size_bytes"],
            coverage=p["coverage"],
            features=p["features"],
            rss_mb=p["rss_mb"],
        )
        for t, p in zip(elapsed, parsed)
    ]


def extract(engine_log: Path, session_duration: float) -> list[StatsRow]:
    """
    Time series of engine status reports in ``engine_log``.

    Unparsable lines are skipped; a missing log yields no rows.
    """
    try:
        text = Path(engine_log).read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        logger.warning("Cannot read engine log %s: %s", engine_log, e)
        return []
    return extract_lines(text.splitlines(), session_duration)


def summarize(rows: Sequence[StatsRow]) -> dict[str, Any]:
    if not rows:
        return {
            "reports": 0,
            "duration_seconds": 0.0,
            "peak_execs_per_sec": 0,
            "mean_execs_per_sec": 0.0,
            "final_coverage": 0,
            "final_corpus_files": 0,
        }
    execs = np.array([r.execs_per_sec for r in rows], dtype=float)
    coverage = np.array([r.coverage for r in rows], dtype=int)
    return {
        "reports": len(rows),
        "duration_seconds": rows[-1].elapsed_seconds,
        "peak_execs_per_sec": int(execs.max()),
        "mean_execs_per_sec": round(float(execs.mean()), 2),
        "final_coverage": int(coverage.max()),
        "final_corpus_files": rows[-1].corpus_files,
    }


def write_csv(rows: Sequence[StatsRow], path: Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    columns = [f.name for f in fields(StatsRow)]
    with path.open("w", encoding="utf-8", newline="") as fp:
        writer = csv.DictWriter(fp, fieldnames=columns)
        writer.writeheader()
        for row in rows:
            writer.writerow(asdict(row))
    return path
