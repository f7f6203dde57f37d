from __future__ import annotations

import json
import os
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .layout import SessionPaths
from .models import BatchResult


class LocalRunStore:
    """Filesystem-backed persistence for session events and reports."""

    def __init__(self, paths: SessionPaths) -> None:
        self.paths = paths

    @property
    def event_log(self) -> Path:
        return self.paths.logs_dir / "session.log"

    def log_event(self, target: str | None, message: str) -> None:
        self.paths.logs_dir.mkdir(parents=True, exist_ok=True)
        scope = f"[{target}] " if target else ""
        with self.event_log.open("a", encoding="utf-8") as fp:
            fp.write(f"{datetime.now(timezone.utc).isoformat()} {scope}{message}\n")

    def persist_cluster_report(self, reproducer_dir: Path, report: dict[str, Any]) -> Path:
        out_file = reproducer_dir / "clusters.json"
        _write_json(out_file, report)
        return out_file

    def persist_batch(self, batch: BatchResult) -> Path:
        out_file = self.paths.work_dir / "results.json"
        payload: dict[str, Any] = {
            "work_dir": str(batch.work_dir),
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "summary": batch.summary,
            "failed_targets": batch.failed_targets,
            "outcomes": [asdict(o) for o in batch.outcomes],
        }
        _write_json(out_file, payload)
        return out_file


def _write_json(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp")
    with tmp.open("w", encoding="utf-8") as fp:
        json.dump(payload, fp, indent=2)
    os.replace(tmp, path)
