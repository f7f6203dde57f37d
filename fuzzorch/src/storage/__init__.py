from .layout import SessionPaths, ensure_layout
from .local_store import LocalRunStore
from .models import (
    BatchResult,
    ClusterInfo,
    CrashRecord,
    SessionResult,
    StatsRow,
    TargetOutcome,
)

__all__ = [
    "BatchResult",
    "ClusterInfo",
    "CrashRecord",
    "LocalRunStore",
    "SessionPaths",
    "SessionResult",
    "StatsRow",
    "TargetOutcome",
    "ensure_layout",
]
