"""
Error taxonomy for the fuzzing orchestrator.

Only ConfigurationError is fatal for a whole batch; every other error is
local to one fuzz target and is turned into that target's failed outcome.
"""

from __future__ import annotations

from pathlib import Path
from typing import Sequence


class FuzzOrchestratorError(Exception):
    """Base class for all orchestrator errors."""


class ConfigurationError(FuzzOrchestratorError):
    """Run configuration is malformed or incomplete."""


class TargetResolutionError(FuzzOrchestratorError):
    """A fuzz target could not be imported or instantiated."""


class SubprocessFailure(FuzzOrchestratorError):
    """
    A fuzzing subprocess exited with a nonzero code and its failure object
    could not be recovered.

    Carries enough context (exit code, log paths) for a human to find out
    what happened from the persisted artifacts.
    """

    def __init__(
        self,
        target: str,
        message: str,
        returncode: int | None = None,
        log_paths: Sequence[Path] = (),
        timed_out: bool = False,
    ) -> None:
        self.target = target
        self.returncode = returncode
        self.log_paths = tuple(log_paths)
        self.timed_out = timed_out
        details = [message]
        if returncode is not None:
            details.append(f"exit code {returncode}")
        if self.log_paths:
            details.append("logs: " + ", ".join(str(p) for p in self.log_paths))
        super().__init__(f"[{target}] " + "; ".join(details))


class StreamIOFailure(FuzzOrchestratorError):
    """A stream reader could not persist subprocess output."""


class ClusteringOracleError(FuzzOrchestratorError):
    """The similarity oracle failed or returned malformed output."""
