"""
Fuzzing orchestrator package entrypoint.

The modules under `fuzzorch/src` compose the configuration model, the
per-target fuzzing pipeline, and the tools it drives (subprocess runner,
crash deduplication, exception transport, statistics).
"""

from .config import ConfigBuilder, RunConfiguration, RunMode
from .errors import (
    ClusteringOracleError,
    ConfigurationError,
    FuzzOrchestratorError,
    StreamIOFailure,
    SubprocessFailure,
    TargetResolutionError,
)
from .orchestration.main import FuzzOrchestrator
from .pipelines.fuzzing import FuzzingPipeline
from .targets import FuzzTargetId, fuzz_target

__all__ = [
    "ClusteringOracleError",
    "ConfigBuilder",
    "ConfigurationError",
    "FuzzOrchestrator",
    "FuzzOrchestratorError",
    "FuzzTargetId",
    "FuzzingPipeline",
    "RunConfiguration",
    "RunMode",
    "StreamIOFailure",
    "SubprocessFailure",
    "TargetResolutionError",
    "fuzz_target",
]
