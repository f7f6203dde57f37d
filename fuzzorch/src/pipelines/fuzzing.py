"""
Fuzzing Pipeline for one fuzz target.

Orchestrates a session: prepare directories, launch the child process,
interpret its exit, re-cluster the reproducer directory and collect
statistics once the batch is done.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from ..config import RunConfiguration
from ..errors import SubprocessFailure, TargetResolutionError
from ..storage.layout import SessionPaths, ensure_layout
from ..storage.local_store import LocalRunStore
from ..storage.models import SessionResult
from ..targets import FuzzTargetId
from ..tools import stats_extractor
from ..tools.crash_deduplicator import CrashDeduplicator, load_oracle
from ..tools.exception_transport import recover
from ..tools.process_runner import ProcessResult, SubprocessRunner

logger = logging.getLogger(__name__)

LAUNCHER_MODULE = "fuzzorch.src.tools.launcher"
TIMEOUT_GRACE_SECONDS = 60.0


class FuzzingPipeline:
    """
    Orchestrates fuzzing for a target.

    Flow:
        1. Ensure the session layout exists
        2. Resolve per-target configuration
        3. Run the child process with both streams persisted
        4. Recover the failure, if any, and re-cluster crashes
        5. After the batch, extract statistics from every engine log
    """

    def __init__(
        self,
        config: RunConfiguration,
        runner: Optional[SubprocessRunner] = None,
        store: Optional[LocalRunStore] = None,
    ) -> None:
        self.config = config
        self.paths = SessionPaths(config.work_dir)
        self.runner = runner or SubprocessRunner(config.global_options.detailed_logging)
        self.store = store or LocalRunStore(self.paths)
        self._initialised = False
        self._durations: dict[str, float] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialise(self) -> SessionPaths:
        self.paths = ensure_layout(self.config.work_dir)
        self._initialised = True
        self.store.log_event(None, f"Session initialised in {self.paths.work_dir}")
        return self.paths

    def finish_execution(self) -> list[Path]:
        """Write one statistics CSV per engine log found under ``logs/``."""
        written: list[Path] = []
        if not self.paths.logs_dir.is_dir():
            return written
        for err_log in sorted(self.paths.logs_dir.glob("*.err")):
            name = err_log.stem
            rows = stats_extractor.extract(err_log, self._durations.get(name, 0.0))
            out_file = stats_extractor.write_csv(rows, self.paths.stats_file_for(name))
            written.append(out_file)
            logger.debug("Wrote %d stats row(s) to %s", len(rows), out_file)
        self.store.log_event(None, f"Collected statistics for {len(written)} target(s)")
        return written

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------

    def config_for(self, target: FuzzTargetId) -> RunConfiguration:
        """Run-wide configuration with the target's own overrides applied."""
        try:
            overrides = target.overrides()
        except TargetResolutionError as e:
            # The child fails on the same error and reports it
            logger.warning("Cannot read overrides for %s: %s", target, e)
            return self.config
        return self.config.with_overrides(overrides)

    def build_command(self, target: FuzzTargetId) -> list[str]:
        return [sys.executable, "-m", LAUNCHER_MODULE, target.module, target.class_name, target.method]

    def build_env(self, config: RunConfiguration) -> dict[str, str]:
        env = dict(os.environ)
        env.update(config.to_env())
        search_path = [p or os.getcwd() for p in sys.path]
        if env.get("PYTHONPATH"):
            search_path.append(env["PYTHONPATH"])
        env["PYTHONPATH"] = os.pathsep.join(dict.fromkeys(search_path))
        return env

    def timeout_for(self, config: RunConfiguration) -> float | None:
        budget = config.target.max_fuzz_time
        return budget + TIMEOUT_GRACE_SECONDS if budget > 0 else None

    def deduplicator_for(self, target: FuzzTargetId, config: RunConfiguration) -> CrashDeduplicator:
        engine = config.engine
        return CrashDeduplicator(
            self.paths.reproducer_for(target),
            oracle=load_oracle(engine.clustering_oracle, engine.cluster_frames),
            num_frames=engine.cluster_frames,
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, target: FuzzTargetId) -> SessionResult:
        """
        Fuzz one target in its own process.

        Returns:
            SessionResult; ``failure`` holds the recovered target failure or
            a synthetic ``SubprocessFailure`` when none could be recovered.
        """
        if not self._initialised:
            self.initialise()

        name = target.full_name
        config = self.config_for(target)
        deduplicator = self.deduplicator_for(target, config)

        exception_path = self.paths.exception_path_for(target)
        exception_path.unlink(missing_ok=True)
        clusters_before = deduplicator.cluster_count()

        modes = ", ".join(sorted(m.value for m in config.target.run_modes))
        self.store.log_event(
            name,
            f"Starting session ({modes}), max time {config.target.max_fuzz_time:.0f}s, "
            f"keep going {config.target.keep_going}",
        )

        stdout_log = self.paths.stdout_log_for(target)
        stderr_log = self.paths.stderr_log_for(target)
        try:
            process = await asyncio.to_thread(
                self.runner.run,
                self.build_command(target),
                env=self.build_env(config),
                stdout_log=stdout_log,
                stderr_log=stderr_log,
                timeout=self.timeout_for(config),
            )
        except OSError as e:
            failure = SubprocessFailure(name, f"Cannot start subprocess: {e}")
            self.store.log_event(name, str(failure))
            return SessionResult(
                target=name,
                returncode=-1,
                duration_seconds=0.0,
                failure=failure,
                stdout_log=stdout_log,
                stderr_log=stderr_log,
                clusters_before=clusters_before,
                clusters_after=clusters_before,
            )

        self._durations[name] = process.duration_seconds
        for error in process.stream_errors:
            self.store.log_event(name, f"Log persistence failed: {error}")

        failure = self.interpret(target, process)
        clusters_after = self.cluster(target, deduplicator)

        if failure is None:
            self.store.log_event(name, f"Session passed in {process.duration_seconds:.1f}s")
        else:
            self.store.log_event(
                name,
                f"Session failed in {process.duration_seconds:.1f}s: {failure}. "
                f"Clusters: {clusters_before} -> {clusters_after}",
            )

        return SessionResult(
            target=name,
            returncode=process.returncode,
            duration_seconds=process.duration_seconds,
            failure=failure,
            stdout_log=stdout_log,
            stderr_log=stderr_log,
            timed_out=process.timed_out,
            clusters_before=clusters_before,
            clusters_after=clusters_after,
        )

    async def run_target(self, target: FuzzTargetId) -> BaseException | None:
        """Fuzz one target; the failure to report upstream, or None."""
        result = await self.execute(target)
        return result.failure

    def interpret(self, target: FuzzTargetId, process: ProcessResult) -> BaseException | None:
        name = target.full_name
        if process.timed_out:
            return SubprocessFailure(
                name,
                "Subprocess exceeded its wall-clock limit and was killed",
                returncode=process.returncode,
                log_paths=process.log_files,
                timed_out=True,
            )
        if process.returncode == 0:
            return None

        exception_path = self.paths.exception_path_for(target)
        failure = recover(exception_path)
        if failure is not None:
            return failure

        logger.error(
            "%s exited with %d and no failure could be recovered from %s",
            name, process.returncode, exception_path,
        )
        return SubprocessFailure(
            name,
            f"Subprocess failed; could not recover failure from {exception_path}",
            returncode=process.returncode,
            log_paths=process.log_files,
        )

    def cluster(self, target: FuzzTargetId, deduplicator: CrashDeduplicator) -> int:
        """Explicit clustering pass over the target's reproducer directory."""
        if not deduplicator.directory.is_dir():
            return 0
        count = deduplicator.cluster()
        report = self.store.persist_cluster_report(deduplicator.directory, deduplicator.summary())
        logger.debug("%s: %d cluster(s), report at %s", target, count, report)
        return count
