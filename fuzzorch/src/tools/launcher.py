"""
Child process entry point for one fuzzing session.

    python -m fuzzorch.src.tools.launcher <module> <class> <method>

Configuration arrives through ``FUZZORCH_*`` environment variables. The
child replays known inputs (REGRESSION), then hands the target to atheris
(FUZZING). A failure that ends the session is persisted for the parent
through the exception transport before the process exits nonzero.

Exit codes:
    0  session finished without a terminal failure
    1  a failure was persisted to the exception file
    2  usage, configuration or target resolution error
"""

from __future__ import annotations

import logging
import math
import os
import resource
import sys
import time
from pathlib import Path
from typing import Sequence

import coverage
from coverage.exceptions import CoverageException

from ..config import RunConfiguration, RunMode
from ..errors import ConfigurationError, TargetResolutionError
from ..storage.layout import SessionPaths
from ..targets import FuzzTargetId, TargetCallable
from .crash_deduplicator import CRASH_PREFIX, CrashDeduplicator, EarlyStopPolicy, load_oracle
from .exception_transport import persist

logger = logging.getLogger(__name__)

EXIT_CLEAN = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2

_COVERAGE_SAVE_INTERVAL = 10_000  # executions


def apply_memory_limit(max_heap_size_mb: int) -> bool:
    """Cap the address space of this process; False when the limit could not be set."""
    if max_heap_size_mb <= 0:
        return False
    limit = max_heap_size_mb * 1024 * 1024
    try:
        _, hard = resource.getrlimit(resource.RLIMIT_AS)
        if hard != resource.RLIM_INFINITY and hard < limit:
            limit = hard
        resource.setrlimit(resource.RLIMIT_AS, (limit, hard))
    except (ValueError, OSError) as e:
        logger.warning("Could not set memory limit of %d MB: %s", max_heap_size_mb, e)
        return False
    logger.debug("Address space limited to %d MB", limit // (1024 * 1024))
    return True


def module_prefixes(globs: Sequence[str]) -> list[str]:
    """``mypkg.**`` / ``mypkg.*`` / ``mypkg`` -> ``mypkg``."""
    prefixes = []
    for pattern in globs:
        prefix = pattern.strip()
        while prefix.endswith(("*", ".")):
            prefix = prefix[:-1]
        if prefix and prefix not in prefixes:
            prefixes.append(prefix)
    return prefixes


class ChildSession:
    """Runs the requested modes for one target inside the child process."""

    def __init__(self, config: RunConfiguration, target: FuzzTargetId) -> None:
        self.config = config
        self.target = target
        self.paths = SessionPaths(config.work_dir)
        self.reproducer_dir = self.paths.reproducer_for(target)
        self.corpus_dir = self.paths.corpus_for(target)
        self.deduplicator = CrashDeduplicator(
            self.reproducer_dir,
            oracle=load_oracle(config.engine.clustering_oracle, config.engine.cluster_frames),
            num_frames=config.engine.cluster_frames,
        )
        self.policy = EarlyStopPolicy(self.deduplicator, config.target.keep_going)
        self.coverage: coverage.Coverage | None = None
        self.executions = 0

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def prepare(self) -> None:
        self.reproducer_dir.mkdir(parents=True, exist_ok=True)
        self.corpus_dir.mkdir(parents=True, exist_ok=True)
        apply_memory_limit(self.config.target.max_heap_size_mb)
        baseline = self.policy.start()
        logger.info("%s: %d existing cluster(s)", self.target, baseline)

        if self.config.target.dump_coverage:
            data_file = self.paths.coverage_file_for(self.target)
            data_file.parent.mkdir(parents=True, exist_ok=True)
            self.coverage = coverage.Coverage(
                data_file=str(data_file),
                source=module_prefixes(self.config.global_options.instrument) or None,
            )
            self.coverage.start()

    def resolve(self) -> TargetCallable:
        """Import the target, instrumented for atheris when fuzzing."""
        if RunMode.FUZZING not in self.config.target.run_modes:
            return self.target.resolve()

        import atheris

        options = self.config.global_options
        if options.hooks:
            atheris.enabled_hooks.add("str")
            atheris.enabled_hooks.add("RegEx")
        with atheris.instrument_imports(
            include=module_prefixes(options.instrument) or None,
            exclude=module_prefixes(options.custom_hook_excludes) or None,
        ):
            return self.target.resolve()

    def save_coverage(self) -> None:
        if self.coverage is None:
            return
        try:
            self.coverage.save()
        except (OSError, CoverageException) as e:
            logger.warning("Could not save coverage for %s: %s", self.target, e)

    def record_failure(self, exc: BaseException) -> None:
        path = persist(exc, self.paths.exception_path_for(self.target), self.target.full_name)
        logger.info("%s: failure persisted to %s", self.target, path)
        self.save_coverage()

    # ------------------------------------------------------------------
    # Modes
    # ------------------------------------------------------------------

    def regression_inputs(self) -> list[Path]:
        crashes: list[Path] = []
        if self.reproducer_dir.is_dir():
            crashes = sorted(
                p for p in self.reproducer_dir.iterdir()
                if p.is_file() and p.name.startswith(CRASH_PREFIX)
            )
        corpus = sorted(p for p in self.corpus_dir.iterdir() if p.is_file()) if self.corpus_dir.is_dir() else []
        return crashes + corpus

    def replay(self, target_fn: TargetCallable) -> BaseException | None:
        """Run every known input once; the first exception ends the replay."""
        inputs = self.regression_inputs()
        budget = self.config.target.max_fuzz_time
        deadline = time.monotonic() + budget if budget > 0 else None
        logger.info("%s: replaying %d input(s)", self.target, len(inputs))

        for path in inputs:
            if deadline is not None and time.monotonic() > deadline:
                logger.warning("%s: regression replay ran out of time", self.target)
                break
            try:
                data = path.read_bytes()
            except OSError as e:
                logger.warning("Skipping unreadable input %s: %s", path, e)
                continue
            self.executions += 1
            try:
                target_fn(data)
            except Exception as exc:
                self.deduplicator.record_if_new(data, exc)
                logger.info("%s: %s failed with %s", self.target, path.name, type(exc).__name__)
                return exc
        return None

    def fuzz(self, target_fn: TargetCallable) -> None:
        import atheris

        def one_input(data: bytes) -> None:
            self.executions += 1
            if self.coverage is not None and self.executions % _COVERAGE_SAVE_INTERVAL == 0:
                self.save_coverage()
            try:
                target_fn(data)
            except Exception as exc:
                if not self.policy.on_finding(data, exc):
                    return
                logger.info(
                    "%s: %d new cluster(s) reached, stopping",
                    self.target, self.policy.current - (self.policy.baseline or 0),
                )
                self.record_failure(exc)
                raise

        argv = [
            sys.argv[0],
            str(self.corpus_dir),
            f"-artifact_prefix={self.reproducer_dir}{os.sep}",
            f"-max_total_time={max(1, math.ceil(self.config.target.max_fuzz_time))}",
            f"-rss_limit_mb={self.config.engine.rss_limit_mb}",
        ]
        atheris.Setup(argv, one_input)
        # libFuzzer exits the process itself once the time budget is spent
        atheris.Fuzz()

    def run(self) -> int:
        self.prepare()
        modes = self.config.target.run_modes
        try:
            target_fn = self.resolve()
        except TargetResolutionError as e:
            logger.error("%s", e)
            return EXIT_USAGE

        if RunMode.REGRESSION in modes:
            failure = self.replay(target_fn)
            self.save_coverage()
            if failure is not None:
                self.record_failure(failure)
                return EXIT_FAILURE

        if RunMode.FUZZING in modes:
            self.fuzz(target_fn)
            self.save_coverage()
        return EXIT_CLEAN


def main(argv: Sequence[str] | None = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(
        level=logging.INFO,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if len(args) != 3:
        print("usage: python -m fuzzorch.src.tools.launcher <module> <class> <method>", file=sys.stderr)
        return EXIT_USAGE

    try:
        config = RunConfiguration.from_env(os.environ)
        session = ChildSession(config, FuzzTargetId(*args))
    except ConfigurationError as e:
        logger.error("Invalid configuration: %s", e)
        return EXIT_USAGE
    return session.run()


if __name__ == "__main__":
    sys.exit(main())
