from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Sequence

from dotenv import load_dotenv

from .src import ConfigurationError, FuzzOrchestrator, FuzzTargetId, RunConfiguration, TargetResolutionError
from .src.config import load_env_options, load_yaml_options, merge_layers
from .src.tools import stats_extractor
from .src.tools.crash_deduplicator import CrashDeduplicator, load_oracle

logger = logging.getLogger("fuzzorch")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fuzzorch", description="Fuzzing session orchestrator")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    # run
    run = sub.add_parser("run", help="Fuzz one or more targets")
    run.add_argument(
        "targets",
        nargs="+",
        metavar="TARGET",
        help="Fuzz target as package.module:ClassName.method",
    )
    run.add_argument("--config", type=Path, help="YAML configuration file")
    run.add_argument("--work-dir", dest="work_dir", help="Session work directory")
    run.add_argument(
        "--instrument",
        action="append",
        default=None,
        help="Module glob to instrument, e.g. 'mypkg.**' (can be repeated)",
    )
    run.add_argument(
        "--max-fuzz-time",
        dest="max_single_target_fuzz_time",
        help="Time budget per target, e.g. 30s, 5m (default: from config)",
    )
    run.add_argument(
        "--keep-going",
        dest="keep_going",
        type=int,
        help="New clusters needed to stop a session early, 0 = never (default: 1)",
    )
    run.add_argument(
        "--mode",
        dest="run_modes",
        action="append",
        choices=["fuzzing", "regression"],
        default=None,
        help="Run mode (can be repeated; default: fuzzing)",
    )
    run.add_argument("--max-heap-size-mb", dest="max_heap_size_mb", type=int)
    run.add_argument("--rss-limit-mb", dest="rss_limit_mb", type=int)
    run.add_argument("--clustering-oracle", dest="clustering_oracle", help="module:callable")
    run.add_argument(
        "--detailed-logging",
        dest="detailed_logging",
        action="store_true",
        default=None,
        help="Echo subprocess output to the console",
    )
    run.add_argument(
        "--dump-coverage",
        dest="dump_coverage",
        action="store_true",
        default=None,
        help="Write a coverage data file per target",
    )
    run.add_argument(
        "--hooks",
        dest="hooks",
        action="store_true",
        default=None,
        help="Enable atheris string and regex hooks",
    )

    # cluster
    cluster = sub.add_parser("cluster", help="Re-cluster a reproducer directory")
    cluster.add_argument("directory", type=Path, help="reproducers/<type>/<method> directory")
    cluster.add_argument("--clustering-oracle", dest="clustering_oracle", help="module:callable")
    cluster.add_argument("--frames", type=int, default=3, help="Frames per signature (default: 3)")
    cluster.add_argument("--json", action="store_true", help="Print the full cluster report")

    # stats
    stats = sub.add_parser("stats", help="Summarize an engine log")
    stats.add_argument("log", type=Path, help="Engine log (logs/<target>.err)")
    stats.add_argument("--duration", type=float, default=0.0, help="Session duration in seconds")
    stats.add_argument("--csv", type=Path, help="Also write the time series to this CSV file")

    return parser


def _cli_options(args: argparse.Namespace) -> dict[str, Any]:
    names = (
        "work_dir",
        "instrument",
        "max_single_target_fuzz_time",
        "keep_going",
        "run_modes",
        "max_heap_size_mb",
        "rss_limit_mb",
        "clustering_oracle",
        "detailed_logging",
        "dump_coverage",
        "hooks",
    )
    return {name: getattr(args, name) for name in names}


def load_configuration(args: argparse.Namespace) -> RunConfiguration:
    """Layer configuration: file < environment < command line."""
    file_options = load_yaml_options(args.config) if args.config else {}
    return RunConfiguration.from_options(
        merge_layers(file_options, load_env_options(os.environ), _cli_options(args))
    )


async def _run(args: argparse.Namespace) -> int:
    config = load_configuration(args)
    targets = [FuzzTargetId.parse(name) for name in args.targets]

    orchestrator = FuzzOrchestrator(config)
    batch = await orchestrator.run_targets(targets)

    # Print summary
    print(f"\n{'='*60}")
    print(f"Fuzzing Run Complete: {config.work_dir}")
    print(f"{'='*60}")
    for outcome in batch.outcomes:
        status = "PASS" if outcome.passed else "FAIL"
        print(f"[{status}] {outcome.target} ({outcome.duration_seconds:.1f}s, "
              f"{outcome.clusters} cluster(s), +{outcome.new_clusters} new)")
        if not outcome.passed:
            print(f"       {outcome.failure_kind}: {outcome.failure_message}")
    print(f"Summary: {batch.summary}")
    print(f"{'='*60}\n")
    return 0 if batch.passed else 1


def _cluster(args: argparse.Namespace) -> int:
    if not args.directory.is_dir():
        print(f"Not a directory: {args.directory}", file=sys.stderr)
        return 2
    dedup = CrashDeduplicator(
        args.directory,
        oracle=load_oracle(args.clustering_oracle, args.frames),
        num_frames=args.frames,
    )
    count = dedup.cluster()
    if args.json:
        print(json.dumps(dedup.summary(), indent=2))
    else:
        print(f"{count} cluster(s) in {args.directory}")
        for info in dedup.clusters():
            print(f"  {info.name}: {info.count} crash(es), {info.error_type}")
    return 0


def _stats(args: argparse.Namespace) -> int:
    rows = stats_extractor.extract(args.log, args.duration)
    if args.csv:
        stats_extractor.write_csv(rows, args.csv)
    print(json.dumps(stats_extractor.summarize(rows), indent=2))
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    # Environment variables from .env apply before configuration is read
    load_dotenv(dotenv_path=Path.cwd() / ".env")

    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.command == "run":
            return asyncio.run(_run(args))
        if args.command == "cluster":
            return _cluster(args)
        return _stats(args)
    except (ConfigurationError, TargetResolutionError) as e:
        logger.error("%s", e)
        return 2


if __name__ == "__main__":
    sys.exit(main())
