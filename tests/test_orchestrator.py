"""Tests for the batch orchestrator."""

import json
import sys
import tempfile
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from fuzzorch.src.config import RunConfiguration
from fuzzorch.src.errors import ConfigurationError
from fuzzorch.src.orchestration.main import FuzzOrchestrator
from fuzzorch.src.pipelines.fuzzing import FuzzingPipeline
from fuzzorch.src.storage.layout import SessionPaths
from fuzzorch.src.storage.models import SessionResult
from fuzzorch.src.targets import FuzzTargetId

CRASHING = FuzzTargetId("pkg.a", "Crashing", "run")
PASSING = FuzzTargetId("pkg.b", "Passing", "run")


def _config(work_dir: Path) -> RunConfiguration:
    return RunConfiguration.from_options(
        {
            "work_dir": work_dir,
            "instrument": ["sample_targets"],
            "max_single_target_fuzz_time": "30s",
            "run_modes": ["regression"],
            "max_heap_size_mb": 0,
        }
    )


class ScriptedPipeline(FuzzingPipeline):
    """Returns canned session results instead of launching children."""

    def __init__(self, config, script):
        super().__init__(config)
        self.script = script
        self.executed = []

    async def execute(self, target):
        self.executed.append(target.full_name)
        outcome = self.script[target.full_name]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


@pytest.mark.asyncio
async def test_session_error_becomes_failed_outcome_and_batch_continues():
    with tempfile.TemporaryDirectory() as tmpdir:
        config = _config(Path(tmpdir))
        pipeline = ScriptedPipeline(
            config,
            {
                CRASHING.full_name: RuntimeError("runner exploded"),
                PASSING.full_name: SessionResult(PASSING.full_name, returncode=0, duration_seconds=1.25),
            },
        )

        batch = await FuzzOrchestrator(config, pipeline=pipeline).run_targets([CRASHING, PASSING])

        assert pipeline.executed == [CRASHING.full_name, PASSING.full_name]
        assert batch.failed_targets == [CRASHING.full_name]
        failed, passed = batch.outcomes
        assert failed.failure_kind == "SubprocessFailure"
        assert "runner exploded" in failed.failure_message
        assert passed.passed
        assert passed.duration_seconds == 1.25
        assert batch.summary == "2 target(s): 1 passed, 1 failed"

        payload = json.loads((Path(tmpdir) / "results.json").read_text())
        assert payload["failed_targets"] == [CRASHING.full_name]
        assert "Batch completed" in pipeline.store.event_log.read_text()


@pytest.mark.asyncio
async def test_configuration_error_aborts_batch():
    with tempfile.TemporaryDirectory() as tmpdir:
        config = _config(Path(tmpdir))
        pipeline = ScriptedPipeline(
            config,
            {
                CRASHING.full_name: ConfigurationError("bad override"),
                PASSING.full_name: SessionResult(PASSING.full_name, returncode=0, duration_seconds=1.0),
            },
        )

        with pytest.raises(ConfigurationError):
            await FuzzOrchestrator(config, pipeline=pipeline).run_targets([CRASHING, PASSING])
        assert pipeline.executed == [CRASHING.full_name]


@pytest.mark.asyncio
async def test_batch_of_real_sessions():
    magic = FuzzTargetId("sample_targets", "MagicBytesTarget", "check")
    clean = FuzzTargetId("sample_targets", "CleanTarget", "check")
    with tempfile.TemporaryDirectory() as tmpdir:
        config = _config(Path(tmpdir))
        paths = SessionPaths(config.work_dir)
        for target in (magic, clean):
            corpus = paths.corpus_for(target)
            corpus.mkdir(parents=True)
            (corpus / "seed").write_bytes(b"FUZZ")

        batch = await FuzzOrchestrator(config).run_targets([magic, clean])

        assert batch.failed_targets == [magic.full_name]
        failed = batch.outcomes[0]
        assert failed.failure_kind == "ValueError"
        assert failed.clusters == 1
        assert failed.new_clusters == 1
        assert paths.stats_file_for(magic.full_name).exists()
        assert paths.stats_file_for(clean.full_name).exists()
        assert (config.work_dir / "results.json").exists()
        events = paths.logs_dir.joinpath("session.log").read_text()
        assert f"[{magic.full_name}] Session failed" in events
        assert f"[{clean.full_name}] Session passed" in events
