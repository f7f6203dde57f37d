from __future__ import annotations

import logging
from typing import Iterable, Optional

from ..config import RunConfiguration
from ..errors import ConfigurationError, SubprocessFailure
from ..pipelines.fuzzing import FuzzingPipeline
from ..storage.local_store import LocalRunStore
from ..storage.models import BatchResult, SessionResult, TargetOutcome
from ..targets import FuzzTargetId
from ..tools.exception_transport import TargetFailure

logger = logging.getLogger(__name__)


class FuzzOrchestrator:
    """
    High-level coordinator for a batch of fuzz targets.

    Responsibilities:
        * Prepare the session layout once per batch.
        * Fuzz targets one at a time through the fuzzing pipeline.
        * Turn every session into exactly one pass/fail outcome.
        * Persist normalized outputs for downstream consumers.
    """

    def __init__(
        self,
        config: RunConfiguration,
        pipeline: Optional[FuzzingPipeline] = None,
        store: Optional[LocalRunStore] = None,
    ) -> None:
        self.config = config
        self.pipeline = pipeline or FuzzingPipeline(config, store=store)
        self.store = store or self.pipeline.store

    async def run_targets(self, targets: Iterable[FuzzTargetId]) -> BatchResult:
        """Fuzz targets sequentially; only configuration errors abort the batch."""
        self.pipeline.initialise()

        outcomes: list[TargetOutcome] = []
        for target in targets:
            outcomes.append(await self.run_single_target(target))

        try:
            self.pipeline.finish_execution()
        except OSError as e:
            logger.error("Statistics collection failed: %s", e)
            self.store.log_event(None, f"Statistics collection failed: {e}")

        failed = sum(1 for o in outcomes if not o.passed)
        summary = f"{len(outcomes)} target(s): {len(outcomes) - failed} passed, {failed} failed"
        batch = BatchResult(work_dir=self.config.work_dir, outcomes=outcomes, summary=summary)
        out_file = self.store.persist_batch(batch)
        self.store.log_event(None, f"Batch completed. {summary}. Results in {out_file.name}")
        return batch

    async def run_single_target(self, target: FuzzTargetId) -> TargetOutcome:
        name = target.full_name
        try:
            result = await self.pipeline.execute(target)
        except ConfigurationError:
            raise
        except Exception as e:
            logger.exception("Session for %s failed", name)
            self.store.log_event(name, f"Session failed: {e}")
            failure = SubprocessFailure(name, f"Session failed: {e}")
            return _outcome(name, failure, duration=0.0)

        return _outcome(name, result.failure, duration=result.duration_seconds, result=result)


def _failure_kind(failure: BaseException) -> str:
    if isinstance(failure, TargetFailure):
        return failure.qualified_kind
    return type(failure).__name__


def _outcome(
    name: str,
    failure: BaseException | None,
    duration: float,
    result: SessionResult | None = None,
) -> TargetOutcome:
    return TargetOutcome(
        target=name,
        passed=failure is None,
        duration_seconds=round(duration, 3),
        failure_kind=_failure_kind(failure) if failure is not None else "",
        failure_message=str(failure) if failure is not None else "",
        clusters=result.clusters_after if result else 0,
        new_clusters=result.new_clusters if result else 0,
    )
