# ============================================================================
# STAGE SCHEDULER
# ============================================================================
# STATUS: Core - Stage ordering and bounded job concurrency
# PURPOSE: Run stages in order, up to max_parallel jobs at a time
# CREATED: 18 OCT 2026
# ============================================================================
"""
Stage Scheduler

Stages run strictly in order. Within a stage, jobs run concurrently but
never more than `max_parallel` at once; the rest wait on the semaphore.

Once a job fails without continue-on-error, every job of every later
stage is reported SKIPPED without provisioning a sandbox. Jobs of the
failing stage itself are left to finish.
"""

import asyncio
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from core.config.defaults import ConcurrencyDefaults
from core.contracts import JobStatus
from core.logging import get_logger, ComponentType, log_context
from core.models.events import EngineEvent, EventStatus, EventType
from core.models.job import Job, Stage
from core.models.result import JobResult, StageResult
from orchestrator.job_runner import JobOrchestrator

logger = get_logger(__name__, ComponentType.SCHEDULER)


class StageScheduler:
    """
    Runs a plan of stages through a JobOrchestrator.

    Usage:
        scheduler = StageScheduler(orchestrator)
        results = await scheduler.run(stages)
    """

    def __init__(
        self,
        orchestrator: JobOrchestrator,
        concurrency: Optional[ConcurrencyDefaults] = None,
    ):
        self.orchestrator = orchestrator
        self.max_parallel = (concurrency or orchestrator.config.concurrency).max_parallel
        self._semaphore = asyncio.Semaphore(self.max_parallel)
        self._active = 0
        self._peak = 0

    @property
    def active_count(self) -> int:
        """Number of jobs currently holding a slot."""
        return self._active

    @property
    def reporter(self):
        return self.orchestrator.reporter

    async def run(self, stages: Sequence[Stage]) -> List[StageResult]:
        """
        Run every stage in order.

        Returns:
            One StageResult per stage, skipped stages included
        """
        results: List[StageResult] = []
        blocked_by: Optional[str] = None

        for stage in stages:
            if blocked_by is not None:
                results.append(await self.skip_stage(stage, blocked_by))
                continue

            stage_result = await self.run_stage(stage)
            results.append(stage_result)

            blocked_by = self._blocking_failure(stage, stage_result)
            if blocked_by is not None:
                logger.warning(
                    f"Job {blocked_by} failed in stage '{stage.name}'; "
                    f"later stages will be skipped"
                )

        return results

    async def run_stage(self, stage: Stage) -> StageResult:
        """Run one stage's jobs with bounded concurrency."""
        with log_context(stage=stage.name):
            logger.info(
                f"Starting stage '{stage.name}' "
                f"({len(stage.jobs)} jobs, max_parallel={self.max_parallel})"
            )
            await self.reporter.publish(EngineEvent(
                event_type=EventType.STAGE_STARTED, stage=stage.name,
            ))

            self._peak = 0
            tasks = [
                asyncio.ensure_future(self._run_one(job, stage.name))
                for job in stage.jobs
            ]
            try:
                job_results = list(await asyncio.gather(*tasks))
            except BaseException:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise

            result = StageResult(
                name=stage.name, jobs=job_results, peak_concurrency=self._peak,
            )
            await self.reporter.publish(EngineEvent(
                event_type=EventType.STAGE_COMPLETED,
                status=EventStatus.SUCCESS if result.success else EventStatus.FAILURE,
                stage=stage.name,
                data={"peak_concurrency": self._peak, "jobs": len(job_results)},
            ))
            logger.info(
                f"Stage '{stage.name}' finished: "
                f"{'success' if result.success else 'failure'} (peak={self._peak})"
            )
            return result

    async def skip_stage(self, stage: Stage, blocked_by: str) -> StageResult:
        """Report every job of a stage as skipped."""
        jobs = [await self._skip(job, stage.name, blocked_by) for job in stage.jobs]
        return StageResult(name=stage.name, jobs=jobs)

    async def _run_one(self, job: Job, stage: str) -> JobResult:
        async with self._semaphore:
            self._active += 1
            self._peak = max(self._peak, self._active)
            try:
                return await self.orchestrator.run_job(job, stage)
            finally:
                self._active -= 1

    async def _skip(self, job: Job, stage: str, blocked_by: str) -> JobResult:
        now = datetime.now(timezone.utc)
        result = JobResult(
            job_id=job.job_id,
            status=JobStatus.SKIPPED,
            error=f"Skipped: job {blocked_by} failed in an earlier stage",
            started_at=now,
            completed_at=now,
        )
        logger.info(f"Skipping job {job.job_id} (blocked by {blocked_by})")
        self.orchestrator.history.record(result)
        await self.reporter.job_result(result, stage)
        return result

    @staticmethod
    def _blocking_failure(stage: Stage, result: StageResult) -> Optional[str]:
        """job_id of the first failed job without continue-on-error."""
        jobs = {job.job_id: job for job in stage.jobs}
        for job_result in result.jobs:
            if job_result.exit_code == 0:
                continue
            job = jobs.get(job_result.job_id)
            if job is None or not job.continue_on_error:
                return job_result.job_id
        return None


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = ["StageScheduler"]
