# ============================================================================
# JOB ORCHESTRATOR
# ============================================================================
# STATUS: Core - Full lifecycle of one job
# PURPOSE: resolve -> build -> create -> await ready -> steps -> teardown
# CREATED: 18 OCT 2026
# ============================================================================
"""
Job Orchestrator

Runs one job end to end and always tears its sandbox down, on every exit
path: success, any failure, job deadline and external cancellation.

Failure kinds reported to the caller:
    config     template or sandbox spec invalid, nothing touched the cluster
    admission  the cluster rejected the sandbox
    readiness  the sandbox never became ready before the deadline
    sandbox    the sandbox failed fatally (crash, lost twice, API failure)
               or an unexpected error interrupted the job
    step       a step failed without continue-on-error
    cancelled  job deadline exceeded or external cancellation

Teardown runs shielded: a cancellation arriving during teardown is held
until removal finished, then re-raised.
"""

import asyncio
from datetime import datetime, timezone
from typing import Optional, Tuple

from core.config.defaults import EngineConfig
from core.contracts import FailureKind, JobStatus
from core.errors import (
    AdmissionError,
    ConfigError,
    ReadinessTimeoutError,
    SandboxError,
    SandboxFailedError,
    StepFailure,
)
from core.logging import get_logger, ComponentType, log_checkpoint, log_context
from core.models.events import EngineEvent, EventType
from core.models.job import Job
from core.models.result import MAX_CAPTURED_OUTPUT, JobResult, StepLedger
from infrastructure.kubernetes import ClusterClient
from orchestrator.cleanup import RunHistory
from orchestrator.reporter import EventReporter, LoggingReporter
from placement.resolver import PlatformResolver
from sandbox.builder import SandboxBuilder
from sandbox.channel import CommandChannel
from sandbox.lifecycle import SandboxLifecycle, SandboxRegistry
from steps.driver import ActionResolver, StepDriver, StepOutputSink

logger = get_logger(__name__, ComponentType.ORCHESTRATOR)


# (status, failure kind, error message, extra output)
Outcome = Tuple[JobStatus, Optional[FailureKind], Optional[str], Optional[str]]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JobOrchestrator:
    """
    Owns the full lifecycle of each job it runs.

    Usage:
        orchestrator = JobOrchestrator(cluster, config)
        result = await orchestrator.run_job(job)
    """

    def __init__(
        self,
        cluster: ClusterClient,
        config: Optional[EngineConfig] = None,
        reporter: Optional[EventReporter] = None,
        registry: Optional[SandboxRegistry] = None,
        action_resolver: Optional[ActionResolver] = None,
        output_sink: Optional[StepOutputSink] = None,
        history: Optional[RunHistory] = None,
        resolver: Optional[PlatformResolver] = None,
        builder: Optional[SandboxBuilder] = None,
    ):
        self.cluster = cluster
        self.config = config or EngineConfig()
        self.reporter = reporter or LoggingReporter()
        self.registry = registry if registry is not None else SandboxRegistry()
        self.action_resolver = action_resolver
        self.output_sink = output_sink
        self.history = history if history is not None else RunHistory(self.config.cleanup)
        self.resolver = resolver or PlatformResolver(self.config.platforms, self.config.sandbox)
        self.builder = builder or SandboxBuilder(self.config.sandbox, self.config.cluster)

    async def run_job(self, job: Job, stage: Optional[str] = None) -> JobResult:
        """
        Run one job. Never leaves its sandbox behind.

        Returns:
            JobResult (cancellation is re-raised after teardown and reporting)
        """
        started = _utc_now()
        ledger = StepLedger(job.job_id)

        with log_context(job_id=job.job_id, stage=stage, component=ComponentType.ORCHESTRATOR):
            logger.info(f"Starting job {job.job_id} ({len(job.steps)} steps)")
            await self.reporter.publish(EngineEvent(
                event_type=EventType.JOB_STARTED, job_id=job.job_id, stage=stage,
            ))

            try:
                template = self.resolver.resolve(job.placement)
                spec = self.builder.build(job, template)
            except ConfigError as e:
                logger.error(f"Job {job.job_id} configuration invalid: {e}")
                return await self._finish(
                    job, ledger, started, stage,
                    (JobStatus.FAILURE, FailureKind.CONFIG, str(e), None),
                )

            lifecycle = SandboxLifecycle(
                self.cluster,
                spec,
                self.config.timeouts,
                self.config.cleanup,
                self.registry,
                on_event=self.reporter.publish,
            )

            outcome: Optional[Outcome] = None
            cancelled = False
            try:
                try:
                    outcome = await asyncio.wait_for(
                        self._execute(job, lifecycle, ledger), job.timeout_seconds
                    )
                except asyncio.TimeoutError:
                    outcome = (
                        JobStatus.CANCELLED, FailureKind.CANCELLED,
                        f"Job exceeded its {job.timeout_minutes:g} minute timeout", None,
                    )
                except asyncio.CancelledError:
                    cancelled = True
                except Exception as e:
                    logger.exception(f"Job {job.job_id} hit an unexpected error: {e}")
                    outcome = (
                        JobStatus.FAILURE, FailureKind.SANDBOX,
                        f"Unexpected error: {type(e).__name__}: {e}", None,
                    )
            finally:
                removed, interrupted = await self._teardown(lifecycle)
                if not removed:
                    logger.error(f"Sandbox {spec.name} of job {job.job_id} was not confirmed removed")

            if cancelled or interrupted:
                outcome = (JobStatus.CANCELLED, FailureKind.CANCELLED, "Job cancelled", None)

            result = await self._finish(
                job, ledger, started, stage, outcome,
                sandbox_name=spec.name, template_source=template.source.value,
            )
            if cancelled or interrupted:
                raise asyncio.CancelledError()
            return result

    async def _execute(self, job: Job, lifecycle: SandboxLifecycle, ledger: StepLedger) -> Outcome:
        """Create, wait, drive. Every error becomes an Outcome."""
        try:
            await lifecycle.create()
        except AdmissionError as e:
            return JobStatus.FAILURE, FailureKind.ADMISSION, str(e), None
        except SandboxError as e:
            return JobStatus.FAILURE, FailureKind.SANDBOX, str(e), None

        try:
            await lifecycle.await_ready(self.config.timeouts.readiness_timeout_seconds)
        except ReadinessTimeoutError as e:
            return JobStatus.FAILURE, FailureKind.READINESS, str(e), None
        except SandboxFailedError as e:
            return JobStatus.FAILURE, FailureKind.SANDBOX, str(e), e.logs

        lifecycle.mark_executing()
        channel = CommandChannel(
            self.cluster,
            lifecycle.spec,
            lifecycle.status,
            poll_seconds=self.config.timeouts.poll_interval_seconds,
        )

        async def on_result(result) -> None:
            await self.reporter.step_result(job.job_id, result)

        driver = StepDriver(
            channel,
            lifecycle.spec,
            job,
            ledger=ledger,
            action_resolver=self.action_resolver,
            on_result=on_result,
            output_sink=self.output_sink,
            default_shell=self.config.sandbox.default_shell,
            default_timeout_seconds=self.config.timeouts.default_step_timeout_seconds,
        )
        try:
            await driver.run_checked()
        except StepFailure as e:
            return JobStatus.FAILURE, FailureKind.STEP, str(e), None
        return JobStatus.SUCCESS, None, None, None

    async def _teardown(self, lifecycle: SandboxLifecycle) -> Tuple[bool, bool]:
        """
        Run teardown to completion even if cancelled meanwhile.

        Returns:
            (removed, interrupted) - interrupted means a cancellation arrived
            and must be re-raised by the caller
        """
        task = asyncio.ensure_future(lifecycle.teardown())
        interrupted = False
        while not task.done():
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                interrupted = True
        if interrupted:
            logger.warning(f"Cancellation deferred until sandbox {lifecycle.name} was removed")
        try:
            removed = task.result()
        except Exception as e:
            logger.exception(f"Teardown of sandbox {lifecycle.name} failed: {e}")
            removed = False
        return removed, interrupted

    async def _finish(
        self,
        job: Job,
        ledger: StepLedger,
        started: datetime,
        stage: Optional[str],
        outcome: Outcome,
        sandbox_name: Optional[str] = None,
        template_source: Optional[str] = None,
    ) -> JobResult:
        status, failure_kind, error, extra_output = outcome
        failed = ledger.first_failure() if failure_kind == FailureKind.STEP else None

        output = "".join(entry.output for entry in ledger.entries if entry.parent_id is None)
        if extra_output:
            output = f"{output}\n{extra_output}" if output else extra_output

        result = JobResult(
            job_id=job.job_id,
            status=status,
            failure_kind=failure_kind,
            failed_step_id=failed.step_id if failed is not None else None,
            error=error[:4000] if error else None,
            steps=list(ledger.entries),
            output=output[-MAX_CAPTURED_OUTPUT:],
            sandbox_name=sandbox_name,
            template_source=template_source,
            started_at=started,
            completed_at=_utc_now(),
        )

        log_checkpoint("job_completed", {
            "job_id": job.job_id,
            "status": status.value,
            "failure_kind": failure_kind.value if failure_kind else None,
        })
        logger.info(
            f"Job {job.job_id} finished: {status.value}"
            + (f" ({failure_kind.value}: {error})" if failure_kind else "")
        )
        self.history.record(result)
        await self.reporter.job_result(result, stage)
        return result


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = ["JobOrchestrator"]
