# ============================================================================
# STAGE SCHEDULER TESTS
# ============================================================================
# STATUS: Tests - Stage ordering and bounded concurrency
# PURPOSE: max_parallel bound, skip propagation, stage events
# CREATED: 18 OCT 2026
# ============================================================================
"""
StageScheduler Tests

Run with:
    pytest tests/test_scheduler.py -v
"""

import asyncio

import pytest

from core.config.defaults import ConcurrencyDefaults
from core.contracts import FailureKind, JobStatus
from core.models.events import EventType
from core.models.job import Stage
from orchestrator.job_runner import JobOrchestrator
from orchestrator.reporter import CollectingReporter
from orchestrator.scheduler import StageScheduler
from steps.driver import ActionResolver

from fakes import fast_config


def _scheduler(cluster, max_parallel=4):
    orchestrator = JobOrchestrator(
        cluster, fast_config(max_parallel=max_parallel), reporter=CollectingReporter(),
    )
    return StageScheduler(orchestrator)


# ============================================================================
# CONCURRENCY
# ============================================================================

class TestConcurrency:

    def test_max_parallel_never_exceeded(self, cluster, make_job):
        scheduler = _scheduler(cluster, max_parallel=2)
        stage = Stage(name="test", jobs=[
            make_job(job_id=f"unit-{i}", steps=["sleep 0.05"]) for i in range(5)
        ])

        results = asyncio.run(scheduler.run([stage]))

        assert results[0].success
        assert results[0].peak_concurrency == 2
        assert cluster.peak_pods <= 2
        assert cluster.created_total == 5
        assert scheduler.active_count == 0
        assert cluster.pods == {}

    def test_explicit_concurrency_overrides_config(self, cluster, make_job):
        orchestrator = JobOrchestrator(cluster, fast_config(max_parallel=4))
        scheduler = StageScheduler(orchestrator, ConcurrencyDefaults(max_parallel=1))
        stage = Stage(name="lint", jobs=[
            make_job(job_id=f"lint-{i}", steps=["sleep 0.02"]) for i in range(3)
        ])

        results = asyncio.run(scheduler.run([stage]))

        assert scheduler.max_parallel == 1
        assert results[0].peak_concurrency == 1
        assert cluster.peak_pods == 1

    def test_results_keep_job_order(self, cluster, make_job):
        scheduler = _scheduler(cluster)
        stage = Stage(name="build", jobs=[
            make_job(job_id="slow", steps=["sleep 0.05"]),
            make_job(job_id="fast"),
        ])

        results = asyncio.run(scheduler.run([stage]))

        assert [r.job_id for r in results[0].jobs] == ["slow", "fast"]


# ============================================================================
# FAILURE PROPAGATION
# ============================================================================

class TestFailurePropagation:

    def test_later_stages_skipped(self, cluster, make_job):
        scheduler = _scheduler(cluster)
        stages = [
            Stage(name="build", jobs=[make_job(job_id="compile", steps=["exit 1"])]),
            Stage(name="test", jobs=[make_job(job_id="unit"), make_job(job_id="e2e")]),
            Stage(name="deploy", jobs=[make_job(job_id="ship")]),
        ]

        results = asyncio.run(scheduler.run(stages))

        assert not results[0].success
        skipped = [job for stage in results[1:] for job in stage.jobs]
        assert [j.job_id for j in skipped] == ["unit", "e2e", "ship"]
        assert all(j.status == JobStatus.SKIPPED for j in skipped)
        assert all("compile" in j.error for j in skipped)
        # Skipped jobs never provisioned a sandbox
        assert cluster.created_total == 1

        reporter = scheduler.reporter
        assert len(reporter.of_type(EventType.JOB_SKIPPED)) == 3

    def test_failing_stage_finishes(self, cluster, make_job):
        scheduler = _scheduler(cluster)
        stage = Stage(name="build", jobs=[
            make_job(job_id="broken", steps=["exit 2"]),
            make_job(job_id="slow", steps=["sleep 0.05", "echo ok"]),
        ])

        results = asyncio.run(scheduler.run([stage]))

        statuses = {r.job_id: r.status for r in results[0].jobs}
        assert statuses == {"broken": JobStatus.FAILURE, "slow": JobStatus.SUCCESS}

    def test_continue_on_error_job_does_not_block(self, cluster, make_job):
        scheduler = _scheduler(cluster)
        stages = [
            Stage(name="lint", jobs=[
                make_job(job_id="style", steps=["exit 1"], continue_on_error=True),
            ]),
            Stage(name="test", jobs=[make_job(job_id="unit")]),
        ]

        results = asyncio.run(scheduler.run(stages))

        assert results[0].jobs[0].status == JobStatus.FAILURE
        assert results[1].jobs[0].status == JobStatus.SUCCESS
        assert cluster.created_total == 2

    def test_skipped_jobs_kept_with_successes(self, cluster, make_job):
        scheduler = _scheduler(cluster)
        stages = [
            Stage(name="build", jobs=[make_job(job_id="compile", steps=["false"])]),
            Stage(name="test", jobs=[make_job(job_id="unit")]),
        ]

        asyncio.run(scheduler.run(stages))

        history = scheduler.orchestrator.history
        assert [r.job_id for r in history.failures] == ["compile"]
        assert [r.job_id for r in history.successes] == ["unit"]


# ============================================================================
# EVENTS & CANCELLATION
# ============================================================================

class _DownResolver(ActionResolver):
    async def resolve(self, step):
        raise RuntimeError("resolver backend down")


class TestJobIsolation:

    def test_resolver_error_does_not_cancel_siblings(self, cluster, make_job):
        orchestrator = JobOrchestrator(
            cluster, fast_config(max_parallel=2),
            reporter=CollectingReporter(), action_resolver=_DownResolver(),
        )
        scheduler = StageScheduler(orchestrator)
        stage = Stage(name="build", jobs=[
            make_job(job_id="bad", steps=[{"step_id": "checkout", "uses": "actions/checkout@v4"}]),
            make_job(job_id="good", steps=["sleep 0.3", "echo ok"]),
        ])

        results = asyncio.run(scheduler.run([stage]))

        jobs = {r.job_id: r for r in results[0].jobs}
        assert jobs["bad"].status == JobStatus.FAILURE
        assert jobs["bad"].failure_kind == FailureKind.STEP
        assert jobs["good"].status == JobStatus.SUCCESS
        reported = {r.job_id: r.status for r in scheduler.reporter.job_results()}
        assert reported == {"bad": JobStatus.FAILURE, "good": JobStatus.SUCCESS}
        assert cluster.pods == {}

    def test_unexpected_cluster_error_does_not_cancel_siblings(self, cluster, make_job):
        scheduler = _scheduler(cluster, max_parallel=2)
        create_pod = cluster.create_pod

        async def flaky_create(namespace, pod):
            if "bad" in pod.metadata.name:
                raise ConnectionError("connection reset by apiserver")
            await create_pod(namespace, pod)

        cluster.create_pod = flaky_create
        stage = Stage(name="build", jobs=[
            make_job(job_id="bad"),
            make_job(job_id="good", steps=["sleep 0.3", "echo ok"]),
        ])

        results = asyncio.run(scheduler.run([stage]))

        jobs = {r.job_id: r for r in results[0].jobs}
        assert jobs["bad"].failure_kind == FailureKind.SANDBOX
        assert jobs["good"].status == JobStatus.SUCCESS
        assert cluster.created_total == 1


class TestStageEvents:

    def test_stage_events(self, cluster, make_job):
        scheduler = _scheduler(cluster, max_parallel=3)
        stage = Stage(name="build", jobs=[make_job(job_id="a"), make_job(job_id="b")])

        asyncio.run(scheduler.run([stage]))

        reporter = scheduler.reporter
        started = reporter.of_type(EventType.STAGE_STARTED)
        completed = reporter.of_type(EventType.STAGE_COMPLETED)
        assert [e.stage for e in started] == ["build"]
        assert completed[0].data["jobs"] == 2
        assert 1 <= completed[0].data["peak_concurrency"] <= 2
        assert reporter.events[0].event_type == EventType.STAGE_STARTED
        assert reporter.events[-1].event_type == EventType.STAGE_COMPLETED


class TestCancellation:

    def test_cancel_tears_down_running_jobs(self, cluster, make_job):
        scheduler = _scheduler(cluster, max_parallel=2)
        stage = Stage(name="test", jobs=[
            make_job(job_id=f"long-{i}", steps=["sleep 5"]) for i in range(3)
        ])

        async def scenario():
            task = asyncio.ensure_future(scheduler.run([stage]))
            while len(cluster.step_execs()) < 2:
                await asyncio.sleep(0.01)
            task.cancel()
            await task

        with pytest.raises(asyncio.CancelledError):
            asyncio.run(scenario())

        assert cluster.pods == {}
        assert cluster.config_maps == {}
        assert cluster.created_total == 2
