# ============================================================================
# MODEL TESTS
# ============================================================================
# STATUS: Tests - Job / Step / sandbox state models
# PURPOSE: Validation rules and the sandbox state machine
# CREATED: 18 OCT 2026
# ============================================================================
"""
Model Tests

Run with:
    pytest tests/test_models.py -v
"""

import pytest
from pydantic import ValidationError

from core.contracts import SandboxState, StepConclusion, StepKind, StepOutcome
from core.models.job import Job
from core.models.result import StepLedger, StepResult
from core.models.sandbox import InvalidTransitionError, SandboxStatus
from core.models.step import Step


# ============================================================================
# STEP
# ============================================================================

class TestStep:

    def test_kind_inferred(self):
        assert Step(step_id="a", run="make").kind == StepKind.RUN
        assert Step(step_id="b", uses="actions/checkout@v4").kind == StepKind.ACTION
        composite = Step(step_id="c", steps=[{"step_id": "x", "run": "true"}])
        assert composite.kind == StepKind.COMPOSITE
        assert composite.steps[0].kind == StepKind.RUN

    def test_with_alias_and_stringified_inputs(self):
        step = Step(step_id="n", uses="setup-node", **{"with": {"node-version": 20, "cache": None}})
        assert step.with_ == {"node-version": "20", "cache": ""}

    def test_run_step_needs_script(self):
        with pytest.raises(ValidationError, match="must set 'run'"):
            Step(step_id="a", kind="run")

    def test_action_cannot_have_script(self):
        with pytest.raises(ValidationError):
            Step(step_id="a", kind="action", uses="x", run="echo")

    def test_duplicate_child_ids(self):
        with pytest.raises(ValidationError, match="duplicate child ids"):
            Step(step_id="c", steps=[
                {"step_id": "x", "run": "true"},
                {"step_id": "x", "run": "false"},
            ])

    def test_env_values_stringified(self):
        step = Step(step_id="a", run="true", env={"DEBUG": True, "N": 3, "EMPTY": None})
        assert step.env == {"DEBUG": "true", "N": "3", "EMPTY": ""}

    def test_invalid_env_name(self):
        with pytest.raises(ValidationError, match="Invalid environment variable name"):
            Step(step_id="a", run="true", env={"BAD-NAME": "x"})

    def test_display_name_and_timeout(self):
        assert Step(step_id="a", uses="actions/cache@v4").display_name == "Run actions/cache@v4"
        assert Step(step_id="a", name="Build", run="make").display_name == "Build"
        assert Step(step_id="a", run="make", timeout_minutes=2).timeout_seconds == 120
        assert Step(step_id="a", run="make").timeout_seconds is None


# ============================================================================
# JOB
# ============================================================================

class TestJob:

    def test_service_names_from_keys(self):
        job = Job(
            job_id="it",
            steps=[{"step_id": "t", "run": "pytest"}],
            services={"postgres": {"image": "postgres:16", "ports": [5432]}},
        )
        assert job.services["postgres"].name == "postgres"

    def test_single_placement_label(self):
        job = Job(job_id="a", steps=[{"step_id": "t", "run": "true"}], placement="gpu")
        assert job.placement == ["gpu"]

    def test_needs_a_step(self):
        with pytest.raises(ValidationError):
            Job(job_id="a", steps=[])

    def test_duplicate_step_ids(self):
        with pytest.raises(ValidationError, match="duplicate step ids"):
            Job(job_id="a", steps=[
                {"step_id": "t", "run": "true"},
                {"step_id": "t", "run": "false"},
            ])

    def test_reserved_service_name(self):
        with pytest.raises(ValidationError, match="reserved"):
            Job(job_id="a", steps=[{"step_id": "t", "run": "true"}],
                services={"runner": {"image": "busybox"}})

    def test_service_port_range(self):
        with pytest.raises(ValidationError, match="Port out of range"):
            Job(job_id="a", steps=[{"step_id": "t", "run": "true"}],
                services={"db": {"image": "postgres", "ports": [70000]}})

    def test_secrets_hidden_from_repr(self):
        job = Job(job_id="a", steps=[{"step_id": "t", "run": "true"}], secrets={"TOKEN": "s3cret"})
        assert "s3cret" not in repr(job)

    def test_timeout_seconds(self):
        job = Job(job_id="a", steps=[{"step_id": "t", "run": "true"}], timeout_minutes=1.5)
        assert job.timeout_seconds == 90


# ============================================================================
# RESULTS
# ============================================================================

class TestStepResult:

    def test_failed_with_continue_on_error_concludes_success(self):
        result = StepResult.failed("lint", exit_code=1, continue_on_error=True)
        assert result.outcome == StepOutcome.FAILURE
        assert result.conclusion == StepConclusion.SUCCESS
        assert result.success

    def test_skipped(self):
        result = StepResult.skipped("deploy")
        assert result.outcome == StepOutcome.SKIPPED
        assert result.conclusion == StepConclusion.SUCCESS

    def test_ledger_first_failure_ignores_children(self):
        ledger = StepLedger("job")
        ledger.append(StepResult.failed("child", exit_code=2, parent_id="group"))
        ledger.append(StepResult.failed("group", exit_code=2))
        ledger.append(StepResult.skipped("next"))

        assert ledger.first_failure().step_id == "group"
        assert [r.step_id for r in ledger.top_level()] == ["group", "next"]


# ============================================================================
# SANDBOX STATE
# ============================================================================

def _walk(status, *states):
    for state in states:
        status.transition(state)


class TestSandboxStatus:

    def test_happy_path(self):
        status = SandboxStatus("pod")
        _walk(status, SandboxState.CREATING, SandboxState.CREATED, SandboxState.WAITING_READY,
              SandboxState.READY, SandboxState.EXECUTING, SandboxState.TERMINATING,
              SandboxState.TERMINATED)
        assert status.state == SandboxState.TERMINATED
        assert len(status.history) == 7
        assert not status.failed

    def test_cannot_skip_readiness(self):
        status = SandboxStatus("pod")
        _walk(status, SandboxState.CREATING, SandboxState.CREATED)
        with pytest.raises(InvalidTransitionError):
            status.transition(SandboxState.EXECUTING)

    def test_terminated_is_final(self):
        status = SandboxStatus("pod")
        _walk(status, SandboxState.TERMINATING, SandboxState.TERMINATED)
        assert not status.can_transition_to(SandboxState.CREATING)
        status.fail("late")
        assert status.state == SandboxState.TERMINATED

    def test_failed_then_torn_down(self):
        status = SandboxStatus("pod")
        _walk(status, SandboxState.CREATING)
        status.fail("admission rejected")
        _walk(status, SandboxState.TERMINATING)
        status.fail("cluster did not confirm removal")

        assert status.state == SandboxState.FAILED
        assert status.failure_reason == "admission rejected"
        assert status.visited(SandboxState.TERMINATING)

    def test_node_loss_recreate_edge(self):
        status = SandboxStatus("pod")
        _walk(status, SandboxState.CREATING, SandboxState.CREATED, SandboxState.WAITING_READY)
        assert status.can_transition_to(SandboxState.CREATING)
        assert not SandboxStatus("other").can_transition_to(SandboxState.READY)
