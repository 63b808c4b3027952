# ============================================================================
# RESULT MODELS
# ============================================================================
# STATUS: Core model - Step results, the per-job ledger, job/stage results
# PURPOSE: What the engine reports back to its caller
# LAST_REVIEWED: 18 OCT 2026
# EXPORTS: StepResult, StepLedger, JobResult, StageResult
# DEPENDENCIES: pydantic
# ============================================================================
"""
Result Models

- StepResult: one entry per executed (or skipped) step
- StepLedger: append-only list of StepResults for one job
- JobResult: final per-job status, including which step failed and the
  output captured up to that point
- StageResult: the JobResults of one stage

Outcome vs conclusion:
    outcome    = what actually happened (success | failure | skipped)
    conclusion = outcome after continue-on-error (success | failure)
"""

from datetime import datetime, timezone
from typing import Iterator, List, Optional, Tuple
from pydantic import BaseModel, Field, computed_field

from core.contracts import FailureKind, JobStatus, StepConclusion, StepOutcome


# Cap on output kept in memory per step; the full stream goes to the sink
MAX_CAPTURED_OUTPUT = 64 * 1024


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class StepResult(BaseModel):
    """Result of one step."""
    step_id: str = Field(..., max_length=256)
    parent_id: Optional[str] = Field(
        default=None,
        description="Composite step this result belongs to",
    )
    name: Optional[str] = None

    outcome: StepOutcome
    conclusion: StepConclusion

    exit_code: Optional[int] = None
    output: str = Field(default="", description="Captured output (tail, capped)")
    output_ref: Optional[str] = Field(
        default=None,
        description="Reference to the full output in the caller's log store",
    )
    error: Optional[str] = Field(default=None, max_length=2000)

    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = {"frozen": True}

    @property
    def success(self) -> bool:
        return self.conclusion == StepConclusion.SUCCESS

    @classmethod
    def succeeded(cls, step_id: str, **kwargs) -> "StepResult":
        """Factory for a successful step."""
        return cls(
            step_id=step_id,
            outcome=StepOutcome.SUCCESS,
            conclusion=StepConclusion.SUCCESS,
            **kwargs,
        )

    @classmethod
    def failed(
        cls,
        step_id: str,
        continue_on_error: bool = False,
        **kwargs,
    ) -> "StepResult":
        """Factory for a failed step; continue-on-error flips the conclusion."""
        if kwargs.get("error"):
            kwargs["error"] = kwargs["error"][:2000]
        return cls(
            step_id=step_id,
            outcome=StepOutcome.FAILURE,
            conclusion=StepConclusion.SUCCESS if continue_on_error else StepConclusion.FAILURE,
            **kwargs,
        )

    @classmethod
    def skipped(cls, step_id: str, **kwargs) -> "StepResult":
        """Factory for a step that never ran."""
        now = _utc_now()
        return cls(
            step_id=step_id,
            outcome=StepOutcome.SKIPPED,
            conclusion=StepConclusion.SUCCESS,
            started_at=now,
            completed_at=now,
            **kwargs,
        )


class StepLedger:
    """
    Append-only record of step results for one job.

    Entries are never rewritten; readers get an immutable snapshot.
    """

    def __init__(self, job_id: str):
        self.job_id = job_id
        self._entries: List[StepResult] = []

    def append(self, result: StepResult) -> None:
        self._entries.append(result)

    @property
    def entries(self) -> Tuple[StepResult, ...]:
        return tuple(self._entries)

    def top_level(self) -> Tuple[StepResult, ...]:
        """Results of the job's own steps (composite children excluded)."""
        return tuple(r for r in self._entries if r.parent_id is None)

    def first_failure(self) -> Optional[StepResult]:
        """First top-level step whose conclusion is failure."""
        for result in self.top_level():
            if result.conclusion == StepConclusion.FAILURE:
                return result
        return None

    def __iter__(self) -> Iterator[StepResult]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self._entries)


class JobResult(BaseModel):
    """Final status of one job."""
    job_id: str
    status: JobStatus
    failure_kind: Optional[FailureKind] = None
    failed_step_id: Optional[str] = None
    error: Optional[str] = Field(default=None, max_length=4000)

    steps: List[StepResult] = Field(default_factory=list)
    output: str = Field(
        default="",
        description="Captured output up to the failure point",
    )

    sandbox_name: Optional[str] = None
    template_source: Optional[str] = None
    started_at: datetime = Field(default_factory=_utc_now)
    completed_at: Optional[datetime] = None

    @computed_field
    @property
    def success(self) -> bool:
        return self.status == JobStatus.SUCCESS

    @property
    def exit_code(self) -> int:
        """Process-style completion signal: 0 on success, 1 otherwise."""
        return 0 if self.status in (JobStatus.SUCCESS, JobStatus.SKIPPED) else 1

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()


class StageResult(BaseModel):
    """Results of every job in one stage."""
    name: str
    jobs: List[JobResult] = Field(default_factory=list)
    peak_concurrency: int = 0

    @property
    def success(self) -> bool:
        return all(job.status in (JobStatus.SUCCESS, JobStatus.SKIPPED) for job in self.jobs)


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "MAX_CAPTURED_OUTPUT",
    "StepResult",
    "StepLedger",
    "JobResult",
    "StageResult",
]
