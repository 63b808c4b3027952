# ============================================================================
# EVENT MODEL
# ============================================================================
# STATUS: Core model - Execution timeline events
# PURPOSE: Live reporting of job, sandbox and step milestones to the caller
# LAST_REVIEWED: 18 OCT 2026
# EXPORTS: EngineEvent, EventType, EventStatus
# DEPENDENCIES: pydantic, enum
# ============================================================================
"""
Event Model

EngineEvent records execution milestones as they happen. Reporters
(orchestrator.reporter) deliver them to the caller: per-step results for
live reporting, then the final per-job status.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field

from core.contracts import JobStatus
from core.models.result import JobResult, StepResult


class EventType(str, Enum):
    """Types of events emitted during job execution."""

    # Job lifecycle
    JOB_STARTED = "job_started"
    JOB_COMPLETED = "job_completed"
    JOB_FAILED = "job_failed"
    JOB_SKIPPED = "job_skipped"
    JOB_CANCELLED = "job_cancelled"

    # Sandbox lifecycle
    SANDBOX_CREATED = "sandbox_created"
    SANDBOX_READY = "sandbox_ready"
    SANDBOX_RETRY = "sandbox_retry"
    SANDBOX_RECREATED = "sandbox_recreated"
    SANDBOX_REMOVED = "sandbox_removed"

    # Steps
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"

    # Stages
    STAGE_STARTED = "stage_started"
    STAGE_COMPLETED = "stage_completed"


class EventStatus(str, Enum):
    """Status/severity of an event."""
    SUCCESS = "success"
    FAILURE = "failure"
    WARNING = "warning"
    INFO = "info"


class EngineEvent(BaseModel):
    """A single event in a job's execution timeline."""
    event_type: EventType
    status: EventStatus = EventStatus.INFO
    job_id: Optional[str] = None
    stage: Optional[str] = None
    step_id: Optional[str] = None
    sandbox: Optional[str] = None
    message: Optional[str] = Field(default=None, max_length=2000)
    data: Dict[str, Any] = Field(default_factory=dict)

    step_result: Optional[StepResult] = None
    job_result: Optional[JobResult] = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def for_step(cls, job_id: str, result: StepResult) -> "EngineEvent":
        """STEP_COMPLETED event carrying the step result."""
        return cls(
            event_type=EventType.STEP_COMPLETED,
            status=EventStatus.SUCCESS if result.success else EventStatus.FAILURE,
            job_id=job_id,
            step_id=result.step_id,
            step_result=result,
        )

    @classmethod
    def for_job(cls, result: JobResult, stage: Optional[str] = None) -> "EngineEvent":
        """Terminal job event carrying the job result."""
        event_type = {
            JobStatus.SUCCESS: EventType.JOB_COMPLETED,
            JobStatus.SKIPPED: EventType.JOB_SKIPPED,
            JobStatus.CANCELLED: EventType.JOB_CANCELLED,
        }.get(result.status, EventType.JOB_FAILED)
        return cls(
            event_type=event_type,
            status=EventStatus.SUCCESS if result.exit_code == 0 else EventStatus.FAILURE,
            job_id=result.job_id,
            stage=stage,
            sandbox=result.sandbox_name,
            message=result.error,
            job_result=result,
        )


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = ["EngineEvent", "EventType", "EventStatus"]
