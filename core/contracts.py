# ============================================================================
# BASE CONTRACTS & ENUMS
# ============================================================================
# STATUS: Foundation - Core enums shared by every component
# PURPOSE: Status enums for jobs, steps and sandboxes
# LAST_REVIEWED: 18 OCT 2026
# EXPORTS: JobStatus, StepOutcome, StepConclusion, StepKind, SandboxState,
#          FailureKind
# DEPENDENCIES: enum
# ============================================================================
"""
Base contracts for the cluster job engine.

These enums cross every boundary of the engine:
- Step Driver (step outcomes)
- Sandbox Lifecycle Manager (sandbox states)
- Job Orchestrator / Stage Scheduler (job status)
"""

from enum import Enum
from typing import Dict, FrozenSet


# ============================================================================
# JOB / STEP STATUS
# ============================================================================

class JobStatus(str, Enum):
    """
    Job lifecycle states.

    State transitions:
        PENDING -> RUNNING -> SUCCESS
                           -> FAILURE
                           -> CANCELLED
        PENDING -> SKIPPED (an earlier stage failed)
    """
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"

    def is_terminal(self) -> bool:
        """Check if this is a terminal state (no further transitions)."""
        return self in (
            JobStatus.SUCCESS,
            JobStatus.FAILURE,
            JobStatus.CANCELLED,
            JobStatus.SKIPPED,
        )


class StepOutcome(str, Enum):
    """What actually happened when the step ran."""
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class StepConclusion(str, Enum):
    """
    The outcome after continue-on-error is applied.

    A failed step with continue-on-error concludes as SUCCESS.
    """
    SUCCESS = "success"
    FAILURE = "failure"


class StepKind(str, Enum):
    """Tagged variant of a step."""
    RUN = "run"                # Shell script run in the runner unit
    ACTION = "action"          # Packaged action, resolved to a command vector
    COMPOSITE = "composite"    # Owns an ordered list of child steps


class FailureKind(str, Enum):
    """Why a job failed, reported distinctly to the caller."""
    CONFIG = "config"          # Template/spec validation, before cluster mutation
    ADMISSION = "admission"    # Cluster rejected the sandbox
    READINESS = "readiness"    # Sandbox never became ready in time
    SANDBOX = "sandbox"        # Sandbox failed fatally (crash, eviction twice...)
    STEP = "step"              # A step failed without continue-on-error
    CANCELLED = "cancelled"    # External cancellation or job deadline


# ============================================================================
# SANDBOX STATE MACHINE
# ============================================================================

class SandboxState(str, Enum):
    """
    Sandbox lifecycle states (owned by the Sandbox Lifecycle Manager).

    State transitions:
        UNREQUESTED -> CREATING -> CREATED -> WAITING_READY -> READY
                    -> EXECUTING -> TERMINATING -> TERMINATED
        any non-terminal -> FAILED
        FAILED -> TERMINATING (teardown still runs)
    """
    UNREQUESTED = "unrequested"
    CREATING = "creating"
    CREATED = "created"
    WAITING_READY = "waiting_ready"
    READY = "ready"
    EXECUTING = "executing"
    TERMINATING = "terminating"
    TERMINATED = "terminated"
    FAILED = "failed"

    def is_terminal(self) -> bool:
        """TERMINATED is the only state nothing can leave."""
        return self == SandboxState.TERMINATED

    def can_exec(self) -> bool:
        """Command Channel is usable only in these states."""
        return self in (SandboxState.READY, SandboxState.EXECUTING)

    def can_transition_to(self, target: "SandboxState") -> bool:
        """Check the transition table."""
        return target in SANDBOX_TRANSITIONS.get(self, frozenset())


SANDBOX_TRANSITIONS: Dict[SandboxState, FrozenSet[SandboxState]] = {
    SandboxState.UNREQUESTED: frozenset({
        SandboxState.CREATING, SandboxState.TERMINATING, SandboxState.FAILED,
    }),
    SandboxState.CREATING: frozenset({
        SandboxState.CREATED, SandboxState.TERMINATING, SandboxState.FAILED,
    }),
    SandboxState.CREATED: frozenset({
        SandboxState.WAITING_READY, SandboxState.TERMINATING, SandboxState.FAILED,
    }),
    SandboxState.WAITING_READY: frozenset({
        SandboxState.READY,
        # Node loss: the old pod is removed and a fresh one requested
        SandboxState.CREATING,
        SandboxState.TERMINATING,
        SandboxState.FAILED,
    }),
    SandboxState.READY: frozenset({
        SandboxState.EXECUTING, SandboxState.TERMINATING, SandboxState.FAILED,
    }),
    SandboxState.EXECUTING: frozenset({
        SandboxState.TERMINATING, SandboxState.FAILED,
    }),
    SandboxState.TERMINATING: frozenset({
        SandboxState.TERMINATED, SandboxState.FAILED,
    }),
    SandboxState.FAILED: frozenset({
        SandboxState.TERMINATING,
    }),
    SandboxState.TERMINATED: frozenset(),
}


__all__ = [
    "JobStatus",
    "StepOutcome",
    "StepConclusion",
    "StepKind",
    "FailureKind",
    "SandboxState",
    "SANDBOX_TRANSITIONS",
]
