# ============================================================================
# CORE MODULE
# ============================================================================
# STATUS: Core module initialization
# PURPOSE: Export core contracts, errors and models
# LAST_REVIEWED: 18 OCT 2026
# ============================================================================

from core.contracts import (
    JobStatus,
    StepOutcome,
    StepConclusion,
    StepKind,
    SandboxState,
    FailureKind,
)
from core.errors import (
    EngineError,
    ConfigError,
    AdmissionError,
    CreateError,
    TransientSchedulingError,
    ReadinessTimeoutError,
    ChannelError,
    StepFailure,
)
from core.models import (
    Job,
    Step,
    ServiceSpec,
    Stage,
    ResolvedTemplate,
    SandboxSpec,
    StepResult,
    JobResult,
    StageResult,
)

__all__ = [
    # Enums
    "JobStatus",
    "StepOutcome",
    "StepConclusion",
    "StepKind",
    "SandboxState",
    "FailureKind",
    # Errors
    "EngineError",
    "ConfigError",
    "AdmissionError",
    "CreateError",
    "TransientSchedulingError",
    "ReadinessTimeoutError",
    "ChannelError",
    "StepFailure",
    # Models
    "Job",
    "Step",
    "ServiceSpec",
    "Stage",
    "ResolvedTemplate",
    "SandboxSpec",
    "StepResult",
    "JobResult",
    "StageResult",
]
