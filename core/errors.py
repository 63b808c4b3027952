# ============================================================================
# ENGINE ERRORS
# ============================================================================
# STATUS: Foundation - Exception taxonomy
# PURPOSE: One exception per failure class the engine distinguishes
# CREATED: 18 OCT 2026
# ============================================================================
"""
Engine Errors

Taxonomy:
- ConfigError: malformed platform/template entry, fatal before any cluster call
- AdmissionError (CreateError): sandbox rejected by cluster policy, not retried
- TransientSchedulingError: image pull / resource constraint, retried locally
- NodeLostError: node disappeared under the sandbox, one re-create allowed
- SandboxFailedError: anything else the cluster reports as fatal
- ReadinessTimeoutError: sandbox never became ready within the deadline
- ChannelError: exec stream broken, surfaced as a step failure
- StepFailure: a job step concluded failure (StepDriver.run_checked)

Transient errors never leave the Sandbox Lifecycle Manager. Everything else
propagates to the Job Orchestrator, which tears down first and reports.
"""

from typing import Optional


class EngineError(Exception):
    """Base class for all engine errors."""


class ConfigError(EngineError):
    """Platform table, template entry or job definition is invalid."""


# ============================================================================
# SANDBOX ERRORS
# ============================================================================

class SandboxError(EngineError):
    """Base class for errors tied to one sandbox."""

    def __init__(self, message: str, sandbox_name: Optional[str] = None):
        super().__init__(message)
        self.sandbox_name = sandbox_name


class AdmissionError(SandboxError):
    """Cluster rejected the sandbox (quota, validation, conflict)."""

    def __init__(
        self,
        message: str,
        sandbox_name: Optional[str] = None,
        status: Optional[int] = None,
        reason: Optional[str] = None,
    ):
        super().__init__(message, sandbox_name)
        self.status = status
        self.reason = reason


# Name used by the lifecycle contract for create() failures
CreateError = AdmissionError


class TransientSchedulingError(SandboxError):
    """Sandbox is not ready yet for a reason that may clear on its own."""

    def __init__(
        self,
        message: str,
        sandbox_name: Optional[str] = None,
        reason: Optional[str] = None,
    ):
        super().__init__(message, sandbox_name)
        self.reason = reason


class ImagePullError(TransientSchedulingError):
    """A container image could not be pulled (yet)."""


class ResourceConstraintError(TransientSchedulingError):
    """No node currently has room for the sandbox."""


class NodeLostError(SandboxError):
    """The node hosting the sandbox went away."""


class SandboxFailedError(SandboxError):
    """Sandbox reached a state it cannot recover from."""

    def __init__(
        self,
        message: str,
        sandbox_name: Optional[str] = None,
        logs: Optional[str] = None,
    ):
        super().__init__(message, sandbox_name)
        self.logs = logs


class ReadinessTimeoutError(SandboxError):
    """Sandbox did not become ready before the deadline."""

    def __init__(
        self,
        message: str,
        sandbox_name: Optional[str] = None,
        last_cause: Optional[Exception] = None,
    ):
        super().__init__(message, sandbox_name)
        self.last_cause = last_cause


# ============================================================================
# EXECUTION ERRORS
# ============================================================================

class ChannelError(EngineError):
    """Exec stream into the sandbox broke, or the sandbox is not executable."""


class StepFailure(EngineError):
    """First step of a job that concluded failure."""

    def __init__(self, step_id: str, exit_code: Optional[int], message: str = ""):
        super().__init__(message or f"Step '{step_id}' failed with exit code {exit_code}")
        self.step_id = step_id
        self.exit_code = exit_code


__all__ = [
    "EngineError",
    "ConfigError",
    "SandboxError",
    "AdmissionError",
    "CreateError",
    "TransientSchedulingError",
    "ImagePullError",
    "ResourceConstraintError",
    "NodeLostError",
    "SandboxFailedError",
    "ReadinessTimeoutError",
    "ChannelError",
    "StepFailure",
]
