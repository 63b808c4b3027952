# ============================================================================
# SANDBOX MODELS
# ============================================================================
# STATUS: Core model - Sandbox specification, observation and state holder
# PURPOSE: Describe a sandbox and hold its authoritative lifecycle state
# LAST_REVIEWED: 18 OCT 2026
# EXPORTS: SandboxSpec, SandboxObservation, SandboxStatus, SandboxTransition,
#          InvalidTransitionError
# DEPENDENCIES: kubernetes (client models only)
# ============================================================================
"""
Sandbox Models

Key concept:
- SandboxSpec = TEMPLATE (what to create: pod + config objects)
- SandboxObservation = one cluster-reported snapshot of the pod
- SandboxStatus = INSTANCE state, the single authoritative holder of the
  sandbox's lifecycle state. Only the Sandbox Lifecycle Manager writes it.

Observations come from polling; the lifecycle manager classifies them and
feeds the resulting transitions into SandboxStatus. No other component
checks readiness on its own.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from kubernetes import client

from core.contracts import SandboxState


# ============================================================================
# SPECIFICATION
# ============================================================================

@dataclass(frozen=True)
class SandboxSpec:
    """
    Complete description of one sandbox, produced by the Sandbox Builder.

    Pure data: nothing here has touched the cluster yet.
    """
    job_id: str
    name: str
    namespace: str
    pod: client.V1Pod
    config_map: Optional[client.V1ConfigMap] = None
    secret: Optional[client.V1Secret] = None
    runner_unit: str = "runner"
    service_units: Tuple[str, ...] = ()
    workspace: str = "/workspace"
    temp_dir: str = "/tmp/runner"
    deadline: Optional[datetime] = None
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    runner_env: Dict[str, str] = field(default_factory=dict)

    @property
    def config_map_name(self) -> Optional[str]:
        return self.config_map.metadata.name if self.config_map is not None else None

    @property
    def secret_name(self) -> Optional[str]:
        return self.secret.metadata.name if self.secret is not None else None


# ============================================================================
# OBSERVATION
# ============================================================================

@dataclass(frozen=True)
class ContainerWaiting:
    """A container stuck in `waiting`."""
    container: str
    reason: str
    message: str = ""


@dataclass(frozen=True)
class ContainerTerminated:
    """A container that exited."""
    container: str
    reason: str
    exit_code: Optional[int] = None
    message: str = ""


@dataclass(frozen=True)
class SandboxObservation:
    """
    One cluster-reported snapshot of the sandbox pod.

    Built by the infrastructure layer from a V1Pod; consumed only by the
    lifecycle manager's classifier.
    """
    name: str
    phase: str = "Pending"
    ready: bool = False
    reason: Optional[str] = None
    message: Optional[str] = None
    node_name: Optional[str] = None
    deleting: bool = False
    waiting: Tuple[ContainerWaiting, ...] = ()
    terminated: Tuple[ContainerTerminated, ...] = ()
    unschedulable: Optional[str] = None
    disruption: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    observed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# ============================================================================
# STATE HOLDER
# ============================================================================

class InvalidTransitionError(RuntimeError):
    """A lifecycle transition not allowed by the state machine."""


@dataclass(frozen=True)
class SandboxTransition:
    """One recorded state change."""
    source: SandboxState
    target: SandboxState
    reason: Optional[str] = None
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class SandboxStatus:
    """
    Authoritative lifecycle state of one sandbox.

    Lifecycle:
        UNREQUESTED -> CREATING -> CREATED -> WAITING_READY -> READY
        -> EXECUTING -> TERMINATING -> TERMINATED, FAILED from anywhere live.
    """

    def __init__(self, name: str):
        self.name = name
        self._state = SandboxState.UNREQUESTED
        self._history: List[SandboxTransition] = []
        self.failure_reason: Optional[str] = None

    @property
    def state(self) -> SandboxState:
        return self._state

    @property
    def history(self) -> Tuple[SandboxTransition, ...]:
        return tuple(self._history)

    @property
    def failed(self) -> bool:
        """True once the sandbox went through FAILED, even after teardown."""
        return self.failure_reason is not None

    def can_transition_to(self, target: SandboxState) -> bool:
        return self._state.can_transition_to(target)

    def transition(self, target: SandboxState, reason: Optional[str] = None) -> None:
        """Move to `target`, or raise InvalidTransitionError."""
        if not self._state.can_transition_to(target):
            raise InvalidTransitionError(
                f"Sandbox {self.name}: invalid transition "
                f"{self._state.value} -> {target.value}"
            )
        self._history.append(SandboxTransition(self._state, target, reason))
        self._state = target

    def fail(self, reason: str) -> None:
        """Enter FAILED from any live state; no-op when already failed or gone."""
        if self._state in (SandboxState.FAILED, SandboxState.TERMINATED):
            return
        if self._state == SandboxState.TERMINATING:
            # Teardown trouble does not overwrite an earlier failure reason
            self.failure_reason = self.failure_reason or reason
        else:
            self.failure_reason = reason
        self.transition(SandboxState.FAILED, reason)

    def visited(self, state: SandboxState) -> bool:
        """Whether the sandbox ever entered `state`."""
        return any(t.target == state for t in self._history)


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "SandboxSpec",
    "ContainerWaiting",
    "ContainerTerminated",
    "SandboxObservation",
    "InvalidTransitionError",
    "SandboxTransition",
    "SandboxStatus",
]
