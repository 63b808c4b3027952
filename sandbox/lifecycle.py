# ============================================================================
# SANDBOX LIFECYCLE MANAGER
# ============================================================================
# STATUS: Core - Create, observe and destroy one sandbox
# PURPOSE: Drive the sandbox state machine against eventually-consistent
#          cluster state; readiness signal and removal guarantee
# CREATED: 18 OCT 2026
# ============================================================================
"""
Sandbox Lifecycle Manager

Owns exactly one sandbox and is the only writer of its SandboxStatus.

    create()       UNREQUESTED -> CREATING -> CREATED
    await_ready()  CREATED -> WAITING_READY -> READY
    mark_executing READY -> EXECUTING
    teardown()     any -> TERMINATING -> TERMINATED (or FAILED if the
                   cluster never confirmed removal)

Readiness is observed by polling. Each observation is classified:

    progressing           keep polling
    image pull problem    ImagePullError, bounded exponential backoff
    unschedulable         ResourceConstraintError, backoff until deadline
    node lost / vanished  NodeLostError, one full re-create (same name,
                          after confirmed deletion)
    anything else         SandboxFailedError, fatal, container logs attached

Transient errors never leave this module: an exhausted retry budget or a
passed deadline raises ReadinessTimeoutError carrying the last cause.

The SandboxRegistry enforces at most one live sandbox per job: a job's
claim is released only once teardown confirmed removal.
"""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional

from kubernetes.client.rest import ApiException

from core.config.defaults import CleanupPolicy, TimeoutDefaults
from core.contracts import SandboxState
from core.errors import (
    AdmissionError,
    ImagePullError,
    NodeLostError,
    ReadinessTimeoutError,
    ResourceConstraintError,
    SandboxError,
    SandboxFailedError,
    TransientSchedulingError,
)
from core.logging import get_logger, ComponentType, log_checkpoint, log_context
from core.models.events import EngineEvent, EventStatus, EventType
from core.models.sandbox import SandboxObservation, SandboxSpec, SandboxStatus
from infrastructure.kubernetes import ClusterClient

logger = get_logger(__name__, ComponentType.LIFECYCLE)


EventSink = Callable[[EngineEvent], Awaitable[None]]

# Cluster rejections that will not go away by retrying
ADMISSION_STATUSES = frozenset({400, 403, 409, 422})

IMAGE_PULL_REASONS = frozenset({"ErrImagePull", "ImagePullBackOff", "RegistryUnavailable"})
FATAL_WAITING_REASONS = frozenset({
    "InvalidImageName",
    "ErrImageNeverPull",
    "CreateContainerConfigError",
    "CreateContainerError",
    "CrashLoopBackOff",
    "RunContainerError",
})
NODE_LOST_REASONS = frozenset({
    "NodeLost",
    "NodeShutdown",
    "Shutdown",
    "Terminated",
    "Evicted",
    "DeletionByTaintManager",
})


# ============================================================================
# CLASSIFICATION
# ============================================================================

def is_ready(observation: Optional[SandboxObservation]) -> bool:
    return (
        observation is not None
        and observation.ready
        and observation.phase == "Running"
        and not observation.deleting
    )


def classify_observation(
    observation: Optional[SandboxObservation],
    name: str,
) -> Optional[SandboxError]:
    """
    Map one observation to a failure cause.

    Returns None while the sandbox is progressing normally (or ready).
    """
    if observation is None:
        return NodeLostError("Sandbox pod disappeared", name)

    if observation.deleting:
        return NodeLostError("Sandbox pod is being deleted by the cluster", name)
    if observation.disruption:
        return NodeLostError(f"Sandbox pod disrupted: {observation.disruption}", name)
    if observation.phase == "Unknown":
        return NodeLostError(
            f"Node {observation.node_name or '?'} stopped reporting", name
        )
    if observation.reason in NODE_LOST_REASONS:
        return NodeLostError(
            f"Sandbox pod lost: {observation.reason} {observation.message or ''}".strip(),
            name,
        )

    for waiting in observation.waiting:
        if waiting.reason in IMAGE_PULL_REASONS:
            return ImagePullError(
                f"{waiting.container}: {waiting.reason} {waiting.message}".strip(),
                name,
                reason=waiting.reason,
            )
        if waiting.reason in FATAL_WAITING_REASONS:
            return SandboxFailedError(
                f"{waiting.container}: {waiting.reason} {waiting.message}".strip(), name
            )

    for terminated in observation.terminated:
        return SandboxFailedError(
            f"{terminated.container} exited ({terminated.reason}, "
            f"code {terminated.exit_code})",
            name,
        )

    if observation.phase in ("Failed", "Succeeded"):
        return SandboxFailedError(
            f"Sandbox pod {observation.phase.lower()}: "
            f"{observation.reason or ''} {observation.message or ''}".strip(),
            name,
        )

    if observation.unschedulable:
        return ResourceConstraintError(
            f"Unschedulable: {observation.unschedulable}", name, reason="Unschedulable"
        )

    return None


# ============================================================================
# REGISTRY
# ============================================================================

class SandboxRegistry:
    """
    Live sandboxes of this engine, keyed by job id.

    All access happens on one event loop, so no locking is needed.
    """

    def __init__(self):
        self._live: Dict[str, str] = {}

    def claim(self, job_id: str, name: str) -> None:
        """Register `name` as the job's sandbox, or raise if one is still live."""
        current = self._live.get(job_id)
        if current is not None and current != name:
            raise SandboxError(
                f"Job '{job_id}' still owns sandbox {current}; "
                f"it must be torn down before another is created",
                name,
            )
        self._live[job_id] = name

    def release(self, job_id: str, name: str) -> None:
        if self._live.get(job_id) == name:
            del self._live[job_id]

    def is_live(self, job_id: str) -> bool:
        return job_id in self._live

    def live_sandboxes(self) -> Dict[str, str]:
        return dict(self._live)

    def __len__(self) -> int:
        return len(self._live)


# ============================================================================
# LIFECYCLE MANAGER
# ============================================================================

class SandboxLifecycle:
    """
    Lifecycle of one sandbox.

    Usage:
        lifecycle = SandboxLifecycle(cluster, spec, timeouts, cleanup, registry)
        await lifecycle.create()
        await lifecycle.await_ready()
        ...
        await lifecycle.teardown()
    """

    def __init__(
        self,
        cluster: ClusterClient,
        spec: SandboxSpec,
        timeouts: Optional[TimeoutDefaults] = None,
        cleanup: Optional[CleanupPolicy] = None,
        registry: Optional[SandboxRegistry] = None,
        on_event: Optional[EventSink] = None,
    ):
        self.cluster = cluster
        self.spec = spec
        self.timeouts = timeouts or TimeoutDefaults()
        self.cleanup = cleanup or CleanupPolicy()
        self.registry = registry if registry is not None else SandboxRegistry()
        self.status = SandboxStatus(spec.name)
        self._on_event = on_event
        self.recreated = False

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def namespace(self) -> str:
        return self.spec.namespace

    @property
    def state(self) -> SandboxState:
        return self.status.state

    # ------------------------------------------------------------------
    # create
    # ------------------------------------------------------------------

    async def create(self) -> None:
        """
        Submit the sandbox to the cluster.

        Raises:
            AdmissionError: the cluster rejected it (not retried)
            SandboxFailedError: the API failed for another reason
        """
        self.registry.claim(self.spec.job_id, self.name)
        self.status.transition(SandboxState.CREATING)
        with log_context(sandbox=self.name, component=ComponentType.LIFECYCLE):
            await self._submit()
        await self._emit(EventType.SANDBOX_CREATED, "Sandbox submitted")

    async def _submit(self) -> None:
        """Create config objects then the pod. CREATING -> CREATED."""
        try:
            if self.spec.config_map is not None:
                await self.cluster.create_config_map(self.namespace, self.spec.config_map)
            if self.spec.secret is not None:
                await self.cluster.create_secret(self.namespace, self.spec.secret)
            await self.cluster.create_pod(self.namespace, self.spec.pod)
        except ApiException as e:
            if e.status in ADMISSION_STATUSES:
                self.status.fail(f"admission rejected: {e.status} {e.reason}")
                raise AdmissionError(
                    f"Cluster rejected sandbox {self.name}: {e.status} {e.reason}",
                    self.name,
                    status=e.status,
                    reason=e.reason,
                ) from e
            self.status.fail(f"create failed: {e.status} {e.reason}")
            raise SandboxFailedError(
                f"Creating sandbox {self.name} failed: {e.status} {e.reason}", self.name
            ) from e

        self.status.transition(SandboxState.CREATED)
        log_checkpoint("sandbox_created", {"sandbox": self.name, "job_id": self.spec.job_id})

    # ------------------------------------------------------------------
    # await_ready
    # ------------------------------------------------------------------

    async def await_ready(self, timeout_seconds: Optional[float] = None) -> SandboxObservation:
        """
        Wait until the runner reports ready.

        Args:
            timeout_seconds: Readiness deadline (default from TimeoutDefaults)

        Returns:
            The observation that showed the sandbox ready

        Raises:
            ReadinessTimeoutError: deadline passed or retries exhausted
            SandboxFailedError: fatal cluster-reported failure
        """
        timeout = timeout_seconds or self.timeouts.readiness_timeout_seconds
        loop = asyncio.get_running_loop()
        deadline_at = loop.time() + timeout
        max_pull_attempts = self.timeouts.image_pull_attempts_for(timeout)

        pull_attempts = 0
        schedule_attempts = 0
        last_cause: Optional[Exception] = None

        self.status.transition(SandboxState.WAITING_READY)

        with log_context(sandbox=self.name, component=ComponentType.LIFECYCLE):
            while True:
                if loop.time() >= deadline_at:
                    self._raise_timeout(timeout, last_cause)

                try:
                    observation = await self.cluster.read_pod(self.namespace, self.name)
                except ApiException as e:
                    # API hiccup: keep polling until the deadline
                    logger.warning(f"Reading sandbox {self.name} failed: {e.status} {e.reason}")
                    last_cause = e
                    await self._sleep(self.timeouts.poll_interval_seconds, deadline_at)
                    continue

                if is_ready(observation):
                    self.status.transition(SandboxState.READY)
                    log_checkpoint("sandbox_ready", {"sandbox": self.name})
                    await self._emit(EventType.SANDBOX_READY, "Sandbox ready", EventStatus.SUCCESS)
                    return observation

                cause = classify_observation(observation, self.name)
                if cause is None:
                    await self._sleep(self.timeouts.poll_interval_seconds, deadline_at)
                    continue

                if isinstance(cause, NodeLostError):
                    if self.recreated:
                        self.status.fail(str(cause))
                        raise SandboxFailedError(
                            f"Sandbox {self.name} lost its node again after re-create: {cause}",
                            self.name,
                        ) from cause
                    await self._recreate(cause)
                    continue

                if not isinstance(cause, TransientSchedulingError):
                    logs = await self.collect_logs()
                    self.status.fail(str(cause))
                    raise SandboxFailedError(str(cause), self.name, logs=logs)

                last_cause = cause
                if isinstance(cause, ImagePullError):
                    pull_attempts += 1
                    if pull_attempts >= max_pull_attempts:
                        self.status.fail(f"image pull retries exhausted: {cause}")
                        raise ReadinessTimeoutError(
                            f"Sandbox {self.name}: image pull still failing after "
                            f"{pull_attempts} attempts",
                            self.name,
                            last_cause=cause,
                        ) from cause
                    delay = self.timeouts.backoff_delay(pull_attempts)
                    attempt = pull_attempts
                else:
                    schedule_attempts += 1
                    delay = self.timeouts.backoff_delay(schedule_attempts)
                    attempt = schedule_attempts

                logger.info(f"Sandbox {self.name} not ready ({cause}); retry {attempt} in {delay:.1f}s")
                await self._emit(
                    EventType.SANDBOX_RETRY,
                    str(cause),
                    EventStatus.WARNING,
                    data={"attempt": attempt, "delay_seconds": delay, "reason": cause.reason},
                )
                await self._sleep(delay, deadline_at)

    def _raise_timeout(self, timeout: float, last_cause: Optional[Exception]) -> None:
        self.status.fail("readiness deadline exceeded")
        detail = f" (last cause: {last_cause})" if last_cause is not None else ""
        raise ReadinessTimeoutError(
            f"Sandbox {self.name} not ready after {timeout:.0f}s{detail}",
            self.name,
            last_cause=last_cause,
        )

    async def _sleep(self, delay: float, deadline_at: float) -> None:
        remaining = deadline_at - asyncio.get_running_loop().time()
        await asyncio.sleep(max(0.0, min(delay, remaining)))

    async def _recreate(self, cause: NodeLostError) -> None:
        """Remove the lost pod and submit a fresh one under the same name."""
        logger.warning(f"Sandbox {self.name}: {cause}; re-creating once")
        self.recreated = True
        self.status.transition(SandboxState.CREATING, reason=str(cause))

        if not await self._remove_objects():
            self.status.fail("lost sandbox could not be removed for re-create")
            raise SandboxFailedError(
                f"Sandbox {self.name} lost its node and could not be removed", self.name
            ) from cause

        await self._emit(EventType.SANDBOX_RECREATED, str(cause), EventStatus.WARNING)
        await self._submit()
        self.status.transition(SandboxState.WAITING_READY)

    # ------------------------------------------------------------------
    # execution
    # ------------------------------------------------------------------

    def mark_executing(self) -> None:
        """READY -> EXECUTING, before the first step runs."""
        self.status.transition(SandboxState.EXECUTING)

    async def collect_logs(self, tail_lines: int = 50) -> Optional[str]:
        """Tail of every unit's log, for failure reports."""
        parts: List[str] = []
        for unit in (self.spec.runner_unit, *self.spec.service_units):
            text = await self.cluster.read_pod_log(
                self.namespace, self.name, container=unit, tail_lines=tail_lines
            )
            if text:
                parts.append(f"--- {unit} ---\n{text.rstrip()}")
        return "\n".join(parts) or None

    # ------------------------------------------------------------------
    # teardown
    # ------------------------------------------------------------------

    async def teardown(self) -> bool:
        """
        Remove the sandbox. Safe to call in any state and any number of times.

        Returns:
            True once the cluster confirmed removal (or nothing existed);
            False if removal could not be confirmed (sandbox marked FAILED)
        """
        if self.status.state == SandboxState.TERMINATED:
            return True

        with log_context(sandbox=self.name, component=ComponentType.LIFECYCLE):
            # A cancelled earlier teardown may have left us in TERMINATING
            if self.status.state != SandboxState.TERMINATING:
                self.status.transition(SandboxState.TERMINATING)
            removed = await self._remove_objects()

            if not removed:
                self.status.fail("cluster did not confirm removal")
                logger.error(f"Sandbox {self.name}: removal not confirmed")
                return False

            self.status.transition(SandboxState.TERMINATED)
            self.registry.release(self.spec.job_id, self.name)
            log_checkpoint("sandbox_removed", {"sandbox": self.name})
            await self._emit(EventType.SANDBOX_REMOVED, "Sandbox removed")
            return True

    async def _remove_objects(self) -> bool:
        """Delete pod (graceful, then forced) and config objects."""
        pod_removed = await self._delete_pod()

        if self.spec.config_map is not None:
            await self._delete_quietly(
                self.cluster.delete_config_map, self.spec.config_map_name, "configmap"
            )
        if self.spec.secret is not None:
            await self._delete_quietly(
                self.cluster.delete_secret, self.spec.secret_name, "secret"
            )
        return pod_removed

    async def _delete_pod(self) -> bool:
        try:
            existed = await self.cluster.delete_pod(self.namespace, self.name)
        except ApiException as e:
            logger.warning(f"Deleting sandbox {self.name} failed: {e.status} {e.reason}")
            existed = True
        if not existed:
            return True

        if await self._wait_gone(self.cleanup.force_removal_delay_seconds):
            return True

        logger.warning(
            f"Sandbox {self.name} still present after "
            f"{self.cleanup.force_removal_delay_seconds}s; force deleting"
        )
        try:
            await self.cluster.delete_pod(self.namespace, self.name, grace_period_seconds=0)
        except ApiException as e:
            logger.warning(f"Force delete of {self.name} failed: {e.status} {e.reason}")
        return await self._wait_gone(self.timeouts.force_removal_wait_seconds)

    async def _wait_gone(self, timeout: float) -> bool:
        """Poll until the pod no longer exists or `timeout` elapses."""
        loop = asyncio.get_running_loop()
        deadline_at = loop.time() + timeout
        while True:
            try:
                if await self.cluster.read_pod(self.namespace, self.name) is None:
                    return True
            except ApiException as e:
                logger.warning(f"Checking removal of {self.name} failed: {e.status} {e.reason}")
            if loop.time() >= deadline_at:
                return False
            await asyncio.sleep(self.timeouts.removal_poll_interval_seconds)

    async def _delete_quietly(self, method, name: str, kind: str) -> None:
        try:
            await method(self.namespace, name)
        except ApiException as e:
            logger.warning(f"Deleting {kind} {name} failed: {e.status} {e.reason}")

    # ------------------------------------------------------------------
    # events
    # ------------------------------------------------------------------

    async def _emit(
        self,
        event_type: EventType,
        message: str,
        status: EventStatus = EventStatus.INFO,
        data: Optional[dict] = None,
    ) -> None:
        if self._on_event is None:
            return
        await self._on_event(EngineEvent(
            event_type=event_type,
            status=status,
            job_id=self.spec.job_id,
            sandbox=self.name,
            message=message[:2000],
            data=data or {},
        ))


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "SandboxLifecycle",
    "SandboxRegistry",
    "classify_observation",
    "is_ready",
    "EventSink",
    "ADMISSION_STATUSES",
]
