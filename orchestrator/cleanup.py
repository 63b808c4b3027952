# ============================================================================
# CLEANUP: RUN HISTORY & ORPHAN REAPER
# ============================================================================
# STATUS: Core - Retention and reclamation
# PURPOSE: Bound kept job results; reclaim leaked or expired sandboxes
# CREATED: 18 OCT 2026
# ============================================================================
"""
Cleanup

RunHistory keeps the most recent JobResults, bounded separately for
successful and failed jobs (successHistoryLimit / failureHistoryLimit).
Sandboxes themselves are never retained: teardown always removes them.

OrphanReaper reclaims sandboxes that outlived their owner: an engine
process that crashed mid-job, or a teardown the cluster never confirmed.
It scans pods carrying this engine's managed-by label and removes those
whose deadline annotation has passed, or which belong to this engine
instance but to no live job. Runs only when autoCleanup is on.
"""

import asyncio
from collections import deque
from datetime import datetime, timezone
from typing import Deque, List, Optional

from kubernetes import client

from __version__ import MANAGED_BY
from core.config.defaults import CleanupPolicy, EngineConfig
from core.logging import get_logger, ComponentType
from core.models.result import JobResult
from core.models.sandbox import SandboxObservation, SandboxSpec
from infrastructure.kubernetes import ClusterClient
from sandbox.builder import (
    ANNOTATION_DEADLINE,
    ANNOTATION_JOB_ID,
    LABEL_INSTANCE,
    LABEL_MANAGED_BY,
    label_value,
)
from sandbox.lifecycle import SandboxLifecycle, SandboxRegistry

logger = get_logger(__name__, ComponentType.ORCHESTRATOR)


# ============================================================================
# RUN HISTORY
# ============================================================================

class RunHistory:
    """Most recent job results, bounded per outcome."""

    def __init__(self, policy: Optional[CleanupPolicy] = None):
        policy = policy or CleanupPolicy()
        self._successes: Deque[JobResult] = deque(maxlen=policy.success_history_limit)
        self._failures: Deque[JobResult] = deque(maxlen=policy.failure_history_limit)

    def record(self, result: JobResult) -> None:
        if result.exit_code == 0:
            self._successes.append(result)
        else:
            self._failures.append(result)

    @property
    def successes(self) -> List[JobResult]:
        return list(self._successes)

    @property
    def failures(self) -> List[JobResult]:
        return list(self._failures)

    def all(self) -> List[JobResult]:
        """Every kept result, oldest first."""
        return sorted(
            [*self._successes, *self._failures],
            key=lambda r: r.completed_at or r.started_at,
        )

    def __len__(self) -> int:
        return len(self._successes) + len(self._failures)


# ============================================================================
# ORPHAN REAPER
# ============================================================================

def parse_deadline(value: Optional[str]) -> Optional[datetime]:
    """Deadline annotation -> aware datetime (None if missing or malformed)."""
    if not value:
        return None
    try:
        deadline = datetime.fromisoformat(value)
    except ValueError:
        return None
    if deadline.tzinfo is None:
        deadline = deadline.replace(tzinfo=timezone.utc)
    return deadline


class OrphanReaper:
    """
    Reclaims engine-owned sandboxes that no live job accounts for.

    Usage:
        reaper = OrphanReaper(cluster, config, registry)
        reclaimed = await reaper.reap_once()
        # or run in the background until stop_event is set
        asyncio.create_task(reaper.run(stop_event))
    """

    def __init__(
        self,
        cluster: ClusterClient,
        config: EngineConfig,
        registry: SandboxRegistry,
        scan_interval_seconds: float = 60.0,
    ):
        self.cluster = cluster
        self.config = config
        self.registry = registry
        self.scan_interval_seconds = scan_interval_seconds
        self.reclaimed_total = 0

    @property
    def namespace(self) -> str:
        return self.config.cluster.namespace

    def is_orphan(self, observation: SandboxObservation, now: datetime) -> bool:
        """Expired anywhere, or ours and owned by no live job."""
        if observation.deleting:
            return False
        deadline = parse_deadline(observation.annotations.get(ANNOTATION_DEADLINE))
        if deadline is not None and deadline <= now:
            return True
        ours = observation.labels.get(LABEL_INSTANCE) == label_value(
            self.config.cluster.instance_id
        )
        live = set(self.registry.live_sandboxes().values())
        return ours and observation.name not in live

    async def reap_once(self, now: Optional[datetime] = None) -> List[str]:
        """
        One scan. Returns the names of sandboxes removed.

        No-op when autoCleanup is off.
        """
        if not self.config.cleanup.auto_cleanup:
            return []

        now = now or datetime.now(timezone.utc)
        pods = await self.cluster.list_pods(
            self.namespace, f"{LABEL_MANAGED_BY}={MANAGED_BY}"
        )
        reclaimed = []
        for observation in pods:
            if not self.is_orphan(observation, now):
                continue
            logger.warning(f"Reclaiming orphaned sandbox {observation.name}")
            if await self._remove(observation):
                reclaimed.append(observation.name)

        self.reclaimed_total += len(reclaimed)
        if reclaimed:
            logger.info(f"Reclaimed {len(reclaimed)} orphaned sandboxes")
        return reclaimed

    async def _remove(self, observation: SandboxObservation) -> bool:
        """Tear down through the regular lifecycle path (graceful, then forced)."""
        name = observation.name
        spec = SandboxSpec(
            job_id=observation.annotations.get(ANNOTATION_JOB_ID, name),
            name=name,
            namespace=self.namespace,
            pod=client.V1Pod(metadata=client.V1ObjectMeta(name=name)),
            config_map=client.V1ConfigMap(metadata=client.V1ObjectMeta(name=f"{name}-env")),
            secret=client.V1Secret(metadata=client.V1ObjectMeta(name=f"{name}-secrets")),
        )
        lifecycle = SandboxLifecycle(
            self.cluster,
            spec,
            self.config.timeouts,
            self.config.cleanup,
            registry=SandboxRegistry(),
        )
        return await lifecycle.teardown()

    async def run(self, stop_event: asyncio.Event) -> None:
        """Scan every scan_interval_seconds until stop_event is set."""
        logger.info(f"Starting orphan reaper (interval={self.scan_interval_seconds}s)")

        while not stop_event.is_set():
            try:
                await self.reap_once()
            except Exception as e:
                logger.error(f"Orphan scan error: {e}")

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.scan_interval_seconds)
                break
            except asyncio.TimeoutError:
                pass

        logger.info("Orphan reaper stopped")


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = ["RunHistory", "OrphanReaper", "parse_deadline"]
