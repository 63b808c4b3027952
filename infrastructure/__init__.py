# ============================================================================
# INFRASTRUCTURE MODULE
# ============================================================================
# STATUS: Infrastructure - Cluster API access
# PURPOSE: Cluster client interface and its kubernetes implementation
# CREATED: 18 OCT 2026
# ============================================================================
"""
Infrastructure module for the cluster job engine.

Provides:
- ClusterClient: the cluster operations the engine depends on
- KubernetesCluster: implementation over the official kubernetes client
- observation_from_pod: V1Pod -> SandboxObservation

Usage:
    from infrastructure import KubernetesCluster

    cluster = KubernetesCluster.from_config(config.cluster)
    observation = await cluster.read_pod("ci-jobs", "job-build-1a2b3c")
"""

from infrastructure.kubernetes import (
    Chunk,
    STDOUT,
    STDERR,
    ExecStream,
    ClusterClient,
    KubernetesCluster,
    KubernetesExecStream,
    observation_from_pod,
)

__all__ = [
    "Chunk",
    "STDOUT",
    "STDERR",
    "ExecStream",
    "ClusterClient",
    "KubernetesCluster",
    "KubernetesExecStream",
    "observation_from_pod",
]
