# ============================================================================
# KUBERNETES CLUSTER INFRASTRUCTURE
# ============================================================================
# STATUS: Infrastructure - Cluster API access
# PURPOSE: Async facade over the kubernetes client (pods, config, exec, logs)
# CREATED: 18 OCT 2026
# ============================================================================
"""
Kubernetes Cluster Infrastructure

The engine talks to the cluster only through the ClusterClient interface:
- pods: create / read / delete / list
- configmaps and secrets: create / delete
- pod exec (Command Channel) and pod log (failure diagnostics)

KubernetesCluster implements it with the official kubernetes client. The
client is blocking, so every call runs in a worker thread via
asyncio.to_thread and the event loop stays free for other jobs.

Error policy:
- 404 on read/delete is reported as "absent" (None / False), never raised
- every other ApiException propagates; the lifecycle manager classifies it
- exec stream breakage is raised as ChannelError

Credential Priority:
1. In-cluster service account (KUBERNETES_SERVICE_HOST set)
2. Kubeconfig (optionally a named context)
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.stream import stream as k8s_stream

from core.config import ClusterDefaults
from core.errors import ChannelError, ConfigError
from core.logging import get_logger, ComponentType
from core.models.sandbox import (
    ContainerTerminated,
    ContainerWaiting,
    SandboxObservation,
)

logger = get_logger(__name__, ComponentType.INFRASTRUCTURE)


# (stream name, text)
Chunk = Tuple[str, str]

STDOUT = "stdout"
STDERR = "stderr"


# ============================================================================
# INTERFACES
# ============================================================================

class ExecStream(ABC):
    """
    One open exec session into a container.

    Output is pulled incrementally so callers can observe long-running
    commands and cancel them mid-flight.
    """

    @abstractmethod
    async def read(self, timeout: float) -> List[Chunk]:
        """
        Wait up to `timeout` seconds for output.

        Returns the chunks received (possibly none). Raises ChannelError if
        the connection broke.
        """

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """False once the remote process exited and the stream closed."""

    @property
    @abstractmethod
    def returncode(self) -> Optional[int]:
        """Exit status reported by the cluster, None if it never arrived."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection (idempotent)."""


class ClusterClient(ABC):
    """Cluster operations the engine needs."""

    @abstractmethod
    async def create_pod(self, namespace: str, pod: client.V1Pod) -> None:
        pass

    @abstractmethod
    async def read_pod(self, namespace: str, name: str) -> Optional[SandboxObservation]:
        """Current observation, or None if the pod does not exist."""

    @abstractmethod
    async def delete_pod(
        self,
        namespace: str,
        name: str,
        grace_period_seconds: Optional[int] = None,
    ) -> bool:
        """Request deletion. False if the pod was already absent."""

    @abstractmethod
    async def list_pods(self, namespace: str, label_selector: str) -> List[SandboxObservation]:
        pass

    @abstractmethod
    async def create_config_map(self, namespace: str, config_map: client.V1ConfigMap) -> None:
        pass

    @abstractmethod
    async def delete_config_map(self, namespace: str, name: str) -> bool:
        pass

    @abstractmethod
    async def create_secret(self, namespace: str, secret: client.V1Secret) -> None:
        pass

    @abstractmethod
    async def delete_secret(self, namespace: str, name: str) -> bool:
        pass

    @abstractmethod
    async def read_pod_log(
        self,
        namespace: str,
        name: str,
        container: Optional[str] = None,
        tail_lines: int = 100,
    ) -> Optional[str]:
        pass

    @abstractmethod
    async def open_exec(
        self,
        namespace: str,
        name: str,
        container: str,
        command: List[str],
    ) -> ExecStream:
        pass


# ============================================================================
# OBSERVATION CONVERSION
# ============================================================================

def observation_from_pod(pod: client.V1Pod) -> SandboxObservation:
    """Flatten a V1Pod into the fields the lifecycle classifier reads."""
    metadata = pod.metadata or client.V1ObjectMeta()
    status = pod.status or client.V1PodStatus()
    spec = pod.spec

    ready = False
    unschedulable = None
    disruption = None
    for condition in status.conditions or []:
        if condition.type == "Ready" and condition.status == "True":
            ready = True
        elif (condition.type == "PodScheduled" and condition.status == "False"
              and condition.reason == "Unschedulable"):
            unschedulable = condition.message or condition.reason
        elif condition.type == "DisruptionTarget" and condition.status == "True":
            disruption = condition.reason or "DisruptionTarget"

    waiting: List[ContainerWaiting] = []
    terminated: List[ContainerTerminated] = []
    statuses = list(status.init_container_statuses or []) + list(status.container_statuses or [])
    for container_status in statuses:
        state = container_status.state
        if state is None:
            continue
        if state.waiting is not None and state.waiting.reason:
            waiting.append(ContainerWaiting(
                container=container_status.name,
                reason=state.waiting.reason,
                message=state.waiting.message or "",
            ))
        if state.terminated is not None:
            terminated.append(ContainerTerminated(
                container=container_status.name,
                reason=state.terminated.reason or "Terminated",
                exit_code=state.terminated.exit_code,
                message=state.terminated.message or "",
            ))

    return SandboxObservation(
        name=metadata.name,
        phase=status.phase or "Pending",
        ready=ready,
        reason=status.reason,
        message=status.message,
        node_name=spec.node_name if spec is not None else None,
        deleting=metadata.deletion_timestamp is not None,
        waiting=tuple(waiting),
        terminated=tuple(terminated),
        unschedulable=unschedulable,
        disruption=disruption,
        labels=dict(metadata.labels or {}),
        annotations=dict(metadata.annotations or {}),
    )


# ============================================================================
# KUBERNETES IMPLEMENTATION
# ============================================================================

class KubernetesExecStream(ExecStream):
    """ExecStream over a kubernetes.stream WSClient."""

    def __init__(self, ws_client):
        self._ws = ws_client
        self._closed = False

    def _poll(self, timeout: float) -> List[Chunk]:
        chunks: List[Chunk] = []
        try:
            if self._ws.is_open():
                self._ws.update(timeout=timeout)
            if self._ws.peek_stdout():
                chunks.append((STDOUT, self._ws.read_stdout()))
            if self._ws.peek_stderr():
                chunks.append((STDERR, self._ws.read_stderr()))
        except Exception as e:
            raise ChannelError(f"Exec stream broken: {e}") from e
        return chunks

    async def read(self, timeout: float) -> List[Chunk]:
        if self._closed:
            raise ChannelError("Exec stream already closed")
        return await asyncio.to_thread(self._poll, timeout)

    @property
    def is_open(self) -> bool:
        return not self._closed and self._ws.is_open()

    @property
    def returncode(self) -> Optional[int]:
        # WSClient parses the error channel; an empty or malformed status
        # means the process never reported one
        try:
            return self._ws.returncode
        except (TypeError, KeyError, IndexError, ValueError, AttributeError):
            return None

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await asyncio.to_thread(self._ws.close)
        except Exception as e:
            logger.debug(f"Ignoring error while closing exec stream: {e}")


class KubernetesCluster(ClusterClient):
    """
    ClusterClient backed by the official kubernetes client.

    Separate ApiClient instances are used for REST and exec: the stream
    helper patches the client's request method for websockets.
    """

    def __init__(self, kube_context: Optional[str] = None):
        try:
            config.load_incluster_config()
            logger.info("Loaded in-cluster kubernetes configuration")
        except config.ConfigException:
            try:
                config.load_kube_config(context=kube_context)
            except config.ConfigException as e:
                raise ConfigError(f"No usable kubernetes configuration: {e}") from e
            logger.info(f"Loaded kubeconfig (context={kube_context or 'current'})")

        self._rest_api_client = client.ApiClient()
        self._stream_api_client = client.ApiClient()
        self._core_api = client.CoreV1Api(self._rest_api_client)
        self._stream_core_api = client.CoreV1Api(self._stream_api_client)

    @classmethod
    def from_config(cls, cluster: ClusterDefaults) -> "KubernetesCluster":
        return cls(kube_context=cluster.kube_context)

    # ------------------------------------------------------------------
    # Pods
    # ------------------------------------------------------------------

    async def create_pod(self, namespace: str, pod: client.V1Pod) -> None:
        await asyncio.to_thread(
            self._core_api.create_namespaced_pod, namespace=namespace, body=pod
        )

    async def read_pod(self, namespace: str, name: str) -> Optional[SandboxObservation]:
        try:
            pod = await asyncio.to_thread(
                self._core_api.read_namespaced_pod, name=name, namespace=namespace
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        return observation_from_pod(pod)

    async def delete_pod(
        self,
        namespace: str,
        name: str,
        grace_period_seconds: Optional[int] = None,
    ) -> bool:
        body = client.V1DeleteOptions(
            grace_period_seconds=grace_period_seconds,
            propagation_policy="Background",
        )
        return await self._delete(
            self._core_api.delete_namespaced_pod, namespace, name, body=body
        )

    async def list_pods(self, namespace: str, label_selector: str) -> List[SandboxObservation]:
        pods = await asyncio.to_thread(
            self._core_api.list_namespaced_pod,
            namespace=namespace,
            label_selector=label_selector,
        )
        return [observation_from_pod(pod) for pod in pods.items]

    async def read_pod_log(
        self,
        namespace: str,
        name: str,
        container: Optional[str] = None,
        tail_lines: int = 100,
    ) -> Optional[str]:
        try:
            return await asyncio.to_thread(
                self._core_api.read_namespaced_pod_log,
                name=name,
                namespace=namespace,
                container=container,
                tail_lines=tail_lines,
            )
        except ApiException as e:
            # Container never started or pod gone: no logs is not an error here
            logger.debug(f"No logs for {name}/{container}: {e.status} {e.reason}")
            return None

    # ------------------------------------------------------------------
    # Config objects
    # ------------------------------------------------------------------

    async def create_config_map(self, namespace: str, config_map: client.V1ConfigMap) -> None:
        await asyncio.to_thread(
            self._core_api.create_namespaced_config_map, namespace=namespace, body=config_map
        )

    async def delete_config_map(self, namespace: str, name: str) -> bool:
        return await self._delete(self._core_api.delete_namespaced_config_map, namespace, name)

    async def create_secret(self, namespace: str, secret: client.V1Secret) -> None:
        await asyncio.to_thread(
            self._core_api.create_namespaced_secret, namespace=namespace, body=secret
        )

    async def delete_secret(self, namespace: str, name: str) -> bool:
        return await self._delete(self._core_api.delete_namespaced_secret, namespace, name)

    # ------------------------------------------------------------------
    # Exec
    # ------------------------------------------------------------------

    async def open_exec(
        self,
        namespace: str,
        name: str,
        container: str,
        command: List[str],
    ) -> ExecStream:
        try:
            ws_client = await asyncio.to_thread(
                k8s_stream,
                self._stream_core_api.connect_get_namespaced_pod_exec,
                name=name,
                namespace=namespace,
                container=container,
                command=command,
                stdin=False,
                stdout=True,
                stderr=True,
                tty=False,
                _preload_content=False,
            )
        except ApiException as e:
            raise ChannelError(
                f"Cannot open exec into {name}/{container}: {e.status} {e.reason}"
            ) from e
        except Exception as e:
            raise ChannelError(f"Cannot open exec into {name}/{container}: {e}") from e
        return KubernetesExecStream(ws_client)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _delete(self, method, namespace: str, name: str, **kwargs) -> bool:
        try:
            await asyncio.to_thread(method, name=name, namespace=namespace, **kwargs)
        except ApiException as e:
            if e.status == 404:
                return False
            raise
        return True


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "Chunk",
    "STDOUT",
    "STDERR",
    "ExecStream",
    "ClusterClient",
    "KubernetesExecStream",
    "KubernetesCluster",
    "observation_from_pod",
]
