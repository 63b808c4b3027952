# ============================================================================
# TEST FAKES
# ============================================================================
# STATUS: Tests - In-memory cluster
# PURPOSE: ClusterClient / ExecStream fakes with scriptable behaviour
# CREATED: 18 OCT 2026
# ============================================================================
"""
In-memory stand-ins for the cluster.

FakeCluster keeps pods, configmaps and secrets in dicts and answers
read_pod from a scripted list of observations (the last one repeats).
Exec commands are interpreted by a tiny shell: `echo`, `echo X >> $VAR`,
`exit N`, `false`, `sleep N` and `cat FILE`.
"""

import asyncio
import re
import shlex
from typing import Callable, Dict, List, Optional, Tuple

from kubernetes import client
from kubernetes.client.rest import ApiException

from core.config.defaults import (
    CleanupPolicy,
    ConcurrencyDefaults,
    EngineConfig,
    TimeoutDefaults,
)
from core.errors import ChannelError
from core.models.sandbox import (
    ContainerTerminated,
    ContainerWaiting,
    SandboxObservation,
)
from infrastructure.kubernetes import (
    STDERR,
    STDOUT,
    ClusterClient,
    ExecStream,
    observation_from_pod,
)


# ============================================================================
# OBSERVATIONS
# ============================================================================

def ready_obs(name: str = "pod") -> SandboxObservation:
    return SandboxObservation(name=name, phase="Running", ready=True)


def pending_obs(name: str = "pod") -> SandboxObservation:
    return SandboxObservation(name=name, phase="Pending")


def image_pull_obs(name: str = "pod") -> SandboxObservation:
    return SandboxObservation(
        name=name,
        phase="Pending",
        waiting=(ContainerWaiting("runner", "ImagePullBackOff", "back-off pulling image"),),
    )


def unschedulable_obs(name: str = "pod") -> SandboxObservation:
    return SandboxObservation(
        name=name, phase="Pending", unschedulable="0/3 nodes are available",
    )


def lost_obs(name: str = "pod") -> SandboxObservation:
    return SandboxObservation(name=name, phase="Unknown", node_name="node-1")


def crash_obs(name: str = "pod") -> SandboxObservation:
    return SandboxObservation(
        name=name,
        phase="Running",
        terminated=(ContainerTerminated("runner", "Error", exit_code=127),),
    )


# ============================================================================
# EXEC
# ============================================================================

class FakeExecStream(ExecStream):
    """Delivers all output in one read, after an optional delay."""

    def __init__(
        self,
        chunks: List[Tuple[str, str]],
        exit_code: Optional[int],
        delay: float = 0.0,
        broken: bool = False,
    ):
        self._chunks = chunks
        self._exit_code = exit_code
        self._delay = delay
        self._broken = broken
        self._delivered = False
        self.closed = False

    async def read(self, timeout: float) -> List[Tuple[str, str]]:
        if self.closed:
            raise ChannelError("closed")
        if self._broken:
            raise ChannelError("connection reset")
        if self._delivered:
            return []
        if self._delay:
            await asyncio.sleep(self._delay)
        self._delivered = True
        return list(self._chunks)

    @property
    def is_open(self) -> bool:
        return not self._delivered and not self.closed

    @property
    def returncode(self) -> Optional[int]:
        return self._exit_code if self._delivered else None

    async def close(self) -> None:
        self.closed = True


_VAR_RE = re.compile(r"\$\{?(\w+)\}?")
_APPEND_RE = re.compile(r'^echo (.*?) >> "?\$\{?(\w+)\}?"?$')


def _expand(text: str, env: Dict[str, str]) -> str:
    text = text.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "'\"":
        quote, text = text[0], text[1:-1]
        if quote == "'":
            return text
    return _VAR_RE.sub(lambda m: env.get(m.group(1), ""), text)


class ExecCall:
    """One recorded exec: container, decoded command, env and workdir."""

    def __init__(self, container: str, argv: List[str], env: Dict[str, str], workdir: Optional[str]):
        self.container = container
        self.argv = argv
        self.env = env
        self.workdir = workdir

    @property
    def script(self) -> str:
        if len(self.argv) >= 2 and self.argv[-2] == "-c":
            return self.argv[-1]
        return " ".join(self.argv)


def decode_wrapper(script: str) -> Tuple[Dict[str, str], Optional[str], List[str]]:
    """Undo render_wrapper: (env, workdir, argv)."""
    env: Dict[str, str] = {}
    workdir = None
    argv: List[str] = []
    for line in script.splitlines():
        if line.startswith("export "):
            name, value = shlex.split(line[len("export "):])[0].split("=", 1)
            env[name] = value
        elif line.startswith("cd "):
            workdir = shlex.split(line)[1]
        elif line.startswith("exec "):
            argv = shlex.split(line[len("exec "):])
    return env, workdir, argv


# ============================================================================
# CLUSTER
# ============================================================================

Responder = Callable[[ExecCall], Optional[FakeExecStream]]


class FakeCluster(ClusterClient):
    """
    In-memory cluster.

    Knobs:
        observations       read_pod answers, last one repeats
        create_errors      ApiExceptions raised by successive create_pod calls
        ignore_graceful    graceful deletes leave the pod in place
        ignore_deletes     no delete ever removes the pod
        responder          override exec handling (return None to fall back)
        exec_delay         delay before exec output is delivered
    """

    def __init__(self, observations: Optional[List[SandboxObservation]] = None):
        self.pods: Dict[str, client.V1Pod] = {}
        self.config_maps: Dict[str, client.V1ConfigMap] = {}
        self.secrets: Dict[str, client.V1Secret] = {}
        self.observations: List[SandboxObservation] = list(observations or [ready_obs()])
        self.create_errors: List[ApiException] = []
        self.ignore_graceful = False
        self.ignore_deletes = False
        self.responder: Optional[Responder] = None
        self.exec_delay = 0.0
        self.files: Dict[str, str] = {}
        self.logs: Dict[str, str] = {}
        self.calls: List[Tuple] = []
        self.execs: List[ExecCall] = []
        self.streams: List[FakeExecStream] = []
        self.created_total = 0
        self.peak_pods = 0

    def script(self, *observations: SandboxObservation) -> "FakeCluster":
        self.observations = list(observations)
        return self

    def vanish(self, name: str) -> None:
        self.pods.pop(name, None)

    # ------------------------------------------------------------------
    # pods
    # ------------------------------------------------------------------

    async def create_pod(self, namespace: str, pod: client.V1Pod) -> None:
        name = pod.metadata.name
        self.calls.append(("create_pod", name))
        if self.create_errors:
            raise self.create_errors.pop(0)
        if name in self.pods:
            raise ApiException(status=409, reason="AlreadyExists")
        self.pods[name] = pod
        self.created_total += 1
        self.peak_pods = max(self.peak_pods, len(self.pods))

    async def read_pod(self, namespace: str, name: str) -> Optional[SandboxObservation]:
        if name not in self.pods:
            return None
        if len(self.observations) > 1:
            return self.observations.pop(0)
        return self.observations[0]

    async def delete_pod(
        self,
        namespace: str,
        name: str,
        grace_period_seconds: Optional[int] = None,
    ) -> bool:
        self.calls.append(("delete_pod", name, grace_period_seconds))
        if name not in self.pods:
            return False
        if self.ignore_deletes:
            return True
        if self.ignore_graceful and grace_period_seconds != 0:
            return True
        del self.pods[name]
        return True

    async def list_pods(self, namespace: str, label_selector: str) -> List[SandboxObservation]:
        wanted = dict(part.split("=", 1) for part in label_selector.split(",") if part)
        result = []
        for pod in self.pods.values():
            labels = pod.metadata.labels or {}
            if all(labels.get(k) == v for k, v in wanted.items()):
                result.append(observation_from_pod(pod))
        return result

    # ------------------------------------------------------------------
    # config objects
    # ------------------------------------------------------------------

    async def create_config_map(self, namespace: str, config_map: client.V1ConfigMap) -> None:
        self.calls.append(("create_config_map", config_map.metadata.name))
        self.config_maps[config_map.metadata.name] = config_map

    async def delete_config_map(self, namespace: str, name: str) -> bool:
        self.calls.append(("delete_config_map", name))
        return self.config_maps.pop(name, None) is not None

    async def create_secret(self, namespace: str, secret: client.V1Secret) -> None:
        self.calls.append(("create_secret", secret.metadata.name))
        self.secrets[secret.metadata.name] = secret

    async def delete_secret(self, namespace: str, name: str) -> bool:
        self.calls.append(("delete_secret", name))
        return self.secrets.pop(name, None) is not None

    async def read_pod_log(
        self,
        namespace: str,
        name: str,
        container: Optional[str] = None,
        tail_lines: int = 100,
    ) -> Optional[str]:
        return self.logs.get(container)

    # ------------------------------------------------------------------
    # exec
    # ------------------------------------------------------------------

    async def open_exec(
        self,
        namespace: str,
        name: str,
        container: str,
        command: List[str],
    ) -> ExecStream:
        if name not in self.pods:
            raise ChannelError(f"pod {name} not found")
        env, workdir, argv = decode_wrapper(command[-1])
        call = ExecCall(container, argv, env, workdir)
        self.execs.append(call)

        stream = self.responder(call) if self.responder is not None else None
        if stream is None:
            stream = self.interpret(call)
        self.streams.append(stream)
        return stream

    def interpret(self, call: ExecCall) -> FakeExecStream:
        script = call.script
        if script.startswith("cat "):
            path = shlex.split(script)[1]
            return FakeExecStream([(STDOUT, self.files.get(path, ""))], 0)

        stdout: List[str] = []
        stderr: List[str] = []
        exit_code = 0
        delay = self.exec_delay
        for command in re.split(r"\n|;|&&", script):
            command = command.strip()
            if not command:
                continue
            if command.startswith("exit"):
                parts = command.split()
                exit_code = int(parts[1]) if len(parts) > 1 else 0
                break
            if command == "false":
                exit_code = 1
                break
            if command.startswith("sleep "):
                delay += float(command.split()[1])
                continue
            match = _APPEND_RE.match(command)
            if match:
                path = call.env.get(match.group(2), "")
                self.files[path] = self.files.get(path, "") + _expand(match.group(1), call.env) + "\n"
                continue
            if command.startswith("echo >&2 "):
                stderr.append(_expand(command[len("echo >&2 "):], call.env) + "\n")
                continue
            if command.startswith("echo "):
                stdout.append(_expand(command[len("echo "):], call.env) + "\n")

        chunks = []
        if stdout:
            chunks.append((STDOUT, "".join(stdout)))
        if stderr:
            chunks.append((STDERR, "".join(stderr)))
        return FakeExecStream(chunks, exit_code, delay=delay)

    # ------------------------------------------------------------------
    # assertions
    # ------------------------------------------------------------------

    def deletes(self, name: str) -> List[Optional[int]]:
        """Grace periods of every delete_pod call for `name`."""
        return [c[2] for c in self.calls if c[0] == "delete_pod" and c[1] == name]

    def step_execs(self) -> List[ExecCall]:
        """Exec calls that ran steps (env/path file reads excluded)."""
        return [c for c in self.execs if not c.script.startswith("cat ")]


# ============================================================================
# CONFIG
# ============================================================================

def fast_timeouts(**overrides) -> TimeoutDefaults:
    values = dict(
        readiness_timeout_seconds=2.0,
        poll_interval_seconds=0.01,
        backoff_initial_seconds=0.01,
        backoff_max_seconds=0.05,
        backoff_multiplier=2.0,
        image_pull_max_attempts=3,
        removal_poll_interval_seconds=0.01,
        force_removal_wait_seconds=0.2,
    )
    values.update(overrides)
    return TimeoutDefaults(**values)


def fast_config(max_parallel: int = 4, **timeouts) -> EngineConfig:
    return EngineConfig(
        timeouts=fast_timeouts(**timeouts),
        cleanup=CleanupPolicy(force_removal_delay_seconds=0),
        concurrency=ConcurrencyDefaults(max_parallel=max_parallel),
    )
