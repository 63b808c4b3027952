# ============================================================================
# COMMAND CHANNEL
# ============================================================================
# STATUS: Core - Remote command execution inside a ready sandbox
# PURPOSE: Run a command in a unit, stream its output, return exit status
# CREATED: 18 OCT 2026
# ============================================================================
"""
Command Channel

The cluster exec primitive takes only a command vector, so environment and
working directory are folded into one shell invocation rendered with Jinja2:

    export KEY='value'
    ...
    cd '/workspace' || exit 1
    exec <command vector>

Output arrives incrementally as OutputChunks; nothing is buffered wholesale
except a capped tail kept for the step result.

Failure modes are kept apart:
- the process exited non-zero        -> ExecResult.exit_code != 0
- the stream broke / no exit status  -> ChannelError
- sandbox not READY or EXECUTING     -> ChannelError (nothing is sent)
"""

import shlex
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional

from jinja2 import Environment, BaseLoader, StrictUndefined

from core.errors import ChannelError
from core.logging import get_logger, ComponentType
from core.models.result import MAX_CAPTURED_OUTPUT
from core.models.sandbox import SandboxSpec, SandboxStatus
from infrastructure.kubernetes import STDOUT, ClusterClient, ExecStream

logger = get_logger(__name__, ComponentType.CHANNEL)


_jinja = Environment(loader=BaseLoader(), autoescape=False, undefined=StrictUndefined,
                     keep_trailing_newline=True)
_jinja.filters["shquote"] = shlex.quote

WRAPPER_TEMPLATE = _jinja.from_string(
    "{% for key, value in env %}export {{ key }}={{ value | shquote }}\n{% endfor %}"
    "{% if workdir %}cd {{ workdir | shquote }} || exit 1\n{% endif %}"
    "exec {{ command }}\n"
)


def render_wrapper(
    command: List[str],
    env: Optional[Dict[str, str]] = None,
    workdir: Optional[str] = None,
) -> str:
    """Fold env and workdir into one `sh -c` script."""
    if not command:
        raise ChannelError("Empty command vector")
    return WRAPPER_TEMPLATE.render(
        env=sorted((env or {}).items()),
        workdir=workdir,
        command=shlex.join(command),
    )


@dataclass(frozen=True)
class OutputChunk:
    """A piece of output from one stream ("stdout" or "stderr")."""
    stream: str
    text: str


OutputSink = Callable[[OutputChunk], Awaitable[None]]


@dataclass(frozen=True)
class ExecResult:
    """Completed remote command."""
    exit_code: int
    output: str = ""
    stdout: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class _Tail:
    """Keeps the last `limit` characters appended."""

    def __init__(self, limit: int = MAX_CAPTURED_OUTPUT):
        self.limit = limit
        self._parts: List[str] = []
        self._size = 0

    def append(self, text: str) -> None:
        self._parts.append(text)
        self._size += len(text)
        if self._size > self.limit * 2:
            self._parts = [self.text]
            self._size = len(self._parts[0])

    @property
    def text(self) -> str:
        return "".join(self._parts)[-self.limit:]


class ExecProcess:
    """
    A command running inside the sandbox.

    Iterate it for output chunks, then `await wait()` for the exit code.
    """

    def __init__(self, stream: ExecStream, poll_seconds: float = 1.0):
        self._stream = stream
        self._poll_seconds = poll_seconds
        self._finished = False

    async def __aiter__(self) -> AsyncIterator[OutputChunk]:
        while not self._finished:
            open_before = self._stream.is_open
            for stream_name, text in await self._stream.read(self._poll_seconds):
                if text:
                    yield OutputChunk(stream_name, text)
            # One extra read after close drains what was buffered
            if not open_before:
                self._finished = True

    async def wait(self) -> int:
        """Exit code of the process. Drains unread output first."""
        if not self._finished:
            async for _ in self:
                pass
        code = self._stream.returncode
        if code is None:
            raise ChannelError("Exec stream ended without an exit status")
        return code

    async def close(self) -> None:
        await self._stream.close()


class CommandChannel:
    """
    Exec access to one sandbox.

    Usage:
        channel = CommandChannel(cluster, spec, lifecycle.status)
        result = await channel.run(["make", "test"], env={"CI": "true"})
    """

    def __init__(
        self,
        cluster: ClusterClient,
        spec: SandboxSpec,
        status: SandboxStatus,
        poll_seconds: float = 1.0,
    ):
        self.cluster = cluster
        self.spec = spec
        self.status = status
        self.poll_seconds = poll_seconds

    async def open(
        self,
        command: List[str],
        env: Optional[Dict[str, str]] = None,
        workdir: Optional[str] = None,
        unit: Optional[str] = None,
    ) -> ExecProcess:
        """Start `command` in `unit` (default: the runner)."""
        if not self.status.state.can_exec():
            raise ChannelError(
                f"Sandbox {self.spec.name} is {self.status.state.value}; "
                f"commands need it ready"
            )
        script = render_wrapper(command, env, workdir)
        stream = await self.cluster.open_exec(
            self.spec.namespace,
            self.spec.name,
            unit or self.spec.runner_unit,
            ["/bin/sh", "-c", script],
        )
        return ExecProcess(stream, self.poll_seconds)

    async def run(
        self,
        command: List[str],
        env: Optional[Dict[str, str]] = None,
        workdir: Optional[str] = None,
        unit: Optional[str] = None,
        sink: Optional[OutputSink] = None,
    ) -> ExecResult:
        """
        Run to completion, forwarding chunks to `sink` as they arrive.

        Cancellation (step timeout, job cancel) closes the stream and
        propagates.
        """
        process = await self.open(command, env, workdir, unit)
        output = _Tail()
        stdout = _Tail()
        try:
            async for chunk in process:
                output.append(chunk.text)
                if chunk.stream == STDOUT:
                    stdout.append(chunk.text)
                if sink is not None:
                    await sink(chunk)
            exit_code = await process.wait()
        finally:
            await process.close()
        return ExecResult(exit_code=exit_code, output=output.text, stdout=stdout.text)

    async def read_file(self, path: str) -> str:
        """Contents of a file in the runner, empty if it does not exist."""
        result = await self.run(["/bin/sh", "-c", f"cat {shlex.quote(path)} 2>/dev/null || true"])
        return result.stdout


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "CommandChannel",
    "ExecProcess",
    "ExecResult",
    "OutputChunk",
    "OutputSink",
    "render_wrapper",
]
