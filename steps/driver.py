# ============================================================================
# STEP DRIVER
# ============================================================================
# STATUS: Core - Sequential step execution inside one sandbox
# PURPOSE: Merge environment, enforce timeouts, apply continue-on-error,
#          record results, recurse into composite steps
# CREATED: 18 OCT 2026
# ============================================================================
"""
Step Driver

Runs a job's steps strictly in order over the Command Channel.

Per step:
1. Merge environment (later wins):
       runner variables < job env < accumulated store < composite env < step env
   and prepend accumulated PATH additions.
2. Build the command: run steps use their shell, action steps ask the
   ActionResolver, composite steps recurse through this same driver.
3. Run it bounded by the step timeout.
4. Read back the step's env and path files into the EnvironmentStore so
   later steps see earlier `set-env` effects.
5. Record a StepResult. A failure with continue-on-error concludes as
   success and execution goes on; any other failure stops the job and the
   remaining steps are recorded as skipped.

A timeout or cancellation while a step runs records that step as failed
and every step after it (including later children of a composite) as
skipped, so the ledger always accounts for every step.

Env file format (one per step, path in $RUNNER_ENV):
    NAME=value
    NAME<<DELIM
    multi-line
    value
    DELIM

Path file format (path in $RUNNER_PATH): one directory per line.
"""

import asyncio
import posixpath
import shlex
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from core.contracts import StepKind
from core.errors import ChannelError, StepFailure
from core.logging import get_logger, ComponentType, log_checkpoint, log_context
from core.models.job import Job
from core.models.result import StepLedger, StepResult
from core.models.sandbox import SandboxSpec
from core.models.step import ENV_NAME_RE, Step
from sandbox.channel import CommandChannel, OutputChunk

logger = get_logger(__name__, ComponentType.DRIVER)


ENV_FILE_VAR = "RUNNER_ENV"
PATH_FILE_VAR = "RUNNER_PATH"
DEFAULT_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"

ResultSink = Callable[[StepResult], Awaitable[None]]
StepOutputSink = Callable[[str, OutputChunk], Awaitable[None]]


# ============================================================================
# CROSS-STEP ENVIRONMENT
# ============================================================================

class EnvFileError(ValueError):
    """A step wrote a malformed env file."""


def parse_env_file(text: str) -> List[Tuple[str, str]]:
    """
    Parse `NAME=value` and `NAME<<DELIM ... DELIM` entries.

    Raises:
        EnvFileError: invalid name, bad line or unterminated heredoc
    """
    entries: List[Tuple[str, str]] = []
    lines = text.splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.strip():
            continue

        heredoc = "<<" in line and ("=" not in line or line.index("<<") < line.index("="))
        if heredoc:
            name, delimiter = (part.strip() for part in line.split("<<", 1))
            if not delimiter:
                raise EnvFileError(f"Missing heredoc delimiter for {name!r}")
            value_lines: List[str] = []
            while True:
                if i >= len(lines):
                    raise EnvFileError(f"Unterminated value for {name!r} (expected {delimiter!r})")
                current = lines[i]
                i += 1
                if current == delimiter:
                    break
                value_lines.append(current)
            value = "\n".join(value_lines)
        elif "=" in line:
            name, value = line.split("=", 1)
            name = name.strip()
        else:
            raise EnvFileError(f"Invalid env file line: {line!r}")

        if not ENV_NAME_RE.match(name):
            raise EnvFileError(f"Invalid variable name {name!r}")
        entries.append((name, value))
    return entries


def parse_path_file(text: str) -> List[str]:
    return [line.strip() for line in text.splitlines() if line.strip()]


class EnvironmentStore:
    """
    Append-only variable store for one job.

    Steps never mutate each other's environment directly: they write env
    files, the driver appends the parsed entries here, and later steps read
    a snapshot. Last write wins on read.
    """

    def __init__(self):
        self._entries: List[Tuple[str, str, str]] = []
        self._paths: List[Tuple[str, str]] = []

    def set(self, name: str, value: str, step_id: str) -> None:
        self._entries.append((step_id, name, value))

    def add_path(self, directory: str, step_id: str) -> None:
        self._paths.append((step_id, directory))

    def snapshot(self) -> Dict[str, str]:
        return {name: value for _, name, value in self._entries}

    def path_additions(self) -> List[str]:
        """Added directories, most recent first, without duplicates."""
        seen = set()
        result = []
        for _, directory in reversed(self._paths):
            if directory not in seen:
                seen.add(directory)
                result.append(directory)
        return result

    @property
    def entries(self) -> Tuple[Tuple[str, str, str], ...]:
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


# ============================================================================
# ACTION RESOLUTION
# ============================================================================

class ActionResolver(ABC):
    """
    Turns an action step (`uses` + inputs) into a command vector.

    Supplied by the caller; the engine does not know what actions do.
    """

    @abstractmethod
    async def resolve(self, step: Step) -> List[str]:
        pass


def action_input_env(inputs: Dict[str, str]) -> Dict[str, str]:
    """`with: {node-version: 20}` -> `INPUT_NODE_VERSION=20`."""
    env = {}
    for key, value in inputs.items():
        name = "INPUT_" + "".join(c if c.isalnum() else "_" for c in key.upper())
        env[name] = value
    return env


# ============================================================================
# DRIVER
# ============================================================================

def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class StepDriver:
    """
    Drives one job's steps in one sandbox.

    Usage:
        driver = StepDriver(channel, spec, job, ledger, on_result=reporter.step)
        ok = await driver.run()
    """

    def __init__(
        self,
        channel: CommandChannel,
        spec: SandboxSpec,
        job: Job,
        ledger: Optional[StepLedger] = None,
        store: Optional[EnvironmentStore] = None,
        action_resolver: Optional[ActionResolver] = None,
        on_result: Optional[ResultSink] = None,
        output_sink: Optional[StepOutputSink] = None,
        default_shell: str = "sh -e",
        default_timeout_seconds: Optional[float] = None,
    ):
        self.channel = channel
        self.spec = spec
        self.job = job
        self.ledger = ledger if ledger is not None else StepLedger(job.job_id)
        self.store = store if store is not None else EnvironmentStore()
        self.action_resolver = action_resolver
        self._on_result = on_result
        self._output_sink = output_sink
        self.default_shell = default_shell
        self.default_timeout_seconds = default_timeout_seconds
        self._sequence = 0

    async def run(self) -> bool:
        """Run every step. True if all steps concluded successfully."""
        return await self._run_steps(self.job.steps, parent_id=None, inherited_env={})

    async def run_checked(self) -> None:
        """
        Run every step.

        Raises:
            StepFailure: for the first step that concluded failure
        """
        if await self.run():
            return
        failed = self.ledger.first_failure()
        if failed is None:
            raise StepFailure("?", None, "Step failed")
        raise StepFailure(failed.step_id, failed.exit_code, failed.error or "")

    # ------------------------------------------------------------------
    # Sequencing
    # ------------------------------------------------------------------

    async def _run_steps(
        self,
        steps: Sequence[Step],
        parent_id: Optional[str],
        inherited_env: Dict[str, str],
    ) -> bool:
        for index, step in enumerate(steps):
            try:
                result = await self._run_step(step, parent_id, inherited_env)
            except asyncio.CancelledError:
                await self._skip_rest(steps[index + 1:], parent_id)
                raise
            if not result.success:
                await self._skip_rest(steps[index + 1:], parent_id)
                return False
        return True

    async def _skip_rest(self, steps: Sequence[Step], parent_id: Optional[str]) -> None:
        for remaining in steps:
            await asyncio.shield(self._record(StepResult.skipped(
                remaining.step_id,
                parent_id=parent_id,
                name=remaining.display_name,
            )))

    async def _run_step(
        self,
        step: Step,
        parent_id: Optional[str],
        inherited_env: Dict[str, str],
    ) -> StepResult:
        started = _utc_now()
        timeout = step.timeout_seconds or self.default_timeout_seconds
        common = {"parent_id": parent_id, "name": step.display_name, "started_at": started}

        with log_context(step_id=step.step_id, component=ComponentType.DRIVER):
            logger.info(f"Running step '{step.display_name}'")
            try:
                if step.kind == StepKind.COMPOSITE:
                    result = await self._bounded(
                        self._run_composite(step, inherited_env, common), timeout
                    )
                else:
                    result = await self._bounded(
                        self._run_command_step(step, inherited_env, common), timeout
                    )
            except asyncio.TimeoutError:
                error = f"Step timed out after {timeout:.0f}s"
                interrupted = self._failed_child(step)
                if interrupted is not None:
                    error += f" in child step '{interrupted.step_id}'"
                result = StepResult.failed(
                    step.step_id,
                    continue_on_error=step.continue_on_error,
                    error=error,
                    output=interrupted.output if interrupted else "",
                    completed_at=_utc_now(),
                    **common,
                )
            except asyncio.CancelledError:
                await asyncio.shield(self._record(StepResult.failed(
                    step.step_id, error="Cancelled", completed_at=_utc_now(), **common,
                )))
                raise

            await self._record(result)
            return result

    async def _bounded(self, coro, timeout: Optional[float]):
        if timeout is None:
            return await coro
        return await asyncio.wait_for(coro, timeout)

    # ------------------------------------------------------------------
    # Step variants
    # ------------------------------------------------------------------

    async def _run_composite(self, step: Step, inherited_env: Dict[str, str], common) -> StepResult:
        child_env = {**inherited_env, **step.env}
        ok = await self._run_steps(step.steps, parent_id=step.step_id, inherited_env=child_env)
        if ok:
            return StepResult.succeeded(step.step_id, completed_at=_utc_now(), **common)

        failed_child = self._failed_child(step)
        return StepResult.failed(
            step.step_id,
            continue_on_error=step.continue_on_error,
            error=f"Child step '{failed_child.step_id if failed_child else '?'}' failed",
            output=failed_child.output if failed_child else "",
            exit_code=failed_child.exit_code if failed_child else None,
            completed_at=_utc_now(),
            **common,
        )

    def _failed_child(self, step: Step) -> Optional[StepResult]:
        if step.kind != StepKind.COMPOSITE:
            return None
        return next(
            (r for r in reversed(self.ledger.entries)
             if r.parent_id == step.step_id and not r.success),
            None,
        )

    async def _run_command_step(
        self,
        step: Step,
        inherited_env: Dict[str, str],
        common,
    ) -> StepResult:
        env = self.merged_env(step, inherited_env)
        self._sequence += 1
        file_stem = posixpath.join(self.spec.temp_dir, f"{self._sequence:03d}-{step.step_id}")
        env_file = f"{file_stem}.env"
        path_file = f"{file_stem}.path"
        env[ENV_FILE_VAR] = env_file
        env[PATH_FILE_VAR] = path_file

        try:
            command = await self._command_for(step, env)
        except (ValueError, LookupError) as e:
            return StepResult.failed(
                step.step_id,
                continue_on_error=step.continue_on_error,
                error=str(e),
                completed_at=_utc_now(),
                **common,
            )

        async def forward(chunk: OutputChunk) -> None:
            if self._output_sink is not None:
                await self._output_sink(step.step_id, chunk)
            else:
                logger.debug(chunk.text.rstrip("\n"))

        try:
            executed = await self.channel.run(
                command, env=env, workdir=self.workdir(step), sink=forward
            )
        except ChannelError as e:
            return StepResult.failed(
                step.step_id,
                continue_on_error=step.continue_on_error,
                error=f"Channel error: {e}",
                completed_at=_utc_now(),
                **common,
            )

        error = None
        if executed.exit_code != 0:
            error = f"Process completed with exit code {executed.exit_code}"

        try:
            await self._collect_file_commands(step, env_file, path_file)
        except (ChannelError, EnvFileError) as e:
            error = error or f"Reading step environment failed: {e}"

        if error is None:
            return StepResult.succeeded(
                step.step_id,
                exit_code=executed.exit_code,
                output=executed.output,
                completed_at=_utc_now(),
                **common,
            )
        return StepResult.failed(
            step.step_id,
            continue_on_error=step.continue_on_error,
            exit_code=executed.exit_code,
            output=executed.output,
            error=error,
            completed_at=_utc_now(),
            **common,
        )

    async def _command_for(self, step: Step, env: Dict[str, str]) -> List[str]:
        if step.kind == StepKind.RUN:
            shell = shlex.split(step.shell or self.default_shell)
            return [*shell, "-c", step.run]

        if self.action_resolver is None:
            raise LookupError(f"No action resolver configured for '{step.uses}'")
        env.update(action_input_env(step.with_))
        try:
            command = await self.action_resolver.resolve(step)
        except Exception as e:
            logger.exception(f"Action resolver failed for '{step.uses}': {e}")
            raise LookupError(f"Action '{step.uses}' could not be resolved: {e}") from e
        if not command:
            raise ValueError(f"Action '{step.uses}' resolved to an empty command")
        return list(command)

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    def merged_env(self, step: Step, inherited_env: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """Environment a step runs with (later sources win)."""
        env: Dict[str, str] = {}
        env.update(self.spec.runner_env)
        env.update(self.job.env)
        env.update(self.store.snapshot())
        env.update(inherited_env or {})
        env.update(step.env)

        additions = self.store.path_additions()
        if additions:
            env["PATH"] = ":".join(additions + [env.get("PATH") or DEFAULT_PATH])
        return env

    def workdir(self, step: Step) -> str:
        directory = step.working_directory or self.job.working_directory
        if not directory:
            return self.spec.workspace
        return posixpath.join(self.spec.workspace, directory)

    async def _collect_file_commands(self, step: Step, env_file: str, path_file: str) -> None:
        env_text = await self.channel.read_file(env_file)
        for name, value in parse_env_file(env_text):
            self.store.set(name, value, step.step_id)
        path_text = await self.channel.read_file(path_file)
        for directory in parse_path_file(path_text):
            self.store.add_path(directory, step.step_id)

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    async def _record(self, result: StepResult) -> None:
        """Append to the ledger, then report."""
        self.ledger.append(result)
        log_checkpoint("step_completed", {
            "step_id": result.step_id,
            "outcome": result.outcome.value,
            "conclusion": result.conclusion.value,
        })
        if self._on_result is not None:
            await self._on_result(result)


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "StepDriver",
    "EnvironmentStore",
    "ActionResolver",
    "EnvFileError",
    "parse_env_file",
    "parse_path_file",
    "action_input_env",
    "ENV_FILE_VAR",
    "PATH_FILE_VAR",
]
