# ============================================================================
# COMMAND CHANNEL TESTS
# ============================================================================
# STATUS: Tests - Exec wrapper and output streaming
# PURPOSE: Verify script rendering, state gating and failure modes
# CREATED: 18 OCT 2026
# ============================================================================
"""
CommandChannel Tests

Run with:
    pytest tests/test_channel.py -v
"""

import asyncio
import shlex

import pytest

from core.contracts import SandboxState
from core.errors import ChannelError
from core.models.sandbox import SandboxStatus
from infrastructure.kubernetes import STDERR, STDOUT
from placement.resolver import PlatformResolver
from sandbox.builder import SandboxBuilder
from sandbox.channel import CommandChannel, render_wrapper

from fakes import FakeCluster, FakeExecStream


def _ready_status(name):
    status = SandboxStatus(name)
    for state in (SandboxState.CREATING, SandboxState.CREATED,
                  SandboxState.WAITING_READY, SandboxState.READY):
        status.transition(state)
    return status


@pytest.fixture
def channel(cluster, make_job):
    job = make_job()
    spec = SandboxBuilder().build(job, PlatformResolver().resolve([]), suffix="c1")
    cluster.pods[spec.name] = spec.pod
    return CommandChannel(cluster, spec, _ready_status(spec.name), poll_seconds=0.01)


# ============================================================================
# WRAPPER
# ============================================================================

class TestRenderWrapper:

    def test_env_workdir_and_exec(self):
        script = render_wrapper(["make", "test"], {"B": "2", "A": "it's"}, "/workspace/src")
        lines = script.splitlines()
        assert lines[0] == "export A=" + shlex.quote("it's")
        assert lines[1] == "export B=2"
        assert lines[2] == "cd /workspace/src || exit 1"
        assert lines[3] == "exec make test"

    def test_arguments_are_quoted(self):
        script = render_wrapper(["sh", "-c", "echo $HOME; rm -rf /tmp/x"])
        assert script.strip() == "exec sh -c 'echo $HOME; rm -rf /tmp/x'"

    def test_empty_command_rejected(self):
        with pytest.raises(ChannelError):
            render_wrapper([])


# ============================================================================
# RUN
# ============================================================================

class TestRun:

    def test_captures_output_and_exit_code(self, channel, cluster):
        result = asyncio.run(channel.run(["sh", "-c", "echo one; echo two; exit 3"]))

        assert result.exit_code == 3
        assert not result.success
        assert result.output == "one\ntwo\n"
        assert cluster.streams[-1].closed

    def test_forwards_chunks_to_sink(self, channel, cluster):
        cluster.responder = lambda call: FakeExecStream(
            [(STDOUT, "out\n"), (STDERR, "err\n")], 0,
        )
        received = []

        async def sink(chunk):
            received.append((chunk.stream, chunk.text))

        result = asyncio.run(channel.run(["anything"], sink=sink))

        assert received == [(STDOUT, "out\n"), (STDERR, "err\n")]
        assert result.output == "out\nerr\n"
        assert result.stdout == "out\n"

    def test_env_and_workdir_reach_the_runner(self, channel, cluster):
        asyncio.run(channel.run(["true"], env={"X": "1"}, workdir="/workspace/app"))

        call = cluster.execs[-1]
        assert call.container == "runner"
        assert call.env == {"X": "1"}
        assert call.workdir == "/workspace/app"
        assert call.argv == ["true"]

    def test_missing_exit_status_is_channel_error(self, channel, cluster):
        cluster.responder = lambda call: FakeExecStream([(STDOUT, "partial")], None)

        with pytest.raises(ChannelError, match="exit status"):
            asyncio.run(channel.run(["long-job"]))
        assert cluster.streams[-1].closed

    def test_broken_stream_is_channel_error(self, channel, cluster):
        cluster.responder = lambda call: FakeExecStream([], 0, broken=True)

        with pytest.raises(ChannelError):
            asyncio.run(channel.run(["anything"]))

    def test_refused_when_not_ready(self, cluster, make_job):
        spec = SandboxBuilder().build(make_job(), PlatformResolver().resolve([]), suffix="c2")
        channel = CommandChannel(cluster, spec, SandboxStatus(spec.name))

        with pytest.raises(ChannelError, match="unrequested"):
            asyncio.run(channel.run(["true"]))
        assert cluster.execs == []

    def test_cancellation_closes_stream(self, channel, cluster):
        cluster.exec_delay = 5.0

        async def scenario():
            await asyncio.wait_for(channel.run(["sh", "-c", "echo late"]), 0.05)

        with pytest.raises(asyncio.TimeoutError):
            asyncio.run(scenario())
        assert cluster.streams[-1].closed

    def test_read_file(self, channel, cluster):
        cluster.files["/tmp/runner/a.env"] = "A=1\n"
        assert asyncio.run(channel.read_file("/tmp/runner/a.env")) == "A=1\n"
        assert asyncio.run(channel.read_file("/tmp/runner/missing")) == ""
