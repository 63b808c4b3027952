# ============================================================================
# SANDBOX MODULE
# ============================================================================
# STATUS: Core - Sandbox construction, lifecycle and command execution
# PURPOSE: Everything that touches one job's sandbox
# CREATED: 18 OCT 2026
# ============================================================================
"""
Sandbox Module

- SandboxBuilder: Job + ResolvedTemplate -> SandboxSpec (pure)
- SandboxLifecycle: create / await_ready / teardown against the cluster
- SandboxRegistry: at most one live sandbox per job
- CommandChannel: run commands in a ready sandbox and stream their output
"""

from sandbox.builder import SandboxBuilder
from sandbox.lifecycle import SandboxLifecycle, SandboxRegistry, classify_observation
from sandbox.channel import (
    CommandChannel,
    ExecProcess,
    ExecResult,
    OutputChunk,
    render_wrapper,
)

__all__ = [
    "SandboxBuilder",
    "SandboxLifecycle",
    "SandboxRegistry",
    "classify_observation",
    "CommandChannel",
    "ExecProcess",
    "ExecResult",
    "OutputChunk",
    "render_wrapper",
]
