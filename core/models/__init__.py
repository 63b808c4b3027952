# ============================================================================
# MODELS MODULE
# ============================================================================
# STATUS: Model exports
# PURPOSE: Central export point for all engine models
# LAST_REVIEWED: 18 OCT 2026
# ============================================================================
"""
Models Module - Central Export Point

Pydantic models for the read-only job tree (Job, Step, ServiceSpec),
platform templates, results and events, plus the sandbox specification
and its authoritative state holder.
"""

from core.models.step import Step
from core.models.job import Job, ServiceSpec, Stage
from core.models.template import (
    TemplateEntry,
    ResolvedTemplate,
    ResourceSpec,
    Toleration,
    SecurityProfile,
    TemplateSource,
)
from core.models.sandbox import (
    SandboxSpec,
    SandboxObservation,
    SandboxStatus,
    SandboxTransition,
    InvalidTransitionError,
)
from core.models.result import StepResult, StepLedger, JobResult, StageResult
from core.models.events import EngineEvent, EventType, EventStatus

__all__ = [
    # Job tree
    "Job",
    "Step",
    "ServiceSpec",
    "Stage",
    # Templates
    "TemplateEntry",
    "ResolvedTemplate",
    "ResourceSpec",
    "Toleration",
    "SecurityProfile",
    "TemplateSource",
    # Sandbox
    "SandboxSpec",
    "SandboxObservation",
    "SandboxStatus",
    "SandboxTransition",
    "InvalidTransitionError",
    # Results
    "StepResult",
    "StepLedger",
    "JobResult",
    "StageResult",
    # Events
    "EngineEvent",
    "EventType",
    "EventStatus",
]
