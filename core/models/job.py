# ============================================================================
# JOB MODEL
# ============================================================================
# STATUS: Core model - One unit of CI work
# PURPOSE: Read-only job tree consumed by the engine
# LAST_REVIEWED: 18 OCT 2026
# EXPORTS: Job, ServiceSpec, Stage
# DEPENDENCIES: pydantic
# ============================================================================
"""
Job Model

A Job is one unit of CI work: ordered steps, named services, a placement
descriptor and environment/secret material.

The engine never parses workflow syntax; an external collaborator produces
these models. Jobs are frozen: nothing may change them once the Job
Orchestrator begins execution.

A Stage groups jobs for the Stage Scheduler. Stages run in order; jobs
inside one stage run with bounded concurrency.
"""

import re
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, field_validator, model_validator

from core.models.step import Step, coerce_env
from core.models.template import ResourceSpec


# DNS-1123 label: service names double as host aliases and container names
DNS_LABEL_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")

# Container names the builder reserves for itself
RESERVED_UNIT_NAMES = frozenset({"runner"})


class ServiceSpec(BaseModel):
    """
    An auxiliary service unit (database, cache...) living next to the runner.

    Exists only for the lifetime of its sandbox and is reachable only from
    inside it (all units share one network identity).
    """
    name: str = Field(..., max_length=63)
    image: str = Field(..., min_length=1, max_length=512)
    ports: List[int] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    command: Optional[List[str]] = None
    args: Optional[List[str]] = None
    resources: ResourceSpec = Field(default_factory=ResourceSpec)

    model_config = {"frozen": True}

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not DNS_LABEL_RE.match(v):
            raise ValueError(f"Service name must be a DNS-1123 label: {v!r}")
        if v in RESERVED_UNIT_NAMES:
            raise ValueError(f"Service name {v!r} is reserved")
        return v

    @field_validator("ports")
    @classmethod
    def validate_ports(cls, v: List[int]) -> List[int]:
        for port in v:
            if not 1 <= port <= 65535:
                raise ValueError(f"Port out of range: {port}")
        if len(set(v)) != len(v):
            raise ValueError(f"Duplicate ports: {v}")
        return v

    @field_validator("env", mode="before")
    @classmethod
    def validate_env(cls, v):
        return coerce_env(v)


class Job(BaseModel):
    """
    A job definition - immutable once execution begins.

    Placement labels are free-form (e.g. ["self-hosted", "gpu"]); the
    Platform Resolver turns them into a concrete template.
    """
    job_id: str = Field(..., max_length=64, pattern=r"^[A-Za-z0-9_.-]+$")
    name: Optional[str] = Field(default=None, max_length=256)

    steps: List[Step] = Field(..., min_length=1)
    services: Dict[str, ServiceSpec] = Field(default_factory=dict)
    placement: List[str] = Field(default_factory=list)

    env: Dict[str, str] = Field(default_factory=dict)
    secrets: Dict[str, str] = Field(default_factory=dict, repr=False)

    timeout_minutes: float = Field(default=360, gt=0)
    continue_on_error: bool = Field(
        default=False,
        description="Later stages still run if this job fails",
    )
    working_directory: Optional[str] = None

    model_config = {"frozen": True}

    @model_validator(mode="before")
    @classmethod
    def fill_service_names(cls, data: Any) -> Any:
        """Service names default to their key in the services map."""
        if isinstance(data, dict) and isinstance(data.get("services"), dict):
            services = {}
            for key, spec in data["services"].items():
                if isinstance(spec, dict) and "name" not in spec:
                    spec = {**spec, "name": key}
                services[key] = spec
            data = {**data, "services": services}
        return data

    @field_validator("placement", mode="before")
    @classmethod
    def accept_single_label(cls, v):
        """Allow a single string as shorthand for a one-label placement."""
        if isinstance(v, str):
            return [v]
        return v

    @field_validator("env", "secrets", mode="before")
    @classmethod
    def validate_env(cls, v):
        return coerce_env(v)

    @model_validator(mode="after")
    def check_structure(self) -> "Job":
        ids = [step.step_id for step in self.steps]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ValueError(f"Job '{self.job_id}' has duplicate step ids: {duplicates}")
        for key, spec in self.services.items():
            if spec.name != key:
                raise ValueError(
                    f"Service key '{key}' does not match its name '{spec.name}'"
                )
        return self

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_minutes * 60


class Stage(BaseModel):
    """An ordered group of jobs run with bounded concurrency."""
    name: str = Field(..., max_length=128)
    jobs: List[Job] = Field(default_factory=list)

    model_config = {"frozen": True}


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = ["Job", "ServiceSpec", "Stage", "DNS_LABEL_RE", "RESERVED_UNIT_NAMES"]
