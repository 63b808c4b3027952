# ============================================================================
# STEP MODEL
# ============================================================================
# STATUS: Core model - One unit of work inside a job
# PURPOSE: Tagged step variant (run | action | composite)
# LAST_REVIEWED: 18 OCT 2026
# EXPORTS: Step
# DEPENDENCIES: pydantic
# ============================================================================
"""
Step Model

A Step is the TEMPLATE of one unit of work; its runtime record is a
StepResult (core.models.result).

Variants:
- run:       `run` holds a shell script, executed with `shell`
- action:    `uses` names a packaged action; an ActionResolver turns it into
             a command vector at execution time
- composite: `steps` holds an ordered list of child steps, driven by the same
             Step Driver inside the same sandbox

Steps are ordered within their job and run strictly sequentially.
"""

import re
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, field_validator, model_validator

from core.contracts import StepKind


ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def coerce_env(value: Any) -> Dict[str, str]:
    """Validate env var names and stringify values (YAML gives ints/bools)."""
    if value is None:
        return {}
    result = {}
    for key, item in dict(value).items():
        key = str(key)
        if not ENV_NAME_RE.match(key):
            raise ValueError(f"Invalid environment variable name: {key!r}")
        if isinstance(item, bool):
            item = "true" if item else "false"
        result[key] = "" if item is None else str(item)
    return result


class Step(BaseModel):
    """
    Definition of a single step.

    `kind` may be omitted; it is inferred from which of run/uses/steps is set.
    """
    step_id: str = Field(..., max_length=64, pattern=r"^[A-Za-z0-9_.-]+$")
    name: Optional[str] = Field(default=None, max_length=256)
    kind: StepKind = StepKind.RUN

    # run
    run: Optional[str] = None
    shell: Optional[str] = Field(
        default=None,
        description="Shell command prefix, e.g. 'bash -eo pipefail'",
    )

    # action
    uses: Optional[str] = Field(default=None, max_length=512)
    with_: Dict[str, str] = Field(default_factory=dict, alias="with")

    # composite
    steps: List["Step"] = Field(default_factory=list)

    # Policy
    continue_on_error: bool = False
    timeout_minutes: Optional[float] = Field(default=None, gt=0)
    env: Dict[str, str] = Field(default_factory=dict)
    working_directory: Optional[str] = None

    model_config = {"frozen": True, "populate_by_name": True}

    @model_validator(mode="before")
    @classmethod
    def infer_kind(cls, data: Any) -> Any:
        """Infer the variant tag from the populated fields."""
        if isinstance(data, dict) and not data.get("kind"):
            data = dict(data)
            if data.get("steps"):
                data["kind"] = StepKind.COMPOSITE
            elif data.get("uses"):
                data["kind"] = StepKind.ACTION
            else:
                data["kind"] = StepKind.RUN
        return data

    @field_validator("env", mode="before")
    @classmethod
    def validate_env(cls, v):
        return coerce_env(v)

    @field_validator("with_", mode="before")
    @classmethod
    def stringify_inputs(cls, v):
        if v is None:
            return {}
        return {str(k): "" if val is None else str(val) for k, val in dict(v).items()}

    @model_validator(mode="after")
    def check_variant(self) -> "Step":
        """Each variant carries exactly the fields it needs."""
        if self.kind == StepKind.RUN:
            if self.run is None:
                raise ValueError(f"run step '{self.step_id}' must set 'run'")
            if self.uses or self.steps:
                raise ValueError(f"run step '{self.step_id}' cannot set 'uses' or 'steps'")
        elif self.kind == StepKind.ACTION:
            if not self.uses:
                raise ValueError(f"action step '{self.step_id}' must set 'uses'")
            if self.run is not None or self.steps:
                raise ValueError(f"action step '{self.step_id}' cannot set 'run' or 'steps'")
        elif self.kind == StepKind.COMPOSITE:
            if not self.steps:
                raise ValueError(f"composite step '{self.step_id}' must have child steps")
            if self.run is not None:
                raise ValueError(f"composite step '{self.step_id}' cannot set 'run'")
            ids = [child.step_id for child in self.steps]
            duplicates = sorted({i for i in ids if ids.count(i) > 1})
            if duplicates:
                raise ValueError(
                    f"composite step '{self.step_id}' has duplicate child ids: {duplicates}"
                )
        return self

    @property
    def display_name(self) -> str:
        """Name for logs and reports."""
        if self.name:
            return self.name
        if self.kind == StepKind.ACTION:
            return f"Run {self.uses}"
        return self.step_id

    @property
    def timeout_seconds(self) -> Optional[float]:
        """Step timeout in seconds (None = job default)."""
        if self.timeout_minutes is None:
            return None
        return self.timeout_minutes * 60


Step.model_rebuild()


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = ["Step", "coerce_env", "ENV_NAME_RE"]
