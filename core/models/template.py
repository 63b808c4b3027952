# ============================================================================
# PLATFORM TEMPLATE MODELS
# ============================================================================
# STATUS: Core model - Platform table entries and resolved templates
# PURPOSE: Describe where/how a sandbox runs (image, constraints, resources)
# LAST_REVIEWED: 18 OCT 2026
# EXPORTS: TemplateEntry, ResolvedTemplate, ResourceSpec, Toleration,
#          SecurityProfile, TemplateSource
# DEPENDENCIES: pydantic
# ============================================================================
"""
Platform Template Models

Key concept:
- TemplateEntry = one row of the configured platform table (partial, every
  field optional so entries compose additively)
- ResolvedTemplate = the concrete bundle the Sandbox Builder consumes

The platform table is validated once at load time; a bad entry is a
ConfigError before the engine touches the cluster.
"""

import re
from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel, Field, field_validator


# Kubernetes quantity: "500m", "2", "1.5", "4Gi", "512M"
_QUANTITY_RE = re.compile(r"^[0-9]+(\.[0-9]+)?(m|k|M|G|T|P|E|Ki|Mi|Gi|Ti|Pi|Ei)?$")


class TemplateSource(str, Enum):
    """How a ResolvedTemplate was produced."""
    EXACT = "exact"          # Whole label set matched a table key
    COMPOSED = "composed"    # Built label by label
    DEFAULT = "default"      # No usable signal


class ResourceSpec(BaseModel):
    """Resource requests/limits, keyed by resource name ("cpu", "memory", ...)."""
    requests: Dict[str, str] = Field(default_factory=dict)
    limits: Dict[str, str] = Field(default_factory=dict)

    model_config = {"frozen": True}

    @field_validator("requests", "limits", mode="before")
    @classmethod
    def validate_quantities(cls, v):
        """Accept ints/floats, reject malformed quantities."""
        if v is None:
            return {}
        normalized = {}
        for name, quantity in dict(v).items():
            text = str(quantity)
            if not _QUANTITY_RE.match(text):
                raise ValueError(f"Invalid quantity for '{name}': {quantity!r}")
            normalized[str(name)] = text
        return normalized

    def merged(self, other: "ResourceSpec") -> "ResourceSpec":
        """Per-key last-write-wins merge (other wins)."""
        return ResourceSpec(
            requests={**self.requests, **other.requests},
            limits={**self.limits, **other.limits},
        )


class Toleration(BaseModel):
    """Pod toleration (mirrors the Kubernetes field names)."""
    key: Optional[str] = None
    operator: str = Field(default="Equal", pattern="^(Equal|Exists)$")
    value: Optional[str] = None
    effect: Optional[str] = Field(
        default=None,
        pattern="^(NoSchedule|PreferNoSchedule|NoExecute)$",
    )

    model_config = {"frozen": True}

    @property
    def identity(self) -> tuple:
        """Constraint key used for last-write-wins merging."""
        return (self.key, self.effect)


class SecurityProfile(BaseModel):
    """Security settings applied to the runner unit."""
    run_as_user: Optional[int] = Field(default=None, ge=0)
    run_as_group: Optional[int] = Field(default=None, ge=0)
    run_as_non_root: Optional[bool] = None
    privileged: bool = False
    allow_privilege_escalation: bool = False
    seccomp_profile: Optional[str] = Field(
        default="RuntimeDefault",
        pattern="^(RuntimeDefault|Unconfined|Localhost)$",
    )
    drop_capabilities: List[str] = Field(default_factory=lambda: ["ALL"])
    add_capabilities: List[str] = Field(default_factory=list)

    model_config = {"frozen": True}


class TemplateEntry(BaseModel):
    """
    One entry of the platform table.

    Every field is optional: in compositional resolution each matching entry
    contributes only what it sets.
    """
    image: Optional[str] = Field(default=None, max_length=512)
    node_selector: Dict[str, str] = Field(default_factory=dict)
    resources: ResourceSpec = Field(default_factory=ResourceSpec)
    tolerations: List[Toleration] = Field(default_factory=list)
    affinity: Dict[str, List[str]] = Field(
        default_factory=dict,
        description="Required node affinity: label key -> allowed values (In)",
    )
    security: Optional[SecurityProfile] = None
    description: Optional[str] = None

    model_config = {"frozen": True}

    @field_validator("node_selector", mode="before")
    @classmethod
    def stringify_selector(cls, v):
        """YAML turns `true` into a bool; node selectors are strings."""
        if v is None:
            return {}
        return {str(k): _label_value(val) for k, val in dict(v).items()}


def _label_value(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class ResolvedTemplate(BaseModel):
    """
    Concrete image/resource/constraint bundle for one job.

    Deterministic function of (normalized label set, platform table).
    """
    image: str = Field(..., min_length=1, max_length=512)
    node_selector: Dict[str, str] = Field(default_factory=dict)
    resources: ResourceSpec = Field(default_factory=ResourceSpec)
    tolerations: List[Toleration] = Field(default_factory=list)
    affinity: Dict[str, List[str]] = Field(default_factory=dict)
    security: SecurityProfile = Field(default_factory=SecurityProfile)

    # Provenance
    source: TemplateSource = TemplateSource.DEFAULT
    matched: Optional[str] = Field(
        default=None,
        description="Table key that matched exactly, if any",
    )
    labels: List[str] = Field(
        default_factory=list,
        description="Normalized, sorted label set this was resolved from",
    )

    model_config = {"frozen": True}

    @property
    def os(self) -> Optional[str]:
        """Operating system constraint, if one was selected."""
        return self.node_selector.get("kubernetes.io/os")


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "TemplateSource",
    "ResourceSpec",
    "Toleration",
    "SecurityProfile",
    "TemplateEntry",
    "ResolvedTemplate",
]
