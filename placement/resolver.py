# ============================================================================
# PLATFORM RESOLVER
# ============================================================================
# STATUS: Core - Placement labels -> concrete sandbox template
# PURPOSE: Deterministic, total resolution of a job's placement descriptor
# CREATED: 18 OCT 2026
# ============================================================================
"""
Platform Resolver

Maps a job's free-form placement labels to a ResolvedTemplate.

Resolution order:
1. EXACT: the whole normalized label set equals a platform table key
   ("ubuntu-latest", "self-hosted,gpu"). The entry is used as-is.
2. COMPOSED: otherwise each label contributes constraints:
   - a label that is itself a table key contributes that entry
   - a known OS/arch/accelerator synonym contributes its fixed constraints
   - any other label becomes a node selector `<label>: "true"`
   Labels are applied in sorted order and every constraint key is
   last-write-wins, so the result does not depend on input order.
3. DEFAULT: no usable label at all yields the global default template.

A template without an image gets one from default_image_by_os (keyed by the
composed kubernetes.io/os selector), then from the global default image.

Resolution never raises: the table is validated when the resolver is built.
"""

import re
from typing import Dict, Iterable, List, Mapping, Optional

from core.config.defaults import SandboxDefaults
from core.config.platforms import canonical_key, normalize_labels, parse_platform_table
from core.errors import ConfigError
from core.logging import get_logger, ComponentType
from core.models.template import (
    ResolvedTemplate,
    ResourceSpec,
    SecurityProfile,
    TemplateEntry,
    TemplateSource,
    Toleration,
)

logger = get_logger(__name__, ComponentType.RESOLVER)


OS_KEY = "kubernetes.io/os"
ARCH_KEY = "kubernetes.io/arch"
GPU_RESOURCE = "nvidia.com/gpu"

# Node label keys must be qualified names (optional DNS prefix + name)
_LABEL_KEY_RE = re.compile(
    r"^([a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*/)?"
    r"[a-z0-9]([-a-z0-9_.]*[a-z0-9])?$"
)


def _os(value: str) -> TemplateEntry:
    return TemplateEntry(node_selector={OS_KEY: value})


def _arch(value: str) -> TemplateEntry:
    return TemplateEntry(node_selector={ARCH_KEY: value})


_GPU = TemplateEntry(
    node_selector={"nvidia.com/gpu.present": "true"},
    resources=ResourceSpec(limits={GPU_RESOURCE: "1"}),
    tolerations=[Toleration(key=GPU_RESOURCE, operator="Exists", effect="NoSchedule")],
)

# Fixed synonym table: well-known OS / arch / accelerator labels
LABEL_SYNONYMS: Dict[str, TemplateEntry] = {
    # Operating systems
    "linux": _os("linux"),
    "ubuntu": _os("linux"),
    "debian": _os("linux"),
    "windows": _os("windows"),
    # Architectures
    "x64": _arch("amd64"),
    "amd64": _arch("amd64"),
    "x86_64": _arch("amd64"),
    "arm64": _arch("arm64"),
    "aarch64": _arch("arm64"),
    "arm": _arch("arm"),
    "armv7": _arch("arm"),
    # Accelerators
    "gpu": _GPU,
    "cuda": _GPU,
    "nvidia": _GPU,
}


def is_valid_selector_key(label: str) -> bool:
    """Whether a label can be used verbatim as a node selector key."""
    name = label.rsplit("/", 1)[-1]
    return len(name) <= 63 and bool(_LABEL_KEY_RE.match(label))


class PlatformResolver:
    """
    Resolves placement labels against a platform table.

    The table and defaults are process-wide configuration: they are loaded
    once, passed in here and never mutated.

    Usage:
        resolver = PlatformResolver(config.platforms, config.sandbox)
        template = resolver.resolve(job.placement)
    """

    def __init__(
        self,
        table: Optional[Mapping[str, TemplateEntry]] = None,
        defaults: Optional[SandboxDefaults] = None,
        synonyms: Optional[Mapping[str, TemplateEntry]] = None,
    ):
        self.defaults = defaults or SandboxDefaults()
        if not self.defaults.default_image:
            raise ConfigError("sandbox.default_image must be set")
        # Re-validate so raw mappings and non-canonical keys are accepted
        self._table: Dict[str, TemplateEntry] = parse_platform_table(dict(table or {}))
        self._synonyms: Dict[str, TemplateEntry] = dict(
            LABEL_SYNONYMS if synonyms is None else synonyms
        )

    @property
    def table(self) -> Dict[str, TemplateEntry]:
        return dict(self._table)

    def resolve(self, labels: Iterable[str]) -> ResolvedTemplate:
        """Resolve a label set. Deterministic and total."""
        normalized = normalize_labels(labels)
        key = canonical_key(normalized)
        sorted_labels = sorted(normalized)

        entry = self._table.get(key)
        if entry is not None:
            logger.debug(f"Placement {sorted_labels} matched platform '{key}'")
            return self._finish([entry], TemplateSource.EXACT, sorted_labels, matched=key)

        contributions: List[TemplateEntry] = []
        for label in sorted_labels:
            contribution = self._contribution(label)
            if contribution is not None:
                contributions.append(contribution)

        if not contributions:
            return self.default_template(sorted_labels)

        logger.debug(f"Placement {sorted_labels} composed from {len(contributions)} labels")
        return self._finish(contributions, TemplateSource.COMPOSED, sorted_labels)

    def default_template(self, labels: Optional[List[str]] = None) -> ResolvedTemplate:
        """Global default template (no usable placement signal)."""
        return self._finish([], TemplateSource.DEFAULT, labels or [])

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _contribution(self, label: str) -> Optional[TemplateEntry]:
        """What one label adds in compositional resolution."""
        entry = self._table.get(label)
        if entry is not None:
            return entry
        entry = self._synonyms.get(label)
        if entry is not None:
            return entry
        if not is_valid_selector_key(label):
            logger.warning(f"Ignoring placement label {label!r}: not a valid node label key")
            return None
        return TemplateEntry(node_selector={label: "true"})

    def _finish(
        self,
        entries: List[TemplateEntry],
        source: TemplateSource,
        labels: List[str],
        matched: Optional[str] = None,
    ) -> ResolvedTemplate:
        """Merge entries in order (last-write-wins per key) and fill defaults."""
        image: Optional[str] = None
        node_selector: Dict[str, str] = {}
        resources = self.defaults.default_resources
        tolerations: Dict[tuple, Toleration] = {}
        affinity: Dict[str, List[str]] = {}
        security: Optional[SecurityProfile] = None

        for entry in entries:
            if entry.image:
                image = entry.image
            node_selector.update(entry.node_selector)
            resources = resources.merged(entry.resources)
            for toleration in entry.tolerations:
                tolerations[toleration.identity] = toleration
            affinity.update({k: list(v) for k, v in entry.affinity.items()})
            if entry.security is not None:
                security = entry.security

        if not image:
            os_name = node_selector.get(OS_KEY)
            image = self.defaults.default_image_by_os.get(os_name) or self.defaults.default_image

        return ResolvedTemplate(
            image=image,
            node_selector=node_selector,
            resources=resources,
            tolerations=sorted(
                tolerations.values(),
                key=lambda t: (t.key or "", t.effect or ""),
            ),
            affinity=affinity,
            security=security or SecurityProfile(),
            source=source,
            matched=matched,
            labels=labels,
        )


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "PlatformResolver",
    "LABEL_SYNONYMS",
    "OS_KEY",
    "ARCH_KEY",
    "GPU_RESOURCE",
    "is_valid_selector_key",
]
