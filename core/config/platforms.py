# ============================================================================
# PLATFORM TABLE LOADER
# ============================================================================
# STATUS: Core - Platform table loading and validation
# PURPOSE: Read YAML config, normalize table keys, validate entries
# CREATED: 18 OCT 2026
# ============================================================================
"""
Platform Table Loader

The platform table maps canonical platform names to template entries:

    platforms:
      ubuntu-latest:
        image: docker.io/library/ubuntu:22.04
        node_selector: {kubernetes.io/os: linux}
      "self-hosted, gpu":
        image: nvcr.io/nvidia/cuda:12.4.0-runtime-ubuntu22.04
        resources: {limits: {nvidia.com/gpu: 1}}

Keys are label sets written as comma-separated labels; they are normalized
(stripped, lower-cased, de-duplicated, sorted) so matching is
order-insensitive. Every entry is validated with pydantic at load time and a
bad entry raises ConfigError before any cluster call.
"""

from typing import Any, Dict, FrozenSet, Iterable, Mapping

import yaml
from pydantic import ValidationError

from core.errors import ConfigError
from core.models.template import TemplateEntry


def normalize_labels(labels: Iterable[Any]) -> FrozenSet[str]:
    """Strip, lower-case, drop empties and de-duplicate."""
    normalized = set()
    for label in labels or ():
        if label is None:
            continue
        text = str(label).strip().lower()
        if text:
            normalized.add(text)
    return frozenset(normalized)


def canonical_key(labels: Iterable[Any]) -> str:
    """Canonical table key for a label set: sorted, comma-joined."""
    return ",".join(sorted(normalize_labels(labels)))


def split_key(key: str) -> FrozenSet[str]:
    """Label set written in a table key."""
    return normalize_labels(str(key).split(","))


def parse_platform_table(data: Mapping[str, Any]) -> Dict[str, TemplateEntry]:
    """
    Validate a raw platform table.

    Returns entries keyed by canonical key. Two raw keys that normalize to
    the same label set are a ConfigError.
    """
    if not isinstance(data, Mapping):
        raise ConfigError("Platform table must be a mapping of name -> entry")

    table: Dict[str, TemplateEntry] = {}
    for raw_key, raw_entry in data.items():
        key = canonical_key(split_key(raw_key))
        if not key:
            raise ConfigError(f"Platform table key {raw_key!r} has no labels")
        if key in table:
            raise ConfigError(f"Platform table key {raw_key!r} duplicates '{key}'")
        try:
            table[key] = TemplateEntry.model_validate(raw_entry or {})
        except ValidationError as e:
            raise ConfigError(f"Invalid platform entry {raw_key!r}: {e}") from e
    return table


def read_yaml(path: str) -> Any:
    """Load a YAML document, translating I/O and parse errors."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e


def load_platform_file(path: str) -> Dict[str, TemplateEntry]:
    """
    Load a platform table from a YAML file.

    Accepts either a bare table or a document with a top-level `platforms` key.
    """
    data = read_yaml(path) or {}
    if isinstance(data, Mapping) and "platforms" in data:
        data = data["platforms"] or {}
    return parse_platform_table(data)


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "normalize_labels",
    "canonical_key",
    "split_key",
    "parse_platform_table",
    "read_yaml",
    "load_platform_file",
]
