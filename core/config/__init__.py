# ============================================================================
# CONFIGURATION MODULE
# ============================================================================
# STATUS: Core - Configuration and defaults
# PURPOSE: Centralized configuration management
# CREATED: 18 OCT 2026
# ============================================================================
"""
Configuration Module

Provides the engine configuration, the platform table loader and the
run plan loader.
Configuration is loaded once at startup and passed explicitly.
"""

from core.config.defaults import (
    ClusterDefaults,
    SandboxDefaults,
    TimeoutDefaults,
    CleanupPolicy,
    ConcurrencyDefaults,
    EngineConfig,
)
from core.config.platforms import (
    normalize_labels,
    canonical_key,
    parse_platform_table,
    load_platform_file,
)
from core.config.plan import parse_plan, load_plan

__all__ = [
    "ClusterDefaults",
    "SandboxDefaults",
    "TimeoutDefaults",
    "CleanupPolicy",
    "ConcurrencyDefaults",
    "EngineConfig",
    "normalize_labels",
    "canonical_key",
    "parse_platform_table",
    "load_platform_file",
    "parse_plan",
    "load_plan",
]
