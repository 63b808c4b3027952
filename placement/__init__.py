# ============================================================================
# PLACEMENT MODULE
# ============================================================================
# STATUS: Core - Platform resolution
# PURPOSE: Turn placement labels into a concrete sandbox template
# CREATED: 18 OCT 2026
# ============================================================================
"""
Placement Module

Usage:
    from placement import PlatformResolver

    resolver = PlatformResolver(config.platforms, config.sandbox)
    template = resolver.resolve(["self-hosted", "gpu", "linux"])
"""

from placement.resolver import LABEL_SYNONYMS, PlatformResolver

__all__ = ["PlatformResolver", "LABEL_SYNONYMS"]
