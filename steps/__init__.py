# ============================================================================
# STEPS MODULE
# ============================================================================
# STATUS: Core - Step execution
# PURPOSE: Sequence a job's steps over the Command Channel
# CREATED: 18 OCT 2026
# ============================================================================
"""
Steps Module

Usage:
    from steps import StepDriver

    driver = StepDriver(channel, spec, job, ledger)
    ok = await driver.run()
"""

from steps.driver import (
    ActionResolver,
    EnvFileError,
    EnvironmentStore,
    StepDriver,
    parse_env_file,
)

__all__ = [
    "StepDriver",
    "EnvironmentStore",
    "ActionResolver",
    "EnvFileError",
    "parse_env_file",
]
