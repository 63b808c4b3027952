# ============================================================================
# PLAN LOADING
# ============================================================================
# STATUS: Configuration - Stages of jobs from YAML
# PURPOSE: Parse a run plan into validated Stage models
# CREATED: 18 OCT 2026
# ============================================================================
"""
Plan Loading

A plan is an ordered list of stages, each holding already-parsed jobs:

    stages:
      - name: build
        jobs:
          - job_id: compile
            placement: [linux, x64]
            steps:
              - run: make
      - name: test
        jobs: [...]

A bare top-level list of stages is accepted too.
"""

from typing import Any, List

from pydantic import ValidationError

from core.config.platforms import read_yaml
from core.errors import ConfigError
from core.models.job import Stage


def parse_plan(data: Any) -> List[Stage]:
    """Validate plan data into stages. Raises ConfigError on any problem."""
    if isinstance(data, dict):
        data = data.get("stages")
    if not isinstance(data, list) or not data:
        raise ConfigError("Plan must define a non-empty list of stages")

    stages = []
    seen_jobs = set()
    for index, raw in enumerate(data):
        try:
            stage = Stage.model_validate(raw)
        except ValidationError as e:
            raise ConfigError(f"Invalid stage #{index + 1}: {e}") from e
        for job in stage.jobs:
            if job.job_id in seen_jobs:
                raise ConfigError(f"Duplicate job_id '{job.job_id}' in plan")
            seen_jobs.add(job.job_id)
        stages.append(stage)
    return stages


def load_plan(path: str) -> List[Stage]:
    """Load and validate a plan file."""
    return parse_plan(read_yaml(path))


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = ["parse_plan", "load_plan"]
