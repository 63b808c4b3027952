"""Shared fixtures: an in-memory cluster and fast engine configuration."""

import pytest

from core.models.job import Job
from fakes import FakeCluster, fast_config


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def config():
    return fast_config()


@pytest.fixture
def make_job():
    """Factory for jobs from plain step scripts."""

    def _make(job_id="build", steps=None, **kwargs):
        if steps is None:
            steps = [{"step_id": "hello", "run": "echo hello"}]
        steps = [
            {"step_id": f"s{i}", "run": s} if isinstance(s, str) else s
            for i, s in enumerate(steps, start=1)
        ]
        return Job(job_id=job_id, steps=steps, **kwargs)

    return _make
