# ============================================================================
# ENTRY POINT TESTS
# ============================================================================
# STATUS: Tests - Command line runs
# PURPOSE: Argument parsing, exit codes, plan runs against a fake cluster
# CREATED: 18 OCT 2026
# ============================================================================
"""
Entry Point Tests

Run with:
    pytest tests/test_main.py -v
"""

import asyncio
from unittest.mock import patch

import pytest

import main
from core.contracts import FailureKind, JobStatus
from core.errors import ConfigError
from core.models.result import JobResult, StageResult

from fakes import FakeCluster


ENGINE_YAML = (
    "cluster:\n"
    "  namespace: ci\n"
    "  instance_id: test-engine\n"
    "timeouts:\n"
    "  poll_interval_seconds: 0.01\n"
    "  removal_poll_interval_seconds: 0.01\n"
    "cleanup:\n"
    "  force_removal_delay_seconds: 0\n"
)

PLAN_YAML = (
    "stages:\n"
    "  - name: build\n"
    "    jobs:\n"
    "      - job_id: compile\n"
    "        steps:\n"
    "          - step_id: make\n"
    "            run: {script}\n"
    "  - name: test\n"
    "    jobs:\n"
    "      - job_id: unit\n"
    "        steps:\n"
    "          - step_id: pytest\n"
    "            run: echo passed\n"
)


@pytest.fixture
def fake_cluster():
    cluster = FakeCluster()
    with patch.object(main.KubernetesCluster, "from_config", return_value=cluster):
        yield cluster


def _files(tmp_path, script="echo built"):
    config = tmp_path / "engine.yaml"
    config.write_text(ENGINE_YAML)
    plan = tmp_path / "plan.yaml"
    plan.write_text(PLAN_YAML.format(script=script))
    return str(plan), str(config)


def _args(*argv):
    return main.build_parser().parse_args(list(argv))


# ============================================================================
# PARSER & HELPERS
# ============================================================================

class TestParser:

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("ENGINE_CALLBACK_URL", raising=False)
        monkeypatch.delenv("LOG_LEVEL", raising=False)
        args = _args("plan.yaml")

        assert args.plan == "plan.yaml"
        assert args.config is None
        assert args.max_parallel is None
        assert args.callback_url is None
        assert args.log_level == "INFO"
        assert not args.no_reaper
        assert not args.json_logs

    def test_overrides(self):
        args = _args("plan.yaml", "-c", "engine.yaml", "-p", "8", "--no-reaper", "--json-logs")
        assert args.config == "engine.yaml"
        assert args.max_parallel == 8
        assert args.no_reaper
        assert args.json_logs


class TestLoadConfig:

    def test_max_parallel_override(self, tmp_path):
        _, config_path = _files(tmp_path)
        config = main.load_config(config_path, max_parallel=7)
        assert config.cluster.namespace == "ci"
        assert config.concurrency.max_parallel == 7


class TestSummarize:

    def test_exit_code_is_worst_job(self):
        results = [
            StageResult(name="build", jobs=[JobResult(job_id="a", status=JobStatus.SUCCESS)]),
            StageResult(name="test", jobs=[
                JobResult(
                    job_id="b", status=JobStatus.FAILURE,
                    failure_kind=FailureKind.STEP, failed_step_id="pytest",
                ),
                JobResult(job_id="c", status=JobStatus.SKIPPED),
            ]),
        ]
        assert main.summarize(results) == 1

    def test_all_green(self):
        results = [StageResult(name="build", jobs=[JobResult(job_id="a", status=JobStatus.SUCCESS)])]
        assert main.summarize(results) == 0


# ============================================================================
# RUNS
# ============================================================================

class TestRun:

    def test_config_error_exit_code(self, tmp_path, fake_cluster):
        args = _args(str(tmp_path / "missing-plan.yaml"))
        assert asyncio.run(main.run(args)) == 2
        assert fake_cluster.calls == []

    def test_successful_plan(self, tmp_path, fake_cluster):
        plan, config = _files(tmp_path)
        args = _args(plan, "--config", config, "--no-reaper")

        assert asyncio.run(main.run(args)) == 0
        assert fake_cluster.created_total == 2
        assert fake_cluster.pods == {}

    def test_failed_plan_skips_later_stage(self, tmp_path, fake_cluster):
        plan, config = _files(tmp_path, script="exit 3")
        args = _args(plan, "--config", config, "--no-reaper")

        assert asyncio.run(main.run(args)) == 1
        assert fake_cluster.created_total == 1

    def test_with_reaper(self, tmp_path, fake_cluster):
        plan, config = _files(tmp_path)
        args = _args(plan, "--config", config)

        assert asyncio.run(main.run(args)) == 0
        assert fake_cluster.pods == {}

    def test_missing_cluster_credentials_exit_code(self, tmp_path):
        plan, config = _files(tmp_path)
        args = _args(plan, "--config", config, "--no-reaper")

        with patch.object(
            main.KubernetesCluster, "from_config",
            side_effect=ConfigError("No usable kubernetes configuration"),
        ):
            assert asyncio.run(main.run(args)) == 2
