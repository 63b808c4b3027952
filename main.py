# ============================================================================
# CLUSTER JOB ENGINE - MAIN ENTRY POINT
# ============================================================================
# STATUS: Core - Command line entry point
# PURPOSE: Run a plan of stages against the cluster
# CREATED: 18 OCT 2026
# ============================================================================
"""
Cluster Job Engine

Runs every stage of a plan file, one sandbox pod per job, and exits
non-zero if any job failed.

Usage:
    python main.py plan.yaml
    python main.py plan.yaml --config engine.yaml --json-logs
    python main.py plan.yaml --callback-url https://ci.example.com/hooks

Environment (when --config is not given):
    ENGINE_NAMESPACE, ENGINE_MAX_PARALLEL, ENGINE_PLATFORMS_FILE, ...
    LOG_LEVEL, LOG_FORMAT=json
"""

import argparse
import asyncio
import os
import signal
import sys
from typing import List, Optional

from __version__ import __version__, CODENAME
from core.config import EngineConfig, load_plan
from core.errors import ConfigError
from core.logging import configure_logging, get_logger
from core.models.result import StageResult
from infrastructure.kubernetes import KubernetesCluster
from orchestrator import (
    JobOrchestrator,
    OrphanReaper,
    StageScheduler,
    create_reporter,
)
from sandbox.lifecycle import SandboxRegistry

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Run CI jobs in ephemeral Kubernetes sandboxes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s plan.yaml
  %(prog)s plan.yaml --config engine.yaml --max-parallel 8
  %(prog)s plan.yaml --no-reaper --log-level DEBUG
        """,
    )
    parser.add_argument("plan", help="Plan file (YAML stages of jobs)")
    parser.add_argument(
        "--config", "-c",
        help="Engine config file (default: read ENGINE_* environment variables)",
    )
    parser.add_argument(
        "--max-parallel", "-p",
        type=int,
        help="Override the per-stage concurrency limit",
    )
    parser.add_argument(
        "--callback-url", "-u",
        default=os.environ.get("ENGINE_CALLBACK_URL"),
        help="POST events to this URL in addition to logging them",
    )
    parser.add_argument(
        "--no-reaper",
        action="store_true",
        help="Do not reclaim orphaned sandboxes while running",
    )
    parser.add_argument(
        "--log-level", "-l",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        help="Log level (default: INFO)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit JSON log lines",
    )
    return parser


def load_config(path: Optional[str], max_parallel: Optional[int] = None) -> EngineConfig:
    """Engine config from a file or the environment, with CLI overrides."""
    config = EngineConfig.from_yaml(path) if path else EngineConfig.from_env()
    if max_parallel is not None:
        config = config.with_max_parallel(max_parallel)
    return config


def summarize(results: List[StageResult]) -> int:
    """Log a per-job summary. Returns the process exit code."""
    exit_code = 0
    for stage in results:
        for job in stage.jobs:
            line = f"[{stage.name}] {job.job_id}: {job.status.value}"
            if job.failure_kind is not None:
                line += f" ({job.failure_kind.value})"
            if job.failed_step_id:
                line += f" at step {job.failed_step_id}"
            logger.info(line)
            exit_code = max(exit_code, job.exit_code)
    return exit_code


async def run(args: argparse.Namespace) -> int:
    """Run a plan. Returns the process exit code."""
    try:
        config = load_config(args.config, args.max_parallel)
        stages = load_plan(args.plan)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 2

    logger.info("=" * 60)
    logger.info(f"{CODENAME} v{__version__}")
    logger.info(f"Namespace: {config.cluster.namespace}")
    logger.info(f"Instance: {config.cluster.instance_id}")
    logger.info(f"Max parallel: {config.concurrency.max_parallel}")
    logger.info(f"Stages: {len(stages)}")
    logger.info("=" * 60)

    try:
        cluster = KubernetesCluster.from_config(config.cluster)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 2

    reporter = create_reporter(args.callback_url)
    registry = SandboxRegistry()
    orchestrator = JobOrchestrator(cluster, config, reporter, registry)
    scheduler = StageScheduler(orchestrator)

    stop_event = asyncio.Event()
    reaper_task = None
    if not args.no_reaper and config.cleanup.auto_cleanup:
        reaper = OrphanReaper(cluster, config, registry)
        reaper_task = asyncio.create_task(reaper.run(stop_event))

    main_task = asyncio.current_task()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, main_task.cancel)
        except (NotImplementedError, RuntimeError):
            # No signal support on this platform/thread
            pass

    try:
        results = await scheduler.run(stages)
    except asyncio.CancelledError:
        logger.warning("Run cancelled; all sandboxes have been torn down")
        return 130
    finally:
        stop_event.set()
        if reaper_task is not None:
            await reaper_task
        await reporter.close()

    return summarize(results)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(level=args.log_level, json_output=args.json_logs)
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
