# ============================================================================
# ORCHESTRATOR MODULE
# ============================================================================
# STATUS: Core - Job and stage orchestration
# PURPOSE: Run jobs end to end, schedule stages, report and clean up
# CREATED: 18 OCT 2026
# ============================================================================
"""
Orchestrator Module

Usage:
    from orchestrator import JobOrchestrator, StageScheduler

    orchestrator = JobOrchestrator(cluster, config, reporter)
    results = await StageScheduler(orchestrator).run(stages)
"""

from orchestrator.cleanup import OrphanReaper, RunHistory
from orchestrator.job_runner import JobOrchestrator
from orchestrator.reporter import (
    CallbackReporter,
    CollectingReporter,
    EventReporter,
    HTTPReporter,
    LoggingReporter,
    MultiReporter,
    create_reporter,
)
from orchestrator.scheduler import StageScheduler

__all__ = [
    "JobOrchestrator",
    "StageScheduler",
    "RunHistory",
    "OrphanReaper",
    "EventReporter",
    "LoggingReporter",
    "CollectingReporter",
    "CallbackReporter",
    "HTTPReporter",
    "MultiReporter",
    "create_reporter",
]
