# ============================================================================
# STRUCTURED LOGGING
# ============================================================================
# STATUS: Core - Structured logging with context
# PURPOSE: Consistent, queryable logging across all components
# CREATED: 18 OCT 2026
# ============================================================================
"""
Structured Logging

Provides structured, JSON-formatted or human-readable logging for the engine.

Features:
- Component-based loggers
- Contextual fields (job_id, step_id, sandbox, stage)
- JSON output for log aggregation
- Named checkpoints for execution-flow debugging

The context stack lives in a ContextVar, so every asyncio task (one per job)
sees its own fields even though all jobs share one thread.

Usage:
    from core.logging import get_logger, log_context

    logger = get_logger("orchestrator.job_runner")

    with log_context(job_id="build-1"):
        logger.info("Provisioning sandbox", extra={"image": image})
"""

import json
import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple, Union
from enum import Enum


class ComponentType(str, Enum):
    """Component types for logging categorization."""
    RESOLVER = "resolver"
    BUILDER = "builder"
    LIFECYCLE = "lifecycle"
    CHANNEL = "channel"
    DRIVER = "driver"
    ORCHESTRATOR = "orchestrator"
    SCHEDULER = "scheduler"
    INFRASTRUCTURE = "infrastructure"


@dataclass
class LogContext:
    """
    Context for structured logging.

    One immutable snapshot per `log_context` block.
    """
    job_id: Optional[str] = None
    step_id: Optional[str] = None
    sandbox: Optional[str] = None
    stage: Optional[str] = None
    component: Optional[str] = None
    operation: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict, excluding None values."""
        result = {}
        for key, value in asdict(self).items():
            if value is not None and key != "extra":
                result[key] = value
        if self.extra:
            result.update(self.extra)
        return result


_context_stack: ContextVar[Tuple[LogContext, ...]] = ContextVar(
    "engine_log_context", default=()
)


def get_current_context() -> LogContext:
    """Get current logging context."""
    stack = _context_stack.get()
    if stack:
        return stack[-1]
    return LogContext()


@contextmanager
def log_context(**kwargs):
    """
    Context manager for adding logging context.

    Args:
        **kwargs: Context fields to add

    Example:
        with log_context(job_id="build-1", step_id="checkout"):
            logger.info("Running step")
    """
    parent = get_current_context()
    new_context = LogContext(
        job_id=kwargs.get("job_id", parent.job_id),
        step_id=kwargs.get("step_id", parent.step_id),
        sandbox=kwargs.get("sandbox", parent.sandbox),
        stage=kwargs.get("stage", parent.stage),
        component=kwargs.get("component", parent.component),
        operation=kwargs.get("operation", parent.operation),
        extra={**parent.extra, **kwargs.get("extra", {})},
    )

    token = _context_stack.set(_context_stack.get() + (new_context,))
    try:
        yield new_context
    finally:
        _context_stack.reset(token)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs log records as JSON for easy parsing by log aggregators.
    """

    def __init__(
        self,
        include_timestamp: bool = True,
        include_level: bool = True,
        include_logger: bool = True,
        include_context: bool = True,
    ):
        super().__init__()
        self.include_timestamp = include_timestamp
        self.include_level = include_level
        self.include_logger = include_logger
        self.include_context = include_context

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data: Dict[str, Any] = {}

        if self.include_timestamp:
            log_data["timestamp"] = _utc_now().isoformat()

        if self.include_level:
            log_data["level"] = record.levelname

        if self.include_logger:
            log_data["logger"] = record.name

        log_data["message"] = record.getMessage()

        if self.include_context:
            context_dict = get_current_context().to_dict()
            if context_dict:
                log_data["context"] = context_dict

        if hasattr(record, "extra") and record.extra:
            log_data["data"] = record.extra

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        log_data["source"] = {
            "file": record.filename,
            "line": record.lineno,
            "function": record.funcName,
        }

        return json.dumps(log_data, default=str)


class HumanFormatter(logging.Formatter):
    """
    Human-readable formatter for development.

    Includes context fields inline for easy reading.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record for human reading."""
        timestamp = _utc_now().strftime("%Y-%m-%d %H:%M:%S")
        level = record.levelname.ljust(8)

        context = get_current_context()
        context_parts = []
        if context.stage:
            context_parts.append(f"stage={context.stage}")
        if context.job_id:
            context_parts.append(f"job={context.job_id}")
        if context.sandbox:
            context_parts.append(f"sandbox={context.sandbox}")
        if context.step_id:
            context_parts.append(f"step={context.step_id}")

        context_str = f" [{', '.join(context_parts)}]" if context_parts else ""

        message = record.getMessage()

        extra_str = ""
        if hasattr(record, "extra") and record.extra:
            extra_str = f" {record.extra}"

        result = f"{timestamp} {level} {record.name}{context_str}: {message}{extra_str}"

        if record.exc_info:
            result += f"\n{self.formatException(record.exc_info)}"

        return result


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter that includes context in log records.

    Automatically includes the current task's context in all log messages.
    """

    def process(self, msg, kwargs):
        """Process log record to include context."""
        extra = dict(kwargs.get("extra") or {})
        extra.update(get_current_context().to_dict())

        # Stored as a single attribute for formatter access
        kwargs["extra"] = {"extra": extra}

        return msg, kwargs


def get_logger(
    name: str,
    component: Optional[ComponentType] = None,
) -> ContextLogger:
    """
    Get a context-aware logger.

    Args:
        name: Logger name (e.g., "sandbox.lifecycle")
        component: Optional component type for categorization

    Returns:
        ContextLogger instance
    """
    base_logger = logging.getLogger(name)
    return ContextLogger(base_logger, {"component": component})


def configure_logging(
    level: Union[str, int] = "INFO",
    json_output: bool = False,
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_output: Use JSON format (for production)
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    if json_output or os.getenv("LOG_FORMAT", "").lower() == "json":
        formatter: logging.Formatter = StructuredFormatter(include_context=True)
    else:
        formatter = HumanFormatter()

    root = logging.getLogger()
    root.setLevel(level)

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    root.addHandler(handler)

    # The kubernetes client logs every request at DEBUG
    logging.getLogger("kubernetes").setLevel(max(level, logging.INFO))


# ============================================================================
# CHECKPOINT LOGGING
# ============================================================================

def log_checkpoint(
    name: str,
    data: Optional[Dict[str, Any]] = None,
    logger: Optional[logging.Logger] = None,
) -> None:
    """
    Log a named checkpoint.

    Checkpoints are named markers ("sandbox_ready", "step_completed") that
    can be queried to reconstruct execution flow.

    Args:
        name: Checkpoint name
        data: Optional checkpoint data
        logger: Optional specific logger to use
    """
    if logger is None:
        logger = logging.getLogger("checkpoint")

    checkpoint_data: Dict[str, Any] = {
        "checkpoint": name,
        "timestamp": _utc_now().isoformat(),
    }

    context = get_current_context()
    if context.job_id:
        checkpoint_data["job_id"] = context.job_id
    if context.sandbox:
        checkpoint_data["sandbox"] = context.sandbox
    if context.step_id:
        checkpoint_data["step_id"] = context.step_id

    if data:
        checkpoint_data["data"] = data

    logger.info(f"CHECKPOINT: {name}", extra={"extra": checkpoint_data})


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "ComponentType",
    "LogContext",
    "StructuredFormatter",
    "HumanFormatter",
    "ContextLogger",
    "get_logger",
    "configure_logging",
    "log_context",
    "get_current_context",
    "log_checkpoint",
]
