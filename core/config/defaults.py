# ============================================================================
# CONFIGURATION DEFAULTS
# ============================================================================
# STATUS: Core - Default configuration values
# PURPOSE: Centralized defaults for cluster, sandbox, timeouts, cleanup
# CREATED: 18 OCT 2026
# ============================================================================
"""
Configuration Defaults

Provides sensible defaults for every engine component.
These can be overridden via environment variables or a YAML config file.

Design:
- Immutable dataclasses for defaults
- Environment variable overrides
- Loaded once at startup and passed explicitly (never mutated afterwards)
"""

import os
import socket
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Mapping, Optional, Tuple

from core.errors import ConfigError
from core.models.template import ResourceSpec, TemplateEntry


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class ClusterDefaults:
    """
    Where sandboxes live and under which identity.

    Credential resolution is left to the kubernetes client loaders.
    """
    namespace: str = "ci-jobs"
    service_account: Optional[str] = None
    kube_context: Optional[str] = None
    image_pull_secrets: Tuple[str, ...] = ()
    # Distinguishes this engine's sandboxes from other engines sharing the namespace
    instance_id: str = field(default_factory=socket.gethostname)

    @classmethod
    def from_env(cls) -> "ClusterDefaults":
        """Create from environment variables."""
        pull_secrets = os.getenv("ENGINE_IMAGE_PULL_SECRETS", "")
        return cls(
            namespace=os.getenv("ENGINE_NAMESPACE", "ci-jobs"),
            service_account=os.getenv("ENGINE_SERVICE_ACCOUNT") or None,
            kube_context=os.getenv("ENGINE_KUBE_CONTEXT") or None,
            image_pull_secrets=tuple(s.strip() for s in pull_secrets.split(",") if s.strip()),
            instance_id=os.getenv("ENGINE_INSTANCE_ID") or socket.gethostname(),
        )


@dataclass(frozen=True)
class SandboxDefaults:
    """
    Defaults for sandbox construction.

    Controls images, volumes, resources and the runner's idle entry point.
    """
    # Images
    default_image: str = "docker.io/library/ubuntu:22.04"
    default_image_by_os: Dict[str, str] = field(default_factory=lambda: {
        "linux": "docker.io/library/ubuntu:22.04",
        "windows": "mcr.microsoft.com/windows/servercore:ltsc2022",
    })

    # Units
    runner_unit: str = "runner"
    name_prefix: str = "job"
    idle_command: Tuple[str, ...] = (
        "/bin/sh", "-c",
        "trap 'exit 0' TERM INT; while true; do sleep 5 & wait $!; done",
    )
    default_shell: str = "sh -e"

    # Volumes
    workspace_path: str = "/workspace"
    workspace_size_limit: str = "10Gi"
    temp_path: str = "/tmp/runner"
    temp_size_limit: str = "1Gi"
    cache_claim_name: Optional[str] = None
    cache_mount_path: str = "/cache"

    # Resources
    default_resources: ResourceSpec = field(default_factory=lambda: ResourceSpec(
        requests={"cpu": "500m", "memory": "1Gi"},
        limits={"memory": "4Gi"},
    ))
    service_resources: ResourceSpec = field(default_factory=lambda: ResourceSpec(
        requests={"cpu": "100m", "memory": "256Mi"},
    ))

    # Forced reclamation: pod deadline = job timeout + margin
    deadline_margin_seconds: int = 600
    termination_grace_seconds: int = 10

    @classmethod
    def from_env(cls) -> "SandboxDefaults":
        """Create from environment variables."""
        defaults = cls()
        return cls(
            default_image=os.getenv("ENGINE_DEFAULT_IMAGE", defaults.default_image),
            cache_claim_name=os.getenv("ENGINE_CACHE_CLAIM") or None,
            workspace_size_limit=os.getenv(
                "ENGINE_WORKSPACE_SIZE", defaults.workspace_size_limit
            ),
            deadline_margin_seconds=int(
                os.getenv("ENGINE_DEADLINE_MARGIN_SECONDS", defaults.deadline_margin_seconds)
            ),
        )


@dataclass(frozen=True)
class TimeoutDefaults:
    """
    Defaults for readiness waits, backoff and teardown polling.
    """
    readiness_timeout_seconds: float = 600.0
    poll_interval_seconds: float = 2.0

    # Backoff for transient scheduling errors
    backoff_initial_seconds: float = 2.0
    backoff_max_seconds: float = 30.0
    backoff_multiplier: float = 2.0
    image_pull_max_attempts: int = 8

    # Teardown
    removal_poll_interval_seconds: float = 1.0
    force_removal_wait_seconds: float = 30.0

    # Step default when the step sets no timeout (None = bounded by the job)
    default_step_timeout_seconds: Optional[float] = None

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        delay = self.backoff_initial_seconds * (self.backoff_multiplier ** max(attempt - 1, 0))
        return min(delay, self.backoff_max_seconds)

    def image_pull_attempts_for(self, deadline_seconds: float) -> int:
        """
        Cap on image pull retries: how many backoff delays fit in the
        deadline, never more than image_pull_max_attempts.
        """
        attempts = 0
        elapsed = 0.0
        while attempts < self.image_pull_max_attempts:
            delay = self.backoff_delay(attempts + 1)
            if elapsed + delay > deadline_seconds:
                break
            elapsed += delay
            attempts += 1
        return max(attempts, 1)

    @classmethod
    def from_env(cls) -> "TimeoutDefaults":
        """Create from environment variables."""
        defaults = cls()
        return cls(
            readiness_timeout_seconds=float(
                os.getenv("ENGINE_READINESS_TIMEOUT_SECONDS", defaults.readiness_timeout_seconds)
            ),
            poll_interval_seconds=float(
                os.getenv("ENGINE_POLL_INTERVAL_SECONDS", defaults.poll_interval_seconds)
            ),
            image_pull_max_attempts=int(
                os.getenv("ENGINE_IMAGE_PULL_MAX_ATTEMPTS", defaults.image_pull_max_attempts)
            ),
        )


@dataclass(frozen=True)
class CleanupPolicy:
    """
    Retention and removal policy.

    - success/failure history limits bound the kept JobResults
    - force_removal_delay_seconds: graceful-delete window before force delete
    - auto_cleanup: reap leaked or expired sandboxes of this engine
    """
    success_history_limit: int = 10
    failure_history_limit: int = 10
    force_removal_delay_seconds: int = 30
    auto_cleanup: bool = True

    def __post_init__(self):
        for name in ("success_history_limit", "failure_history_limit",
                     "force_removal_delay_seconds"):
            if getattr(self, name) < 0:
                raise ConfigError(f"cleanup.{name} must be >= 0")

    @classmethod
    def from_env(cls) -> "CleanupPolicy":
        """Create from environment variables."""
        return cls(
            success_history_limit=int(os.getenv("ENGINE_SUCCESS_HISTORY_LIMIT", 10)),
            failure_history_limit=int(os.getenv("ENGINE_FAILURE_HISTORY_LIMIT", 10)),
            force_removal_delay_seconds=int(os.getenv("ENGINE_FORCE_REMOVAL_DELAY_SECONDS", 30)),
            auto_cleanup=_env_bool("ENGINE_AUTO_CLEANUP", True),
        )


@dataclass(frozen=True)
class ConcurrencyDefaults:
    """Global admission-control limit (fixed, not adaptive)."""
    max_parallel: int = 4

    def __post_init__(self):
        if self.max_parallel < 1:
            raise ConfigError("concurrency.max_parallel must be >= 1")

    @classmethod
    def from_env(cls) -> "ConcurrencyDefaults":
        """Create from environment variables."""
        return cls(max_parallel=int(os.getenv("ENGINE_MAX_PARALLEL", 4)))


# ============================================================================
# ENGINE CONFIG
# ============================================================================

# Accepted spellings for cleanup keys in config files
_CLEANUP_ALIASES = {
    "successHistoryLimit": "success_history_limit",
    "failureHistoryLimit": "failure_history_limit",
    "forceRemovalDelaySeconds": "force_removal_delay_seconds",
    "autoCleanup": "auto_cleanup",
    "maxParallel": "max_parallel",
}


def _build_section(cls, data: Optional[Mapping[str, Any]], section: str):
    """Instantiate a defaults dataclass from a config-file section."""
    if not data:
        return cls()
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config section '{section}' must be a mapping")

    known = {f.name: f for f in fields(cls)}
    kwargs: Dict[str, Any] = {}
    for key, value in data.items():
        name = _CLEANUP_ALIASES.get(key, key)
        if name not in known:
            raise ConfigError(f"Unknown option '{key}' in config section '{section}'")
        if name in ("default_resources", "service_resources"):
            try:
                value = ResourceSpec.model_validate(value)
            except ValueError as e:
                raise ConfigError(f"Invalid {section}.{name}: {e}") from e
        elif isinstance(value, list):
            value = tuple(value)
        kwargs[name] = value
    try:
        return cls(**kwargs)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid config section '{section}': {e}") from e


@dataclass(frozen=True)
class EngineConfig:
    """Container for all engine configuration."""
    cluster: ClusterDefaults = field(default_factory=ClusterDefaults)
    sandbox: SandboxDefaults = field(default_factory=SandboxDefaults)
    timeouts: TimeoutDefaults = field(default_factory=TimeoutDefaults)
    cleanup: CleanupPolicy = field(default_factory=CleanupPolicy)
    concurrency: ConcurrencyDefaults = field(default_factory=ConcurrencyDefaults)
    platforms: Dict[str, TemplateEntry] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Create all defaults from environment variables."""
        from core.config.platforms import load_platform_file

        platforms_file = os.getenv("ENGINE_PLATFORMS_FILE")
        return cls(
            cluster=ClusterDefaults.from_env(),
            sandbox=SandboxDefaults.from_env(),
            timeouts=TimeoutDefaults.from_env(),
            cleanup=CleanupPolicy.from_env(),
            concurrency=ConcurrencyDefaults.from_env(),
            platforms=load_platform_file(platforms_file) if platforms_file else {},
        )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "EngineConfig":
        """
        Build from a parsed config document.

        Sections: cluster, sandbox, timeouts, cleanup, concurrency, platforms.
        """
        from core.config.platforms import parse_platform_table

        if not isinstance(data, Mapping):
            raise ConfigError("Config document must be a mapping")
        unknown = set(data) - {"cluster", "sandbox", "timeouts", "cleanup",
                               "concurrency", "platforms"}
        if unknown:
            raise ConfigError(f"Unknown config sections: {sorted(unknown)}")

        return cls(
            cluster=_build_section(ClusterDefaults, data.get("cluster"), "cluster"),
            sandbox=_build_section(SandboxDefaults, data.get("sandbox"), "sandbox"),
            timeouts=_build_section(TimeoutDefaults, data.get("timeouts"), "timeouts"),
            cleanup=_build_section(CleanupPolicy, data.get("cleanup"), "cleanup"),
            concurrency=_build_section(
                ConcurrencyDefaults, data.get("concurrency"), "concurrency"
            ),
            platforms=parse_platform_table(data.get("platforms") or {}),
        )

    @classmethod
    def from_yaml(cls, path: str) -> "EngineConfig":
        """Load a YAML config file."""
        from core.config.platforms import read_yaml

        return cls.from_mapping(read_yaml(path) or {})

    def with_max_parallel(self, max_parallel: int) -> "EngineConfig":
        """Copy with a different concurrency limit."""
        return replace(self, concurrency=ConcurrencyDefaults(max_parallel=max_parallel))


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "ClusterDefaults",
    "SandboxDefaults",
    "TimeoutDefaults",
    "CleanupPolicy",
    "ConcurrencyDefaults",
    "EngineConfig",
]
