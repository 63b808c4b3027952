# ============================================================================
# SANDBOX BUILDER
# ============================================================================
# STATUS: Core - Job + template -> complete sandbox specification
# PURPOSE: Pure transform producing the pod and its config objects
# CREATED: 18 OCT 2026
# ============================================================================
"""
Sandbox Builder

Turns a Job and its ResolvedTemplate into a SandboxSpec. Nothing here
touches the cluster; creation happens in the lifecycle manager.

Pod layout:
    runner           template image, idle entry point, /workspace, envFrom
    <service>...     one container per service, reachable on 127.0.0.1
    volumes          workspace + temp (emptyDir), optional cache (PVC)
    config objects   job env -> ConfigMap, secrets -> Secret (envFrom only)

The runner's entry point only keeps the container alive; steps are sent
later through the Command Channel.

Every sandbox carries the managed-by label, the job id label and a
deadline annotation so the orphan reaper can find and reclaim it.
"""

import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from kubernetes import client

from __version__ import MANAGED_BY
from core.config.defaults import ClusterDefaults, SandboxDefaults
from core.errors import ConfigError
from core.logging import get_logger, ComponentType
from core.models.job import Job, ServiceSpec
from core.models.sandbox import SandboxSpec
from core.models.template import ResolvedTemplate, ResourceSpec, SecurityProfile

logger = get_logger(__name__, ComponentType.BUILDER)


# Labels / annotations written on every engine-owned object
LABEL_MANAGED_BY = "app.kubernetes.io/managed-by"
LABEL_COMPONENT = "app.kubernetes.io/component"
LABEL_JOB_ID = "ci-engine.io/job-id"
LABEL_SANDBOX = "ci-engine.io/sandbox"
LABEL_INSTANCE = "ci-engine.io/instance"
ANNOTATION_DEADLINE = "ci-engine.io/deadline"
ANNOTATION_JOB_ID = "ci-engine.io/job-id"
ANNOTATION_TEMPLATE = "ci-engine.io/template-source"
ANNOTATION_PLACEMENT = "ci-engine.io/placement"

WORKSPACE_VOLUME = "workspace"
TEMP_VOLUME = "runner-temp"
CACHE_VOLUME = "cache"

_DNS_INVALID = re.compile(r"[^a-z0-9-]+")
_LABEL_VALUE_INVALID = re.compile(r"[^A-Za-z0-9_.-]+")


def dns_safe(value: str, max_length: int = 63) -> str:
    """Lower-case DNS-1123 label fragment."""
    text = _DNS_INVALID.sub("-", value.lower()).strip("-")
    return text[:max_length].rstrip("-") or "x"


def label_value(value: str) -> str:
    """Kubernetes label value (<= 63 chars, alphanumeric at both ends)."""
    text = _LABEL_VALUE_INVALID.sub("-", value)[:63]
    return text.strip("-_.")


def service_env_prefix(name: str) -> str:
    """`redis-cache` -> `REDIS_CACHE`."""
    return name.upper().replace("-", "_")


def _requirements(resources: ResourceSpec) -> Optional[client.V1ResourceRequirements]:
    if not resources.requests and not resources.limits:
        return None
    return client.V1ResourceRequirements(
        requests=dict(resources.requests) or None,
        limits=dict(resources.limits) or None,
    )


class SandboxBuilder:
    """
    Builds SandboxSpecs.

    Usage:
        builder = SandboxBuilder(config.sandbox, config.cluster)
        spec = builder.build(job, template)
    """

    def __init__(
        self,
        sandbox: Optional[SandboxDefaults] = None,
        cluster: Optional[ClusterDefaults] = None,
    ):
        self.sandbox = sandbox or SandboxDefaults()
        self.cluster = cluster or ClusterDefaults()

    def build(
        self,
        job: Job,
        template: ResolvedTemplate,
        suffix: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SandboxSpec:
        """
        Build the complete sandbox specification for one job attempt.

        Args:
            job: The job to run
            template: Its resolved template
            suffix: Name suffix (random per attempt when omitted)
            now: Reference time for the deadline

        Raises:
            ConfigError: service layout cannot be expressed in one sandbox
        """
        self._validate_services(job)

        name = self.sandbox_name(job.job_id, suffix)
        namespace = self.cluster.namespace
        now = now or datetime.now(timezone.utc)
        deadline_seconds = int(job.timeout_seconds) + self.sandbox.deadline_margin_seconds
        deadline = now + timedelta(seconds=deadline_seconds)

        labels = {
            LABEL_MANAGED_BY: MANAGED_BY,
            LABEL_COMPONENT: "sandbox",
            LABEL_JOB_ID: label_value(job.job_id),
            LABEL_SANDBOX: name,
            LABEL_INSTANCE: label_value(self.cluster.instance_id),
        }
        annotations = {
            ANNOTATION_DEADLINE: deadline.isoformat(),
            ANNOTATION_JOB_ID: job.job_id,
            ANNOTATION_TEMPLATE: template.source.value,
            ANNOTATION_PLACEMENT: ",".join(template.labels),
        }

        config_map = self._config_map(name, namespace, labels, job.env)
        secret = self._secret(name, namespace, labels, job.secrets)
        runner_env = self._runner_env(job)

        containers = [self._runner_container(template, runner_env, config_map, secret)]
        containers.extend(
            self._service_container(service) for service in job.services.values()
        )

        pod_spec = client.V1PodSpec(
            containers=containers,
            restart_policy="Never",
            active_deadline_seconds=deadline_seconds,
            termination_grace_period_seconds=self.sandbox.termination_grace_seconds,
            node_selector=dict(template.node_selector) or None,
            tolerations=[
                client.V1Toleration(
                    key=t.key, operator=t.operator, value=t.value, effect=t.effect,
                )
                for t in template.tolerations
            ] or None,
            affinity=self._affinity(template),
            host_aliases=self._host_aliases(job),
            volumes=self._volumes(),
            service_account_name=self.cluster.service_account,
            automount_service_account_token=False,
            enable_service_links=False,
            image_pull_secrets=[
                client.V1LocalObjectReference(name=secret_name)
                for secret_name in self.cluster.image_pull_secrets
            ] or None,
            security_context=self._pod_security(template.security),
        )

        pod = client.V1Pod(
            api_version="v1",
            kind="Pod",
            metadata=client.V1ObjectMeta(
                name=name,
                namespace=namespace,
                labels=dict(labels),
                annotations=dict(annotations),
            ),
            spec=pod_spec,
        )

        logger.debug(
            f"Built sandbox {name} for job {job.job_id}: image={template.image}, "
            f"services={list(job.services)}"
        )

        return SandboxSpec(
            job_id=job.job_id,
            name=name,
            namespace=namespace,
            pod=pod,
            config_map=config_map,
            secret=secret,
            runner_unit=self.sandbox.runner_unit,
            service_units=tuple(job.services),
            workspace=self.sandbox.workspace_path,
            temp_dir=self.sandbox.temp_path,
            deadline=deadline,
            labels=labels,
            annotations=annotations,
            runner_env=runner_env,
        )

    def sandbox_name(self, job_id: str, suffix: Optional[str] = None) -> str:
        """Unique, DNS-safe pod name for one attempt of a job."""
        suffix = dns_safe(suffix or uuid.uuid4().hex[:6], 12)
        prefix = dns_safe(self.sandbox.name_prefix, 12)
        # "-env" / "-secrets" are appended for config objects
        budget = 63 - len(prefix) - len(suffix) - 2 - len("-secrets")
        return f"{prefix}-{dns_safe(job_id, budget)}-{suffix}"

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate_services(self, job: Job) -> None:
        seen_ports: Dict[int, str] = {}
        for service in job.services.values():
            if service.name == self.sandbox.runner_unit:
                raise ConfigError(
                    f"Job '{job.job_id}': service name '{service.name}' "
                    f"clashes with the runner unit"
                )
            for port in service.ports:
                owner = seen_ports.get(port)
                if owner is not None:
                    raise ConfigError(
                        f"Job '{job.job_id}': port {port} declared by both "
                        f"'{owner}' and '{service.name}' (services share one network)"
                    )
                seen_ports[port] = service.name

    # ------------------------------------------------------------------
    # Config objects
    # ------------------------------------------------------------------

    def _config_map(self, name, namespace, labels, env) -> Optional[client.V1ConfigMap]:
        if not env:
            return None
        return client.V1ConfigMap(
            api_version="v1",
            kind="ConfigMap",
            metadata=client.V1ObjectMeta(
                name=f"{name}-env", namespace=namespace, labels=dict(labels),
            ),
            data=dict(env),
        )

    def _secret(self, name, namespace, labels, secrets) -> Optional[client.V1Secret]:
        if not secrets:
            return None
        return client.V1Secret(
            api_version="v1",
            kind="Secret",
            type="Opaque",
            metadata=client.V1ObjectMeta(
                name=f"{name}-secrets", namespace=namespace, labels=dict(labels),
            ),
            string_data=dict(secrets),
        )

    def _runner_env(self, job: Job) -> Dict[str, str]:
        """Variables the runner always sees (lowest precedence)."""
        env = {
            "CI": "true",
            "CI_JOB_ID": job.job_id,
            "RUNNER_WORKSPACE": self.sandbox.workspace_path,
            "RUNNER_TEMP": self.sandbox.temp_path,
        }
        if self.sandbox.cache_claim_name:
            env["RUNNER_CACHE"] = self.sandbox.cache_mount_path
        for service in job.services.values():
            prefix = service_env_prefix(service.name)
            env[f"{prefix}_HOST"] = service.name
            for port in service.ports:
                env[f"{prefix}_PORT_{port}"] = str(port)
        return env

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------

    def _runner_container(self, template, runner_env, config_map, secret) -> client.V1Container:
        env_from: List[client.V1EnvFromSource] = []
        if config_map is not None:
            env_from.append(client.V1EnvFromSource(
                config_map_ref=client.V1ConfigMapEnvSource(name=config_map.metadata.name),
            ))
        if secret is not None:
            env_from.append(client.V1EnvFromSource(
                secret_ref=client.V1SecretEnvSource(name=secret.metadata.name),
            ))

        mounts = [
            client.V1VolumeMount(name=WORKSPACE_VOLUME, mount_path=self.sandbox.workspace_path),
            client.V1VolumeMount(name=TEMP_VOLUME, mount_path=self.sandbox.temp_path),
        ]
        if self.sandbox.cache_claim_name:
            mounts.append(client.V1VolumeMount(
                name=CACHE_VOLUME, mount_path=self.sandbox.cache_mount_path,
            ))

        return client.V1Container(
            name=self.sandbox.runner_unit,
            image=template.image,
            command=list(self.sandbox.idle_command),
            working_dir=self.sandbox.workspace_path,
            env=[client.V1EnvVar(name=k, value=v) for k, v in sorted(runner_env.items())],
            env_from=env_from or None,
            resources=_requirements(template.resources),
            volume_mounts=mounts,
            security_context=self._container_security(template.security),
            readiness_probe=client.V1Probe(
                _exec=client.V1ExecAction(command=["test", "-d", self.sandbox.workspace_path]),
                period_seconds=2,
                failure_threshold=3,
            ),
        )

    def _service_container(self, service: ServiceSpec) -> client.V1Container:
        resources = service.resources
        if not resources.requests and not resources.limits:
            resources = self.sandbox.service_resources
        return client.V1Container(
            name=service.name,
            image=service.image,
            command=list(service.command) if service.command else None,
            args=list(service.args) if service.args else None,
            ports=[
                client.V1ContainerPort(container_port=port, protocol="TCP")
                for port in service.ports
            ] or None,
            env=[client.V1EnvVar(name=k, value=v) for k, v in sorted(service.env.items())] or None,
            resources=_requirements(resources),
        )

    # ------------------------------------------------------------------
    # Pod-level fields
    # ------------------------------------------------------------------

    def _host_aliases(self, job: Job) -> Optional[List[client.V1HostAlias]]:
        if not job.services:
            return None
        return [client.V1HostAlias(ip="127.0.0.1", hostnames=sorted(job.services))]

    def _volumes(self) -> List[client.V1Volume]:
        volumes = [
            client.V1Volume(
                name=WORKSPACE_VOLUME,
                empty_dir=client.V1EmptyDirVolumeSource(
                    size_limit=self.sandbox.workspace_size_limit,
                ),
            ),
            client.V1Volume(
                name=TEMP_VOLUME,
                empty_dir=client.V1EmptyDirVolumeSource(
                    size_limit=self.sandbox.temp_size_limit,
                ),
            ),
        ]
        if self.sandbox.cache_claim_name:
            volumes.append(client.V1Volume(
                name=CACHE_VOLUME,
                persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(
                    claim_name=self.sandbox.cache_claim_name,
                ),
            ))
        return volumes

    def _affinity(self, template: ResolvedTemplate) -> Optional[client.V1Affinity]:
        if not template.affinity:
            return None
        expressions = [
            client.V1NodeSelectorRequirement(key=key, operator="In", values=list(values))
            for key, values in sorted(template.affinity.items())
        ]
        return client.V1Affinity(
            node_affinity=client.V1NodeAffinity(
                required_during_scheduling_ignored_during_execution=client.V1NodeSelector(
                    node_selector_terms=[
                        client.V1NodeSelectorTerm(match_expressions=expressions)
                    ],
                ),
            ),
        )

    def _pod_security(self, security: SecurityProfile) -> client.V1PodSecurityContext:
        return client.V1PodSecurityContext(
            run_as_user=security.run_as_user,
            run_as_group=security.run_as_group,
            run_as_non_root=security.run_as_non_root,
            fs_group=security.run_as_group,
            seccomp_profile=(
                client.V1SeccompProfile(type=security.seccomp_profile)
                if security.seccomp_profile else None
            ),
        )

    def _container_security(self, security: SecurityProfile) -> client.V1SecurityContext:
        return client.V1SecurityContext(
            privileged=security.privileged,
            allow_privilege_escalation=security.allow_privilege_escalation,
            capabilities=client.V1Capabilities(
                drop=list(security.drop_capabilities) or None,
                add=list(security.add_capabilities) or None,
            ),
        )


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "SandboxBuilder",
    "LABEL_MANAGED_BY",
    "LABEL_JOB_ID",
    "LABEL_SANDBOX",
    "LABEL_INSTANCE",
    "ANNOTATION_DEADLINE",
    "ANNOTATION_JOB_ID",
    "dns_safe",
    "label_value",
    "service_env_prefix",
]
