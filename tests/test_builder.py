# ============================================================================
# SANDBOX BUILDER TESTS
# ============================================================================
# STATUS: Tests - Job + template -> pod specification
# PURPOSE: Verify pod layout, labels, config objects and validation
# CREATED: 18 OCT 2026
# ============================================================================
"""
SandboxBuilder Tests

Run with:
    pytest tests/test_builder.py -v
"""

from datetime import datetime, timedelta, timezone

import pytest

from __version__ import MANAGED_BY
from core.config.defaults import ClusterDefaults, SandboxDefaults
from core.errors import ConfigError
from core.models.job import Job
from placement.resolver import PlatformResolver
from sandbox.builder import (
    ANNOTATION_DEADLINE,
    LABEL_INSTANCE,
    LABEL_JOB_ID,
    LABEL_MANAGED_BY,
    SandboxBuilder,
    dns_safe,
    label_value,
)


NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


def _job(**kwargs):
    data = {"job_id": "Build_Linux.1", "steps": [{"step_id": "make", "run": "make"}]}
    data.update(kwargs)
    return Job(**data)


def _build(job, labels=("linux", "gpu"), sandbox=None, cluster=None):
    sandbox = sandbox or SandboxDefaults()
    template = PlatformResolver({}, sandbox).resolve(list(labels))
    builder = SandboxBuilder(sandbox, cluster or ClusterDefaults(instance_id="engine-a"))
    return builder.build(job, template, suffix="abc123", now=NOW)


def _container(spec, name):
    return next(c for c in spec.pod.spec.containers if c.name == name)


# ============================================================================
# NAMING & METADATA
# ============================================================================

class TestNaming:

    def test_name_is_dns_safe_and_suffixed(self):
        spec = _build(_job())
        assert spec.name == "job-build-linux-1-abc123"
        assert spec.pod.metadata.name == spec.name

    def test_long_job_id_fits_with_config_suffixes(self):
        spec = _build(_job(job_id="x" * 64))
        assert len(f"{spec.name}-secrets") <= 63

    def test_dns_safe(self):
        assert dns_safe("Hello_World..") == "hello-world"
        assert dns_safe("___") == "x"

    def test_label_value(self):
        assert label_value("-a b-") == "a-b"
        assert len(label_value("y" * 100)) == 63


class TestMetadata:

    def test_labels_identify_owner(self):
        spec = _build(_job())
        labels = spec.pod.metadata.labels
        assert labels[LABEL_MANAGED_BY] == MANAGED_BY
        assert labels[LABEL_JOB_ID] == "Build_Linux.1"
        assert labels[LABEL_INSTANCE] == "engine-a"

    def test_deadline_is_job_timeout_plus_margin(self):
        spec = _build(_job(timeout_minutes=10), sandbox=SandboxDefaults(deadline_margin_seconds=60))
        assert spec.pod.spec.active_deadline_seconds == 660
        assert spec.deadline == NOW + timedelta(seconds=660)
        assert spec.pod.metadata.annotations[ANNOTATION_DEADLINE] == spec.deadline.isoformat()


# ============================================================================
# POD LAYOUT
# ============================================================================

class TestPodLayout:

    def test_runner_container(self):
        spec = _build(_job())
        runner = _container(spec, "runner")
        assert runner.image == "docker.io/library/ubuntu:22.04"
        assert runner.command == list(SandboxDefaults().idle_command)
        assert runner.working_dir == "/workspace"
        assert {m.mount_path for m in runner.volume_mounts} == {"/workspace", "/tmp/runner"}
        assert runner.security_context.capabilities.drop == ["ALL"]
        assert runner.readiness_probe is not None

    def test_template_constraints_applied(self):
        spec = _build(_job())
        pod_spec = spec.pod.spec
        assert pod_spec.node_selector["kubernetes.io/os"] == "linux"
        assert pod_spec.tolerations[0].key == "nvidia.com/gpu"
        assert _container(spec, "runner").resources.limits["nvidia.com/gpu"] == "1"
        assert pod_spec.restart_policy == "Never"
        assert pod_spec.automount_service_account_token is False

    def test_no_labels_no_constraints(self):
        spec = _build(_job(), labels=())
        assert spec.pod.spec.node_selector is None
        assert spec.pod.spec.tolerations is None

    def test_cache_volume_when_configured(self):
        spec = _build(_job(), sandbox=SandboxDefaults(cache_claim_name="ci-cache"))
        volumes = {v.name: v for v in spec.pod.spec.volumes}
        assert volumes["cache"].persistent_volume_claim.claim_name == "ci-cache"
        assert spec.runner_env["RUNNER_CACHE"] == "/cache"

    def test_image_pull_secrets(self):
        spec = _build(_job(), cluster=ClusterDefaults(image_pull_secrets=("regcred",)))
        assert [s.name for s in spec.pod.spec.image_pull_secrets] == ["regcred"]


class TestServices:

    def test_services_share_the_pod(self):
        job = _job(services={
            "postgres": {"image": "postgres:16", "ports": [5432], "env": {"POSTGRES_PASSWORD": "x"}},
            "redis": {"image": "redis:7", "ports": [6379]},
        })
        spec = _build(job)

        assert [c.name for c in spec.pod.spec.containers] == ["runner", "postgres", "redis"]
        assert spec.service_units == ("postgres", "redis")
        assert spec.pod.spec.host_aliases[0].hostnames == ["postgres", "redis"]
        assert spec.runner_env["POSTGRES_HOST"] == "postgres"
        assert spec.runner_env["REDIS_PORT_6379"] == "6379"
        # Services without resources get the service defaults
        assert _container(spec, "redis").resources.requests == {"cpu": "100m", "memory": "256Mi"}

    def test_port_clash_rejected(self):
        job = _job(services={
            "a": {"image": "nginx", "ports": [8080]},
            "b": {"image": "httpd", "ports": [8080]},
        })
        with pytest.raises(ConfigError, match="port 8080"):
            _build(job)

    def test_runner_name_clash_rejected(self):
        job = _job(services={"tester": {"image": "nginx"}})
        with pytest.raises(ConfigError, match="clashes"):
            _build(job, sandbox=SandboxDefaults(runner_unit="tester"))


class TestConfigObjects:

    def test_env_and_secrets(self):
        spec = _build(_job(env={"MODE": "ci"}, secrets={"TOKEN": "s3cret"}))

        assert spec.config_map.metadata.name == f"{spec.name}-env"
        assert spec.config_map.data == {"MODE": "ci"}
        assert spec.secret.metadata.name == f"{spec.name}-secrets"
        assert spec.secret.string_data == {"TOKEN": "s3cret"}

        env_from = _container(spec, "runner").env_from
        assert env_from[0].config_map_ref.name == spec.config_map_name
        assert env_from[1].secret_ref.name == spec.secret_name

    def test_no_config_objects_without_env(self):
        spec = _build(_job())
        assert spec.config_map is None
        assert spec.secret is None
        assert _container(spec, "runner").env_from is None

    def test_runner_env(self):
        spec = _build(_job())
        assert spec.runner_env["CI"] == "true"
        assert spec.runner_env["CI_JOB_ID"] == "Build_Linux.1"
        assert spec.runner_env["RUNNER_WORKSPACE"] == "/workspace"
