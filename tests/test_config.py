"""Unit tests for the deploy configuration model and loader."""

from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from stackdeploy.common.models import ImageRef, ResourceDescriptor, WorkloadRef
from stackdeploy.core.config import DeployConfig, RetryPolicy, load_deploy_config, normalize_image_reference


def make_config(**overrides) -> DeployConfig:
    values = {
        "namespace": "agent-scheduler",
        "expected_context": "docker-desktop",
        "node_name": "desktop-control-plane",
        "kubeconfig": None,
    }
    values.update(overrides)
    return DeployConfig(**values)


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("scheduler", "docker.io/library/scheduler:latest"),
        ("scheduler:latest", "docker.io/library/scheduler:latest"),
        ("org/app:1.2", "docker.io/org/app:1.2"),
        ("ghcr.io/org/app:2", "ghcr.io/org/app:2"),
        ("localhost:5000/app", "localhost:5000/app:latest"),
    ],
)
def test_normalize_image_reference(name: str, expected: str) -> None:
    assert normalize_image_reference(name) == expected


def test_default_stack_definition() -> None:
    config = make_config()

    assert [image.local_identifier for image in config.images] == [
        "scheduler:latest",
        "scheduler-ui:latest",
        "agent-db-api:latest",
        "agent-ctl:latest",
    ]
    ordered = [resource.name for resource in config.ordered_resources()]
    assert ordered[0] == "namespace"
    assert ordered[-1] == "ingress"
    assert ordered.index("postgres") < ordered.index("scheduler")
    assert all(workload.namespace == "agent-scheduler" for workload in config.workloads)
    assert len(config.endpoints) == 3


def test_ordered_resources_sorts_by_index() -> None:
    config = make_config(
        resources=[
            ResourceDescriptor(name="late", path="b.yaml", apply_order_index=5),
            ResourceDescriptor(name="early", path="a.yaml", apply_order_index=1),
        ]
    )

    assert [resource.name for resource in config.ordered_resources()] == ["early", "late"]


def test_duplicate_apply_order_index_rejected() -> None:
    with pytest.raises(ValidationError):
        make_config(
            resources=[
                ResourceDescriptor(name="a", path="a.yaml", apply_order_index=0),
                ResourceDescriptor(name="b", path="b.yaml", apply_order_index=0),
            ]
        )


def test_wait_for_and_workloads_inherit_namespace() -> None:
    config = make_config(
        namespace="staging",
        resources=[
            ResourceDescriptor(
                name="db",
                path="db.yaml",
                apply_order_index=0,
                wait_for=WorkloadRef(name="postgres", kind="statefulset"),
            )
        ],
        workloads=[WorkloadRef(name="api"), WorkloadRef(name="worker", namespace="jobs")],
    )

    assert config.resources[0].wait_for == WorkloadRef(name="postgres", namespace="staging", kind="StatefulSet")
    assert [w.namespace for w in config.workloads] == ["staging", "jobs"]


def test_find_and_select_images() -> None:
    config = make_config()

    assert config.find_image("scheduler").local_identifier == "scheduler:latest"
    assert config.find_image("docker.io/library/agent-ctl:latest").local_identifier == "agent-ctl:latest"

    custom = config.find_image("custom:1.0")
    assert custom == ImageRef(local_identifier="custom:1.0", target_identifier="docker.io/library/custom:1.0")

    selected = config.select_images(["scheduler:latest", "scheduler", "scheduler-ui"])
    assert [image.local_identifier for image in selected] == ["scheduler:latest", "scheduler-ui:latest"]
    assert config.select_images([]) == config.images


def test_retry_policy_backoff() -> None:
    policy = RetryPolicy(max_attempts=4, backoff_seconds=2, backoff_multiplier=2)

    assert policy.delay_for(0) == 0.0
    assert policy.delay_for(1) == 2
    assert policy.delay_for(3) == 8


def test_load_yaml_config_resolves_manifest_dir(tmp_path) -> None:
    config_path = tmp_path / "deploy.yaml"
    config_path.write_text(
        "\n".join(
            [
                "namespace: demo",
                "manifest_dir: k8s",
                "readiness_timeout: 30",
                "variables:",
                "  IMAGE_TAG: v2",
            ]
        ),
        encoding="utf-8",
    )

    config = load_deploy_config(config_path)

    assert config.namespace == "demo"
    assert config.readiness_timeout == 30
    assert config.variables == {"IMAGE_TAG": "v2"}
    assert config.manifest_root == (tmp_path / "k8s").resolve()


def test_load_json_config(tmp_path) -> None:
    config_path = tmp_path / "deploy.json"
    config_path.write_text(json.dumps({"node_name": "kind-control-plane", "max_image_workers": 2}), encoding="utf-8")

    config = load_deploy_config(config_path)

    assert config.node_name == "kind-control-plane"
    assert config.max_image_workers == 2


def test_load_config_errors(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        load_deploy_config(tmp_path / "missing.yaml")

    unsupported = tmp_path / "deploy.txt"
    unsupported.write_text("namespace: x", encoding="utf-8")
    with pytest.raises(ValueError):
        load_deploy_config(unsupported)

    empty = tmp_path / "empty.yaml"
    empty.write_text("", encoding="utf-8")
    with pytest.raises(ValueError):
        load_deploy_config(empty)
