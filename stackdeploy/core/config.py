"""Configuration model and loader for deployment runs."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from ..common.models import EndpointProbe, ImageRef, ResourceDescriptor, WorkloadRef

DEFAULT_NAMESPACE = "agent-scheduler"


class RetryPolicy(BaseModel):
    """Bounded retry with exponential backoff."""

    max_attempts: int = Field(default=1, ge=1)
    backoff_seconds: float = Field(default=2.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1 = first retry)."""
        if attempt < 1:
            return 0.0
        return self.backoff_seconds * (self.backoff_multiplier ** (attempt - 1))


def normalize_image_reference(name: str) -> str:
    """
    Expand a short docker image name the way containerd stores it.

    'scheduler' -> 'docker.io/library/scheduler:latest'
    'org/app:1' -> 'docker.io/org/app:1'
    """
    name = name.strip()
    last_segment = name.rsplit("/", 1)[-1]
    if ":" not in last_segment and "@" not in last_segment:
        name = f"{name}:latest"

    first, _, rest = name.partition("/")
    if not rest:
        return f"docker.io/library/{name}"
    if "." in first or ":" in first or first == "localhost":
        return name
    return f"docker.io/{name}"


def _default_images() -> List[ImageRef]:
    names = ["scheduler:latest", "scheduler-ui:latest", "agent-db-api:latest", "agent-ctl:latest"]
    return [ImageRef(local_identifier=n, target_identifier=normalize_image_reference(n)) for n in names]


def _default_resources() -> List[ResourceDescriptor]:
    manifests = [
        ("namespace", "00-namespace.yaml"),
        ("config", "01-configmap.yaml"),
        ("secrets", "02-secrets.yaml"),
        ("database-schema", "07-database-schema-configmap.yaml"),
        ("agent-db-schema", "08-agent-db-schema-configmap.yaml"),
        ("postgres", "03-postgres-statefulset.yaml"),
        ("scheduler", "04-scheduler-deployment.yaml"),
        ("ui", "05-ui-deployment.yaml"),
        ("agent-db-api", "09-agent-db-deployment.yaml"),
        ("agent-ctl", "10-agent-ctl-deployment.yaml"),
        ("ingress", "06-ingress.yaml"),
    ]
    return [
        ResourceDescriptor(name=name, path=path, apply_order_index=index)
        for index, (name, path) in enumerate(manifests)
    ]


def _default_workloads() -> List[WorkloadRef]:
    return [WorkloadRef(name=name, kind="Deployment") for name in ("scheduler", "ui", "agent-db-api", "agent-ctl")]


def _default_endpoints() -> List[EndpointProbe]:
    return [
        EndpointProbe(url="http://scheduler.local/", label="UI"),
        EndpointProbe(url="http://scheduler.local/api/v1/health", label="Scheduler API"),
        EndpointProbe(url="http://scheduler.local/admin/api/warehouses", label="Admin API"),
    ]


class DeployConfig(BaseModel):
    """Everything a deployment run needs; passed explicitly to every component."""

    # Cluster settings
    namespace: str = Field(default_factory=lambda: os.environ.get("DEPLOY_NAMESPACE", DEFAULT_NAMESPACE))
    expected_context: str = Field(default_factory=lambda: os.environ.get("DEPLOY_CONTEXT", "docker-desktop"))
    kubeconfig: Optional[str] = Field(default_factory=lambda: os.environ.get("KUBECONFIG") or None)
    manifest_dir: str = Field(default_factory=lambda: os.environ.get("DEPLOY_MANIFEST_DIR", "."))

    # Node runtime settings
    node_name: str = Field(default_factory=lambda: os.environ.get("DEPLOY_NODE", "desktop-control-plane"))
    runtime_namespace: str = "k8s.io"
    required_tools: List[str] = Field(default_factory=lambda: ["kubectl", "docker"])

    # Timeout settings (seconds)
    readiness_timeout: float = Field(default=120, gt=0)
    poll_interval: float = Field(default=2, gt=0)
    rollout_timeout: float = Field(default=300, gt=0)
    probe_timeout: float = Field(default=5, gt=0, description="Connect timeout for health probes")
    probe_read_timeout: float = Field(default=30, gt=0)
    apply_timeout: float = Field(default=60, gt=0)
    image_import_timeout: float = Field(default=600, gt=0)

    # Concurrency and retries
    max_image_workers: int = Field(default=4, ge=1)
    distribution_retry: RetryPolicy = Field(default_factory=RetryPolicy)
    poller_retry: RetryPolicy = Field(default_factory=lambda: RetryPolicy(max_attempts=3, backoff_seconds=2))

    # Stack definition
    images: List[ImageRef] = Field(default_factory=_default_images)
    resources: List[ResourceDescriptor] = Field(default_factory=_default_resources)
    workloads: List[WorkloadRef] = Field(default_factory=_default_workloads)
    endpoints: List[EndpointProbe] = Field(default_factory=_default_endpoints)
    variables: Dict[str, str] = Field(
        default_factory=dict,
        description="Placeholder substitutions applied to manifests before kubectl apply.",
    )

    @field_validator("namespace", "node_name", "expected_context")
    @classmethod
    def _strip_whitespace(cls, value: str) -> str:
        return value.strip()

    @model_validator(mode="after")
    def _validate_stack(self) -> "DeployConfig":
        indexes = [resource.apply_order_index for resource in self.resources]
        if len(indexes) != len(set(indexes)):
            raise ValueError("Resource apply_order_index values must be unique.")

        local_names = [image.local_identifier for image in self.images]
        if len(local_names) != len(set(local_names)):
            raise ValueError("Image local identifiers must be unique.")

        # workloads without an explicit namespace live in the deployment namespace
        self.workloads = [self._scoped(workload) for workload in self.workloads]
        self.resources = [
            resource.model_copy(update={"wait_for": self._scoped(resource.wait_for)})
            if resource.wait_for is not None
            else resource
            for resource in self.resources
        ]
        return self

    def _scoped(self, workload: WorkloadRef) -> WorkloadRef:
        if workload.namespace:
            return workload
        return workload.model_copy(update={"namespace": self.namespace})

    @property
    def manifest_root(self) -> Path:
        return Path(self.manifest_dir).expanduser()

    def ordered_resources(self) -> List[ResourceDescriptor]:
        return sorted(self.resources, key=lambda resource: resource.apply_order_index)

    def find_image(self, name: str) -> ImageRef:
        """Resolve a user supplied image name to a configured ImageRef."""
        name = name.strip()
        for image in self.images:
            if name in (image.local_identifier, image.target_identifier):
                return image
        for image in self.images:
            if image.local_identifier.split(":", 1)[0] == name:
                return image
        return ImageRef(local_identifier=name, target_identifier=normalize_image_reference(name))

    def select_images(self, names: Optional[List[str]] = None) -> List[ImageRef]:
        if not names:
            return list(self.images)
        selected: List[ImageRef] = []
        for name in names:
            image = self.find_image(name)
            if image not in selected:
                selected.append(image)
        return selected


def load_deploy_config(path: str | Path) -> DeployConfig:
    """Load a deployment configuration from a YAML or JSON file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Deploy config file not found: {path}")

    suffix = path.suffix.lower()
    if suffix in {".yaml", ".yml"}:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    elif suffix == ".json":
        data = json.loads(path.read_text(encoding="utf-8"))
    else:
        raise ValueError(f"Unsupported deploy config format: {suffix}")

    if data is None:
        raise ValueError(f"Deploy config file {path} is empty.")

    config = DeployConfig.model_validate(data)
    # relative manifest directories are resolved against the config file location
    if "manifest_dir" in data and not Path(config.manifest_dir).is_absolute():
        config = config.model_copy(update={"manifest_dir": str((path.parent / config.manifest_dir).resolve())})
    return config


__all__ = ["DeployConfig", "RetryPolicy", "load_deploy_config", "normalize_image_reference"]
