"""Kubernetes helpers: manifest application, rollout restarts and status snapshots."""

from __future__ import annotations

import logging
import os
import re
import tempfile
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import yaml
from kubernetes import client, config as kube_config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from ..common.command_runner import CommandRunner
from ..common.models import ResourceDescriptor, RunOutcome, StageResult, StageStatus, WorkloadRef
from ..core.config import DeployConfig
from ..utils.console import SUCCESS

RESTART_ANNOTATION = "kubectl.kubernetes.io/restartedAt"


class ClusterApi:
    """Lazily configured Kubernetes API clients for one kubeconfig."""

    def __init__(
        self,
        kubeconfig: Optional[str] = None,
        *,
        core: Optional[Any] = None,
        apps: Optional[Any] = None,
    ) -> None:
        self.kubeconfig = kubeconfig
        self._core = core
        self._apps = apps
        self._loaded = False

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            kube_config.load_kube_config(config_file=self.kubeconfig)
            self._loaded = True

    @property
    def core(self) -> client.CoreV1Api:
        if self._core is None:
            self._ensure_loaded()
            self._core = client.CoreV1Api()
        return self._core

    @property
    def apps(self) -> client.AppsV1Api:
        if self._apps is None:
            self._ensure_loaded()
            self._apps = client.AppsV1Api()
        return self._apps

    def current_context(self) -> Optional[str]:
        """Name of the active kubeconfig context, or None when it cannot be read."""
        try:
            _, active = kube_config.list_kube_config_contexts(config_file=self.kubeconfig)
        except (ConfigException, OSError):
            return None
        return (active or {}).get("name")


@dataclass(slots=True)
class AppliedResource:
    """Represents a Kubernetes object declared in an applied manifest."""

    kind: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.name}"


class RolloutWaiter:
    """Wait until a deployment or stateful set reports all replicas ready."""

    def __init__(
        self,
        cluster: ClusterApi,
        *,
        poll_interval: float = 2,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.cluster = cluster
        self.poll_interval = poll_interval
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock
        self.sleep = sleep

    def wait(self, workload: WorkloadRef, timeout: float, stage: str = "apply") -> RunOutcome:
        self.logger.info("Waiting for %s to be ready in namespace %s...", workload, workload.namespace)
        start = self.clock()
        last_state = "unknown"

        while True:
            try:
                obj = self._read_status(workload)
            except ApiException as exc:
                if exc.status != 404:
                    self.logger.error("Failed to read %s: %s", workload, exc.reason)
                    return RunOutcome.failed(stage, f"cannot read rollout status: {exc.reason}", subject=str(workload))
                last_state = "not found"
            else:
                desired = (obj.spec.replicas if obj.spec and obj.spec.replicas is not None else 1)
                ready = (obj.status.ready_replicas or 0) if obj.status else 0
                last_state = f"{ready}/{desired} ready"
                if ready >= desired:
                    self.logger.info("%s is ready (%s)", workload, last_state, extra=SUCCESS)
                    return RunOutcome.ok(stage, f"rollout complete ({last_state})", subject=str(workload))

            elapsed = self.clock() - start
            if elapsed >= timeout:
                self.logger.error("%s did not become ready within %ss (%s)", workload, timeout, last_state)
                return RunOutcome.timed_out(stage, f"not ready within {timeout}s ({last_state})", subject=str(workload))
            self.sleep(min(self.poll_interval, timeout - elapsed))

    def _read_status(self, workload: WorkloadRef):
        if workload.kind == "StatefulSet":
            return self.cluster.apps.read_namespaced_stateful_set_status(workload.name, workload.namespace)
        return self.cluster.apps.read_namespaced_deployment_status(workload.name, workload.namespace)


class ResourceApplier:
    """Apply manifests in dependency order with create-or-update semantics."""

    stage = "apply"

    def __init__(
        self,
        *,
        config: DeployConfig,
        command_runner: CommandRunner,
        rollout_waiter: Optional[RolloutWaiter] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config
        self.command_runner = command_runner
        self.rollout_waiter = rollout_waiter
        self.logger = logger or logging.getLogger(__name__)

    def apply(self, resources: Optional[Sequence[ResourceDescriptor]] = None) -> StageResult:
        """
        Apply every descriptor in ``apply_order_index`` order.

        Each descriptor is attempted regardless of earlier failures; a missing
        manifest is skipped with a warning.
        """
        ordered = sorted(
            resources if resources is not None else self.config.resources,
            key=lambda resource: resource.apply_order_index,
        )
        result = StageResult(stage=self.stage)
        self.logger.info("Applying Kubernetes manifests...")

        for resource in ordered:
            outcome = self.apply_one(resource)
            result.outcomes.append(outcome)
            if outcome.status is StageStatus.OK and resource.wait_for is not None:
                result.outcomes.append(self._wait_for_rollout(resource.wait_for))

        if result.success:
            self.logger.info("Manifests applied", extra=SUCCESS)
        else:
            self.logger.error("Some manifests failed to apply: %s", result.summary().detail)
        return result

    def apply_one(self, resource: ResourceDescriptor) -> RunOutcome:
        manifest_path = self.resolve_path(resource)
        if not manifest_path.is_file():
            self.logger.warning("Manifest not found: %s", resource.path)
            return RunOutcome.skipped(self.stage, f"manifest not found: {resource.path}", subject=resource.name)

        if manifest_path.suffix.lower() not in (".yaml", ".yml", ".json"):
            self.logger.warning("Skipping non-manifest file: %s", resource.path)
            return RunOutcome.skipped(self.stage, f"not a manifest: {resource.path}", subject=resource.name)

        rendered_path: Optional[Path] = None
        try:
            rendered_path = self._render(manifest_path)
            self.logger.info("Applying %s...", manifest_path.name)
            result = self.command_runner.run(
                ["kubectl", "apply", "-f", str(rendered_path)],
                timeout=self.config.apply_timeout,
            )

            if result.timed_out:
                self.logger.error("kubectl apply timed out for %s", resource.path)
                return RunOutcome.timed_out(self.stage, "kubectl apply timed out", subject=resource.name)
            if not result.tool_available:
                return RunOutcome.failed(self.stage, "kubectl not available - cannot apply manifest", subject=resource.name)
            if (result.return_code or 0) != 0:
                self.logger.error("Failed to apply %s: %s", resource.path, result.stderr.strip())
                return RunOutcome.failed(self.stage, f"kubectl apply failed: {result.stderr.strip()}", subject=resource.name)

            applied = self._extract_resource_names(rendered_path)
            self.logger.debug("Applied %s: %s", resource.path, ", ".join(str(item) for item in applied))
            return RunOutcome.ok(
                self.stage,
                ", ".join(str(item) for item in applied) or "applied",
                subject=resource.name,
            )
        except OSError as exc:
            self.logger.error("Error applying %s: %s", resource.path, exc)
            return RunOutcome.failed(self.stage, f"error applying manifest: {exc}", subject=resource.name)
        finally:
            if rendered_path is not None and rendered_path != manifest_path:
                rendered_path.unlink(missing_ok=True)

    def resolve_path(self, resource: ResourceDescriptor) -> Path:
        path = Path(resource.path).expanduser()
        if path.is_absolute():
            return path
        return self.config.manifest_root / path

    def _wait_for_rollout(self, workload: WorkloadRef) -> RunOutcome:
        if self.rollout_waiter is None:
            return RunOutcome.skipped(self.stage, "no cluster access for rollout gate", subject=str(workload))
        return self.rollout_waiter.wait(workload, self.config.rollout_timeout, stage=self.stage)

    def _render(self, manifest_path: Path) -> Path:
        """Write a copy of the manifest with ``variables`` substituted; no-op without variables."""
        if not self.config.variables:
            return manifest_path

        content = manifest_path.read_text(encoding="utf-8")
        rendered = substitute_variables(content, self.config.variables)
        if rendered == content:
            return manifest_path

        fd, temp_name = tempfile.mkstemp(prefix=f"{manifest_path.stem}.", suffix=manifest_path.suffix)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(rendered)
        self.logger.debug("Rendered %s to %s", manifest_path, temp_name)
        return Path(temp_name)

    def _extract_resource_names(self, manifest_path: Path) -> List[AppliedResource]:
        resources: List[AppliedResource] = []
        try:
            with open(manifest_path, "r", encoding="utf-8") as handle:
                docs = list(yaml.safe_load_all(handle))
        except (OSError, yaml.YAMLError) as exc:
            self.logger.warning("Failed to extract resource names from %s: %s", manifest_path, exc)
            return resources

        for doc in docs:
            if doc and isinstance(doc, dict):
                kind = doc.get("kind")
                name = (doc.get("metadata") or {}).get("name")
                if kind and name:
                    resources.append(AppliedResource(kind=kind, name=name))
        return resources


def substitute_variables(content: str, variables: Dict[str, str]) -> str:
    """Replace ``${NAME}`` and bare ``NAME`` tokens with their configured values."""
    for name, value in variables.items():
        pattern = re.compile(r"\$\{" + re.escape(name) + r"\}|\b" + re.escape(name) + r"\b")
        content = pattern.sub(lambda _match: str(value), content)
    return content


class RestartTrigger:
    """Request rolling restarts by stamping the pod template, like ``kubectl rollout restart``."""

    stage = "restart"

    def __init__(
        self,
        *,
        config: DeployConfig,
        cluster: ClusterApi,
        logger: Optional[logging.Logger] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.config = config
        self.cluster = cluster
        self.logger = logger or logging.getLogger(__name__)
        self.now = now

    def restart(self, workloads: Optional[Sequence[WorkloadRef]] = None) -> StageResult:
        targets = list(workloads) if workloads is not None else list(self.config.workloads)
        result = StageResult(stage=self.stage)
        self.logger.info("Restarting deployments...")

        for workload in targets:
            result.outcomes.append(self.restart_one(workload))

        if result.success:
            self.logger.info("Deployments restarted", extra=SUCCESS)
        return result

    def restart_one(self, workload: WorkloadRef) -> RunOutcome:
        self.logger.info("Restarting %s...", workload.name)
        body = {
            "spec": {
                "template": {
                    "metadata": {"annotations": {RESTART_ANNOTATION: self.now().isoformat()}}
                }
            }
        }
        namespace = workload.namespace or self.config.namespace
        try:
            if workload.kind == "StatefulSet":
                self.cluster.apps.patch_namespaced_stateful_set(workload.name, namespace, body)
            else:
                self.cluster.apps.patch_namespaced_deployment(workload.name, namespace, body)
        except ApiException as exc:
            if exc.status == 404:
                self.logger.warning("%s not found in namespace %s, skipping restart", workload, namespace)
                return RunOutcome.skipped(self.stage, "workload not found", subject=workload.name)
            self.logger.error("Failed to restart %s: %s", workload, exc.reason)
            return RunOutcome.failed(self.stage, f"restart request rejected: {exc.status} {exc.reason}", subject=workload.name)

        return RunOutcome.ok(self.stage, "restart requested", subject=workload.name)


class ClusterInspector:
    """Read-only listings of what is running in the namespace."""

    def __init__(
        self,
        *,
        config: DeployConfig,
        command_runner: CommandRunner,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config
        self.command_runner = command_runner
        self.logger = logger or logging.getLogger(__name__)

    def listing(self, kinds: str) -> RunOutcome:
        """Return ``kubectl get <kinds>`` output for the namespace as the outcome detail."""
        result = self.command_runner.run(
            ["kubectl", "get", kinds, "-n", self.config.namespace],
            timeout=30,
        )
        if not result.succeeded():
            self.logger.warning("Could not list %s: %s", kinds, result.error_text())
            return RunOutcome.failed("status", result.error_text(), subject=kinds)
        return RunOutcome.ok("status", result.stdout, subject=kinds)

    def summary(self) -> List[RunOutcome]:
        return [self.listing(kinds) for kinds in ("pods", "deployments", "services", "ingress")]
