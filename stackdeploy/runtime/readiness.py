"""Bounded-wait readiness polling over typed pod states."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional

from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from ..common.models import RunOutcome, StageResult
from ..core.config import DeployConfig
from ..utils.console import SUCCESS
from .kubernetes import ClusterApi

STAGE = "readiness"

# container waiting reasons that mean the pod will not recover on its own
BACKOFF_REASONS = frozenset(
    {
        "CrashLoopBackOff",
        "ErrImagePull",
        "ImagePullBackOff",
        "InvalidImageName",
        "CreateContainerConfigError",
        "CreateContainerError",
        "RunContainerError",
    }
)


class PodStatus(Enum):
    """Pod condition derived from the structured pod status."""
    READY = "ready"
    COMPLETED = "completed"
    TERMINATING = "terminating"
    PENDING = "pending"
    STARTING = "starting"
    CRASHING = "crashing"
    FAILED = "failed"
    UNKNOWN = "unknown"

    @property
    def acceptable(self) -> bool:
        """Terminal healthy state: running and ready, or run to completion."""
        return self in (PodStatus.READY, PodStatus.COMPLETED)

    @property
    def counts_as_not_ready(self) -> bool:
        # terminating pods are expected noise during a rolling restart
        return not self.acceptable and self is not PodStatus.TERMINATING


def classify_pod(pod: Any) -> PodStatus:
    """Map a V1Pod onto a PodStatus."""
    metadata = getattr(pod, "metadata", None)
    if metadata is not None and getattr(metadata, "deletion_timestamp", None):
        return PodStatus.TERMINATING

    status = getattr(pod, "status", None)
    if status is None:
        return PodStatus.UNKNOWN

    phase = status.phase
    if phase == "Succeeded":
        return PodStatus.COMPLETED
    if phase == "Failed":
        return PodStatus.FAILED

    for container in status.container_statuses or []:
        waiting = container.state.waiting if container.state else None
        if waiting is not None and waiting.reason in BACKOFF_REASONS:
            return PodStatus.CRASHING

    if phase == "Pending":
        return PodStatus.PENDING
    if phase == "Running":
        for condition in status.conditions or []:
            if condition.type == "Ready":
                return PodStatus.READY if condition.status == "True" else PodStatus.STARTING
        return PodStatus.STARTING
    return PodStatus.UNKNOWN


def count_not_ready(statuses: Iterable[PodStatus]) -> int:
    return sum(1 for status in statuses if status.counts_as_not_ready)


class ReadinessState(Enum):
    WAITING = "waiting"
    READY = "ready"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass(slots=True)
class PollReport:
    """Final state of a readiness wait."""

    state: ReadinessState
    elapsed: float
    ticks: int
    not_ready: Optional[int]
    snapshot: Dict[str, PodStatus] = field(default_factory=dict)
    error: Optional[str] = None

    def describe_snapshot(self) -> str:
        if not self.snapshot:
            return "no pods"
        return ", ".join(f"{name}={status.value}" for name, status in sorted(self.snapshot.items()))

    def to_outcome(self) -> RunOutcome:
        if self.state is ReadinessState.READY:
            return RunOutcome.ok(STAGE, f"all pods ready after {self.elapsed:.0f}s")
        if self.state is ReadinessState.TIMED_OUT:
            if self.not_ready is None:
                return RunOutcome.timed_out(STAGE, f"pod status unknown after {self.elapsed:.0f}s: {self.error}")
            return RunOutcome.timed_out(
                STAGE,
                f"{self.not_ready} pod(s) not ready after {self.elapsed:.0f}s: {self.describe_snapshot()}",
            )
        return RunOutcome.failed(STAGE, f"pod status query failed: {self.error}")


ProgressCallback = Callable[[int, float, float], None]


class ReadinessPoller:
    """
    Block until every pod in the namespace is ready or the budget runs out.

    Each tick lists the namespace's pods and counts those not in an acceptable
    terminal state. Zero means ready. Otherwise, once the elapsed time reaches
    ``readiness_timeout`` the wait ends as timed out with the last snapshot;
    until then a progress callback fires and the poller sleeps
    ``poll_interval`` before re-querying.

    Query errors are retried according to ``poller_retry``; too many
    consecutive failures end the wait as failed.
    """

    def __init__(
        self,
        *,
        config: DeployConfig,
        cluster: ClusterApi,
        progress: Optional[ProgressCallback] = None,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.cluster = cluster
        self.logger = logger or logging.getLogger(__name__)
        self.progress = progress or self._log_progress
        self.clock = clock
        self.sleep = sleep

    def wait(self, namespace: Optional[str] = None, timeout: Optional[float] = None) -> PollReport:
        namespace = namespace or self.config.namespace
        timeout = self.config.readiness_timeout if timeout is None else timeout
        interval = self.config.poll_interval
        retry = self.config.poller_retry

        self.logger.info("Waiting for pods to be ready...")
        start = self.clock()
        ticks = 0
        consecutive_errors = 0
        snapshot: Dict[str, PodStatus] = {}
        not_ready: Optional[int] = None
        last_error: Optional[str] = None

        while True:
            ticks += 1
            try:
                snapshot = self.snapshot(namespace)
            except (ApiException, HTTPError) as exc:
                consecutive_errors += 1
                last_error = str(exc)
                self.logger.warning(
                    "Pod status query failed (%d/%d): %s",
                    consecutive_errors,
                    retry.max_attempts,
                    exc,
                )
                if consecutive_errors >= retry.max_attempts:
                    return PollReport(
                        state=ReadinessState.FAILED,
                        elapsed=self.clock() - start,
                        ticks=ticks,
                        not_ready=not_ready,
                        snapshot=snapshot,
                        error=str(exc),
                    )
            else:
                consecutive_errors = 0
                not_ready = count_not_ready(snapshot.values())
                if not_ready == 0:
                    elapsed = self.clock() - start
                    self.logger.info("All pods are running", extra=SUCCESS)
                    return PollReport(ReadinessState.READY, elapsed, ticks, 0, snapshot)

            elapsed = self.clock() - start
            if elapsed >= timeout:
                self.logger.error("Timeout waiting for pods (%ss)", timeout)
                report = PollReport(ReadinessState.TIMED_OUT, elapsed, ticks, not_ready, snapshot, last_error)
                self.logger.error("Pod states: %s", report.describe_snapshot())
                return report

            remaining = max(0.0, timeout - elapsed)
            if consecutive_errors:
                self.sleep(min(max(interval, retry.delay_for(consecutive_errors)), remaining))
                continue

            self.progress(not_ready or 0, elapsed, timeout)
            self.sleep(min(interval, remaining))

    def run(self, namespace: Optional[str] = None) -> StageResult:
        report = self.wait(namespace)
        return StageResult(stage=STAGE, outcomes=[report.to_outcome()])

    def snapshot(self, namespace: str) -> Dict[str, PodStatus]:
        pods = self.cluster.core.list_namespaced_pod(namespace)
        return {pod.metadata.name: classify_pod(pod) for pod in pods.items}

    def _log_progress(self, not_ready: int, elapsed: float, timeout: float) -> None:
        self.logger.info("Waiting for %d pod(s)... (%.0fs/%.0fs)", not_ready, elapsed, timeout)
