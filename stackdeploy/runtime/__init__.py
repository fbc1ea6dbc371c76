"""Runtime components that act on the docker daemon, the node and the cluster."""

from .images import ImageDistributor, load_docker_client
from .kubernetes import (
    AppliedResource,
    ClusterApi,
    ClusterInspector,
    ResourceApplier,
    RestartTrigger,
    RolloutWaiter,
    substitute_variables,
)
from .readiness import PodStatus, PollReport, ReadinessPoller, ReadinessState, classify_pod
from .health import CONNECTION_FAILED, HealthVerifier, ProbeResult, VerificationReport, is_healthy_status
from .preflight import PreflightChecker

__all__ = [
    "ImageDistributor",
    "load_docker_client",
    "AppliedResource",
    "ClusterApi",
    "ClusterInspector",
    "ResourceApplier",
    "RestartTrigger",
    "RolloutWaiter",
    "substitute_variables",
    "PodStatus",
    "PollReport",
    "ReadinessPoller",
    "ReadinessState",
    "classify_pod",
    "CONNECTION_FAILED",
    "HealthVerifier",
    "ProbeResult",
    "VerificationReport",
    "is_healthy_status",
    "PreflightChecker",
]
