"""Shared data models used across the runtime components and the driver."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ImageRef(BaseModel):
    """A locally built image and the name it should carry in the node image store."""

    model_config = ConfigDict(frozen=True)

    local_identifier: str = Field(description="Image name in the local docker daemon (e.g. 'scheduler:latest')")
    target_identifier: str = Field(description="Fully qualified name inside the node runtime (e.g. 'docker.io/library/scheduler:latest')")

    @field_validator("local_identifier", "target_identifier")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Image identifiers cannot be empty.")
        return value


class WorkloadRef(BaseModel):
    """A restartable, pollable workload."""

    model_config = ConfigDict(frozen=True)

    name: str
    namespace: Optional[str] = Field(default=None, description="Defaults to the deployment namespace")
    kind: str = Field(default="Deployment", description="'Deployment' or 'StatefulSet'")

    @field_validator("kind")
    @classmethod
    def _validate_kind(cls, value: str) -> str:
        normalized = {"deployment": "Deployment", "statefulset": "StatefulSet"}.get(value.strip().lower())
        if normalized is None:
            raise ValueError(f"Unsupported workload kind: {value}")
        return normalized

    def __str__(self) -> str:
        return f"{self.kind.lower()}/{self.name}"


class ResourceDescriptor(BaseModel):
    """One manifest applied to the cluster, ordered by ``apply_order_index``."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(description="Human readable resource name")
    path: str = Field(description="Manifest path, relative to the manifest directory unless absolute")
    apply_order_index: int = Field(ge=0)
    wait_for: Optional[WorkloadRef] = Field(
        default=None,
        description="Workload whose rollout must finish before the next resource is applied.",
    )

    @field_validator("name", "path")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Resource name and path cannot be empty.")
        return value


class EndpointProbe(BaseModel):
    """A named health-check target."""

    model_config = ConfigDict(frozen=True)

    url: str
    label: str


class StageStatus(Enum):
    """Outcome of a single orchestration step."""
    OK = "ok"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    SKIPPED = "skipped"

    @property
    def is_failure(self) -> bool:
        return self in (StageStatus.FAILED, StageStatus.TIMED_OUT)


@dataclass(frozen=True, slots=True)
class RunOutcome:
    """Immutable record of one component invocation (or one item within it)."""

    stage: str
    status: StageStatus
    detail: str = ""
    subject: Optional[str] = None

    @classmethod
    def ok(cls, stage: str, detail: str = "", subject: Optional[str] = None) -> "RunOutcome":
        return cls(stage=stage, status=StageStatus.OK, detail=detail, subject=subject)

    @classmethod
    def failed(cls, stage: str, detail: str, subject: Optional[str] = None) -> "RunOutcome":
        return cls(stage=stage, status=StageStatus.FAILED, detail=detail, subject=subject)

    @classmethod
    def timed_out(cls, stage: str, detail: str, subject: Optional[str] = None) -> "RunOutcome":
        return cls(stage=stage, status=StageStatus.TIMED_OUT, detail=detail, subject=subject)

    @classmethod
    def skipped(cls, stage: str, detail: str = "", subject: Optional[str] = None) -> "RunOutcome":
        return cls(stage=stage, status=StageStatus.SKIPPED, detail=detail, subject=subject)


def fold_statuses(statuses: List[StageStatus]) -> StageStatus:
    """Collapse item statuses into one: timed_out > failed > ok > skipped."""
    if StageStatus.TIMED_OUT in statuses:
        return StageStatus.TIMED_OUT
    if StageStatus.FAILED in statuses:
        return StageStatus.FAILED
    if StageStatus.OK in statuses:
        return StageStatus.OK
    return StageStatus.SKIPPED


@dataclass(slots=True)
class StageResult:
    """Aggregate result of one stage: its per-item outcomes."""

    stage: str
    outcomes: List[RunOutcome] = field(default_factory=list)

    @property
    def status(self) -> StageStatus:
        return fold_statuses([outcome.status for outcome in self.outcomes])

    @property
    def success(self) -> bool:
        return not self.status.is_failure

    def count(self, status: StageStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)

    def summary(self) -> RunOutcome:
        """Fold the per-item outcomes into a single stage-level outcome."""
        failures = [o for o in self.outcomes if o.status.is_failure]
        if failures:
            detail = "; ".join(f"{o.subject or o.stage}: {o.detail}" for o in failures)
        else:
            detail = f"{self.count(StageStatus.OK)} ok, {self.count(StageStatus.SKIPPED)} skipped"
        return RunOutcome(stage=self.stage, status=self.status, detail=detail)
