"""Top-level state machine sequencing the deployment stages per run mode."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

from ..common.command_runner import CommandRunner
from ..common.errors import DeploymentAborted
from ..common.models import RunOutcome, StageResult
from ..core.config import DeployConfig
from ..runtime.health import HealthVerifier, VerificationReport
from ..runtime.images import ImageDistributor
from ..runtime.kubernetes import ClusterApi, ClusterInspector, ResourceApplier, RestartTrigger, RolloutWaiter
from ..runtime.preflight import ConfirmCallback, PreflightChecker
from ..runtime.readiness import ProgressCallback, ReadinessPoller

logger = logging.getLogger(__name__)


class RunMode(Enum):
    """Which subsequence of stages an invocation executes."""
    FULL = "full"
    IMAGES = "images-only"
    APPLY = "apply-only"
    RESTART = "restart-only"
    STATUS = "status"
    VERIFY = "verify"

    @property
    def mutating(self) -> bool:
        return self not in (RunMode.STATUS, RunMode.VERIFY)


@dataclass(slots=True)
class RunOptions:
    skip_restart: bool = False
    force: bool = False
    images: List[str] = field(default_factory=list)


def aggregate_verdict(outcomes: Iterable[RunOutcome]) -> bool:
    """True (success) unless some outcome failed or timed out."""
    return not any(outcome.status.is_failure for outcome in outcomes)


@dataclass(slots=True)
class RunReport:
    """Everything one invocation produced."""

    mode: RunMode
    stages: List[StageResult] = field(default_factory=list)
    aborted: Optional[str] = None
    listings: List[RunOutcome] = field(default_factory=list)
    verification: Optional[VerificationReport] = None

    @property
    def outcomes(self) -> List[RunOutcome]:
        return [stage.summary() for stage in self.stages]

    @property
    def success(self) -> bool:
        return self.aborted is None and aggregate_verdict(self.outcomes)

    @property
    def exit_code(self) -> int:
        if self.aborted is not None:
            return 2
        return 0 if self.success else 1

    def stage(self, name: str) -> Optional[StageResult]:
        for stage in self.stages:
            if stage.stage == name:
                return stage
        return None

    @property
    def stage_names(self) -> List[str]:
        return [stage.stage for stage in self.stages]


class OrchestrationDriver:
    """Run the configured stages strictly one after another and fold their outcomes."""

    def __init__(
        self,
        *,
        config: DeployConfig,
        preflight: PreflightChecker,
        distributor: ImageDistributor,
        applier: ResourceApplier,
        trigger: RestartTrigger,
        poller: ReadinessPoller,
        verifier: HealthVerifier,
        inspector: ClusterInspector,
    ) -> None:
        self.config = config
        self.preflight = preflight
        self.distributor = distributor
        self.applier = applier
        self.trigger = trigger
        self.poller = poller
        self.verifier = verifier
        self.inspector = inspector

    @classmethod
    def from_config(
        cls,
        config: DeployConfig,
        *,
        confirm: Optional[ConfirmCallback] = None,
        progress: Optional[ProgressCallback] = None,
        command_runner: Optional[CommandRunner] = None,
    ) -> "OrchestrationDriver":
        """Wire the real components; cluster and docker connections open lazily."""
        runner = command_runner or CommandRunner()
        cluster = ClusterApi(config.kubeconfig)
        distributor = ImageDistributor(config=config, command_runner=runner)
        return cls(
            config=config,
            preflight=PreflightChecker(
                config=config,
                cluster=cluster,
                docker_client_factory=lambda: distributor.docker_client,
                confirm=confirm,
            ),
            distributor=distributor,
            applier=ResourceApplier(
                config=config,
                command_runner=runner,
                rollout_waiter=RolloutWaiter(cluster, poll_interval=config.poll_interval),
            ),
            trigger=RestartTrigger(config=config, cluster=cluster),
            poller=ReadinessPoller(config=config, cluster=cluster, progress=progress),
            verifier=HealthVerifier(config=config),
            inspector=ClusterInspector(config=config, command_runner=runner),
        )

    def run(self, mode: RunMode, options: Optional[RunOptions] = None) -> RunReport:
        options = options or RunOptions()
        report = RunReport(mode=mode)
        logger.debug("Starting %s run (options=%s)", mode.value, options)

        if mode.mutating:
            try:
                checks = self.preflight.check(force=options.force)
            except DeploymentAborted as exc:
                logger.error("%s", exc)
                report.aborted = str(exc)
                report.stages.append(StageResult("preflight", [RunOutcome.failed("preflight", str(exc))]))
                return report
            report.stages.append(StageResult("preflight", checks))

        handlers: Dict[RunMode, Callable[[RunReport, RunOptions], None]] = {
            RunMode.FULL: self._run_full,
            RunMode.IMAGES: self._run_images,
            RunMode.APPLY: self._run_apply,
            RunMode.RESTART: self._run_restart,
            RunMode.STATUS: self._run_status,
            RunMode.VERIFY: self._run_verify,
        }
        handlers[mode](report, options)
        return report

    def _run_full(self, report: RunReport, options: RunOptions) -> None:
        if not self._distribute(report, options):
            logger.error("Image distribution failed; skipping remaining stages")
            return
        report.stages.append(self.applier.apply())
        if options.skip_restart:
            report.stages.append(self._skipped("restart", "--no-restart"))
        else:
            report.stages.append(self.trigger.restart())
        report.stages.append(self.poller.run())
        self._verify(report)

    def _run_images(self, report: RunReport, options: RunOptions) -> None:
        self._distribute(report, options)

    def _run_apply(self, report: RunReport, options: RunOptions) -> None:
        report.stages.append(self.applier.apply())
        if not options.skip_restart:
            self._restart_and_wait(report)

    def _run_restart(self, report: RunReport, options: RunOptions) -> None:
        self._restart_and_wait(report)

    def _run_status(self, report: RunReport, options: RunOptions) -> None:
        listing = self.inspector.listing("pods,deployments,services,ingress")
        report.listings.append(listing)
        report.stages.append(StageResult("status", [listing]))

    def _run_verify(self, report: RunReport, options: RunOptions) -> None:
        self._verify(report)

    def _distribute(self, report: RunReport, options: RunOptions) -> bool:
        images = self.config.select_images(options.images)
        stage = self.distributor.distribute(images)
        report.stages.append(stage)
        return stage.success

    def _restart_and_wait(self, report: RunReport) -> None:
        report.stages.append(self.trigger.restart())
        report.stages.append(self.poller.run())

    def _verify(self, report: RunReport) -> None:
        logger.info("Verifying deployment...")
        report.listings.extend(self.inspector.summary())
        report.verification = self.verifier.verify()
        report.stages.append(report.verification.to_stage_result())

    @staticmethod
    def _skipped(stage: str, reason: str) -> StageResult:
        return StageResult(stage, [RunOutcome.skipped(stage, reason)])


__all__ = ["OrchestrationDriver", "RunMode", "RunOptions", "RunReport", "aggregate_verdict"]
