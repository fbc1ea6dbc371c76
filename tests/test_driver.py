"""Tests for stage sequencing and verdict aggregation."""

from __future__ import annotations

from typing import List, Optional

from stackdeploy.common.errors import ContextRejected, PreflightError
from stackdeploy.common.models import EndpointProbe, ImageRef, RunOutcome, StageResult, StageStatus
from stackdeploy.core.config import DeployConfig
from stackdeploy.orchestrator import OrchestrationDriver, RunMode, RunOptions, aggregate_verdict
from stackdeploy.runtime.health import ProbeResult, VerificationReport


def ok_stage(name: str, *subjects: str) -> StageResult:
    return StageResult(name, [RunOutcome.ok(name, "done", subject=subject) for subject in subjects or (name,)])


class Recorder:
    """Collects the order in which components are invoked."""

    def __init__(self) -> None:
        self.calls: List[str] = []


class StubPreflight:
    def __init__(self, recorder: Recorder, error: Optional[Exception] = None) -> None:
        self.recorder = recorder
        self.error = error
        self.forced: List[bool] = []

    def check(self, force: bool = False) -> List[RunOutcome]:
        self.recorder.calls.append("preflight")
        self.forced.append(force)
        if self.error is not None:
            raise self.error
        return [RunOutcome.ok("preflight", "fine", subject="tools")]


class StubDistributor:
    def __init__(self, recorder: Recorder, result: Optional[StageResult] = None) -> None:
        self.recorder = recorder
        self.result = result or ok_stage("images", "scheduler:latest")
        self.requested: List[List[ImageRef]] = []

    def distribute(self, images=None) -> StageResult:
        self.recorder.calls.append("images")
        self.requested.append(list(images or []))
        return self.result


class StubStage:
    def __init__(self, recorder: Recorder, name: str, result: Optional[StageResult] = None) -> None:
        self.recorder = recorder
        self.name = name
        self.result = result if result is not None else ok_stage(name)

    def __call__(self, *args, **kwargs) -> StageResult:
        self.recorder.calls.append(self.name)
        return self.result


class StubApplier:
    def __init__(self, stage: StubStage) -> None:
        self.apply = stage


class StubTrigger:
    def __init__(self, stage: StubStage) -> None:
        self.restart = stage


class StubPoller:
    def __init__(self, stage: StubStage) -> None:
        self.run = stage


class StubVerifier:
    def __init__(self, recorder: Recorder) -> None:
        self.recorder = recorder

    def verify(self, endpoints=None) -> VerificationReport:
        self.recorder.calls.append("verify")
        probe = EndpointProbe(url="http://scheduler.local/", label="UI")
        return VerificationReport(results=[ProbeResult(probe=probe, status="503")])


class StubInspector:
    def __init__(self, recorder: Recorder) -> None:
        self.recorder = recorder

    def listing(self, kinds: str) -> RunOutcome:
        self.recorder.calls.append(f"get {kinds}")
        return RunOutcome.ok("status", "NAME READY", subject=kinds)

    def summary(self) -> List[RunOutcome]:
        return [self.listing(kinds) for kinds in ("pods", "deployments", "services", "ingress")]


def make_driver(
    recorder: Recorder,
    *,
    preflight_error: Optional[Exception] = None,
    images: Optional[StageResult] = None,
    apply: Optional[StageResult] = None,
    readiness: Optional[StageResult] = None,
) -> tuple[OrchestrationDriver, StubPreflight, StubDistributor]:
    preflight = StubPreflight(recorder, preflight_error)
    distributor = StubDistributor(recorder, images)
    driver = OrchestrationDriver(
        config=DeployConfig(namespace="demo"),
        preflight=preflight,
        distributor=distributor,
        applier=StubApplier(StubStage(recorder, "apply", apply)),
        trigger=StubTrigger(StubStage(recorder, "restart")),
        poller=StubPoller(StubStage(recorder, "readiness", readiness)),
        verifier=StubVerifier(recorder),
        inspector=StubInspector(recorder),
    )
    return driver, preflight, distributor


def test_aggregate_verdict() -> None:
    assert aggregate_verdict([RunOutcome.ok("a"), RunOutcome.skipped("b")])
    assert aggregate_verdict([])
    assert not aggregate_verdict([RunOutcome.ok("a"), RunOutcome.timed_out("c", "slow")])
    assert not aggregate_verdict([RunOutcome.failed("d", "broken")])


def test_full_run_executes_every_stage_in_order() -> None:
    recorder = Recorder()
    driver, _, _ = make_driver(recorder)

    report = driver.run(RunMode.FULL)

    assert report.stage_names == ["preflight", "images", "apply", "restart", "readiness", "verify"]
    assert [call for call in recorder.calls if not call.startswith("get ")] == report.stage_names
    assert len(report.listings) == 4
    assert report.verification is not None and report.verification.healthy_count == 0
    assert report.success
    assert report.exit_code == 0


def test_full_run_stops_after_failed_distribution() -> None:
    recorder = Recorder()
    failed = StageResult("images", [RunOutcome.failed("images", "image not found locally", subject="ui:latest")])
    driver, _, _ = make_driver(recorder, images=failed)

    report = driver.run(RunMode.FULL)

    assert recorder.calls == ["preflight", "images"]
    assert report.stage_names == ["preflight", "images"]
    assert not report.success
    assert report.exit_code == 1


def test_full_run_without_restart_still_waits() -> None:
    recorder = Recorder()
    driver, _, _ = make_driver(recorder)

    report = driver.run(RunMode.FULL, RunOptions(skip_restart=True))

    assert "restart" not in recorder.calls
    assert "readiness" in recorder.calls
    assert report.stage("restart").status is StageStatus.SKIPPED
    assert report.success


def test_preflight_abort_mutates_nothing() -> None:
    recorder = Recorder()
    driver, _, _ = make_driver(recorder, preflight_error=ContextRejected("prod", "docker-desktop"))

    report = driver.run(RunMode.APPLY)

    assert recorder.calls == ["preflight"]
    assert report.aborted is not None and "aborted by user" in report.aborted
    assert report.stage("preflight").status is StageStatus.FAILED
    assert report.exit_code == 2


def test_apply_only_without_restart_with_no_resources() -> None:
    recorder = Recorder()
    driver, _, _ = make_driver(recorder, apply=StageResult("apply", []))

    report = driver.run(RunMode.APPLY, RunOptions(skip_restart=True))

    assert report.stage_names == ["preflight", "apply"]
    assert "restart" not in recorder.calls
    assert "readiness" not in recorder.calls
    assert report.success


def test_apply_only_restarts_and_waits_by_default() -> None:
    recorder = Recorder()
    driver, _, _ = make_driver(recorder)

    report = driver.run(RunMode.APPLY)

    assert report.stage_names == ["preflight", "apply", "restart", "readiness"]


def test_images_only_uses_selected_images() -> None:
    recorder = Recorder()
    driver, preflight, distributor = make_driver(recorder)

    report = driver.run(RunMode.IMAGES, RunOptions(force=True, images=["scheduler"]))

    assert report.stage_names == ["preflight", "images"]
    assert preflight.forced == [True]
    assert [image.local_identifier for image in distributor.requested[0]] == ["scheduler:latest"]


def test_restart_only_runs_preflight_restart_and_wait() -> None:
    recorder = Recorder()
    timed_out = StageResult("readiness", [RunOutcome.timed_out("readiness", "1 pod(s) not ready")])
    driver, _, _ = make_driver(recorder, readiness=timed_out)

    report = driver.run(RunMode.RESTART)

    assert report.stage_names == ["preflight", "restart", "readiness"]
    assert report.exit_code == 1


def test_status_and_verify_skip_preflight() -> None:
    recorder = Recorder()
    driver, _, _ = make_driver(recorder, preflight_error=PreflightError("kubectl not found"))

    status = driver.run(RunMode.STATUS)
    verify = driver.run(RunMode.VERIFY)

    assert "preflight" not in recorder.calls
    assert status.stage_names == ["status"]
    assert status.listings[0].subject == "pods,deployments,services,ingress"
    assert verify.stage_names == ["verify"]
    assert verify.success
