"""Distribute locally built images into the node's containerd image store."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, List, Optional, Sequence

import docker
from docker.errors import APIError, DockerException, ImageNotFound
from requests import RequestException

from ..common.command_runner import CommandResult, CommandRunner
from ..common.models import ImageRef, RunOutcome, StageResult
from ..core.config import DeployConfig, normalize_image_reference
from ..utils.console import SUCCESS

STAGE = "images"

RETRYABLE_KEYWORDS = (
    "timeout",
    "timed out",
    "i/o timeout",
    "connection",
    "temporary failure",
    "unexpected eof",
)


def load_docker_client() -> docker.DockerClient:
    """Connect to the local docker daemon using the standard environment."""
    return docker.from_env()


class ImageDistributor:
    """Serialize local images with ``docker save`` and import them with ``ctr``."""

    def __init__(
        self,
        *,
        config: DeployConfig,
        command_runner: CommandRunner,
        docker_client: Optional[docker.DockerClient] = None,
        logger: Optional[logging.Logger] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.command_runner = command_runner
        self._docker_client = docker_client
        self.logger = logger or logging.getLogger(__name__)
        self.sleep = sleep

    @property
    def docker_client(self) -> docker.DockerClient:
        if self._docker_client is None:
            self._docker_client = load_docker_client()
        return self._docker_client

    def distribute(self, images: Optional[Sequence[ImageRef]] = None) -> StageResult:
        """
        Load every image in ``images`` (default: all configured) into the node.

        Images are independent, so they are imported in parallel; the stage
        completes only after every image has reported.
        """
        targets = list(images) if images is not None else list(self.config.images)
        result = StageResult(stage=STAGE)
        if not targets:
            self.logger.warning("No images selected for distribution")
            return result

        self.logger.info("Loading %d image(s) into node %s...", len(targets), self.config.node_name)

        outcomes: Dict[int, RunOutcome] = {}
        workers = min(self.config.max_image_workers, len(targets))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {executor.submit(self.distribute_one, image): index for index, image in enumerate(targets)}
            for future in as_completed(futures):
                index = futures[future]
                try:
                    outcomes[index] = future.result()
                except Exception:
                    self.logger.error("Unexpected error while loading %s", targets[index].local_identifier, exc_info=True)
                    raise

        # report in configuration order, not completion order
        result.outcomes.extend(outcomes[index] for index in range(len(targets)))

        failed = sum(1 for outcome in result.outcomes if outcome.status.is_failure)
        if failed:
            self.logger.error("%d image(s) failed to load", failed)
        else:
            self.logger.info("All images loaded successfully", extra=SUCCESS)
        return result

    def distribute_one(self, image: ImageRef) -> RunOutcome:
        subject = image.local_identifier
        self.logger.info("Loading image: %s", subject)

        try:
            local_image = self.docker_client.images.get(subject)
        except ImageNotFound:
            self.logger.error("Image '%s' not found locally. Please build it first.", subject)
            return RunOutcome.failed(STAGE, "image not found locally", subject=subject)
        except (APIError, DockerException) as exc:
            self.logger.error("Cannot inspect image '%s': %s", subject, exc)
            return RunOutcome.failed(STAGE, f"docker error: {exc}", subject=subject)

        named = subject if subject in (local_image.tags or []) else True
        policy = self.config.distribution_retry
        import_result: Optional[CommandResult] = None

        for attempt in range(policy.max_attempts):
            if attempt > 0:
                delay = policy.delay_for(attempt)
                self.logger.info(
                    "Retrying import of %s (attempt %d/%d) in %.0fs...",
                    subject,
                    attempt + 1,
                    policy.max_attempts,
                    delay,
                )
                self.sleep(delay)

            try:
                import_result = self.command_runner.stream(
                    self._ctr_command("images", "import", "-"),
                    local_image.save(named=named),
                    timeout=self.config.image_import_timeout,
                )
            except (DockerException, RequestException) as exc:
                self.logger.error("Cannot export image '%s': %s", subject, exc)
                return RunOutcome.failed(STAGE, f"docker save failed: {exc}", subject=subject)
            if import_result.succeeded():
                break

            error_msg = import_result.error_text()
            if not import_result.tool_available or not self._is_retryable(import_result):
                self.logger.error("Failed to load %s: %s", subject, error_msg[:200])
                return RunOutcome.failed(STAGE, f"import failed: {error_msg}", subject=subject)

            self.logger.warning(
                "Import of %s failed with retryable error on attempt %d/%d: %s",
                subject,
                attempt + 1,
                policy.max_attempts,
                error_msg[:200],
            )

        if import_result is None or not import_result.succeeded():
            detail = import_result.error_text() if import_result else "no import attempted"
            if import_result is not None and import_result.timed_out:
                return RunOutcome.timed_out(STAGE, f"import timed out after {policy.max_attempts} attempt(s)", subject=subject)
            return RunOutcome.failed(STAGE, f"import failed after {policy.max_attempts} attempt(s): {detail}", subject=subject)

        tag_outcome = self._ensure_target_name(image)
        if tag_outcome is not None:
            return tag_outcome

        self.logger.info("Loaded: %s", subject, extra=SUCCESS)
        return RunOutcome.ok(STAGE, f"imported as {image.target_identifier}", subject=subject)

    def _ensure_target_name(self, image: ImageRef) -> Optional[RunOutcome]:
        """Tag the imported image when the desired name differs from the imported one."""
        imported_name = normalize_image_reference(image.local_identifier)
        if imported_name == image.target_identifier:
            return None

        self.logger.info("Tagging %s as %s", imported_name, image.target_identifier)
        result = self.command_runner.run(
            self._ctr_command("images", "tag", "--force", imported_name, image.target_identifier),
            timeout=60,
        )
        if result.succeeded():
            return None
        self.logger.error("Failed to tag %s: %s", image.target_identifier, result.error_text())
        return RunOutcome.failed(
            STAGE,
            f"imported but tagging as {image.target_identifier} failed: {result.error_text()}",
            subject=image.local_identifier,
        )

    def _ctr_command(self, *args: str) -> List[str]:
        return [
            "docker",
            "exec",
            "-i",
            self.config.node_name,
            "ctr",
            "-n",
            self.config.runtime_namespace,
            *args,
        ]

    @staticmethod
    def _is_retryable(result: CommandResult) -> bool:
        if result.timed_out:
            return True
        error_msg = result.error_text().lower()
        # an unreachable node is a hard failure for this invocation
        if "no such container" in error_msg or "is not running" in error_msg:
            return False
        return any(keyword in error_msg for keyword in RETRYABLE_KEYWORDS)
