"""Side-effect-free checks that must pass before anything is mutated."""

from __future__ import annotations

import logging
import shutil
from typing import Callable, List, Optional

import docker
from docker.errors import DockerException, NotFound

from ..common.errors import ContextRejected, PreflightError
from ..common.models import RunOutcome
from ..core.config import DeployConfig
from ..utils.console import SUCCESS
from .kubernetes import ClusterApi

STAGE = "preflight"

ConfirmCallback = Callable[[str], bool]


def _decline(_prompt: str) -> bool:
    return False


class PreflightChecker:
    """
    Verify tools, cluster context and node reachability.

    Raises PreflightError on a hard failure and ContextRejected when the
    context does not match and the user declines to continue.
    """

    def __init__(
        self,
        *,
        config: DeployConfig,
        cluster: ClusterApi,
        docker_client_factory: Callable[[], docker.DockerClient],
        confirm: Optional[ConfirmCallback] = None,
        which: Callable[[str], Optional[str]] = shutil.which,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config
        self.cluster = cluster
        self.docker_client_factory = docker_client_factory
        self.confirm = confirm or _decline
        self.which = which
        self.logger = logger or logging.getLogger(__name__)

    def check(self, force: bool = False) -> List[RunOutcome]:
        self.logger.info("Checking prerequisites...")
        outcomes = [
            self.check_tools(),
            self.check_context(force),
            self.check_node(),
        ]
        self.logger.info("Prerequisites check passed", extra=SUCCESS)
        return outcomes

    def check_tools(self) -> RunOutcome:
        for tool in self.config.required_tools:
            if self.which(tool) is None:
                raise PreflightError(f"{tool} not found. Please install {tool}.")
        return RunOutcome.ok(STAGE, "tools available", subject="tools")

    def check_context(self, force: bool) -> RunOutcome:
        expected = self.config.expected_context
        actual = self.cluster.current_context()
        if actual == expected:
            return RunOutcome.ok(STAGE, f"context {actual}", subject="context")

        self.logger.warning("Current context is '%s', expected '%s'", actual, expected)
        if force:
            return RunOutcome.ok(STAGE, f"context {actual} accepted with --force", subject="context")
        if not self.confirm("Continue anyway?"):
            raise ContextRejected(actual, expected)
        return RunOutcome.ok(STAGE, f"context {actual} confirmed", subject="context")

    def check_node(self) -> RunOutcome:
        node = self.config.node_name
        hint = f"Cannot access Kubernetes node '{node}'. Is Docker Desktop Kubernetes running?"
        try:
            container = self.docker_client_factory().containers.get(node)
            exit_code, _ = container.exec_run(["echo", "OK"])
        except NotFound as exc:
            raise PreflightError(hint) from exc
        except DockerException as exc:
            raise PreflightError(f"{hint} ({exc})") from exc

        if exit_code != 0:
            raise PreflightError(hint)
        return RunOutcome.ok(STAGE, f"node {node} reachable", subject="node")
