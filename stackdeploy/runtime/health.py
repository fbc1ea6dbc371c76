"""Synthetic HTTP probes against the deployed endpoints."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import requests
from requests import RequestException

from ..common.models import EndpointProbe, RunOutcome, StageResult
from ..core.config import DeployConfig
from ..utils.console import SUCCESS

STAGE = "verify"

# reported instead of an HTTP status when no response was received
CONNECTION_FAILED = "000"


def is_healthy_status(status: str) -> bool:
    """2xx and 3xx responses are healthy; everything else, including ``000``, is not."""
    return len(status) == 3 and status[0] in ("2", "3")


@dataclass(frozen=True, slots=True)
class ProbeResult:
    """Classification of a single endpoint probe."""

    probe: EndpointProbe
    status: str
    error: Optional[str] = None

    @property
    def healthy(self) -> bool:
        return is_healthy_status(self.status)

    def describe(self) -> str:
        return f"{self.probe.label} ({self.probe.url}): {self.status}"


@dataclass(slots=True)
class VerificationReport:
    """Per-endpoint results of one verification pass."""

    results: List[ProbeResult]

    @property
    def healthy_count(self) -> int:
        return sum(1 for result in self.results if result.healthy)

    @property
    def all_healthy(self) -> bool:
        return self.healthy_count == len(self.results)

    def to_stage_result(self) -> StageResult:
        # verification is informational: every probe is recorded as ok
        return StageResult(
            stage=STAGE,
            outcomes=[
                RunOutcome.ok(
                    STAGE,
                    f"{'healthy' if result.healthy else 'unhealthy'}: {result.describe()}",
                    subject=result.probe.label,
                )
                for result in self.results
            ],
        )


class HealthVerifier:
    """Probe each configured endpoint once and classify it by status class."""

    def __init__(
        self,
        *,
        config: DeployConfig,
        session: Optional[requests.Session] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config
        self.session = session or requests.Session()
        self.logger = logger or logging.getLogger(__name__)

    def verify(self, endpoints: Optional[Sequence[EndpointProbe]] = None) -> VerificationReport:
        probes = list(endpoints) if endpoints is not None else list(self.config.endpoints)
        self.logger.info("Testing endpoints...")
        results = [self.probe(endpoint) for endpoint in probes]

        report = VerificationReport(results=results)
        self.logger.info("%d/%d endpoint(s) healthy", report.healthy_count, len(results))
        return report

    def probe(self, endpoint: EndpointProbe) -> ProbeResult:
        try:
            response = self.session.get(
                endpoint.url,
                timeout=(self.config.probe_timeout, self.config.probe_read_timeout),
                allow_redirects=False,
            )
            result = ProbeResult(probe=endpoint, status=str(response.status_code))
        except RequestException as exc:
            self.logger.debug("Probe of %s failed: %s", endpoint.url, exc)
            result = ProbeResult(probe=endpoint, status=CONNECTION_FAILED, error=str(exc))

        if result.healthy:
            self.logger.info("%s", result.describe(), extra=SUCCESS)
        else:
            self.logger.warning("%s", result.describe())
        return result
