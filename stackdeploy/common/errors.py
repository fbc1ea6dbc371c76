"""
Errors that stop a deployment run before it mutates the cluster.

Everything else (a missing image, a failed apply, a timeout) is reported as a
RunOutcome and folded into the final verdict instead of being raised.
"""

from typing import Optional


class DeploymentAborted(Exception):
    """Base exception: the run stopped early with no cluster mutation."""


class PreflightError(DeploymentAborted):
    """A hard precondition failed (missing tool, unreachable node)."""


class ContextRejected(DeploymentAborted):
    """The active cluster context did not match and the user declined to continue."""

    def __init__(self, actual: Optional[str], expected: str) -> None:
        super().__init__(f"Current context is '{actual}', expected '{expected}'; aborted by user")
        self.actual = actual
        self.expected = expected
