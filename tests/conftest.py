"""Shared fakes for the deployment tests."""

from __future__ import annotations

from typing import Callable, List, Optional, Sequence

import pytest

from stackdeploy.common.command_runner import CommandResult


def make_result(
    command: Sequence[str] = ("true",),
    *,
    return_code: Optional[int] = 0,
    stdout: str = "",
    stderr: str = "",
    timed_out: bool = False,
    tool_available: bool = True,
) -> CommandResult:
    """Build a CommandResult without running anything."""
    return CommandResult(
        command=list(command),
        return_code=return_code,
        stdout=stdout,
        stderr=stderr,
        duration=0.01,
        timed_out=timed_out,
        tool_available=tool_available,
    )


class FakeClock:
    """Deterministic monotonic clock advanced only by ``sleep``."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeRunner:
    """CommandRunner stand-in that records calls and answers via a handler."""

    def __init__(self, handler: Optional[Callable[[List[str]], CommandResult]] = None) -> None:
        self.handler = handler or (lambda command: make_result(command))
        self.calls: List[List[str]] = []
        self.streamed: List[bytes] = []

    def run(self, command, *, cwd=None, timeout=None, env=None) -> CommandResult:
        self.calls.append(list(command))
        return self.handler(list(command))

    def stream(self, command, chunks, *, timeout=None) -> CommandResult:
        self.calls.append(list(command))
        self.streamed.append(b"".join(chunks))
        return self.handler(list(command))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
