from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Iterable, List, Mapping, Optional, Sequence


@dataclass(slots=True)
class CommandResult:
    """Represents the outcome of an external command execution."""

    command: Sequence[str]
    return_code: Optional[int]
    stdout: str
    stderr: str
    duration: float
    timed_out: bool
    tool_available: bool
    exception: Optional[BaseException] = None

    def succeeded(self) -> bool:
        """Return True when the command finished successfully."""
        return self.return_code == 0 and not self.timed_out and self.tool_available

    def error_text(self) -> str:
        """Best available description of why the command failed."""
        if self.timed_out:
            return "timed out"
        if not self.tool_available:
            return f"command not found: {self.command[0]}"
        return self.stderr.strip() or self.stdout.strip() or f"exit code {self.return_code}"


class CommandRunner:
    """Thin wrapper over subprocess that captures execution metadata."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger or logging.getLogger(__name__)

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Optional[Path] = None,
        timeout: Optional[float] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> CommandResult:
        """Execute a command and capture stdout, stderr, timings, and failures."""
        start = time.time()
        self.logger.debug("Executing command: %s (cwd=%s)", " ".join(command), cwd)
        try:
            completed = subprocess.run(
                list(command),
                capture_output=True,
                text=True,
                timeout=timeout,
                cwd=str(cwd) if cwd else None,
                env=dict(env) if env else None,
            )
        except subprocess.TimeoutExpired as exc:
            self.logger.warning("Command timed out after %.2fs: %s", time.time() - start, " ".join(command))
            return _failure(command, start, exc, stdout=_decode(exc.stdout), stderr=_decode(exc.stderr), timed_out=True)
        except FileNotFoundError as exc:
            self.logger.error("Command not found: %s", command[0])
            return _failure(command, start, exc, stderr=f"Command not found: {command[0]}", tool_available=False)
        except OSError as exc:
            self.logger.error("Command execution failed: %s", exc)
            return _failure(command, start, exc, stderr=str(exc))

        return CommandResult(
            command=command,
            return_code=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
            duration=time.time() - start,
            timed_out=False,
            tool_available=True,
        )

    def stream(
        self,
        command: Sequence[str],
        chunks: Iterable[bytes],
        *,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """
        Execute a command while feeding ``chunks`` to its stdin.

        Equivalent to ``producer | command`` in a shell. stdout and stderr are
        drained by reader threads while stdin is written. The timeout covers
        the whole transfer; on expiry the child's process group is killed.

        Errors raised by the ``chunks`` producer propagate after the child has
        been killed and reaped.
        """
        start = time.time()
        self.logger.debug("Streaming into command: %s", " ".join(command))
        try:
            process = subprocess.Popen(
                list(command),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            self.logger.error("Command not found: %s", command[0])
            return _failure(command, start, exc, stderr=f"Command not found: {command[0]}", tool_available=False)
        except OSError as exc:
            self.logger.error("Command execution failed: %s", exc)
            return _failure(command, start, exc, stderr=str(exc))

        stdout_blocks: List[bytes] = []
        stderr_blocks: List[bytes] = []
        readers = [
            threading.Thread(target=_drain, args=(process.stdout, stdout_blocks), daemon=True),
            threading.Thread(target=_drain, args=(process.stderr, stderr_blocks), daemon=True),
        ]
        for reader in readers:
            reader.start()

        timed_out = threading.Event()
        timer: Optional[threading.Timer] = None
        if timeout is not None:
            def _expire() -> None:
                if process.poll() is None:
                    timed_out.set()
                    _kill_group(process)

            timer = threading.Timer(timeout, _expire)
            timer.daemon = True
            timer.start()

        try:
            _feed(process.stdin, chunks)
            process.wait()
        finally:
            if timer is not None:
                timer.cancel()
            if process.poll() is None:
                _kill_group(process)
                process.wait()
            # stray descendants would keep the pipes open
            _kill_group(process)
            for reader in readers:
                reader.join()

        duration = time.time() - start
        if timed_out.is_set():
            self.logger.warning("Command timed out after %.2fs: %s", duration, " ".join(command))

        return CommandResult(
            command=command,
            return_code=None if timed_out.is_set() else process.returncode,
            stdout=_decode(b"".join(stdout_blocks)),
            stderr=_decode(b"".join(stderr_blocks)),
            duration=duration,
            timed_out=timed_out.is_set(),
            tool_available=True,
        )


def _feed(stdin: Optional[IO[bytes]], chunks: Iterable[bytes]) -> None:
    if stdin is None:
        return
    try:
        for chunk in chunks:
            stdin.write(chunk)
    except BrokenPipeError:
        # child stopped reading; its exit code and stderr say why
        pass
    finally:
        try:
            stdin.close()
        except BrokenPipeError:
            pass


def _drain(pipe: Optional[IO[bytes]], sink: List[bytes]) -> None:
    if pipe is None:
        return
    with pipe:
        for block in iter(lambda: pipe.read(65536), b""):
            sink.append(block)


def _kill_group(process: subprocess.Popen) -> None:
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


def _failure(
    command: Sequence[str],
    start: float,
    exc: BaseException,
    *,
    stdout: str = "",
    stderr: str = "",
    timed_out: bool = False,
    tool_available: bool = True,
) -> CommandResult:
    return CommandResult(
        command=command,
        return_code=None,
        stdout=stdout,
        stderr=stderr,
        duration=time.time() - start,
        timed_out=timed_out,
        tool_available=tool_available,
        exception=exc,
    )


def _decode(value: Optional[bytes | str]) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value
