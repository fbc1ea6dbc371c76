"""Colored status-line output and logging setup for the CLI."""

from __future__ import annotations

import logging
from typing import Optional

from rich.console import Console
from rich.markup import escape

# Pass as ``extra=SUCCESS`` on an INFO record to render it as a success line.
SUCCESS = {"status_line": "success"}

console = Console(highlight=False)

_LEVEL_STYLES = {
    "success": ("SUCCESS", "green"),
    "info": ("INFO", "blue"),
    "warning": ("WARN", "yellow"),
    "error": ("ERROR", "red"),
}


def _status_key(record: logging.LogRecord) -> str:
    if getattr(record, "status_line", None) == "success":
        return "success"
    if record.levelno >= logging.ERROR:
        return "error"
    if record.levelno >= logging.WARNING:
        return "warning"
    return "info"


class StatusLineHandler(logging.Handler):
    """Render log records as ``[INFO]``/``[SUCCESS]``/``[WARN]``/``[ERROR]`` lines."""

    def __init__(self, target: Optional[Console] = None, level: int = logging.NOTSET) -> None:
        super().__init__(level)
        self.console = target or console

    def emit(self, record: logging.LogRecord) -> None:
        try:
            tag, color = _LEVEL_STYLES[_status_key(record)]
            message = escape(record.getMessage())
            if record.levelno < logging.INFO:
                tag, color = "DEBUG", "dim"
            self.console.print(f"[{color}]\\[{tag}][/{color}] {message}")
            if record.exc_info:
                self.console.print(escape(logging.Formatter().formatException(record.exc_info)))
        except Exception:
            self.handleError(record)


def setup_logging(verbose: bool = False) -> None:
    """Configure root logging to emit colored status lines."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler, StatusLineHandler):
            root.removeHandler(handler)
    root.addHandler(StatusLineHandler())
    root.setLevel(logging.DEBUG if verbose else logging.INFO)

    # Set log level for specific loggers to reduce noise
    for noisy_logger in ("urllib3", "docker", "kubernetes"):
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)


def render_progress(not_ready: int, elapsed: float, timeout: float) -> None:
    """Overwrite the current line with readiness progress."""
    console.print(
        f"[blue]\\[INFO][/blue] Waiting for {not_ready} pod(s)... ({elapsed:.0f}s/{timeout:.0f}s)",
        end="\r",
    )


def section(title: str) -> None:
    console.print()
    console.print(f"=== {escape(title)} ===")


def show_text(text: str) -> None:
    console.print(escape(text.rstrip()))
