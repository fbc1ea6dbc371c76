"""Tests for the status-line log rendering."""

from __future__ import annotations

import io
import logging

from rich.console import Console

from stackdeploy.utils.console import SUCCESS, StatusLineHandler


def make_logger(buffer: io.StringIO) -> logging.Logger:
    logger = logging.getLogger("stackdeploy.tests.console")
    logger.handlers.clear()
    logger.propagate = False
    logger.setLevel(logging.DEBUG)
    logger.addHandler(StatusLineHandler(Console(file=buffer, width=200, color_system=None)))
    return logger


def test_status_line_tags() -> None:
    buffer = io.StringIO()
    logger = make_logger(buffer)

    logger.info("Applying manifests...")
    logger.info("Loaded: scheduler:latest", extra=SUCCESS)
    logger.warning("Manifest not found: 06-ingress.yaml")
    logger.error("Failed to apply [broken]")

    lines = buffer.getvalue().splitlines()
    assert lines == [
        "[INFO] Applying manifests...",
        "[SUCCESS] Loaded: scheduler:latest",
        "[WARN] Manifest not found: 06-ingress.yaml",
        "[ERROR] Failed to apply [broken]",
    ]
