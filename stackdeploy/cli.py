"""Command line entry point: ``stackdeploy [COMMAND] [OPTIONS]``."""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional, Sequence

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError
from rich.prompt import Confirm

from .common.models import StageStatus
from .core.config import DeployConfig, load_deploy_config
from .orchestrator import OrchestrationDriver, RunMode, RunOptions, RunReport
from .utils.console import SUCCESS, render_progress, section, setup_logging, show_text

logger = logging.getLogger(__name__)

COMMAND_MODES = {
    "all": RunMode.FULL,
    "images": RunMode.IMAGES,
    "apply": RunMode.APPLY,
    "restart": RunMode.RESTART,
    "status": RunMode.STATUS,
    "verify": RunMode.VERIFY,
}

DESCRIPTION = "Deploy the agent-scheduler stack to Kubernetes (Docker Desktop)."

EPILOG = """\
commands:
  all         Full deployment: load images, apply manifests, restart (default)
  images      Load Docker images into Kubernetes containerd
  apply       Apply Kubernetes manifests only
  restart     Restart all deployments
  status      Show current deployment status
  verify      Verify deployment and test endpoints
  help        Show this help message

examples:
  %(prog)s                      # Full deployment
  %(prog)s images               # Load images only
  %(prog)s apply --no-restart   # Apply manifests without restarting
  %(prog)s -i scheduler:latest  # Load only scheduler image
  %(prog)s status               # Check current status
"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stackdeploy",
        description=DESCRIPTION,
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="all",
        choices=[*COMMAND_MODES, "help"],
        metavar="COMMAND",
        help="One of: all, images, apply, restart, status, verify, help (default: all).",
    )
    parser.add_argument(
        "-n",
        "--no-restart",
        action="store_true",
        help="Don't restart deployments after applying.",
    )
    parser.add_argument(
        "-f",
        "--force",
        action="store_true",
        help="Skip confirmation prompts.",
    )
    parser.add_argument(
        "-i",
        "--image",
        dest="images",
        action="append",
        default=[],
        metavar="NAME",
        help="Load only the specified image. Can be provided multiple times.",
    )
    parser.add_argument(
        "-c",
        "--config",
        default=None,
        help="Path to a YAML/JSON deploy config (defaults to built-in stack definition).",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )
    return parser


def confirm_prompt(question: str) -> bool:
    try:
        return Confirm.ask(question, default=False)
    except EOFError:
        return False


def listing_title(kinds: Optional[str]) -> str:
    """'pods,deployments' -> 'Pods, Deployments'."""
    if not kinds:
        return "Status"
    return ", ".join(kind.strip().capitalize() for kind in kinds.split(","))


def print_report(report: RunReport) -> None:
    """Final summary: cluster listings, endpoint health and the per-stage verdict."""
    for listing in report.listings:
        section(listing_title(listing.subject))
        show_text(listing.detail)

    if report.outcomes:
        section("Summary")
    for outcome in report.outcomes:
        line = "%s: %s (%s)"
        if outcome.status.is_failure:
            logger.error(line, outcome.stage, outcome.status.value, outcome.detail)
        elif outcome.status is StageStatus.SKIPPED:
            logger.warning(line, outcome.stage, outcome.status.value, outcome.detail)
        else:
            logger.info(line, outcome.stage, outcome.status.value, outcome.detail)


def load_config(path: Optional[str]) -> DeployConfig:
    if path:
        return load_deploy_config(path)
    return DeployConfig()


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the deployment CLI."""
    parser = build_parser()
    args = parser.parse_args(sys.argv[1:] if argv is None else argv)

    if args.command == "help":
        parser.print_help()
        return 0

    load_dotenv()
    setup_logging(args.verbose)

    try:
        config = load_config(args.config)
    except (FileNotFoundError, ValueError, ValidationError, yaml.YAMLError) as exc:
        logger.error("Invalid deploy config: %s", exc)
        return 2

    driver = OrchestrationDriver.from_config(
        config,
        confirm=confirm_prompt,
        progress=render_progress,
    )
    options = RunOptions(skip_restart=args.no_restart, force=args.force, images=list(args.images))

    try:
        report = driver.run(COMMAND_MODES[args.command], options)
    except KeyboardInterrupt:
        logger.warning("Deployment interrupted by user")
        return 130

    print_report(report)
    if report.success:
        logger.info("Done!", extra=SUCCESS)
    elif report.aborted:
        logger.error("Aborted: %s", report.aborted)
    else:
        logger.error("Finished with failures")
    return report.exit_code


if __name__ == "__main__":
    sys.exit(main())
