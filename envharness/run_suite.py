"""Command line entry point: ``envharness [options] [-- pytest args]``."""
from __future__ import annotations

import argparse
import os
import subprocess
import sys
import time
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import pytest

from .configuration import HarnessConfig
from .console import SETUP_PREFIX, Console
from .services.docker import DockerCli, remove_stale_resources
from .utils import describe_processes, find_lingering_processes, format_duration


def _git(cwd: Path, *args: str) -> Optional[str]:
    try:
        output = subprocess.check_output(["git", *args], cwd=cwd, stderr=subprocess.DEVNULL, text=True)
    except (OSError, subprocess.CalledProcessError):
        return None
    return output.strip() or None


def describe_checkout(cwd: Path) -> Tuple[str, str]:
    """Return ``(branch, revision)`` of the checkout at ``cwd``, ``"unknown"`` outside git."""

    branch = _git(cwd, "rev-parse", "--abbrev-ref", "HEAD") or "unknown"
    if branch == "HEAD":
        branch = "detached"
    return branch, _git(cwd, "rev-parse", "--short=12", "HEAD") or "unknown"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="envharness",
        description="Run integration test groups against shared ephemeral environments",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Arguments after -- are passed to pytest unchanged.",
    )
    parser.add_argument("paths", nargs="*", default=["tests"], help="test paths (default: tests)")
    parser.add_argument("--output", type=str, default=None, help="directory for reports and artifacts")
    parser.add_argument(
        "--cleanup-stale",
        action="store_true",
        help="remove docker containers, networks and volumes left by earlier runs before starting",
    )
    parser.add_argument(
        "--check-processes",
        nargs="+",
        metavar="PREFIX",
        default=None,
        help="warn about lingering processes whose names start with PREFIX",
    )
    parser.add_argument("--verbose", action="store_true", help="echo container init noise")
    parser.add_argument("--no-report", action="store_true", help="do not write the CTRF report")
    return parser


def _split_pytest_args(argv: Sequence[str]) -> Tuple[List[str], List[str]]:
    argv = list(argv)
    if "--" in argv:
        index = argv.index("--")
        return argv[:index], argv[index + 1:]
    return argv, []


def main(argv: Optional[Sequence[str]] = None) -> int:
    own_args, pytest_args = _split_pytest_args(sys.argv[1:] if argv is None else argv)
    args = build_parser().parse_args(own_args)

    if args.verbose:
        os.environ["HARNESS_VERBOSE"] = "1"
    if args.output:
        os.environ["HARNESS_OUTPUT_DIR"] = args.output

    settings = HarnessConfig.from_environment()
    console = Console(SETUP_PREFIX, use_icons=settings.use_icons)
    c = console.color

    console.raw(f"{c.BOLD}Integration Test Harness{c.RESET}")
    branch, revision = describe_checkout(Path.cwd())
    console.table(
        "Run configuration",
        [("Branch", branch), ("Revision", revision), *settings.describe()],
    )

    if args.check_processes:
        lingering = find_lingering_processes(args.check_processes)
        if lingering:
            console.warn(f"Lingering processes: {describe_processes(lingering)}")

    if args.cleanup_stale:
        cli = DockerCli(timeout=settings.timings.command_timeout)
        if cli.available():
            removed = remove_stale_resources(cli, f"{settings.resource_prefix}-", console)
            console.detail(
                "Stale cleanup: {containers} containers, {networks} networks, {volumes} volumes".format(**removed)
            )
        else:
            console.warn("docker not found; skipping stale resource cleanup")

    command = [*args.paths, "-p", "envharness.pytest_plugin", *pytest_args]
    if args.no_report:
        command.append("--harness-no-report")

    start = time.monotonic()
    exit_code = int(pytest.main(command))
    console.raw(f"\n{'=' * 80}")
    console.raw(f"Total duration: {format_duration(time.monotonic() - start)}")
    if exit_code == 0:
        console.raw(f"Overall result: {c.GREEN}PASSED{c.RESET}")
    else:
        console.raw(f"Overall result: {c.RED}FAILED{c.RESET} (pytest exit code {exit_code})")
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
