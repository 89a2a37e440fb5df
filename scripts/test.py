#!/usr/bin/env python3
"""Test runner for dbtelemetry.

Wraps pytest and the code quality tools so local runs and CI use the same
flags. Unit tests need no database; integration tests expect live engines.
"""

import argparse
import subprocess
import sys
from pathlib import Path
from typing import List, Optional, Tuple

PROJECT_ROOT = Path(__file__).resolve().parent.parent


def run_command(cmd: List[str], *, cwd: Optional[Path] = PROJECT_ROOT) -> int:
    """Run a command from the project root and return its exit code."""
    print(f"Running: {' '.join(cmd)}")
    return subprocess.run(cmd, cwd=cwd).returncode


def run_tests(
    marker: str = "all",
    *,
    coverage: bool = False,
    html_report: bool = False,
    verbose: bool = False,
    parallel: bool = False,
    fail_fast: bool = False,
) -> int:
    """Run pytest.

    Args:
        marker: Marker expression to select (unit, integration) or "all"
        coverage: Measure coverage of the dbtelemetry package
        html_report: Also write an HTML coverage report
        verbose: Verbose pytest output
        parallel: Distribute tests over all cores (pytest-xdist)
        fail_fast: Stop on first failure

    Returns:
        Exit code from pytest
    """
    cmd = [sys.executable, "-m", "pytest"]

    if marker != "all":
        cmd.extend(["-m", marker])

    if coverage:
        cmd.extend([
            "--cov=dbtelemetry",
            "--cov-report=term-missing:skip-covered",
            "--cov-report=xml:coverage.xml",
            "--cov-fail-under=90",
        ])
        if html_report:
            cmd.append("--cov-report=html:htmlcov")

    if parallel:
        cmd.extend(["-n", "auto"])
    if verbose:
        cmd.append("-v")
    if fail_fast:
        cmd.append("-x")

    cmd.append("--durations=10")
    return run_command(cmd)


QUALITY_CHECKS: List[Tuple[List[str], str]] = [
    (["black", "--check", "src", "tests", "scripts"], "Code formatting (black)"),
    (["isort", "--check-only", "src", "tests", "scripts"], "Import sorting (isort)"),
    (["flake8", "src", "tests"], "Code linting (flake8)"),
    (["mypy", "src"], "Type checking (mypy)"),
]


def run_quality_checks() -> int:
    """Run every quality check, reporting all failures rather than the first."""
    failed = []
    for cmd, description in QUALITY_CHECKS:
        print(f"\n{'=' * 60}\n{description}\n{'=' * 60}")
        if run_command(cmd) != 0:
            failed.append(description)

    if failed:
        print("\nQuality checks failed:")
        for description in failed:
            print(f"  - {description}")
        return 1

    print("\nAll quality checks passed")
    return 0


def run_format() -> int:
    for cmd in (["black", "src", "tests", "scripts"], ["isort", "src", "tests", "scripts"]):
        exit_code = run_command(cmd)
        if exit_code != 0:
            return exit_code
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(
        description="dbtelemetry test runner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                       # Run all tests
  %(prog)s --type unit           # Unit tests only
  %(prog)s --coverage --html     # With coverage and an HTML report
  %(prog)s --quality             # black, isort, flake8, mypy
  %(prog)s --full                # Format, quality checks, then tests with coverage
        """,
    )
    parser.add_argument(
        "--type", "-t",
        choices=["all", "unit", "integration"],
        default="all",
        help="Type of tests to run (default: all)",
    )
    parser.add_argument("--coverage", "-c", action="store_true", help="Enable coverage reporting")
    parser.add_argument("--html", action="store_true", help="Generate HTML coverage report")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    parser.add_argument("--parallel", "-p", action="store_true", help="Run tests in parallel")
    parser.add_argument("--fail-fast", "-x", action="store_true", help="Stop on first failure")
    parser.add_argument("--quality", "-q", action="store_true", help="Run code quality checks")
    parser.add_argument("--format", "-f", action="store_true", help="Format code with black and isort")
    parser.add_argument("--full", action="store_true", help="Format, check, then test with coverage")
    args = parser.parse_args()

    if args.format:
        return run_format()
    if args.quality:
        return run_quality_checks()
    if args.full:
        for step in (run_format, run_quality_checks):
            exit_code = step()
            if exit_code != 0:
                return exit_code
        return run_tests(coverage=True, html_report=True, verbose=args.verbose, parallel=args.parallel)

    return run_tests(
        args.type,
        coverage=args.coverage,
        html_report=args.html,
        verbose=args.verbose,
        parallel=args.parallel,
        fail_fast=args.fail_fast,
    )


if __name__ == "__main__":
    sys.exit(main())
