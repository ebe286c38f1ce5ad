#!/usr/bin/env python
"""
Test runner script for Tender Harvester.

Runs the test modules grouped by component and prints a per-suite summary.

Usage:
    python run_tests.py                    # every suite
    python run_tests.py cache resilience   # selected suites
    python run_tests.py --coverage         # every suite, then a coverage run
"""

import argparse
import subprocess
import sys
from pathlib import Path

ROOT = Path(__file__).parent

# Suite name -> test modules, ordered from leaf components to the pipeline
SUITES = {
    "upstream": ["tests/test_ocds_client.py", "tests/test_ocds_parser.py", "tests/test_schemas.py"],
    "cache": ["tests/test_cache_manager.py", "tests/test_cache_admin.py"],
    "errors": ["tests/test_error_handler.py"],
    "fetching": [
        "tests/test_discovery.py",
        "tests/test_fetch_scheduler.py",
        "tests/test_aggregator.py",
    ],
    "resilience": ["tests/test_fallback.py", "tests/test_pipeline.py"],
    "surface": [
        "tests/test_main.py",
        "tests/test_logger.py",
        "tests/test_run_tests.py",
    ],
}


def run_pytest(args: list[str]) -> int:
    cmd = [sys.executable, "-m", "pytest", *args]
    print(f"\n$ {' '.join(cmd)}", flush=True)
    return subprocess.run(cmd, cwd=ROOT).returncode


def main() -> None:
    parser = argparse.ArgumentParser(description="Run Tender Harvester test suites")
    parser.add_argument(
        "suites",
        nargs="*",
        help=f"Suites to run (default: all): {', '.join(SUITES)}",
    )
    parser.add_argument(
        "--coverage",
        action="store_true",
        help="Finish with a full run under pytest-cov",
    )
    parser.add_argument(
        "--fail-fast",
        action="store_true",
        help="Stop at the first failing suite",
    )
    args = parser.parse_args()

    unknown = [name for name in args.suites if name not in SUITES]
    if unknown:
        parser.error(f"unknown suite(s): {', '.join(unknown)}")

    selected = args.suites or list(SUITES)
    results: dict[str, int] = {}

    for name in selected:
        print(f"\n{'=' * 80}\n Suite: {name}\n{'=' * 80}")
        results[name] = run_pytest([*SUITES[name], "-q", "--tb=short"])
        if results[name] != 0 and args.fail_fast:
            break

    if args.coverage and all(code == 0 for code in results.values()):
        results["coverage"] = run_pytest(
            ["tests/", "--cov=tender_harvester", "--cov-report=term-missing", "-q"]
        )

    print(f"\n{'=' * 80}\n Summary\n{'=' * 80}")
    for name, code in results.items():
        print(f"  {'PASSED' if code == 0 else 'FAILED':8} {name}")

    failed = [name for name, code in results.items() if code != 0]
    print(f"\n{len(results) - len(failed)}/{len(results)} suites passed")
    sys.exit(1 if failed else 0)


if __name__ == "__main__":
    main()
