#!/usr/bin/env python3
"""
CLI test runner for the interview signal pipeline.

Usage: python run_tests.py [--verbose] [pattern]
  --verbose  Show detailed output for each test
  pattern    Optional: run only tests matching this string (e.g. "retention", "api")
"""

import sys
import os
import argparse

PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, PROJECT_ROOT)


def _flatten(suite, acc):
    import unittest

    for t in suite:
        if isinstance(t, unittest.TestSuite):
            _flatten(t, acc)
        else:
            acc.append(t)
    return acc


def run_tests(verbose=False, pattern=None):
    """Discover and run tests. Returns (total, failures, errors)."""
    import unittest

    loader = unittest.TestLoader()
    suite = loader.discover(os.path.join(PROJECT_ROOT, "tests"), pattern="test_*.py")

    if pattern:
        pat = pattern.lower()
        selected = [t for t in _flatten(suite, []) if pat in str(t).lower()]
        if not selected:
            print(f"No tests match '{pattern}'")
            return 0, 0, 0
        suite = unittest.TestSuite(selected)

    runner = unittest.TextTestRunner(verbosity=2 if verbose else 1)
    result = runner.run(suite)
    return result.testsRun, len(result.failures), len(result.errors)


def main():
    parser = argparse.ArgumentParser(
        description="Run the interview signal pipeline test suite",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run_tests.py
  python run_tests.py --verbose
  python run_tests.py aggregator
  python run_tests.py retention
        """,
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    parser.add_argument("pattern", nargs="?", default=None, help="Run only tests matching this string")
    args = parser.parse_args()

    print("=" * 60)
    print("Interview Signal Pipeline - Test Suite")
    print("=" * 60)
    if args.pattern:
        print(f"Filter: tests matching '{args.pattern}'")
    print()

    total, failures, errors = run_tests(verbose=args.verbose, pattern=args.pattern)

    print()
    print("=" * 60)
    if failures == 0 and errors == 0:
        print(f"OK - {total} test(s) passed")
        return 0
    print(f"FAILED - {failures} failure(s), {errors} error(s) out of {total} test(s)")
    print("Run with --verbose to see full tracebacks")
    return 1


if __name__ == "__main__":
    sys.exit(main())
