# File: tests/run_tests.py
#!/usr/bin/env python3
"""
Test runner for the EV Charging Booking Platform tests.

Usage:
    python tests/run_tests.py                      # all suites
    python tests/run_tests.py unit                 # one suite
    python tests/run_tests.py unit.test_config     # one module
    python tests/run_tests.py integration.test_cli.TestCommandLine
"""

import unittest
import sys
from pathlib import Path

TESTS_DIR = Path(__file__).parent

# Make the package importable without installation, and the suites importable by name
sys.path.insert(0, str(TESTS_DIR.parent))
sys.path.insert(0, str(TESTS_DIR))


def run_all_tests(start_dir=TESTS_DIR):
    """Discover and run every test_*.py module below start_dir"""
    test_loader = unittest.TestLoader()
    test_suite = test_loader.discover(str(start_dir), pattern='test_*.py', top_level_dir=str(TESTS_DIR))

    test_runner = unittest.TextTestRunner(verbosity=2)
    return test_runner.run(test_suite)


def run_specific_test(test_name):
    """Run a suite directory, a test module or a test case"""
    if (TESTS_DIR / test_name).is_dir():
        return run_all_tests(TESTS_DIR / test_name)

    test_suite = unittest.TestLoader().loadTestsFromName(test_name)
    test_runner = unittest.TextTestRunner(verbosity=2)
    return test_runner.run(test_suite)


if __name__ == "__main__":
    if len(sys.argv) > 1:
        result = run_specific_test(sys.argv[1])
    else:
        result = run_all_tests()

    sys.exit(0 if result.wasSuccessful() else 1)
