#!/usr/bin/env python3
"""
Homomorphic Encryption Engine Test Runner

Runs every test module in the suite and writes a JSON report with results
grouped by engine component.
"""

import argparse
import datetime
import importlib
import json
import logging
import os
import sys
import time
import unittest
from collections import defaultdict

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tests import TEST_CATEGORIES

logging.basicConfig(
    level=logging.ERROR,
    format='%(asctime)s [%(levelname)s] %(message)s',
)
logger = logging.getLogger("engine_tests")

COMPONENT_NAMES = {
    'modular_arithmetic': "Modular Arithmetic Core",
    'secure_randomness': "Secure Randomness Service",
    'homomorphic_encryption': "Scheme Engines",
    'key_manager': "Key Manager",
    'dispatcher': "Operation Dispatcher",
    'zero_knowledge_proofs': "Zero-Knowledge Proofs",
    'lifecycle_events': "Lifecycle Notifier",
    'config': "Configuration",
    'engine': "Engine Facade",
}


def _component(test) -> str:
    module = test.__class__.__module__.rsplit('.', 1)[-1]
    return COMPONENT_NAMES.get(module[len('test_'):], "Other Tests")


class EngineTestResult(unittest.TextTestResult):
    """Test result that also groups outcomes by component."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.passed = []
        self.component_results = defaultdict(lambda: {"passed": 0, "failed": 0})
        self.test_details = []

    def _record(self, test, status, err=None):
        info = {
            "id": test.id(),
            "component": _component(test),
            "description": (test._testMethodDoc or "").strip(),
            "status": status,
            "timestamp": datetime.datetime.now().isoformat(),
        }
        if err is not None:
            info["error_type"] = err[0].__name__
            info["error_message"] = str(err[1])
        self.test_details.append(info)
        return info

    def addSuccess(self, test):
        super().addSuccess(test)
        self.passed.append(self._record(test, "PASS"))
        self.component_results[_component(test)]["passed"] += 1

    def addFailure(self, test, err):
        super().addFailure(test, err)
        self._record(test, "FAIL", err)
        self.component_results[_component(test)]["failed"] += 1

    def addError(self, test, err):
        super().addError(test, err)
        self._record(test, "ERROR", err)
        self.component_results[_component(test)]["failed"] += 1

    def addSkip(self, test, reason):
        super().addSkip(test, reason)
        self._record(test, "SKIP")


def suite_module_names():
    return [f"tests.test_{category}" for category in TEST_CATEGORIES]


def verify_test_modules() -> bool:
    """Check every test module imports before running anything."""
    failed_modules = []
    for module_name in suite_module_names():
        try:
            importlib.import_module(module_name)
        except ImportError as e:
            logger.error(f"FAILED to import test module: {module_name}: {e}")
            failed_modules.append(module_name)

    if failed_modules:
        logger.error("Test suite is broken. Cannot run tests.")
        return False
    return True


def create_test_suite() -> unittest.TestSuite:
    loader = unittest.TestLoader()
    suite = unittest.TestSuite()
    for module_name in suite_module_names():
        suite.addTests(loader.loadTestsFromModule(importlib.import_module(module_name)))
    return suite


def build_report(result: EngineTestResult, elapsed: float) -> dict:
    total = result.testsRun - len(result.skipped)
    return {
        "execution_date": datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
        "elapsed_seconds": elapsed,
        "summary": {
            "total_tests": result.testsRun,
            "passed": len(result.passed),
            "failures": len(result.failures),
            "errors": len(result.errors),
            "skipped": len(result.skipped),
            "pass_rate": (len(result.passed) / total) * 100 if total > 0 else 0,
        },
        "components": dict(result.component_results),
        "all_tests": result.test_details,
        "environment": {
            "platform": sys.platform,
            "python_version": sys.version.split()[0],
        },
    }


def run_engine_tests(verbosity=1, output_file="engine_test_report.json", skip_verification=False):
    if not skip_verification and not verify_test_modules():
        sys.exit(1)

    start = time.monotonic()
    runner = unittest.TextTestRunner(verbosity=verbosity, resultclass=EngineTestResult)
    result = runner.run(create_test_suite())
    report = build_report(result, time.monotonic() - start)

    with open(output_file, 'w') as f:
        json.dump(report, f, indent=2)

    summary = report["summary"]
    print("\n" + "=" * 80)
    print(f"ENGINE TEST SUMMARY - {report['execution_date']}")
    print("=" * 80)
    print(f"Passed: {summary['passed']}/{summary['total_tests']} ({summary['pass_rate']:.1f}%)")
    for component, counts in report["components"].items():
        print(f"{component}: {counts['passed']} passed, {counts['failed']} failed")
    print(f"Report saved to: {output_file}")

    return result.wasSuccessful()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run the homomorphic encryption engine tests")
    parser.add_argument("-v", "--verbosity", type=int, choices=[0, 1, 2], default=1,
                        help="Test output verbosity (0=minimal, 1=normal, 2=verbose)")
    parser.add_argument("-o", "--output", default="engine_test_report.json",
                        help="Output file for the JSON report")
    parser.add_argument("--skip-verification", action="store_true",
                        help="Skip the initial import check of test modules")
    args = parser.parse_args()

    success = run_engine_tests(args.verbosity, args.output, args.skip_verification)
    sys.exit(0 if success else 1)
