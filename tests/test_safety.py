import os
import sys

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from dataclasses import replace

from deltahedge.strategy.safety import (
    GateMode,
    SafetyLimits,
    SafetyRequest,
    check_cooldown,
    run_safety_checks,
)

import unittest

LIMITS = SafetyLimits(
    min_notional_usd=50.0,
    max_notional_usd=100_000.0,
    max_daily_rebalances=10,
    max_hourly_rebalances=4,
    cooldown_seconds=3600.0,
)

REQUEST = SafetyRequest(
    change_usd=100.0,
    total_notional_usd=1000.0,
    target_size=1.0,
    current_size=0.5,
    daily_count=0,
    hourly_count=0,
    last_rebalance_timestamp=0.0,
    now=10_000.0,
)


class TestSafetyGate(unittest.TestCase):
    def test_plain_request_is_allowed(self) -> None:
        for mode in GateMode:
            self.assertTrue(run_safety_checks(REQUEST, LIMITS, mode).allowed)

    def test_min_notional_skipped_only_for_forced_close(self) -> None:
        small = replace(REQUEST, change_usd=10.0)
        result = run_safety_checks(small, LIMITS, GateMode.NORMAL)
        self.assertFalse(result.allowed)
        self.assertIn("min notional", result.reason)
        self.assertFalse(run_safety_checks(small, LIMITS, GateMode.EMERGENCY).allowed)
        self.assertTrue(run_safety_checks(small, LIMITS, GateMode.FORCED_CLOSE).allowed)

    def test_rate_limits_skipped_only_for_forced_close(self) -> None:
        daily = replace(REQUEST, daily_count=10)
        hourly = replace(REQUEST, hourly_count=4)
        for req in (daily, hourly):
            self.assertFalse(run_safety_checks(req, LIMITS, GateMode.NORMAL).allowed)
            self.assertFalse(run_safety_checks(req, LIMITS, GateMode.EMERGENCY).allowed)
            self.assertTrue(run_safety_checks(req, LIMITS, GateMode.FORCED_CLOSE).allowed)

    def test_cooldown_applies_to_normal_mode_only(self) -> None:
        recent = replace(REQUEST, last_rebalance_timestamp=9_000.0)
        result = run_safety_checks(recent, LIMITS, GateMode.NORMAL)
        self.assertFalse(result.allowed)
        self.assertIn("Cooldown", result.reason)
        self.assertTrue(run_safety_checks(recent, LIMITS, GateMode.EMERGENCY).allowed)
        self.assertTrue(run_safety_checks(recent, LIMITS, GateMode.FORCED_CLOSE).allowed)

    def test_max_notional_and_duplicate_always_apply(self) -> None:
        huge = replace(REQUEST, total_notional_usd=200_000.0)
        same = replace(REQUEST, target_size=0.5)
        for mode in GateMode:
            self.assertFalse(run_safety_checks(huge, LIMITS, mode).allowed)
            self.assertFalse(run_safety_checks(same, LIMITS, mode).allowed)

    def test_first_failing_check_is_reported(self) -> None:
        req = replace(REQUEST, change_usd=10.0, daily_count=10)
        result = run_safety_checks(req, LIMITS, GateMode.NORMAL)
        self.assertIn("min notional", result.reason)

    def test_cooldown_boundary(self) -> None:
        self.assertFalse(check_cooldown(1000.0, 3600.0, 4599.0).allowed)
        self.assertTrue(check_cooldown(1000.0, 3600.0, 4600.0).allowed)


if __name__ == '__main__':
    unittest.main()
