import os
import sys

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from deltahedge.accounting.tracker import EMPTY_SNAPSHOT, PnlTracker

import unittest


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def make_tracker(clock=None) -> PnlTracker:
    return PnlTracker(default_lp_usd=1000.0, default_hl_usd=100.0, clock=clock or FakeClock())


class TestVirtualLedger(unittest.TestCase):
    def test_increases_average_entry_without_realizing(self) -> None:
        tracker = make_tracker()
        tracker.record_trade(100, 10)
        tracker.record_trade(50, 20)
        size, avg = tracker.virtual_state()
        self.assertAlmostEqual(size, 150)
        self.assertAlmostEqual(avg, (100 * 10 + 50 * 20) / 150)
        self.assertEqual(tracker.state_for_persist()['realized_pnl_usd'], 0.0)

    def test_round_trip_realizes_short_pnl(self) -> None:
        tracker = make_tracker()
        tracker.record_trade(100, 10)
        tracker.record_trade(-100, 12)
        size, _ = tracker.virtual_state()
        self.assertEqual(size, 0.0)
        self.assertAlmostEqual(tracker.state_for_persist()['realized_pnl_usd'], -200.0)

    def test_partial_reduction_keeps_entry(self) -> None:
        tracker = make_tracker()
        tracker.record_trade(100, 10)
        tracker.record_trade(-40, 8)
        size, avg = tracker.virtual_state()
        self.assertAlmostEqual(size, 60)
        self.assertAlmostEqual(avg, 10)
        self.assertAlmostEqual(tracker.state_for_persist()['realized_pnl_usd'], 80.0)

    def test_overshooting_reduction_clamps_at_zero(self) -> None:
        tracker = make_tracker()
        tracker.record_trade(100, 10)
        tracker.record_trade(-150, 12)
        size, avg = tracker.virtual_state()
        self.assertEqual(size, 0.0)
        self.assertEqual(avg, 12)
        self.assertAlmostEqual(tracker.state_for_persist()['realized_pnl_usd'], -200.0)

    def test_sync_size_adopts_venue_size(self) -> None:
        tracker = make_tracker()
        self.assertTrue(tracker.sync_size(2.0, 1500.0))
        self.assertEqual(tracker.virtual_state(), (2.0, 1500.0))
        self.assertFalse(tracker.sync_size(2.0, 1600.0))


class TestFundingAndFees(unittest.TestCase):
    def test_funding_accrues_per_hour_on_notional(self) -> None:
        clock = FakeClock(0.0)
        tracker = make_tracker(clock)
        clock.now = 7200.0
        tracker.accumulate_funding(0.0001, 1000.0)
        self.assertAlmostEqual(tracker.state_for_persist()['cumulative_funding_usd'], 0.2)
        # Same instant again: nothing more accrues
        tracker.accumulate_funding(0.0001, 1000.0)
        self.assertAlmostEqual(tracker.state_for_persist()['cumulative_funding_usd'], 0.2)

    def test_taker_fee_on_order_notional(self) -> None:
        tracker = make_tracker()
        self.assertAlmostEqual(tracker.record_trade_fee(1000.0), 0.432)
        self.assertAlmostEqual(tracker.record_trade_fee(-1000.0), 0.432)
        self.assertAlmostEqual(tracker.state_for_persist()['cumulative_hl_fees_usd'], 0.864)


class TestCompute(unittest.TestCase):
    def test_snapshot_combines_lp_and_hedge(self) -> None:
        tracker = make_tracker()
        tracker.record_trade(1.0, 2000.0)
        snap = tracker.compute(1100.0, 90.0, 5.0, 1900.0)
        self.assertAlmostEqual(snap.unrealized_pnl_usd, 100.0)
        self.assertAlmostEqual(snap.virtual_pnl_usd, 200.0)
        self.assertAlmostEqual(snap.virtual_pnl_percent, 20.0)
        self.assertAlmostEqual(snap.account_pnl_usd, 90.0)
        self.assertAlmostEqual(snap.account_pnl_percent, 90.0 / 1100.0 * 100)
        self.assertAlmostEqual(snap.lp_fees_usd, 5.0)

    def test_disabled_tracker_reports_zeros(self) -> None:
        tracker = PnlTracker()
        self.assertFalse(tracker.is_initialized)
        tracker.record_trade(1.0, 2000.0)
        self.assertIs(tracker.compute(1000.0, 100.0, 0.0, 2000.0), EMPTY_SNAPSHOT)
        self.assertEqual(tracker.record_trade_fee(1000.0), 0.0)
        self.assertIsNone(tracker.state_for_persist())

    def test_reinitialize_restarts_ledger(self) -> None:
        tracker = make_tracker()
        tracker.record_trade(1.0, 2000.0)
        tracker.record_trade_fee(2000.0)
        tracker.reinitialize(500.0, 50.0, 2.0)
        state = tracker.state_for_persist()
        self.assertEqual(state['initial_lp_usd'], 500.0)
        self.assertEqual(state['initial_lp_fees_usd'], 2.0)
        self.assertEqual(state['virtual_size'], 0.0)
        self.assertEqual(state['cumulative_hl_fees_usd'], 0.0)

    def test_saved_state_restores_ledger(self) -> None:
        tracker = make_tracker()
        tracker.record_trade(3.0, 1800.0)
        restored = PnlTracker(saved_state=tracker.state_for_persist(), default_lp_usd=1.0, default_hl_usd=1.0)
        self.assertEqual(restored.virtual_state(), (3.0, 1800.0))
        self.assertEqual(restored.state_for_persist()['initial_lp_usd'], 1000.0)


if __name__ == '__main__':
    unittest.main()
