import os
import sys

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from deltahedge.execution.models import ABOVE_RANGE, BELOW_RANGE, IN_RANGE, LiquiditySnapshot, TokenAmount
from deltahedge.strategy.hedge_calculator import calculate_hedge, in_range_ratio

import unittest


def weth_usdc(amount0: float, amount1: float, price: float, status: str = IN_RANGE) -> LiquiditySnapshot:
    return LiquiditySnapshot(TokenAmount("WETH", amount0), TokenAmount("USDC", amount1), price, status)


class TestInRangeRatio(unittest.TestCase):
    def test_ratio_steps_down_with_negative_funding(self) -> None:
        self.assertEqual(in_range_ratio(0.0001), 1.0)
        self.assertEqual(in_range_ratio(0.0), 1.0)
        self.assertEqual(in_range_ratio(-0.05), 0.98)
        self.assertEqual(in_range_ratio(-0.20), 0.98)
        self.assertEqual(in_range_ratio(-0.5), 0.90)


class TestCalculateHedge(unittest.TestCase):
    def test_in_range_positive_funding_hedges_full_exposure(self) -> None:
        target = calculate_hedge(weth_usdc(2.0, 4000.0, 2000.0), 0.0001)
        self.assertAlmostEqual(target.size, 2.0)
        self.assertAlmostEqual(target.notional_usd, 4000.0)
        self.assertEqual(target.hedge_ratio, 1.0)

    def test_negative_funding_trims_hedge(self) -> None:
        target = calculate_hedge(weth_usdc(2.0, 4000.0, 2000.0), -0.05)
        self.assertAlmostEqual(target.size, 1.96)
        target = calculate_hedge(weth_usdc(2.0, 4000.0, 2000.0), -0.5)
        self.assertAlmostEqual(target.size, 1.80)

    def test_floor_lifts_small_ratios(self) -> None:
        target = calculate_hedge(weth_usdc(2.0, 4000.0, 2000.0), -0.5, hedge_floor=0.95)
        self.assertAlmostEqual(target.hedge_ratio, 0.95)
        self.assertAlmostEqual(target.size, 1.90)

    def test_token0_absent_means_no_hedge(self) -> None:
        # Above range the position holds only the quote token
        target = calculate_hedge(weth_usdc(0.0, 5000.0, 2600.0, ABOVE_RANGE), 0.0001)
        self.assertEqual(target.size, 0.0)
        self.assertEqual(target.hedge_ratio, 0.0)

    def test_token0_only_hedges_fully_even_with_negative_funding(self) -> None:
        target = calculate_hedge(weth_usdc(2.5, 0.0, 1500.0, BELOW_RANGE), -0.5)
        self.assertEqual(target.hedge_ratio, 1.0)
        self.assertAlmostEqual(target.size, 2.5)
        self.assertAlmostEqual(target.notional_usd, 3750.0)

    def test_token1_hedge_uses_inverse_price_and_mirrored_statuses(self) -> None:
        # USDC/WETH pool: price is USDC expressed in WETH
        snap = LiquiditySnapshot(TokenAmount("USDC", 1000.0), TokenAmount("WETH", 2.0), 0.0005, IN_RANGE)
        target = calculate_hedge(snap, 0.0001, hedge_token="token1")
        self.assertAlmostEqual(target.size, 2.0)
        self.assertAlmostEqual(target.notional_usd, 4000.0)

        below = LiquiditySnapshot(TokenAmount("USDC", 5000.0), TokenAmount("WETH", 0.0), 0.0005, BELOW_RANGE)
        self.assertEqual(calculate_hedge(below, 0.0001, hedge_token="token1").size, 0.0)


if __name__ == '__main__':
    unittest.main()
