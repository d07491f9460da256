import os
import sys

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

import json
import tempfile
from typing import Dict, List

import pandas as pd

from deltahedge.app import main
from deltahedge.config.schema import Config
from deltahedge.data.position_reader import (
    DeterministicReadError,
    JsonSnapshotReader,
    PositionReader,
    TransientReadError,
)
from deltahedge.execution.live_exec import PollingDriver
from deltahedge.execution.models import IN_RANGE, LiquiditySnapshot, PositionConfig, TokenAmount
from deltahedge.execution.rebalancer import EXECUTED, RebalanceEngine
from deltahedge.execution.simulated_venue import SimulatedVenue
from deltahedge.utils.control import DEACTIVATE, UPDATE_CONFIG, drain_commands, enqueue_command

import unittest

T0 = pd.Timestamp("2024-03-01 12:00", tz="UTC").timestamp()


class FakeClock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class StaticReader(PositionReader):
    def __init__(self) -> None:
        self.snapshots: Dict[int, LiquiditySnapshot] = {}
        self.errors: Dict[int, Exception] = {}

    async def read_position(self, position_id, pool_address):
        if position_id in self.errors:
            raise self.errors[position_id]
        return self.snapshots[position_id]


def snapshot(amount0: float, price: float, fees0: float = 0.0, fees1: float = 0.0) -> LiquiditySnapshot:
    return LiquiditySnapshot(TokenAmount("WETH", amount0), TokenAmount("USDC", 1000.0), price, IN_RANGE,
                             fees0=fees0, fees1=fees1)


class DriverTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.config = Config()
        self.config.driver.control_file = os.path.join(self.tmp.name, "control.jsonl")
        self.venue = SimulatedVenue(funding_rate=0.0001, equity_usd=100.0)
        self.venue.set_mark_price("ETH", 2000.0)
        self.engine = RebalanceEngine(self.venue, self.config, clock=FakeClock(T0))
        self.reader = StaticReader()
        self.sleeps: List[float] = []
        self.driver = PollingDriver(self.config, self.engine, self.reader, sleep=self.fake_sleep)

    async def fake_sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)


class TestPollingDriver(DriverTestCase):
    async def test_activate_takes_baseline_from_snapshot_and_venue(self) -> None:
        self.reader.snapshots[1] = snapshot(1.0, 2000.0, fees0=0.01, fees1=5.0)
        await self.driver.activate(PositionConfig(1, "0xpool", "ETH"))
        state = self.engine.tracker(1).state_for_persist()
        self.assertAlmostEqual(state['initial_lp_usd'], 3025.0)
        self.assertAlmostEqual(state['initial_hl_usd'], 100.0)
        self.assertAlmostEqual(state['initial_lp_fees_usd'], 25.0)

    async def test_failing_position_does_not_block_others(self) -> None:
        self.reader.snapshots[1] = snapshot(1.0, 2000.0)
        self.reader.snapshots[2] = snapshot(1.0, 2000.0)
        await self.driver.activate(PositionConfig(1, "0xpool1", "ETH"))
        await self.driver.activate(PositionConfig(2, "0xpool2", "ETH"))

        self.reader.errors[1] = TransientReadError("rpc timeout")
        results = await self.driver.run_once()
        self.assertEqual(list(results), [2])
        self.assertEqual(results[2].status, EXECUTED)

        self.reader.errors[1] = DeterministicReadError("position burned")
        self.reader.errors[2] = RuntimeError("boom")
        with self.assertLogs('deltahedge.execution.live_exec', level='ERROR'):
            self.assertEqual(await self.driver.run_once(), {})

    async def test_run_sleeps_between_cycles(self) -> None:
        self.config.driver.poll_interval_seconds = 30.0
        await self.driver.run(max_cycles=3)
        self.assertEqual(self.sleeps, [30.0, 30.0])

    async def test_reset_accounting_rebases_on_current_values(self) -> None:
        self.reader.snapshots[1] = snapshot(1.0, 2000.0)
        await self.driver.activate(PositionConfig(1, "0xpool", "ETH"))
        self.reader.snapshots[1] = snapshot(0.8, 2200.0)
        self.assertTrue(await self.driver.reset_accounting(1))
        self.assertAlmostEqual(self.engine.tracker(1).state_for_persist()['initial_lp_usd'], 0.8 * 2200.0 + 1000.0)
        self.assertFalse(await self.driver.reset_accounting(99))

    async def test_deactivate(self) -> None:
        self.reader.snapshots[1] = snapshot(1.0, 2000.0)
        await self.driver.activate(PositionConfig(1, "0xpool", "ETH"))
        await self.driver.run_once()
        self.assertTrue(await self.driver.deactivate(1))
        self.assertEqual((await self.venue.get_position("ETH")).size, 0.0)
        self.assertEqual(await self.driver.run_once(), {})



class TestControlRequests(DriverTestCase):
    """Control requests from a separate CLI process reach the running driver."""

    def write_config(self, state_file: str) -> str:
        path = os.path.join(self.tmp.name, "config.yaml")
        with open(path, "w", encoding="utf-8") as fh:
            fh.write(
                f"state:\n  state_file: {state_file}\n"
                f"driver:\n  control_file: {self.config.driver.control_file}\n"
            )
        return path

    async def asyncSetUp(self) -> None:
        await super().asyncSetUp()
        self.state_file = os.path.join(self.tmp.name, "state.json")
        self.clock = FakeClock(T0)
        self.engine = RebalanceEngine(self.venue, self.config, clock=self.clock, state_file=self.state_file)
        self.driver = PollingDriver(self.config, self.engine, self.reader, sleep=self.fake_sleep)
        self.config_path = self.write_config(self.state_file)

    async def test_cli_deactivate_is_not_undone_by_running_engine(self) -> None:
        self.reader.snapshots[1] = snapshot(1.0, 2000.0)
        await self.driver.activate(PositionConfig(1, "0xpool", "ETH"))
        await self.driver.run_once()
        self.assertAlmostEqual((await self.venue.get_position("ETH")).size, 1.0)

        main(['deactivate', '--config', self.config_path, '--position-id', '1'])
        # The CLI only queues the request
        self.assertEqual(self.engine.position_ids(), [1])

        self.clock.now += 12 * 3600
        self.assertEqual(await self.driver.run_once(), {})
        self.assertEqual((await self.venue.get_position("ETH")).size, 0.0)
        self.assertEqual(await self.driver.run_once(), {})
        self.assertEqual((await self.venue.get_position("ETH")).size, 0.0)

        reloaded = RebalanceEngine(SimulatedVenue(), Config(), state_file=self.state_file)
        self.assertEqual(reloaded.position_ids(), [])

    async def test_cli_activate_and_reset_applied_before_cycle(self) -> None:
        self.reader.snapshots[2] = snapshot(1.0, 2000.0)
        main(['activate', '--config', self.config_path, '--position-id', '2',
              '--symbol', 'ETH', '--pool', '0xpool2', '--hedge-ratio', '0.5'])
        results = await self.driver.run_once()
        self.assertEqual(results[2].status, EXECUTED)
        self.assertEqual(self.engine.get_state(2).config.hedge_ratio, 0.5)
        self.assertAlmostEqual((await self.venue.get_position("ETH")).size, 0.5)

        self.reader.snapshots[2] = snapshot(0.8, 2200.0)
        main(['reset-pnl', '--config', self.config_path, '--position-id', '2'])
        await self.driver.apply_commands()
        self.assertAlmostEqual(
            self.engine.tracker(2).state_for_persist()['initial_lp_usd'], 0.8 * 2200.0 + 1000.0)

        reloaded = RebalanceEngine(SimulatedVenue(), Config(), state_file=self.state_file)
        self.assertEqual(reloaded.position_ids(), [2])

    async def test_invalid_command_is_rejected_and_others_applied(self) -> None:
        self.reader.snapshots[1] = snapshot(1.0, 2000.0)
        await self.driver.activate(PositionConfig(1, "0xpool", "ETH"))
        control = self.config.driver.control_file
        enqueue_command(control, {'op': UPDATE_CONFIG, 'position_id': 1,
                                  'changes': {'emergency_price_movement_threshold': 0.01}})
        enqueue_command(control, {'op': UPDATE_CONFIG, 'position_id': 1, 'changes': {'hedge_ratio': 0.8}})
        with self.assertLogs('deltahedge.execution.live_exec', level='ERROR'):
            applied = await self.driver.apply_commands()
        self.assertEqual(len(applied), 1)
        cfg = self.engine.get_state(1).config
        self.assertIsNone(cfg.emergency_price_movement_threshold)
        self.assertEqual(cfg.hedge_ratio, 0.8)
        self.assertEqual(await self.driver.apply_commands(), [])


class TestControlInbox(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.path = os.path.join(self.tmp.name, "inbox", "control.jsonl")

    def test_drain_returns_commands_in_order_once(self) -> None:
        enqueue_command(self.path, {'op': DEACTIVATE, 'position_id': 1})
        enqueue_command(self.path, {'op': DEACTIVATE, 'position_id': 2})
        self.assertEqual([c['position_id'] for c in drain_commands(self.path)], [1, 2])
        self.assertEqual(drain_commands(self.path), [])

    def test_unknown_op_is_refused(self) -> None:
        with self.assertRaises(ValueError):
            enqueue_command(self.path, {'op': 'liquidate'})

    def test_leftover_batch_first_and_malformed_lines_dropped(self) -> None:
        enqueue_command(self.path, {'op': DEACTIVATE, 'position_id': 2})
        with open(self.path + ".draining", "w", encoding="utf-8") as fh:
            fh.write('{"op": "deactivate", "position_id": 1}\nnot json\n[1, 2]\n')
        with self.assertLogs('deltahedge.utils.control', level='ERROR'):
            commands = drain_commands(self.path)
        self.assertEqual([c['position_id'] for c in commands], [1, 2])
        self.assertFalse(os.path.exists(self.path + ".draining"))



class TestJsonSnapshotReader(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.path = os.path.join(self.tmp.name, "snapshots.json")

    def write(self, payload) -> None:
        with open(self.path, "w", encoding="utf-8") as fh:
            json.dump(payload, fh)

    async def test_reads_published_snapshot(self) -> None:
        self.write({'positions': {'7': {
            'token0': {'symbol': 'WETH', 'amount': 0.5},
            'token1': {'symbol': 'USDC', 'amount': 1000.0},
            'price': 2000.0,
            'range_status': 'in-range',
            'fees1': 1.5,
        }}})
        snap = await JsonSnapshotReader(self.path).read_position(7, "0xpool")
        self.assertEqual(snap.token0.amount, 0.5)
        self.assertAlmostEqual(snap.value_usd, 2000.0)
        self.assertAlmostEqual(snap.fees_usd, 1.5)

    async def test_error_classes(self) -> None:
        reader = JsonSnapshotReader(self.path)
        with self.assertRaises(TransientReadError):
            await reader.read_position(7, "0xpool")

        with open(self.path, "w", encoding="utf-8") as fh:
            fh.write('{"positions": {')
        with self.assertRaises(TransientReadError):
            await reader.read_position(7, "0xpool")

        self.write({'positions': {}})
        with self.assertRaises(DeterministicReadError):
            await reader.read_position(7, "0xpool")

        self.write({'positions': {'7': {
            'token0': {'symbol': 'WETH', 'amount': 0.5},
            'token1': {'symbol': 'USDC', 'amount': 1000.0},
            'price': 2000.0,
            'range_status': 'sideways',
        }}})
        with self.assertRaises(DeterministicReadError):
            await reader.read_position(7, "0xpool")


if __name__ == '__main__':
    unittest.main()
