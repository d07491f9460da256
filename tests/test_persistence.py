import os
import sys

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

import tempfile

from deltahedge.execution.models import PositionState
from deltahedge.utils.persistence import SCHEMA_VERSION, load_state, migrate_state, save_state

import unittest


class TestStateFile(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.path = os.path.join(self.tmp.name, "nested", "state.json")

    def test_missing_file_loads_as_none(self) -> None:
        self.assertIsNone(load_state(self.path))

    def test_save_then_load(self) -> None:
        state = {'schema_version': SCHEMA_VERSION, 'positions': {'1': {'last_price': 2000.5}}}
        save_state(self.path, state)
        self.assertEqual(load_state(self.path), state)
        self.assertFalse(os.path.exists(self.path + ".tmp"))


class TestMigration(unittest.TestCase):
    def test_empty_state(self) -> None:
        self.assertEqual(migrate_state(None), {'schema_version': SCHEMA_VERSION, 'positions': {}})

    def test_legacy_single_position_layout(self) -> None:
        legacy = {
            'active_position': {'position_id': 7, 'pool_address': '0xabc', 'hedge_symbol': 'ETH'},
            'last_hedge': {'symbol': 'ETH', 'size': 1.5, 'notional_usd': 3000.0, 'side': 'short'},
            'last_price': 2000.0,
            'last_rebalance_timestamp': 1_700_000_000.0,
            'daily_rebalance_count': 3,
            'daily_reset_date': '2024-01-01',
        }
        migrated = migrate_state(legacy)
        self.assertEqual(list(migrated['positions']), ['7'])
        pos = migrated['positions']['7']
        self.assertEqual(pos['config']['protocol_version'], 'v3')
        self.assertEqual(pos['last_rebalance_price'], 0.0)
        self.assertEqual(pos['hourly_rebalance_count'], 0)

        state = PositionState.from_dict(pos)
        self.assertEqual(state.config.position_id, 7)
        self.assertEqual(state.last_hedge.size, 1.5)
        self.assertEqual(state.daily_rebalance_count, 3)
        self.assertEqual(state.rebalances, [])

    def test_position_without_newer_fields(self) -> None:
        raw = {'positions': {'9': {
            'config': {'pool_address': '0xdef', 'hedge_symbol': 'BTC'},
            'last_price': 60000.0,
        }}}
        pos = migrate_state(raw)['positions']['9']
        self.assertEqual(pos['config']['position_id'], 9)
        self.assertEqual(pos['config']['hedge_token'], 'token0')
        self.assertEqual(pos['last_rebalance_price'], 0.0)
        self.assertEqual(pos['last_hedge']['side'], 'none')
        self.assertEqual(PositionState.from_dict(pos).last_hedge.symbol, 'BTC')


if __name__ == '__main__':
    unittest.main()
