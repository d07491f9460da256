"""
Liquidity position readers.

The engine never talks to the chain itself.  A `PositionReader` turns a
position id into a `LiquiditySnapshot`; the reader that decodes pool
state on-chain lives outside this package and publishes its snapshots
to a JSON file that `JsonSnapshotReader` consumes.

The file layout is::

    {
      "positions": {
        "1234": {
          "token0": {"symbol": "WETH", "amount": 0.5},
          "token1": {"symbol": "USDC", "amount": 1000.0},
          "price": 2000.0,
          "range_status": "in-range",
          "tick_lower": -200000, "tick_upper": -190000, "tick_current": -195000,
          "fees0": 0.001, "fees1": 1.5
        }
      }
    }
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict

from ..execution.models import RANGE_STATUSES, LiquiditySnapshot, TokenAmount

logger = logging.getLogger(__name__)


class TransientReadError(Exception):
    """The read may succeed if retried (file being rewritten, RPC hiccup)."""


class DeterministicReadError(Exception):
    """The read will keep failing (unknown position, malformed data)."""


class PositionReader(ABC):
    """Source of per-cycle liquidity snapshots."""

    @abstractmethod
    async def read_position(self, position_id: int, pool_address: str) -> LiquiditySnapshot:
        """Return the current snapshot of `position_id`.

        Raises
        ------
        TransientReadError
            For failures worth retrying on the next cycle.
        DeterministicReadError
            For failures that retrying will not fix.
        """


def snapshot_from_dict(data: Dict[str, Any]) -> LiquiditySnapshot:
    """Build a snapshot from its JSON form, validating the range status."""
    status = data.get('range_status', '')
    if status not in RANGE_STATUSES:
        raise DeterministicReadError(f"Unknown range status: {status!r}")
    try:
        return LiquiditySnapshot(
            token0=TokenAmount(data['token0']['symbol'], float(data['token0']['amount'])),
            token1=TokenAmount(data['token1']['symbol'], float(data['token1']['amount'])),
            price=float(data['price']),
            range_status=status,
            tick_lower=int(data.get('tick_lower', 0)),
            tick_upper=int(data.get('tick_upper', 0)),
            tick_current=int(data.get('tick_current', 0)),
            fees0=float(data.get('fees0', 0.0)),
            fees1=float(data.get('fees1', 0.0)),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise DeterministicReadError(f"Malformed snapshot: {exc}") from exc


class JsonSnapshotReader(PositionReader):
    """Read snapshots published by an external chain reader."""

    def __init__(self, path: str) -> None:
        self.path = Path(path)

    async def read_position(self, position_id: int, pool_address: str) -> LiquiditySnapshot:
        try:
            with self.path.open("r", encoding="utf-8") as fh:
                raw = json.load(fh)
        except FileNotFoundError as exc:
            raise TransientReadError(f"Snapshot file not found: {self.path}") from exc
        except (OSError, ValueError) as exc:
            # A half-written file parses as invalid JSON
            raise TransientReadError(f"Failed to read {self.path}: {exc}") from exc

        entry = raw.get('positions', {}).get(str(position_id))
        if entry is None:
            raise DeterministicReadError(f"Position {position_id} not found in {self.path}")
        snapshot = snapshot_from_dict(entry)
        logger.debug("[pos#%d] snapshot read: price=%.6f range=%s", position_id, snapshot.price, snapshot.range_status)
        return snapshot
