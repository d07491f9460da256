"""
Live polling driver.

This module provides the `PollingDriver` class which runs the rebalance
engine against live data.  Every poll interval it reads each tracked
position's snapshot and runs one engine cycle, one position after the
other.  A failure in one position is logged with its id and never
affects the others.  State is persisted by the engine after every
mutating outcome and once more when the driver stops, so the bot can
resume after restarts without duplicating trades.

The driver's process is the only writer of the state file.  Control
requests from other processes arrive through the control inbox
(`utils.control`) and are applied between two passes.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..config.schema import Config
from ..data.position_reader import DeterministicReadError, PositionReader, TransientReadError
from ..utils.control import ACTIVATE, DEACTIVATE, RESET_ACCOUNTING, UPDATE_CONFIG, drain_commands
from .models import PositionConfig, PositionState
from .rebalancer import CycleOutcome, RebalanceEngine
from .venue import VenueError

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class PollingDriver:
    """Drive the engine at a fixed poll interval."""

    def __init__(
        self,
        config: Config,
        engine: RebalanceEngine,
        reader: PositionReader,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.config = config
        self.engine = engine
        self.reader = reader
        self._sleep = sleep

    async def _baseline(self, position: PositionConfig):
        snapshot = await self.reader.read_position(position.position_id, position.pool_address)
        equity = await self.engine.venue.get_account_equity()
        return snapshot.value_usd + snapshot.fees_usd, equity, snapshot.fees_usd

    async def activate(self, position: PositionConfig) -> PositionState:
        """Start tracking `position` with a baseline taken right now.

        The baseline is the current position value including uncollected
        fees, and the current venue equity.
        """
        lp_usd, hl_usd, fees_usd = await self._baseline(position)
        logger.info(
            "[pos#%d] Activating with baseline LP=$%.2f HL=$%.2f",
            position.position_id, lp_usd, hl_usd,
        )
        return await self.engine.activate_position(position, lp_usd, hl_usd, fees_usd)

    async def deactivate(self, position_id: int) -> bool:
        return await self.engine.deactivate_position(position_id)

    async def reset_accounting(self, position_id: int) -> bool:
        """Restart the position's P&L from its current values."""
        state = self.engine.get_state(position_id)
        if state is None:
            logger.warning("[pos#%d] Cannot reset accounting: not tracked", position_id)
            return False
        lp_usd, hl_usd, fees_usd = await self._baseline(state.config)
        return await self.engine.reset_accounting(position_id, lp_usd, hl_usd, fees_usd)

    async def _apply(self, command: Dict[str, Any]) -> None:
        op = command.get('op')
        if op == ACTIVATE:
            await self.activate(PositionConfig.from_dict(command['position']))
        elif op == DEACTIVATE:
            await self.deactivate(int(command['position_id']))
        elif op == RESET_ACCOUNTING:
            await self.reset_accounting(int(command['position_id']))
        elif op == UPDATE_CONFIG:
            await self.engine.update_config(int(command['position_id']), **command.get('changes', {}))
        else:
            raise ValueError(f"Unknown control command: {op!r}")

    async def apply_commands(self) -> List[Dict[str, Any]]:
        """Apply every pending control command from the inbox.

        Runs between two passes, so no cycle of this driver is in flight.
        A command that fails is logged and dropped.  Returns the commands
        that were applied.
        """
        path = self.config.driver.control_file
        if not path:
            return []
        try:
            commands = drain_commands(path)
        except OSError as exc:
            logger.error("Cannot read control inbox %s: %s", path, exc)
            return []
        applied = []
        for command in commands:
            logger.info("Applying control command: %s", command)
            try:
                await self._apply(command)
            except (KeyError, TypeError, ValueError) as exc:
                logger.error("Rejected control command %s: %s", command, exc)
            except (TransientReadError, DeterministicReadError, VenueError) as exc:
                logger.error("Control command %s failed: %s", command, exc)
            else:
                applied.append(command)
        return applied

    async def run_once(self) -> Dict[int, Optional[CycleOutcome]]:
        """Apply pending control commands, then run one cycle for every
        tracked position, sequentially."""
        await self.apply_commands()
        results: Dict[int, Optional[CycleOutcome]] = {}
        for pid in self.engine.position_ids():
            state = self.engine.get_state(pid)
            if state is None:
                # Deactivated while an earlier position was cycling
                continue
            try:
                snapshot = await self.reader.read_position(pid, state.config.pool_address)
                results[pid] = await self.engine.cycle(pid, snapshot)
            except TransientReadError as exc:
                logger.warning("[pos#%d] Snapshot unavailable, skipping cycle: %s", pid, exc)
            except DeterministicReadError as exc:
                logger.error("[pos#%d] Snapshot read rejected: %s", pid, exc)
            except VenueError as exc:
                logger.error("[pos#%d] Venue error, cycle aborted: %s", pid, exc)
            except Exception:
                logger.exception("[pos#%d] Cycle failed", pid)
        return results

    async def run(self, max_cycles: Optional[int] = None) -> None:
        """Main polling loop.

        Runs until cancelled (or for `max_cycles` passes).  On termination
        the current state is saved to disk.
        """
        interval = self.config.driver.poll_interval_seconds
        restored = self.engine.restored_positions()
        logger.info(
            "Starting polling driver (interval=%ss, %d tracked positions)", interval, len(restored),
        )
        for cfg in restored:
            logger.info("  pos#%d %s on %s", cfg.position_id, cfg.hedge_symbol, cfg.pool_address)

        cycles = 0
        try:
            while True:
                await self.run_once()
                cycles += 1
                if max_cycles is not None and cycles >= max_cycles:
                    break
                await self._sleep(interval)
        except asyncio.CancelledError:
            logger.info("Polling driver cancelled")
            raise
        finally:
            self.engine.save_state()
            logger.info("Polling driver stopped after %d cycles", cycles)
