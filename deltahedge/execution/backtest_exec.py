"""
Backtest execution engine.

This module contains the `BacktestEngine` class which replays recorded
liquidity snapshots through the real `RebalanceEngine`.  Orders are
filled by a `SimulatedVenue` whose mark price follows the replayed
price, and the engine's clock is driven by the tick timestamps, so
cooldowns, timers and the daily and hourly caps behave exactly as they
would have live.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional

import pandas as pd

from ..config.schema import Config
from ..reporting.audit import NullAuditSink
from .models import LiquiditySnapshot, PositionConfig, RebalanceEvent, TokenAmount
from .rebalancer import ABORTED, EXECUTED, RebalanceEngine
from .simulated_venue import SimulatedVenue
from .venue import VenueError

logger = logging.getLogger(__name__)


@dataclass
class PnlPoint:
    """Position P&L after one replayed tick."""
    timestamp: pd.Timestamp
    price: float
    hedge_size: float
    virtual_pnl_usd: float
    account_pnl_usd: float


@dataclass
class BacktestResult:
    events: List[RebalanceEvent] = field(default_factory=list)
    pnl_curve: List[PnlPoint] = field(default_factory=list)
    fees_usd: float = 0.0
    funding_usd: float = 0.0
    ticks: int = 0


class ReplayClock:
    """Clock that returns whatever time the replay is at."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


def row_to_snapshot(row: pd.Series) -> LiquiditySnapshot:
    return LiquiditySnapshot(
        token0=TokenAmount(str(row['token0_symbol']), float(row['token0_amount'])),
        token1=TokenAmount(str(row['token1_symbol']), float(row['token1_amount'])),
        price=float(row['price']),
        range_status=str(row['range_status']),
        fees0=float(row['fees0']),
        fees1=float(row['fees1']),
    )


class BacktestEngine:
    """Replay ticks for one position.

    Parameters
    ----------
    config : Config
        Strategy, accounting and venue settings used for the replay.
    position : PositionConfig
        Position being replayed.
    initial_hl_usd : float, optional
        Starting collateral of the simulated venue account.  Defaults to
        ``config.venue.simulated_equity_usd``.
    """

    def __init__(self, config: Config, position: PositionConfig, initial_hl_usd: Optional[float] = None) -> None:
        self.config = config
        self.position = position
        self.initial_hl_usd = config.venue.simulated_equity_usd if initial_hl_usd is None else initial_hl_usd

    def _mark_price(self, price: float) -> float:
        if self.position.hedge_token == 'token0':
            return price
        return 1.0 / price if price > 0 else 0.0

    async def replay(self, ticks: pd.DataFrame) -> BacktestResult:
        """Run every tick through a fresh engine and collect the results."""
        result = BacktestResult()
        if ticks.empty:
            logger.warning("Backtest: no ticks to replay")
            return result

        clock = ReplayClock(ticks.index[0].timestamp())
        venue = SimulatedVenue(
            funding_rate=self.config.venue.simulated_funding_rate,
            equity_usd=self.initial_hl_usd,
            taker_fee=self.config.pnl.taker_fee,
        )
        engine = RebalanceEngine(venue, self.config, audit_sink=NullAuditSink(), clock=clock)

        pid = self.position.position_id
        symbol = self.position.hedge_symbol
        first = row_to_snapshot(ticks.iloc[0])
        await engine.activate_position(
            self.position,
            initial_lp_usd=first.value_usd + first.fees_usd,
            initial_hl_usd=self.initial_hl_usd,
            initial_lp_fees_usd=first.fees_usd,
        )

        for ts, row in ticks.iterrows():
            clock.now = ts.timestamp()
            snapshot = row_to_snapshot(row)
            venue.set_mark_price(symbol, self._mark_price(snapshot.price))
            if not math.isnan(row['funding_rate']):
                venue.set_funding_rate(float(row['funding_rate']))
            result.ticks += 1

            try:
                outcome = await engine.cycle(pid, snapshot)
            except VenueError as exc:
                logger.error("Backtest: venue error at %s: %s", ts, exc)
                continue
            if outcome is None or outcome.status == ABORTED:
                continue
            if outcome.status == EXECUTED:
                result.events.append(engine.get_state(pid).rebalances[-1])
            result.pnl_curve.append(PnlPoint(
                timestamp=ts,
                price=snapshot.price,
                hedge_size=outcome.to_size,
                virtual_pnl_usd=outcome.pnl.virtual_pnl_usd,
                account_pnl_usd=outcome.pnl.account_pnl_usd,
            ))
            result.fees_usd = outcome.pnl.cumulative_hl_fees_usd
            result.funding_usd = outcome.pnl.cumulative_funding_usd

        logger.info(
            "Backtest finished: %d ticks, %d rebalances, fees $%.2f",
            result.ticks, len(result.events), result.fees_usd,
        )
        return result

    def run(self, ticks: pd.DataFrame) -> BacktestResult:
        """Blocking wrapper around `replay()` for the command line."""
        return asyncio.run(self.replay(ticks))
