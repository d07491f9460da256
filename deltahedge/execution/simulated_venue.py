"""
Simulated hedge venue.

Keeps short positions in memory and fills every order immediately at
the current mark price.  Used for dry runs and for backtest replays,
where the replay engine updates the mark price before every tick.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from .models import FillResult, HedgeState
from .venue import HedgeVenue

logger = logging.getLogger(__name__)

SIZE_EPSILON = 1e-9


@dataclass
class _SimPosition:
    size: float
    entry_price: float


class SimulatedVenue(HedgeVenue):
    """In-memory venue with instant fills.

    Parameters
    ----------
    funding_rate : float
        Hourly funding rate reported for every symbol.
    equity_usd : float
        Starting collateral of the simulated account.
    taker_fee : float
        Fee charged on each fill, deducted from the collateral.
    """

    def __init__(self, funding_rate: float = 0.0001, equity_usd: float = 100.0, taker_fee: float = 0.0) -> None:
        self.funding_rate = funding_rate
        self.taker_fee = taker_fee
        self.cash_usd = equity_usd
        self._positions: Dict[str, _SimPosition] = {}
        self._marks: Dict[str, float] = {}
        logger.info("SimulatedVenue initialized (funding=%.4f%%, equity=$%.2f)", funding_rate * 100, equity_usd)

    def set_mark_price(self, symbol: str, price: float) -> None:
        self._marks[symbol] = price

    def set_funding_rate(self, rate: float) -> None:
        self.funding_rate = rate
        logger.debug("[SIM] Funding rate updated to %.4f%%", rate * 100)

    def _mark(self, symbol: str, fallback: float = 0.0) -> float:
        return self._marks.get(symbol, fallback)

    async def get_position(self, symbol: str) -> HedgeState:
        pos = self._positions.get(symbol)
        if pos is None or pos.size <= SIZE_EPSILON:
            return HedgeState.flat(symbol)
        mark = self._mark(symbol, pos.entry_price)
        return HedgeState(symbol=symbol, size=pos.size, notional_usd=pos.size * mark, side='short')

    def _fill(self, symbol: str, delta: float, price: float) -> None:
        """Apply a signed size change (positive = sell more) at `price`."""
        pos = self._positions.get(symbol) or _SimPosition(0.0, price)
        if delta > 0:
            new_size = pos.size + delta
            pos.entry_price = (pos.size * pos.entry_price + delta * price) / new_size
            pos.size = new_size
        else:
            closed = min(pos.size, -delta)
            self.cash_usd += (pos.entry_price - price) * closed
            pos.size -= closed
        self.cash_usd -= abs(delta) * price * self.taker_fee
        if pos.size <= SIZE_EPSILON:
            self._positions.pop(symbol, None)
        else:
            self._positions[symbol] = pos

    async def set_position(self, symbol: str, size: float, notional_usd: float) -> Optional[FillResult]:
        current = await self.get_position(symbol)
        delta = size - current.size
        if abs(delta) <= SIZE_EPSILON:
            logger.info("[SIM] Position already at target size %.4f: no-op", size)
            return None
        price = self._mark(symbol, notional_usd / size if size > 0 else 0.0)
        self._fill(symbol, delta, price)
        action = 'SELL' if delta > 0 else 'BUY-REDUCE'
        logger.info("[SIM] %s %s size=%.4f -> %.4f @ %.6f", action, symbol, current.size, size, price)
        return FillResult(action=action, size=abs(delta), avg_price=price)

    async def close_position(self, symbol: str) -> Optional[FillResult]:
        current = await self.get_position(symbol)
        if current.size <= 0:
            logger.info("[SIM] No position to close for %s", symbol)
            return None
        price = self._mark(symbol, self._positions[symbol].entry_price)
        self._fill(symbol, -current.size, price)
        logger.info("[SIM] Closed %s size=%.4f @ %.6f", symbol, current.size, price)
        return FillResult(action='CLOSE', size=current.size, avg_price=price)

    async def get_funding_rate(self, symbol: str) -> float:
        return self.funding_rate

    async def get_account_equity(self) -> float:
        unrealized = sum(
            (pos.entry_price - self._mark(sym, pos.entry_price)) * pos.size
            for sym, pos in self._positions.items()
        )
        return self.cash_usd + unrealized
