"""
Virtual accounting tracker.

One venue account may back several independent hedges, so the account's
own P&L cannot be attributed to a single liquidity position.  The
tracker rebuilds each position's economics from the stream of size
changes the engine makes: a weighted-average short ledger (realized and
unrealized P&L), funding accrued on the hedge notional, and taker fees.

The tracker models short exposure only: its virtual size never goes
below zero.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, asdict, fields
from typing import Any, Dict, Optional, Tuple

from ..utils.timeutils import Clock, system_clock, hours_between

logger = logging.getLogger(__name__)

SIZE_EPSILON = 1e-6


@dataclass
class PnlState:
    """Baseline and ledger of one position."""
    initial_lp_usd: float
    initial_hl_usd: float
    initial_lp_fees_usd: float = 0.0
    initial_timestamp: float = 0.0
    cumulative_funding_usd: float = 0.0
    cumulative_hl_fees_usd: float = 0.0
    last_funding_timestamp: float = 0.0
    virtual_size: float = 0.0
    avg_entry_price: float = 0.0
    realized_pnl_usd: float = 0.0
    virtual_pnl_usd: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PnlState':
        known = {f.name for f in fields(cls)}
        values = {k: float(v) for k, v in data.items() if k in known and v is not None}
        return cls(**values)


@dataclass(frozen=True)
class PnlSnapshot:
    """Read-only P&L figures for one position at one cycle."""
    initial_total_usd: float = 0.0
    current_total_usd: float = 0.0
    lp_fees_usd: float = 0.0
    cumulative_funding_usd: float = 0.0
    cumulative_hl_fees_usd: float = 0.0
    account_pnl_usd: float = 0.0
    account_pnl_percent: float = 0.0
    virtual_pnl_usd: float = 0.0
    virtual_pnl_percent: float = 0.0
    unrealized_pnl_usd: float = 0.0
    realized_pnl_usd: float = 0.0
    virtual_size: float = 0.0
    avg_entry_price: float = 0.0


EMPTY_SNAPSHOT = PnlSnapshot()


class PnlTracker:
    """Per-position P&L ledger.

    Parameters
    ----------
    saved_state : dict, optional
        Persisted `PnlState` of an existing position.
    default_lp_usd, default_hl_usd : float, optional
        Baseline used when there is no saved state.  If neither source
        provides both values the tracker is disabled and `compute()`
        returns an all-zero snapshot.
    taker_fee : float
        Fee rate charged on every order notional.
    clock : callable
        Returns the current time in epoch seconds.
    """

    def __init__(
        self,
        saved_state: Optional[Dict[str, Any]] = None,
        default_lp_usd: Optional[float] = None,
        default_hl_usd: Optional[float] = None,
        taker_fee: float = 0.000432,
        clock: Clock = system_clock,
    ) -> None:
        self.taker_fee = taker_fee
        self._clock = clock
        self._state: Optional[PnlState] = None

        if saved_state:
            self._state = PnlState.from_dict(saved_state)
            return
        if default_lp_usd is None or default_hl_usd is None:
            logger.warning("PnlTracker disabled: initial balances not available")
            return

        now = clock()
        self._state = PnlState(
            initial_lp_usd=default_lp_usd,
            initial_hl_usd=default_hl_usd,
            initial_timestamp=now,
            last_funding_timestamp=now,
        )
        logger.info(
            "PnlTracker initialized from defaults: LP=$%.2f HL=$%.2f total=$%.2f",
            default_lp_usd,
            default_hl_usd,
            default_lp_usd + default_hl_usd,
        )

    @property
    def is_initialized(self) -> bool:
        return self._state is not None

    def reinitialize(self, lp_usd: float, hl_usd: float, lp_fees_usd: float = 0.0) -> None:
        """Start a new baseline and zero the ledger."""
        now = self._clock()
        self._state = PnlState(
            initial_lp_usd=lp_usd,
            initial_hl_usd=hl_usd,
            initial_lp_fees_usd=lp_fees_usd,
            initial_timestamp=now,
            last_funding_timestamp=now,
        )
        logger.info(
            "[PnlTracker] Reinitialized: LP=$%.2f HL=$%.2f fees_base=$%.2f total=$%.2f",
            lp_usd,
            hl_usd,
            lp_fees_usd,
            lp_usd + hl_usd,
        )

    def accumulate_funding(self, funding_rate: float, hedge_notional_usd: float) -> None:
        """Accrue hourly funding on the hedge notional since the last call."""
        if self._state is None:
            return
        now = self._clock()
        hours = hours_between(self._state.last_funding_timestamp, now)
        self._state.cumulative_funding_usd += funding_rate * hedge_notional_usd * hours
        self._state.last_funding_timestamp = now

    def record_trade_fee(self, order_notional_usd: float) -> float:
        if self._state is None:
            return 0.0
        fee = abs(order_notional_usd) * self.taker_fee
        self._state.cumulative_hl_fees_usd += fee
        logger.info("[PnL] Trade fee: $%.4f (notional $%.2f)", fee, abs(order_notional_usd))
        return fee

    def record_trade(self, size_change: float, price: float) -> None:
        """Apply a signed change of the short size at `price`.

        Increases move the average entry price to the size-weighted
        average.  Reductions realize ``(entry - price) * closed`` and
        leave the entry price alone.  A reduction larger than the tracked
        size clamps the size at zero; whatever remains is treated as a
        new position opened at `price`.
        """
        if self._state is None:
            return
        s = self._state
        current_size = s.virtual_size
        avg_price = s.avg_entry_price
        new_size = current_size + size_change

        if size_change > 0:
            if current_size <= 0:
                s.avg_entry_price = price
            else:
                s.avg_entry_price = (current_size * avg_price + size_change * price) / new_size
        elif size_change < 0 and current_size > 0:
            closed = min(current_size, abs(size_change))
            s.realized_pnl_usd += (avg_price - price) * closed
            if new_size < 0:
                s.avg_entry_price = price
        elif current_size <= 0:
            s.avg_entry_price = price

        s.virtual_size = max(0.0, new_size)
        logger.info(
            "[Virtual Accounting] size: %.4f -> %.4f | avgPrice: %.6f -> %.6f | realized: $%.4f",
            current_size,
            s.virtual_size,
            avg_price,
            s.avg_entry_price,
            s.realized_pnl_usd,
        )

    def sync_size(self, venue_size: float, price: float) -> bool:
        """Adopt the venue's size when the ledger has drifted from it.

        Drift appears after restarts or manual venue trades.  Realized
        P&L is kept; a ledger that was flat restarts its entry price at
        `price`.  Returns `True` when the size was changed.
        """
        if self._state is None:
            return False
        s = self._state
        if abs(s.virtual_size - venue_size) <= SIZE_EPSILON:
            return False
        logger.warning(
            "[Virtual Accounting] size drift: tracked %.4f vs venue %.4f, re-syncing to venue",
            s.virtual_size,
            venue_size,
        )
        if s.virtual_size <= 0 or s.avg_entry_price <= 0:
            s.avg_entry_price = price
        s.virtual_size = max(0.0, venue_size)
        return True

    def compute(
        self,
        current_lp_usd: float,
        current_hl_equity: float,
        lp_fees_usd: float,
        current_price: float,
    ) -> PnlSnapshot:
        """Combine whole-account and isolated P&L into one snapshot."""
        if self._state is None:
            return EMPTY_SNAPSHOT
        s = self._state

        initial_total = s.initial_lp_usd + s.initial_hl_usd
        current_total = current_lp_usd + current_hl_equity
        account_pnl = current_total - initial_total
        account_pnl_pct = account_pnl / initial_total * 100 if initial_total > 0 else 0.0

        net_lp_fees = max(0.0, lp_fees_usd - s.initial_lp_fees_usd)
        unrealized = (s.avg_entry_price - current_price) * s.virtual_size
        lp_pnl = current_lp_usd - s.initial_lp_usd
        virtual_pnl = (
            lp_pnl
            + s.realized_pnl_usd
            + unrealized
            + s.cumulative_funding_usd
            - s.cumulative_hl_fees_usd
        )
        virtual_pnl_pct = virtual_pnl / s.initial_lp_usd * 100 if s.initial_lp_usd > 0 else 0.0
        s.virtual_pnl_usd = virtual_pnl

        return PnlSnapshot(
            initial_total_usd=initial_total,
            current_total_usd=current_total,
            lp_fees_usd=net_lp_fees,
            cumulative_funding_usd=s.cumulative_funding_usd,
            cumulative_hl_fees_usd=s.cumulative_hl_fees_usd,
            account_pnl_usd=account_pnl,
            account_pnl_percent=account_pnl_pct,
            virtual_pnl_usd=virtual_pnl,
            virtual_pnl_percent=virtual_pnl_pct,
            unrealized_pnl_usd=unrealized,
            realized_pnl_usd=s.realized_pnl_usd,
            virtual_size=s.virtual_size,
            avg_entry_price=s.avg_entry_price,
        )

    def virtual_state(self) -> Tuple[float, float]:
        """Return ``(virtual_size, avg_entry_price)``."""
        if self._state is None:
            return 0.0, 0.0
        return self._state.virtual_size, self._state.avg_entry_price

    def repair_entry_price(self, price: float) -> None:
        """Overwrite an entry price corrupted by an upstream decimals error."""
        if self._state is not None:
            logger.warning(
                "[Virtual Accounting] repairing avgEntryPrice %.8f -> %.6f",
                self._state.avg_entry_price,
                price,
            )
            self._state.avg_entry_price = price

    def state_for_persist(self) -> Optional[Dict[str, Any]]:
        if self._state is None:
            return None
        return self._state.to_dict()
