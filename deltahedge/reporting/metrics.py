"""
Rebalance metrics calculations.

This module provides helpers to compute summary statistics from a list
of executed rebalances and a P&L curve.  These metrics are used for
backtest reports and can be computed over a live audit trail as well.
"""

from __future__ import annotations

from collections import Counter
from typing import List

from ..execution.backtest_exec import PnlPoint
from ..execution.models import RebalanceEvent


def max_drawdown_usd(values: List[float]) -> float:
    """Largest peak-to-trough drop of a P&L series, in USD."""
    if not values:
        return 0.0
    peak = values[0]
    worst = 0.0
    for value in values:
        if value > peak:
            peak = value
        if peak - value > worst:
            worst = peak - value
    return worst


def compute_metrics(
    events: List[RebalanceEvent],
    pnl_curve: List[PnlPoint],
    fees_usd: float = 0.0,
    funding_usd: float = 0.0,
) -> dict:
    """Compute a set of summary statistics for a replay.

    Parameters
    ----------
    events : list of RebalanceEvent
        Executed rebalances in time order.
    pnl_curve : list of PnlPoint
        Position P&L after each tick.
    fees_usd, funding_usd : float
        Cumulative venue fees paid and funding earned.

    Returns
    -------
    dict
        Dictionary of rebalance metrics.
    """
    by_trigger = Counter(ev.trigger for ev in events)
    pnl_values = [pt.virtual_pnl_usd for pt in pnl_curve]

    if len(events) > 1:
        gaps = [b.timestamp - a.timestamp for a, b in zip(events, events[1:])]
        avg_hours_between = sum(gaps) / len(gaps) / 3600
    else:
        avg_hours_between = 0.0

    return {
        'num_rebalances': len(events),
        'num_emergency': sum(1 for ev in events if ev.is_emergency),
        'by_trigger': dict(by_trigger),
        'trade_pnl_usd': sum(ev.trade_pnl_usd for ev in events),
        'fees_usd': fees_usd,
        'funding_usd': funding_usd,
        'final_virtual_pnl_usd': pnl_values[-1] if pnl_values else 0.0,
        'max_virtual_pnl_usd': max(pnl_values) if pnl_values else 0.0,
        'min_virtual_pnl_usd': min(pnl_values) if pnl_values else 0.0,
        'max_drawdown_usd': max_drawdown_usd(pnl_values),
        'avg_hours_between_rebalances': avg_hours_between,
    }
