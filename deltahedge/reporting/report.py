"""
Report generation utilities.

This module turns backtest results into human-readable artefacts:
CSV files of rebalances and the P&L curve, a JSON summary of the
metrics and a PNG chart of the P&L curve against the price.
"""

from __future__ import annotations

import os
import json

import pandas as pd
import matplotlib

# Use non-interactive backend for environments without display
matplotlib.use("Agg")
import matplotlib.pyplot as plt

from ..execution.backtest_exec import BacktestResult
from .metrics import compute_metrics


def generate_backtest_report(result: BacktestResult, out_dir: str = "results") -> dict:
    """Generate report files for a backtest run.

    Creates the output directory if it does not exist and writes the
    following files:

    - `rebalances.csv` - every executed rebalance
    - `pnl_curve.csv` - position P&L after each tick
    - `summary.json` - rebalance metrics
    - `pnl_curve.png` - virtual P&L and price over time

    Returns the metrics dictionary.
    """
    os.makedirs(out_dir, exist_ok=True)

    events_data = [
        {
            'timestamp': pd.Timestamp(ev.timestamp, unit='s', tz='UTC').isoformat(),
            'trigger': ev.trigger,
            'emergency': ev.is_emergency,
            'from_size': ev.from_size,
            'to_size': ev.to_size,
            'from_notional': ev.from_notional,
            'to_notional': ev.to_notional,
            'price': ev.price,
            'trade_pnl_usd': ev.trade_pnl_usd,
            'reason': ev.reason,
        }
        for ev in result.events
    ]
    pd.DataFrame(events_data).to_csv(os.path.join(out_dir, 'rebalances.csv'), index=False)

    curve_data = [
        {
            'timestamp': pt.timestamp.isoformat(),
            'price': pt.price,
            'hedge_size': pt.hedge_size,
            'virtual_pnl_usd': pt.virtual_pnl_usd,
            'account_pnl_usd': pt.account_pnl_usd,
        }
        for pt in result.pnl_curve
    ]
    df_curve = pd.DataFrame(curve_data)
    df_curve.to_csv(os.path.join(out_dir, 'pnl_curve.csv'), index=False)

    metrics = compute_metrics(result.events, result.pnl_curve, result.fees_usd, result.funding_usd)
    metrics['ticks'] = result.ticks
    with open(os.path.join(out_dir, 'summary.json'), 'w', encoding='utf-8') as fh:
        json.dump(metrics, fh, indent=2, ensure_ascii=False)

    fig, ax = plt.subplots(figsize=(10, 4))
    if not df_curve.empty:
        times = pd.to_datetime(df_curve['timestamp'])
        ax.plot(times, df_curve['virtual_pnl_usd'], linewidth=1.5, label='Virtual P&L')
        ax.set_title('Position P&L')
        ax.set_xlabel('Time')
        ax.set_ylabel('P&L (USD)')
        price_ax = ax.twinx()
        price_ax.plot(times, df_curve['price'], linewidth=0.8, color='grey', alpha=0.6)
        price_ax.set_ylabel('Price')
        for ev in result.events:
            ax.axvline(pd.Timestamp(ev.timestamp, unit='s', tz='UTC'), color='red' if ev.is_emergency else 'green',
                       linewidth=0.5, alpha=0.5)
        fig.autofmt_xdate()
    fig.tight_layout()
    fig.savefig(os.path.join(out_dir, 'pnl_curve.png'))
    plt.close(fig)
    return metrics
