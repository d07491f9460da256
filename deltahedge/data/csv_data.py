"""
CSV tick loader.

This module provides a class to load recorded liquidity snapshots from
CSV files for backtest replays.  The expected schema is:

```
time,token0_symbol,token0_amount,token1_symbol,token1_amount,price,funding_rate,range_status,fees0,fees1
```

Only the `time`, `token0_amount`, `token1_amount` and `price` columns
are required.  Missing optional columns are filled with defaults.  The
`time` column should contain ISO-formatted timestamps or UNIX epochs.
Timestamps are converted to the timezone given to the loader.
"""

from __future__ import annotations

from pathlib import Path

import pandas as pd

from ..execution.models import IN_RANGE

TICK_COLUMNS = [
    'token0_symbol', 'token0_amount', 'token1_symbol', 'token1_amount',
    'price', 'funding_rate', 'range_status', 'fees0', 'fees1',
]
REQUIRED_COLUMNS = ['time', 'token0_amount', 'token1_amount', 'price']
OPTIONAL_DEFAULTS = {
    'token0_symbol': 'TOKEN0',
    'token1_symbol': 'USDC',
    'funding_rate': float('nan'),
    'range_status': IN_RANGE,
    'fees0': 0.0,
    'fees1': 0.0,
}


def normalise_ticks(df: pd.DataFrame, timezone: str = "UTC") -> pd.DataFrame:
    """Index `df` by a timezone-aware `time` column and fill optional columns.

    Shared by every tick loader so the replay engine sees one layout.
    """
    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"Tick data is missing columns: {missing}. Found columns: {list(df.columns)}")
    df = df.copy()
    for col, default in OPTIONAL_DEFAULTS.items():
        if col not in df.columns:
            df[col] = default
        elif col in ('fees0', 'fees1'):
            df[col] = df[col].fillna(default)

    if pd.api.types.is_numeric_dtype(df['time']):
        times = pd.to_datetime(df['time'], unit='s', utc=True)
    else:
        times = pd.to_datetime(df['time'], errors='raise')
    index = pd.DatetimeIndex(times)
    if index.tz is None:
        index = index.tz_localize(timezone)
    else:
        index = index.tz_convert(timezone)

    out = df[TICK_COLUMNS].copy()
    out.index = index
    out.index.name = 'time'
    for col in ('token0_amount', 'token1_amount', 'price', 'funding_rate', 'fees0', 'fees1'):
        out[col] = out[col].astype(float)
    return out.sort_index()


class TickCSVLoader:
    """Load recorded snapshots from a CSV file for backtesting.

    Parameters
    ----------
    path : str
        CSV file to read.
    timezone : str
        IANA timezone name used to localise naive timestamps.
    """

    def __init__(self, path: str, timezone: str = "UTC") -> None:
        self.path = Path(path)
        self.timezone = timezone

    def load(self) -> pd.DataFrame:
        if not self.path.exists():
            raise FileNotFoundError(f"Tick CSV not found: {self.path}")
        df = pd.read_csv(self.path)
        df.columns = [c.strip() for c in df.columns]
        return normalise_ticks(df, self.timezone)
