"""
Bot log tick loader.

The engine writes one ``CYCLE |`` line per position per cycle.  Those
lines carry everything a replay needs, so a production log doubles as
backtest input without any extra recording step.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from .csv_data import normalise_ticks

CYCLE_RE = re.compile(
    r'^(?P<time>\d{4}-\d{2}-\d{2}[ T]\d{2}:\d{2}:\d{2}(?:[.,]\d+)?).*?'
    r'CYCLE \| pos#(?P<position_id>\d+) \| '
    r'(?P<token0_symbol>[^:|]+): (?P<token0_amount>-?[\d.eE+-]+) \| '
    r'(?P<token1_symbol>[^:|]+): (?P<token1_amount>-?[\d.eE+-]+) \| '
    r'price: (?P<price>[\d.eE+-]+) \| '
    r'.*?funding: (?P<funding_pct>-?[\d.eE+-]+)% \| '
    r'.*?range: (?P<range_status>[a-z-]+)'
    r'(?: \| fees0: (?P<fees0>[\d.eE+-]+) \| fees1: (?P<fees1>[\d.eE+-]+))?'
)


def parse_cycle_line(line: str) -> Optional[Dict[str, Any]]:
    """Return the tick fields of one log line, or ``None`` if it is not a cycle line."""
    m = CYCLE_RE.match(line)
    if m is None:
        return None
    g = m.groupdict()
    return {
        'time': g['time'].replace(',', '.'),
        'position_id': int(g['position_id']),
        'token0_symbol': g['token0_symbol'].strip(),
        'token0_amount': float(g['token0_amount']),
        'token1_symbol': g['token1_symbol'].strip(),
        'token1_amount': float(g['token1_amount']),
        'price': float(g['price']),
        'funding_rate': float(g['funding_pct']) / 100,
        'range_status': g['range_status'],
        'fees0': float(g['fees0'] or 0.0),
        'fees1': float(g['fees1'] or 0.0),
    }


class BotLogLoader:
    """Extract replay ticks from the engine's own log file.

    Parameters
    ----------
    path : str
        Log file to scan.
    position_id : int, optional
        Keep only this position's lines.  By default the first position
        seen in the file is used.
    timezone : str
        Timezone the log timestamps were written in.
    """

    def __init__(self, path: str, position_id: Optional[int] = None, timezone: str = "UTC") -> None:
        self.path = Path(path)
        self.position_id = position_id
        self.timezone = timezone

    def load(self) -> pd.DataFrame:
        if not self.path.exists():
            raise FileNotFoundError(f"Log file not found: {self.path}")
        rows: List[Dict[str, Any]] = []
        with self.path.open("r", encoding="utf-8", errors="replace") as fh:
            for line in fh:
                row = parse_cycle_line(line)
                if row is None:
                    continue
                if self.position_id is None:
                    self.position_id = row['position_id']
                if row['position_id'] == self.position_id:
                    rows.append(row)
        if not rows:
            raise ValueError(f"No CYCLE lines found in {self.path}")
        return normalise_ticks(pd.DataFrame(rows), self.timezone)
