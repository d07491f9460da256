"""
State persistence utilities.

The rebalance engine must remember every tracked position across
restarts: its configuration, rate counters, last rebalance reference
and accounting ledger.  This module provides JSON-based load/save
functions for that purpose, plus `migrate_state()` which upgrades files
written by older versions.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2


def load_state(path: str) -> Optional[Dict[str, Any]]:
    """Load a JSON state file.

    Parameters
    ----------
    path : str
        Path to the JSON file.

    Returns
    -------
    dict or None
        The state dictionary if the file exists, otherwise `None`.
    """
    file_path = Path(path)
    if not file_path.exists():
        return None
    with file_path.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def save_state(path: str, state: Dict[str, Any]) -> None:
    """Write a JSON state file to disk.

    The file is written to a temporary sibling first and then moved into
    place, so a crash mid-write leaves the previous file intact.

    Parameters
    ----------
    path : str
        Path to the output file.
    state : dict
        Arbitrary state dictionary.  Must be serialisable to JSON.
    """
    file_path = Path(path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = file_path.with_name(file_path.name + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as fh:
        json.dump(state, fh, ensure_ascii=False, indent=2, sort_keys=True)
    os.replace(tmp_path, file_path)


def _migrate_position(raw: Dict[str, Any], position_id: str) -> Dict[str, Any]:
    """Fill fields added after the file was written with safe defaults."""
    pos = dict(raw)
    cfg = dict(pos.get('config') or {})
    cfg.setdefault('position_id', int(position_id))
    cfg.setdefault('protocol_version', 'v3')
    cfg.setdefault('hedge_token', 'token0')
    cfg.setdefault('hedge_ratio', 1.0)
    pos['config'] = cfg
    # No reference price means price triggers stay off until the next rebalance
    pos.setdefault('last_rebalance_price', 0.0)
    pos.setdefault('last_rebalance_timestamp', 0.0)
    pos.setdefault('hourly_rebalance_count', 0)
    pos.setdefault('hourly_reset_timestamp', 0.0)
    pos.setdefault('daily_rebalance_count', 0)
    pos.setdefault('daily_reset_date', '')
    pos.setdefault('rebalances', [])
    if not pos.get('last_hedge'):
        pos['last_hedge'] = {'symbol': cfg.get('hedge_symbol', ''), 'size': 0.0, 'notional_usd': 0.0, 'side': 'none'}
    return pos


def migrate_state(raw: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Upgrade a loaded state dictionary to the current layout.

    Handles the legacy single-position layout (an ``active_position``
    block next to flat hedge fields) and positions written before newer
    fields existed.
    """
    if not raw:
        return {'schema_version': SCHEMA_VERSION, 'positions': {}}

    if 'positions' not in raw:
        logger.info("Migrating single-position state to multi-position format")
        positions: Dict[str, Any] = {}
        active = raw.get('active_position')
        if active:
            position_id = str(active.get('position_id', 0))
            positions[position_id] = {
                'config': active,
                'last_hedge': raw.get('last_hedge'),
                'last_price': raw.get('last_price', 0.0),
                'last_rebalance_timestamp': raw.get('last_rebalance_timestamp', 0.0),
                'daily_rebalance_count': raw.get('daily_rebalance_count', 0),
                'daily_reset_date': raw.get('daily_reset_date', ''),
                'pnl': raw.get('pnl'),
            }
        raw = {'positions': positions}

    return {
        'schema_version': SCHEMA_VERSION,
        'positions': {
            str(pid): _migrate_position(pos, str(pid))
            for pid, pos in raw['positions'].items()
        },
    }
