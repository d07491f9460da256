"""
Configuration schema and loader.

This module defines dataclasses that mirror the expected structure of
the YAML configuration file (`config.yaml`).  A helper function
`load_config()` reads a YAML file from disk and returns an instance
of `Config` populated with reasonable defaults for any missing
fields.

Per-position parameters (hedge symbol, hedge ratio, threshold
overrides) are not part of this file: they are supplied when a
position is activated and live in the persisted state.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any
import yaml


@dataclass
class StrategyConfig:
    """Rebalancing strategy and safety limits.

    Attributes
    ----------
    hedge_floor : float
        Minimum non-zero hedge ratio produced by the hedge calculator.
    negative_funding_threshold : float
        Funding rate below which the in-range hedge drops to 0.90.
    price_movement_threshold : float
        Relative price move since the last rebalance that triggers a
        normal rebalance (0.05 = 5 %).
    emergency_price_movement_threshold : float
        Relative price move that triggers an emergency rebalance which
        bypasses the cooldown.  Must be strictly greater than
        `price_movement_threshold`.
    emergency_hedge_ratio : float
        Fraction of the hedge gap closed by an emergency rebalance.
    rebalance_interval_min : float
        Scheduled timer interval in minutes.  ``0`` disables the timer.
    timer_min_mismatch : float
        Minimum relative hedge mismatch for the timer to fire.  ``0``
        disables the check.
    cooldown_seconds : float
        Minimum time between two non-bypassing rebalances.
    min_notional_usd, max_notional_usd : float
        Lower bound on the USD size of a change and upper bound on the
        resulting hedge notional.
    max_daily_rebalances, max_hourly_rebalances : int
        Rate caps per UTC calendar day and per rolling hour.
    price_sanity_floor : float
        Prices below this are treated as a decimals error upstream and
        abort the cycle.
    """

    hedge_floor: float = 0.90
    negative_funding_threshold: float = -0.20
    price_movement_threshold: float = 0.05
    emergency_price_movement_threshold: float = 0.15
    emergency_hedge_ratio: float = 1.0
    rebalance_interval_min: float = 720.0
    timer_min_mismatch: float = 0.0
    cooldown_seconds: float = 720.0 * 60
    min_notional_usd: float = 50.0
    max_notional_usd: float = 100_000.0
    max_daily_rebalances: int = 10
    max_hourly_rebalances: int = 4
    price_sanity_floor: float = 0.001


@dataclass
class PnlConfig:
    """Virtual accounting parameters.

    Attributes
    ----------
    initial_lp_usd, initial_hl_usd : float or None
        Default baseline used when a tracker has no saved state.  When
        either is missing the tracker stays disabled until a position is
        activated or its accounting is reset.
    taker_fee : float
        Venue taker fee rate applied to every order notional.
    reconcile_virtual_size : bool
        Re-sync the tracker's virtual size to the venue's size before
        recording a trade when the two have drifted apart.
    """

    initial_lp_usd: Optional[float] = None
    initial_hl_usd: Optional[float] = None
    taker_fee: float = 0.000432
    reconcile_virtual_size: bool = True


@dataclass
class VenueConfig:
    """Hedge venue selection.

    Attributes
    ----------
    mode : str
        ``simulated`` or ``hyperliquid``.
    private_key, wallet_address : str
        Credentials for the live venue.  Fall back to the
        ``HL_PRIVATE_KEY`` and ``HL_WALLET_ADDRESS`` environment variables.
    base_url : str
        Hyperliquid API URL.  Empty means mainnet.
    simulated_funding_rate : float
        Funding rate reported by the simulated venue.
    simulated_equity_usd : float
        Free collateral of the simulated account.
    """

    mode: str = "simulated"
    private_key: str = ""
    wallet_address: str = ""
    base_url: str = ""
    simulated_funding_rate: float = 0.0001
    simulated_equity_usd: float = 100.0


@dataclass
class AuditConfig:
    """Audit sink configuration.

    Attributes
    ----------
    jsonl_path : str
        Append-only file of rebalance records.  Empty disables it.
    supabase_url, supabase_key : str
        Supabase project URL and API key.  Both are required to enable
        the remote sink; it takes precedence over the JSONL file.
    table : str
        Remote table receiving the records.
    max_retries : int
        Delivery attempts per record before giving up.
    retry_base_seconds : float
        Base delay of the exponential backoff between attempts.
    """

    jsonl_path: str = "rebalances.jsonl"
    supabase_url: str = ""
    supabase_key: str = ""
    table: str = "rebalances"
    max_retries: int = 4
    retry_base_seconds: float = 2.0


@dataclass
class StateConfig:
    """Where and how much per-position state is persisted."""

    state_file: str = "state.json"
    history_limit: int = 50


@dataclass
class DriverConfig:
    """Polling driver configuration.

    Attributes
    ----------
    poll_interval_seconds : float
        Delay between two cycles over all tracked positions.
    snapshot_file : str
        JSON file of liquidity snapshots written by the external chain
        reader.
    log_dir : str
        Directory for the rotating cycle log.  Empty disables file logs.
    control_file : str
        Inbox of control commands written by the CLI and applied by the
        running driver before each poll.
    """

    poll_interval_seconds: float = 60.0
    snapshot_file: str = "snapshots.json"
    log_dir: str = "logs"
    control_file: str = "control.jsonl"


@dataclass
class Config:
    """Root configuration."""

    strategy: StrategyConfig = field(default_factory=StrategyConfig)
    pnl: PnlConfig = field(default_factory=PnlConfig)
    venue: VenueConfig = field(default_factory=VenueConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    state: StateConfig = field(default_factory=StateConfig)
    driver: DriverConfig = field(default_factory=DriverConfig)


def _merge_dict(defaults: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge two dictionaries.

    The values in `override` take precedence over those in `defaults`.
    This helper is used when loading YAML into nested dataclasses.
    """
    result: Dict[str, Any] = defaults.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _merge_dict(result[key], value)
        else:
            result[key] = value
    return result


def validate_config(cfg: Config) -> Config:
    """Reject combinations of values the engine cannot run with.

    Raises
    ------
    ValueError
        If a threshold, ratio or limit is out of range.
    """
    s = cfg.strategy
    if s.price_movement_threshold <= 0:
        raise ValueError("strategy.price_movement_threshold must be positive")
    if s.emergency_price_movement_threshold <= s.price_movement_threshold:
        raise ValueError(
            "strategy.emergency_price_movement_threshold "
            f"({s.emergency_price_movement_threshold}) must be greater than "
            f"strategy.price_movement_threshold ({s.price_movement_threshold})"
        )
    if not 0 < s.emergency_hedge_ratio <= 1:
        raise ValueError("strategy.emergency_hedge_ratio must be in (0, 1]")
    if not 0 <= s.hedge_floor <= 1:
        raise ValueError("strategy.hedge_floor must be in [0, 1]")
    if s.min_notional_usd < 0 or s.max_notional_usd <= 0:
        raise ValueError("strategy notional limits must be non-negative")
    if s.max_daily_rebalances < 1 or s.max_hourly_rebalances < 1:
        raise ValueError("strategy rebalance caps must be at least 1")
    if cfg.venue.mode not in ("simulated", "hyperliquid"):
        raise ValueError(f"Unknown venue mode: {cfg.venue.mode}")
    if cfg.state.history_limit < 1:
        raise ValueError("state.history_limit must be at least 1")
    return cfg


def validate_position_overrides(
    strategy: StrategyConfig,
    hedge_ratio: float = 1.0,
    price_movement_threshold: Optional[float] = None,
    emergency_price_movement_threshold: Optional[float] = None,
    cooldown_seconds: Optional[float] = None,
    emergency_hedge_ratio: Optional[float] = None,
) -> None:
    """Check a position's overrides resolved against the global strategy.

    ``None`` falls back to the global value, so an override that is
    valid on its own can still be rejected against the global pair.

    Raises
    ------
    ValueError
        If the resolved thresholds or ratios are out of range.
    """
    normal = strategy.price_movement_threshold if price_movement_threshold is None else price_movement_threshold
    emergency = (strategy.emergency_price_movement_threshold
                 if emergency_price_movement_threshold is None else emergency_price_movement_threshold)
    if normal <= 0:
        raise ValueError(f"price_movement_threshold must be positive, got {normal}")
    if emergency <= normal:
        raise ValueError(
            f"emergency_price_movement_threshold ({emergency}) must be greater than "
            f"price_movement_threshold ({normal})"
        )
    if hedge_ratio <= 0:
        raise ValueError(f"hedge_ratio must be positive, got {hedge_ratio}")
    if cooldown_seconds is not None and cooldown_seconds < 0:
        raise ValueError(f"cooldown_seconds must be non-negative, got {cooldown_seconds}")
    if emergency_hedge_ratio is not None and not 0 < emergency_hedge_ratio <= 1:
        raise ValueError(f"emergency_hedge_ratio must be in (0, 1], got {emergency_hedge_ratio}")


def load_config(path: Optional[str]) -> Config:
    """Load a configuration file from the given YAML path.

    Parameters
    ----------
    path : str or None
        Path to the YAML file.  ``None`` or a missing file yields the
        defaults.

    Returns
    -------
    Config
        A populated, validated configuration object.
    """
    raw: Dict[str, Any] = {}
    if path and os.path.exists(path):
        with open(path, "r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh) or {}

    defaults: Dict[str, Any] = asdict(Config())
    merged = _merge_dict(defaults, raw)

    cfg = Config(
        strategy=StrategyConfig(**merged['strategy']),
        pnl=PnlConfig(**merged['pnl']),
        venue=VenueConfig(**merged['venue']),
        audit=AuditConfig(**merged['audit']),
        state=StateConfig(**merged['state']),
        driver=DriverConfig(**merged['driver']),
    )
    cfg.strategy.max_daily_rebalances = int(cfg.strategy.max_daily_rebalances)
    cfg.strategy.max_hourly_rebalances = int(cfg.strategy.max_hourly_rebalances)
    cfg.venue.mode = str(cfg.venue.mode).lower()
    # Secrets are usually kept out of the YAML file
    if not cfg.venue.private_key:
        cfg.venue.private_key = os.environ.get("HL_PRIVATE_KEY", "")
    if not cfg.venue.wallet_address:
        cfg.venue.wallet_address = os.environ.get("HL_WALLET_ADDRESS", "")
    return validate_config(cfg)
