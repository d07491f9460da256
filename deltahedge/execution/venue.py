"""
Hedge venue capability interface.

The rebalance engine only talks to a `HedgeVenue`.  Two variants exist:
`SimulatedVenue` for dry runs and backtests, and `HyperliquidVenue` for
live trading.  `create_venue()` picks one from the configuration; it is
the only place that knows about the concrete classes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from ..config.schema import VenueConfig
from .models import FillResult, HedgeState


class VenueError(Exception):
    """A venue call failed after the venue's own retries."""


class HedgeVenue(ABC):
    """Short-only hedge operations on a derivatives venue."""

    @abstractmethod
    async def get_position(self, symbol: str) -> HedgeState:
        """Return the hedge currently held for `symbol` (flat if none)."""

    @abstractmethod
    async def set_position(self, symbol: str, size: float, notional_usd: float) -> Optional[FillResult]:
        """Move the short for `symbol` to `size`.  ``None`` means no-op."""

    @abstractmethod
    async def close_position(self, symbol: str) -> Optional[FillResult]:
        """Close the whole short for `symbol`.  ``None`` means nothing to close."""

    @abstractmethod
    async def get_funding_rate(self, symbol: str) -> float:
        """Return the current hourly funding rate for `symbol`."""

    @abstractmethod
    async def get_account_equity(self) -> float:
        """Return the account equity in USD."""


def create_venue(config: VenueConfig) -> HedgeVenue:
    """Build the venue variant selected by `config.mode`.

    Raises
    ------
    ValueError
        If the mode is unknown or live credentials are missing.
    """
    if config.mode == 'simulated':
        from .simulated_venue import SimulatedVenue
        return SimulatedVenue(
            funding_rate=config.simulated_funding_rate,
            equity_usd=config.simulated_equity_usd,
        )
    if config.mode == 'hyperliquid':
        from .hyperliquid_venue import HyperliquidVenue
        return HyperliquidVenue(
            private_key=config.private_key,
            wallet_address=config.wallet_address,
            base_url=config.base_url or None,
        )
    raise ValueError(f"Unknown venue mode: {config.mode}")
