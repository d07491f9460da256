"""
Hyperliquid hedge venue.

This module wraps the `hyperliquid-python-sdk` package to read and move
a short perpetual position.  The SDK is synchronous, so every call runs
in a worker thread.  Read calls are retried a few times before a
`VenueError` is raised; order placement is never retried because a
market order is not idempotent.

**Note**: Running this venue requires the `hyperliquid-python-sdk` and
`eth-account` packages and a funded wallet.  Dry runs and backtests use
`SimulatedVenue` and do not need them.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

from .models import FillResult, HedgeState
from .venue import HedgeVenue, VenueError

# Attempt to import the SDK.  If unavailable, Info will be None.
try:
    import eth_account  # type: ignore
    from hyperliquid.exchange import Exchange  # type: ignore
    from hyperliquid.info import Info  # type: ignore
    from hyperliquid.utils import constants  # type: ignore
except ImportError:
    eth_account = None
    Exchange = None
    Info = None
    constants = None  # Will be checked at runtime

logger = logging.getLogger(__name__)

READ_RETRIES = 3
READ_RETRY_DELAY = 1.0
SIZE_EPSILON = 1e-6


def base_coin(symbol: str) -> str:
    """Strip a ``-PERP`` suffix: ``'ETH-PERP'`` -> ``'ETH'``."""
    return symbol[:-5] if symbol.upper().endswith('-PERP') else symbol


def round_size(size: float, sz_decimals: int) -> float:
    return round(size, sz_decimals)


def parse_fill(action: str, result: Any) -> Optional[FillResult]:
    """Extract the fill from an order response, or ``None`` if not filled."""
    try:
        statuses = result['response']['data']['statuses']
    except (KeyError, TypeError):
        logger.warning("[HL] %s unexpected order response: %s", action, result)
        return None
    if not statuses:
        return None
    status = statuses[0]
    if 'filled' in status:
        filled = status['filled']
        return FillResult(action=action, size=float(filled['totalSz']), avg_price=float(filled['avgPx']))
    if 'resting' in status:
        logger.warning("[HL] %s resting (not filled): oid=%s", action, status['resting'].get('oid'))
    elif 'error' in status:
        raise VenueError(f"{action} rejected: {status['error']}")
    else:
        logger.warning("[HL] %s unexpected status: %s", action, status)
    return None


class HyperliquidVenue(HedgeVenue):
    """Live short hedges on Hyperliquid perpetuals."""

    def __init__(self, private_key: str, wallet_address: str, base_url: Optional[str] = None) -> None:
        if Info is None:
            raise RuntimeError(
                "hyperliquid-python-sdk is not installed.  Install it with "
                "'pip install hyperliquid-python-sdk' to trade live."
            )
        if not private_key or not wallet_address:
            raise ValueError("HyperliquidVenue requires a private key and a wallet address")
        url = base_url or constants.MAINNET_API_URL
        wallet = eth_account.Account.from_key(private_key)
        self.wallet_address = wallet_address
        self.info = Info(url, skip_ws=True)
        self.exchange = Exchange(wallet, url, account_address=wallet_address)
        self._sz_decimals: Dict[str, int] = {}
        logger.info("HyperliquidVenue initialized for wallet %s", wallet_address)

    async def _read(self, label: str, fn: Callable[..., Any], *args: Any) -> Any:
        last_exc: Optional[Exception] = None
        for attempt in range(1, READ_RETRIES + 1):
            try:
                return await asyncio.to_thread(fn, *args)
            except Exception as exc:  # SDK raises requests and its own error types
                last_exc = exc
                logger.warning("[HL] %s failed (attempt %d/%d): %s", label, attempt, READ_RETRIES, exc)
                if attempt < READ_RETRIES:
                    await asyncio.sleep(READ_RETRY_DELAY * attempt)
        raise VenueError(f"{label} failed after {READ_RETRIES} attempts: {last_exc}") from last_exc

    async def _sz_decimals_for(self, coin: str) -> int:
        if coin not in self._sz_decimals:
            meta = await self._read("meta", self.info.meta)
            for asset in meta['universe']:
                self._sz_decimals[asset['name']] = int(asset['szDecimals'])
        if coin not in self._sz_decimals:
            raise VenueError(f"Unknown asset: {coin} not found in Hyperliquid meta")
        return self._sz_decimals[coin]

    async def get_funding_rate(self, symbol: str) -> float:
        coin = base_coin(symbol)
        meta, contexts = await self._read("meta_and_asset_ctxs", self.info.meta_and_asset_ctxs)
        for idx, asset in enumerate(meta['universe']):
            if asset['name'] == coin:
                rate = float(contexts[idx]['funding'])
                logger.info("[HL] Funding rate for %s: %.4f%% (hourly)", coin, rate * 100)
                return rate
        raise VenueError(f"Asset {coin} not found in Hyperliquid universe")

    async def get_account_equity(self) -> float:
        spot = await self._read("spot_user_state", self.info.spot_user_state, self.wallet_address)
        for bal in spot.get('balances', []):
            if bal.get('coin') == 'USDC':
                equity = float(bal['total'])
                break
        else:
            state = await self._read("user_state", self.info.user_state, self.wallet_address)
            equity = float(state['marginSummary']['accountValue'])
        logger.info("[HL] Account equity: $%.2f", equity)
        return equity

    async def get_position(self, symbol: str) -> HedgeState:
        coin = base_coin(symbol)
        state = await self._read("user_state", self.info.user_state, self.wallet_address)
        for entry in state.get('assetPositions', []):
            pos = entry['position']
            if pos['coin'] != coin:
                continue
            szi = float(pos['szi'])
            if szi > 0:
                # Only shorts are managed; buying to "reduce" would grow a long
                logger.error("[HL] Unexpected long %s position of %.4f: refusing to hedge", coin, szi)
                raise VenueError(f"{coin} position is long ({szi}); close it manually")
            if szi == 0:
                return HedgeState.flat(symbol)
            hedge = HedgeState(
                symbol=symbol,
                size=-szi,
                notional_usd=abs(float(pos['positionValue'])),
                side='short',
            )
            logger.info(
                "[HL] Position: %s size=%.4f notional=$%.2f side=%s",
                coin, hedge.size, hedge.notional_usd, hedge.side,
            )
            return hedge
        return HedgeState.flat(symbol)

    async def set_position(self, symbol: str, size: float, notional_usd: float) -> Optional[FillResult]:
        coin = base_coin(symbol)
        current = await self.get_position(symbol)
        delta = size - current.size
        if abs(delta) < SIZE_EPSILON:
            logger.info("[HL] Position already at target size %.4f: no-op", size)
            return None

        sz = round_size(abs(delta), await self._sz_decimals_for(coin))
        if sz <= 0:
            logger.info("[HL] Change %.8f rounds to zero: no-op", delta)
            return None
        started = time.monotonic()
        if delta > 0:
            logger.info("[HL] Opening/increasing short: sell %s %s", sz, coin)
            result = await asyncio.to_thread(self.exchange.market_open, coin, False, sz)
            action = 'SELL'
        else:
            logger.info("[HL] Reducing short: buy %s %s", sz, coin)
            result = await asyncio.to_thread(self.exchange.market_close, coin, sz)
            action = 'BUY-REDUCE'
        fill = parse_fill(action, result)
        if fill is not None:
            logger.info(
                "[HL] %s %s filled: sz=%s avgPx=%s (%.2fs)",
                action, coin, fill.size, fill.avg_price, time.monotonic() - started,
            )
        return fill

    async def close_position(self, symbol: str) -> Optional[FillResult]:
        coin = base_coin(symbol)
        current = await self.get_position(symbol)
        if current.size <= 0:
            logger.info("[HL] No position to close for %s", coin)
            return None
        logger.info("[HL] Closing full position: %.4f %s", current.size, coin)
        result = await asyncio.to_thread(self.exchange.market_close, coin)
        return parse_fill('CLOSE', result)
