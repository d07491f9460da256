"""
Hedge target calculation.

Maps the composition of a liquidity position and the funding rate of
the hedge symbol to the size of the short that would neutralise the
position's exposure to the volatile token.
"""

from __future__ import annotations

import logging

from ..execution.models import (
    ABOVE_RANGE,
    BELOW_RANGE,
    HedgeTarget,
    LiquiditySnapshot,
)

logger = logging.getLogger(__name__)


def in_range_ratio(funding_rate: float, negative_funding_threshold: float = -0.20) -> float:
    """Return the base hedge ratio for an in-range position.

    A short pays funding when the rate is negative, so the hedge is
    trimmed as holding it becomes more expensive.
    """
    if funding_rate >= 0:
        return 1.0
    if funding_rate >= negative_funding_threshold:
        return 0.98
    return 0.90


def calculate_hedge(
    snapshot: LiquiditySnapshot,
    funding_rate: float,
    hedge_token: str = 'token0',
    hedge_floor: float = 0.90,
    negative_funding_threshold: float = -0.20,
) -> HedgeTarget:
    """Compute the target hedge for a liquidity position.

    Parameters
    ----------
    snapshot : LiquiditySnapshot
        Current composition and range status of the position.
    funding_rate : float
        Funding rate of the hedge symbol.
    hedge_token : str
        ``'token0'`` or ``'token1'``: which pool token is hedged.
    hedge_floor : float
        Minimum non-zero ratio.
    negative_funding_threshold : float
        Funding rate below which the in-range ratio drops to 0.90.

    Returns
    -------
    HedgeTarget
        Target size and notional before the per-position hedge ratio is
        applied.  A size of ``0`` means no hedge.
    """
    token = snapshot.token0 if hedge_token == 'token0' else snapshot.token1
    exposure = token.amount

    if hedge_token == 'token0':
        price_in_quote = snapshot.price
        empty_status, full_status = ABOVE_RANGE, BELOW_RANGE
    else:
        price_in_quote = 1.0 / snapshot.price if snapshot.price else 0.0
        empty_status, full_status = BELOW_RANGE, ABOVE_RANGE

    if snapshot.range_status == empty_status:
        ratio = 0.0
    elif snapshot.range_status == full_status:
        ratio = 1.0
    else:
        ratio = in_range_ratio(funding_rate, negative_funding_threshold)

    if ratio > 0:
        ratio = max(ratio, hedge_floor)

    target = HedgeTarget(
        size=exposure * ratio,
        notional_usd=exposure * price_in_quote * ratio,
        hedge_ratio=ratio,
    )
    logger.info(
        "Hedge calc: exposure=%.4f %s, funding=%.4f%%, ratio=%.2f, targetSize=%.4f, notional=$%.2f",
        exposure,
        token.symbol,
        funding_rate * 100,
        ratio,
        target.size,
        target.notional_usd,
    )
    return target
