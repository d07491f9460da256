"""
Snapshot, hedge and position-state models.

These dataclasses represent the objects passed between the position
reader, the strategy helpers, the hedge venue and the rebalance engine.
Keeping them in a separate module improves readability and makes unit
testing easier.
"""

from __future__ import annotations

from dataclasses import dataclass, field, asdict, fields
from typing import Any, Dict, List, Optional

IN_RANGE = 'in-range'
ABOVE_RANGE = 'above-range'
BELOW_RANGE = 'below-range'
RANGE_STATUSES = (IN_RANGE, ABOVE_RANGE, BELOW_RANGE)


@dataclass(frozen=True)
class TokenAmount:
    """Amount of one pool token in human units."""
    symbol: str
    amount: float


@dataclass(frozen=True)
class LiquiditySnapshot:
    """State of a liquidity position at one cycle.

    `price` is the price of token0 expressed in token1, which is assumed
    to be the USD-pegged quote token.
    """
    token0: TokenAmount
    token1: TokenAmount
    price: float
    range_status: str  # 'in-range', 'above-range' or 'below-range'
    tick_lower: int = 0
    tick_upper: int = 0
    tick_current: int = 0
    fees0: float = 0.0
    fees1: float = 0.0

    @property
    def value_usd(self) -> float:
        return self.token0.amount * self.price + self.token1.amount

    @property
    def fees_usd(self) -> float:
        return self.fees0 * self.price + self.fees1

    def amount_of(self, hedge_token: str) -> float:
        return self.token0.amount if hedge_token == 'token0' else self.token1.amount


@dataclass
class HedgeState:
    """Hedge currently held at the venue for one symbol."""
    symbol: str
    size: float = 0.0
    notional_usd: float = 0.0
    side: str = 'none'  # 'short' or 'none'

    @classmethod
    def flat(cls, symbol: str) -> 'HedgeState':
        return cls(symbol=symbol)


@dataclass
class FillResult:
    """Outcome of a venue order."""
    action: str  # 'SELL', 'BUY-REDUCE' or 'CLOSE'
    size: float
    avg_price: float


@dataclass
class HedgeTarget:
    """Desired hedge produced by the hedge calculator."""
    size: float
    notional_usd: float
    hedge_ratio: float


@dataclass
class PositionConfig:
    """Parameters of one tracked liquidity position.

    The optional overrides fall back to the global strategy config when
    left as ``None``.
    """
    position_id: int
    pool_address: str
    hedge_symbol: str
    hedge_token: str = 'token0'
    hedge_ratio: float = 1.0
    protocol_version: str = 'v3'
    activated_at: float = 0.0
    price_movement_threshold: Optional[float] = None
    emergency_price_movement_threshold: Optional[float] = None
    cooldown_seconds: Optional[float] = None
    emergency_hedge_ratio: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PositionConfig':
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class RebalanceEvent:
    """An executed hedge adjustment, kept in the bounded history."""
    position_id: int
    timestamp: float
    from_size: float
    to_size: float
    from_notional: float
    to_notional: float
    price: float
    trigger: str = ''
    reason: str = ''
    is_emergency: bool = False
    trade_pnl_usd: float = 0.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RebalanceEvent':
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class PositionState:
    """Per-position tracking record owned by the rebalance engine."""
    config: PositionConfig
    last_hedge: HedgeState
    last_price: float = 0.0
    last_rebalance_price: float = 0.0
    last_rebalance_timestamp: float = 0.0
    daily_rebalance_count: int = 0
    daily_reset_date: str = ''
    hourly_rebalance_count: int = 0
    hourly_reset_timestamp: float = 0.0
    pnl: Optional[Dict[str, Any]] = None
    rebalances: List[RebalanceEvent] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'config': self.config.to_dict(),
            'last_hedge': asdict(self.last_hedge),
            'last_price': self.last_price,
            'last_rebalance_price': self.last_rebalance_price,
            'last_rebalance_timestamp': self.last_rebalance_timestamp,
            'daily_rebalance_count': self.daily_rebalance_count,
            'daily_reset_date': self.daily_reset_date,
            'hourly_rebalance_count': self.hourly_rebalance_count,
            'hourly_reset_timestamp': self.hourly_reset_timestamp,
            'pnl': self.pnl,
            'rebalances': [asdict(ev) for ev in self.rebalances],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PositionState':
        cfg = PositionConfig.from_dict(data['config'])
        hedge = data.get('last_hedge') or {}
        return cls(
            config=cfg,
            last_hedge=HedgeState(
                symbol=hedge.get('symbol', cfg.hedge_symbol),
                size=float(hedge.get('size', 0.0)),
                notional_usd=float(hedge.get('notional_usd', 0.0)),
                side=hedge.get('side', 'none'),
            ),
            last_price=float(data.get('last_price', 0.0)),
            last_rebalance_price=float(data.get('last_rebalance_price', 0.0)),
            last_rebalance_timestamp=float(data.get('last_rebalance_timestamp', 0.0)),
            daily_rebalance_count=int(data.get('daily_rebalance_count', 0)),
            daily_reset_date=str(data.get('daily_reset_date', '')),
            hourly_rebalance_count=int(data.get('hourly_rebalance_count', 0)),
            hourly_reset_timestamp=float(data.get('hourly_reset_timestamp', 0.0)),
            pnl=data.get('pnl'),
            rebalances=[RebalanceEvent.from_dict(ev) for ev in data.get('rebalances', [])],
        )
