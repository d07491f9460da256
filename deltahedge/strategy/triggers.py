"""
Rebalance trigger evaluation.

Triggers are independent evaluators listed in priority order.  Each one
inspects a `TriggerContext` and either returns a `TriggerResult` or
``None``; `evaluate_triggers()` returns the first result, so at most one
trigger fires per cycle and lower-priority evaluators are not run once
a higher one has fired.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, Sequence, Tuple

from .safety import GateMode

FORCED_CLOSE = 'forced_close'
EMERGENCY = 'emergency'
TIMER = 'timer'
PRICE_MOVEMENT = 'price_movement'


@dataclass(frozen=True)
class TriggerContext:
    """Everything the evaluators need for one position and one cycle."""
    target_size: float
    current_size: float
    price: float
    last_rebalance_price: float
    last_rebalance_timestamp: float
    now: float
    price_movement_threshold: float
    emergency_threshold: float
    timer_interval_seconds: float
    timer_min_mismatch: float = 0.0

    @property
    def mismatch(self) -> float:
        """Relative gap between target and current hedge size."""
        reference = self.target_size if self.target_size > 0 else self.current_size
        if reference <= 0:
            return 0.0
        return abs(self.target_size - self.current_size) / reference

    @property
    def price_move(self) -> Optional[float]:
        """Relative price move since the last rebalance, if a reference exists."""
        if self.last_rebalance_price <= 0:
            return None
        return abs(self.price - self.last_rebalance_price) / self.last_rebalance_price


@dataclass(frozen=True)
class TriggerResult:
    kind: str
    reason: str
    gate_mode: GateMode

    @property
    def is_emergency(self) -> bool:
        return self.gate_mode != GateMode.NORMAL


Evaluator = Callable[[TriggerContext], Optional[TriggerResult]]


def forced_close(ctx: TriggerContext) -> Optional[TriggerResult]:
    """Fire when no hedge is wanted but the venue still holds one."""
    if ctx.target_size <= 0 and ctx.current_size > 0:
        return TriggerResult(
            FORCED_CLOSE,
            f"forced close: target {ctx.target_size:.4f} but venue holds {ctx.current_size:.4f}, "
            "position no longer holds the hedged asset",
            GateMode.FORCED_CLOSE,
        )
    return None


def emergency_price_movement(ctx: TriggerContext) -> Optional[TriggerResult]:
    move = ctx.price_move
    if move is not None and move > ctx.emergency_threshold:
        return TriggerResult(
            EMERGENCY,
            f"emergency: price moved {move * 100:.2f}% "
            f"({ctx.last_rebalance_price:.6f} -> {ctx.price:.6f}) "
            f"> {ctx.emergency_threshold * 100:.0f}%, cooldown bypassed",
            GateMode.EMERGENCY,
        )
    return None


def scheduled_timer(ctx: TriggerContext) -> Optional[TriggerResult]:
    if ctx.timer_interval_seconds <= 0:
        return None
    elapsed = ctx.now - ctx.last_rebalance_timestamp
    if elapsed < ctx.timer_interval_seconds:
        return None
    mismatch = ctx.mismatch
    if ctx.timer_min_mismatch > 0 and mismatch < ctx.timer_min_mismatch:
        return None
    reason = (
        f"scheduled timer: {elapsed / 60:.1f}min elapsed >= "
        f"{ctx.timer_interval_seconds / 60:g}min interval"
    )
    if ctx.timer_min_mismatch > 0:
        reason += f", mismatch={mismatch * 100:.2f}%"
    return TriggerResult(TIMER, reason, GateMode.NORMAL)


def price_movement(ctx: TriggerContext) -> Optional[TriggerResult]:
    move = ctx.price_move
    if move is not None and move > ctx.price_movement_threshold:
        return TriggerResult(
            PRICE_MOVEMENT,
            f"price movement: {move * 100:.2f}% "
            f"({ctx.last_rebalance_price:.6f} -> {ctx.price:.6f}) "
            f"> threshold {ctx.price_movement_threshold * 100:.2f}%",
            GateMode.NORMAL,
        )
    return None


TRIGGER_ORDER: Tuple[Evaluator, ...] = (
    forced_close,
    emergency_price_movement,
    scheduled_timer,
    price_movement,
)


def evaluate_triggers(
    ctx: TriggerContext,
    evaluators: Sequence[Evaluator] = TRIGGER_ORDER,
) -> Optional[TriggerResult]:
    """Return the first trigger that fires, or ``None``."""
    for evaluator in evaluators:
        result = evaluator(ctx)
        if result is not None:
            return result
    return None
