"""
Safety gate for hedge adjustments.

Each check is an independent predicate returning a `SafetyCheckResult`.
`run_safety_checks()` runs them in a fixed order and stops at the first
denial.  Which checks apply depends on the `GateMode` chosen by the
trigger that fired: a forced close must always be able to flatten a
stale hedge, and an emergency move must not wait for the cooldown.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)

DUPLICATE_EPSILON = 1e-8


class GateMode(str, Enum):
    NORMAL = 'normal'
    EMERGENCY = 'emergency'
    FORCED_CLOSE = 'forced_close'


@dataclass(frozen=True)
class SafetyCheckResult:
    allowed: bool
    reason: Optional[str] = None


ALLOWED = SafetyCheckResult(True)


@dataclass
class SafetyLimits:
    """Limits the gate enforces, resolved per position."""
    min_notional_usd: float
    max_notional_usd: float
    max_daily_rebalances: int
    max_hourly_rebalances: int
    cooldown_seconds: float


@dataclass
class SafetyRequest:
    """The proposed adjustment and the rate state it is judged against."""
    change_usd: float
    total_notional_usd: float
    target_size: float
    current_size: float
    daily_count: int
    hourly_count: int
    last_rebalance_timestamp: float
    now: float


def _blocked(reason: str, warn: bool = False) -> SafetyCheckResult:
    if warn:
        logger.warning("[SAFETY] BLOCKED: %s", reason)
    else:
        logger.info("[SAFETY] BLOCKED: %s", reason)
    return SafetyCheckResult(False, reason)


def check_min_notional(change_usd: float, min_notional_usd: float) -> SafetyCheckResult:
    if abs(change_usd) < min_notional_usd:
        return _blocked(f"Change ${abs(change_usd):.2f} below min notional ${min_notional_usd:g}")
    return ALLOWED


def check_max_notional(total_usd: float, max_notional_usd: float) -> SafetyCheckResult:
    if total_usd > max_notional_usd:
        return _blocked(f"Total notional ${total_usd:.2f} exceeds max ${max_notional_usd:g}", warn=True)
    return ALLOWED


def check_duplicate(target_size: float, current_size: float) -> SafetyCheckResult:
    if abs(target_size - current_size) < DUPLICATE_EPSILON:
        return _blocked(f"Target size {target_size:.4f} identical to current {current_size:.4f}")
    return ALLOWED


def check_daily_limit(count: int, max_daily: int) -> SafetyCheckResult:
    if count >= max_daily:
        return _blocked(f"Daily rebalance limit reached: {count}/{max_daily}", warn=True)
    return ALLOWED


def check_hourly_limit(count: int, max_hourly: int) -> SafetyCheckResult:
    if count >= max_hourly:
        return _blocked(f"Hourly rebalance limit reached: {count}/{max_hourly}", warn=True)
    return ALLOWED


def check_cooldown(last_timestamp: float, cooldown_seconds: float, now: float) -> SafetyCheckResult:
    elapsed = now - last_timestamp
    if elapsed < cooldown_seconds:
        return _blocked(f"Cooldown active: {cooldown_seconds - elapsed:.0f}s remaining")
    return ALLOWED


def run_safety_checks(request: SafetyRequest, limits: SafetyLimits, mode: GateMode) -> SafetyCheckResult:
    """Run the checks that apply to `mode` and return the first denial.

    Forced close skips the min-notional, rate-limit and cooldown checks;
    emergency skips only the cooldown.  Max notional and duplicate
    suppression always apply.
    """
    forced = mode == GateMode.FORCED_CLOSE
    checks = []
    if not forced:
        checks.append(lambda: check_min_notional(request.change_usd, limits.min_notional_usd))
    checks.append(lambda: check_max_notional(request.total_notional_usd, limits.max_notional_usd))
    checks.append(lambda: check_duplicate(request.target_size, request.current_size))
    if not forced:
        checks.append(lambda: check_daily_limit(request.daily_count, limits.max_daily_rebalances))
        checks.append(lambda: check_hourly_limit(request.hourly_count, limits.max_hourly_rebalances))
    if mode == GateMode.NORMAL:
        checks.append(lambda: check_cooldown(
            request.last_rebalance_timestamp, limits.cooldown_seconds, request.now))

    for check in checks:
        result = check()
        if not result.allowed:
            return result
    return ALLOWED
