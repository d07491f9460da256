"""
Rebalance decision engine.

`RebalanceEngine` owns one tracking record and one `PnlTracker` per
liquidity position.  On every cycle it computes the target hedge,
evaluates the triggers in priority order, runs the safety gate in the
mode the trigger allows, moves the venue position, records the trade in
the tracker, persists the whole state and emits an audit record.

All mutation goes through the engine's public coroutines, which are
serialised by one `asyncio.Lock`: a control request (activate,
deactivate, config update, accounting reset) never interleaves with a
cycle that is halfway through.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, List, Optional

import pandas as pd

from ..accounting.tracker import EMPTY_SNAPSHOT, PnlSnapshot, PnlTracker
from ..config.schema import Config, validate_position_overrides
from ..reporting.audit import AuditRecord, AuditSink, NullAuditSink
from ..strategy.hedge_calculator import calculate_hedge
from ..strategy.safety import SafetyLimits, SafetyRequest, run_safety_checks
from ..strategy.triggers import EMERGENCY, TriggerContext, TriggerResult, evaluate_triggers
from ..utils.persistence import load_state, migrate_state, save_state, SCHEMA_VERSION
from ..utils.timeutils import Clock, day_key, format_remaining, hour_elapsed, is_new_day, system_clock
from .models import (
    FillResult,
    HedgeState,
    HedgeTarget,
    LiquiditySnapshot,
    PositionConfig,
    PositionState,
    RebalanceEvent,
)
from .venue import HedgeVenue

logger = logging.getLogger(__name__)

SKIPPED = 'skipped'
BLOCKED = 'blocked'
EXECUTED = 'executed'
ABORTED = 'aborted'


@dataclass
class CycleOutcome:
    """What one cycle decided for one position."""
    position_id: int
    status: str
    reason: str = ''
    trigger: Optional[TriggerResult] = None
    target: Optional[HedgeTarget] = None
    from_size: float = 0.0
    to_size: float = 0.0
    fill: Optional[FillResult] = None
    trade_pnl_usd: float = 0.0
    pnl: PnlSnapshot = EMPTY_SNAPSHOT


def log_cycle(position_id: int, snapshot: LiquiditySnapshot, hedge_notional: float,
              funding_rate: float, hedge_size: float, net_delta: float) -> None:
    """Write the one-line cycle summary that `data.log_data` parses back."""
    logger.info(
        "CYCLE | pos#%d | %s: %.4f | %s: %.4f | price: %.6f | positionUSD: $%.2f | "
        "hedgeNotional: $%.2f | funding: %.4f%% | hedge: %.4f | netDelta: %.4f | "
        "range: %s | fees0: %.6f | fees1: %.6f",
        position_id,
        snapshot.token0.symbol,
        snapshot.token0.amount,
        snapshot.token1.symbol,
        snapshot.token1.amount,
        snapshot.price,
        snapshot.value_usd,
        hedge_notional,
        funding_rate * 100,
        hedge_size,
        net_delta,
        snapshot.range_status,
        snapshot.fees0,
        snapshot.fees1,
    )


class RebalanceEngine:
    """Per-cycle hedge decisions for every tracked position.

    Parameters
    ----------
    venue : HedgeVenue
        Where the hedge lives.  Can be swapped with `set_venue()`.
    config : Config
        Global configuration; per-position overrides live in
        `PositionConfig`.
    audit_sink : AuditSink, optional
        Receives one record per executed rebalance.
    clock : callable
        Returns the current time in epoch seconds.
    state_file : str, optional
        JSON file holding all tracked positions.  ``None`` keeps the
        state in memory only (backtests).
    """

    def __init__(
        self,
        venue: HedgeVenue,
        config: Config,
        audit_sink: Optional[AuditSink] = None,
        clock: Clock = system_clock,
        state_file: Optional[str] = None,
    ) -> None:
        self.venue = venue
        self.config = config
        self.audit_sink = audit_sink or NullAuditSink()
        self.clock = clock
        self.state_file = state_file
        self._positions: Dict[int, PositionState] = {}
        self._trackers: Dict[int, PnlTracker] = {}
        self._last_range_status: Dict[int, str] = {}
        self._pending_audit: List[AuditRecord] = []
        self._lock = asyncio.Lock()
        self._load()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _load(self) -> None:
        if not self.state_file:
            return
        try:
            raw = load_state(self.state_file)
        except (OSError, ValueError) as exc:
            logger.warning("Failed to load state from %s: %s", self.state_file, exc)
            return
        if raw is None:
            return
        state = migrate_state(raw)
        for pid, data in state['positions'].items():
            ps = PositionState.from_dict(data)
            self._positions[int(pid)] = ps
            self._trackers[int(pid)] = self._new_tracker(ps.pnl)
        logger.info("State loaded from %s (%d positions)", self.state_file, len(self._positions))

    def _new_tracker(self, saved: Optional[Dict[str, Any]] = None) -> PnlTracker:
        pnl_cfg = self.config.pnl
        return PnlTracker(
            saved_state=saved,
            default_lp_usd=pnl_cfg.initial_lp_usd,
            default_hl_usd=pnl_cfg.initial_hl_usd,
            taker_fee=pnl_cfg.taker_fee,
            clock=self.clock,
        )

    def save_state(self) -> bool:
        """Persist every tracked position.  Failures are logged, not raised."""
        for pid, ps in self._positions.items():
            tracker = self._trackers.get(pid)
            if tracker is not None:
                ps.pnl = tracker.state_for_persist()
        if not self.state_file:
            return True
        state = {
            'schema_version': SCHEMA_VERSION,
            'positions': {str(pid): ps.to_dict() for pid, ps in self._positions.items()},
        }
        try:
            save_state(self.state_file, state)
        except (OSError, TypeError, ValueError) as exc:
            logger.error("Failed to save state to %s: %s", self.state_file, exc)
            return False
        logger.debug("State saved to %s", self.state_file)
        return True

    def position_ids(self) -> List[int]:
        return list(self._positions)

    def get_state(self, position_id: int) -> Optional[PositionState]:
        return self._positions.get(position_id)

    def restored_positions(self) -> List[PositionConfig]:
        return [ps.config for ps in self._positions.values()]

    def tracker(self, position_id: int) -> PnlTracker:
        """Return the position's tracker, creating a default one lazily."""
        if position_id not in self._trackers:
            ps = self._positions.get(position_id)
            self._trackers[position_id] = self._new_tracker(ps.pnl if ps else None)
        return self._trackers[position_id]

    def set_venue(self, venue: HedgeVenue) -> None:
        self.venue = venue
        logger.info("[Rebalancer] Venue swapped to %s", type(venue).__name__)

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    async def activate_position(
        self,
        config: PositionConfig,
        initial_lp_usd: Optional[float] = None,
        initial_hl_usd: Optional[float] = None,
        initial_lp_fees_usd: float = 0.0,
    ) -> PositionState:
        """Start tracking a position.

        When both baselines are given the tracker starts a fresh ledger
        from them.  Activating a position that is already tracked only
        replaces its config.
        """
        self._check_overrides(config)
        async with self._lock:
            pid = config.position_id
            existing = self._positions.get(pid)
            if existing is not None:
                existing.config = config
                self.save_state()
                logger.info("[Rebalancer] pos#%d already active: config replaced", pid)
                return existing

            if not config.activated_at:
                config = replace(config, activated_at=self.clock())
            ps = PositionState(
                config=config,
                last_hedge=HedgeState.flat(config.hedge_symbol),
                daily_reset_date=day_key(self.clock()),
                hourly_reset_timestamp=self.clock(),
            )
            self._positions[pid] = ps
            tracker = self._new_tracker()
            if initial_lp_usd is not None and initial_hl_usd is not None:
                tracker.reinitialize(initial_lp_usd, initial_hl_usd, initial_lp_fees_usd)
            self._trackers[pid] = tracker
            self.save_state()
            logger.info(
                "[Rebalancer] pos#%d activated: hedgeSymbol=%s hedgeToken=%s hedgeRatio=%.2f",
                pid, config.hedge_symbol, config.hedge_token, config.hedge_ratio,
            )
            return ps

    async def update_config(self, position_id: int, **changes: Any) -> Optional[PositionConfig]:
        """Apply a partial config update.  Unknown positions are ignored.

        Raises `ValueError` for unknown fields or when the resulting
        thresholds are inconsistent with each other or the global ones.
        """
        allowed = {f.name for f in fields(PositionConfig)} - {'position_id'}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Unknown config fields: {sorted(unknown)}")
        async with self._lock:
            ps = self._positions.get(position_id)
            if ps is None:
                logger.warning("[Rebalancer] config update for unknown pos#%d ignored", position_id)
                return None
            updated = replace(ps.config, **changes)
            self._check_overrides(updated)
            ps.config = updated
            self.save_state()
            logger.info("[Rebalancer] pos#%d config updated: %s", position_id, changes)
            return ps.config

    async def deactivate_position(self, position_id: int) -> bool:
        """Stop tracking a position and close its hedge at the venue.

        The record is removed and persisted before the venue call, so no
        cycle can trade the position while it is being closed.  A failed
        close is logged; the position stays untracked.
        """
        async with self._lock:
            ps = self._positions.pop(position_id, None)
            self._trackers.pop(position_id, None)
            self._last_range_status.pop(position_id, None)
            if ps is None:
                return False
            self.save_state()
        logger.info("[Rebalancer] pos#%d removed from tracking: closing hedge...", position_id)

        symbol = ps.config.hedge_symbol
        try:
            current = await self.venue.get_position(symbol)
            if current.size > 0:
                # Close the full venue position, not the tracked virtual size
                logger.info("[Rebalancer] pos#%d closing %.4f %s", position_id, current.size, symbol)
                await self.venue.close_position(symbol)
            else:
                logger.info("[Rebalancer] pos#%d no open hedge to close", position_id)
        except Exception as exc:
            logger.error("[Rebalancer] pos#%d error closing hedge on deactivation: %s", position_id, exc)
        return True

    async def reset_accounting(
        self,
        position_id: int,
        initial_lp_usd: float,
        initial_hl_usd: float,
        initial_lp_fees_usd: float = 0.0,
    ) -> bool:
        async with self._lock:
            if position_id not in self._positions:
                logger.warning("[PnL Reset] unknown pos#%d ignored", position_id)
                return False
            self.tracker(position_id).reinitialize(initial_lp_usd, initial_hl_usd, initial_lp_fees_usd)
            self.save_state()
            logger.info(
                "[PnL Reset] pos#%d: LP=$%.2f HL=$%.2f", position_id, initial_lp_usd, initial_hl_usd,
            )
            return True

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def cycle(self, position_id: int, snapshot: LiquiditySnapshot) -> Optional[CycleOutcome]:
        """Run one decision cycle for one position.

        Returns ``None`` for an untracked position.  Venue errors
        propagate; the position's counters and reference fields are only
        advanced after a successful execution.
        The audit record of an executed rebalance is delivered after the
        lock is released.
        """
        async with self._lock:
            outcome = await self._cycle(position_id, snapshot)
            pending, self._pending_audit = self._pending_audit, []
        for record in pending:
            await self.audit_sink.send(record)
        return outcome

    def _check_overrides(self, cfg: PositionConfig) -> None:
        validate_position_overrides(
            self.config.strategy,
            hedge_ratio=cfg.hedge_ratio,
            price_movement_threshold=cfg.price_movement_threshold,
            emergency_price_movement_threshold=cfg.emergency_price_movement_threshold,
            cooldown_seconds=cfg.cooldown_seconds,
            emergency_hedge_ratio=cfg.emergency_hedge_ratio,
        )

    def _limits(self, cfg: PositionConfig) -> SafetyLimits:
        s = self.config.strategy
        return SafetyLimits(
            min_notional_usd=s.min_notional_usd,
            max_notional_usd=s.max_notional_usd,
            max_daily_rebalances=s.max_daily_rebalances,
            max_hourly_rebalances=s.max_hourly_rebalances,
            cooldown_seconds=_pick(cfg.cooldown_seconds, s.cooldown_seconds),
        )

    def _roll_counters(self, pid: int, ps: PositionState, now: float) -> None:
        if is_new_day(ps.daily_reset_date, now):
            ps.daily_rebalance_count = 0
            ps.daily_reset_date = day_key(now)
            logger.info("[pos#%d] Daily rebalance counter reset", pid)
        if hour_elapsed(ps.hourly_reset_timestamp, now):
            ps.hourly_rebalance_count = 0
            ps.hourly_reset_timestamp = now
            logger.debug("[pos#%d] Hourly rebalance counter reset", pid)

    def _log_window(self, pid: int, ps: PositionState, cooldown: float, interval: float, now: float) -> None:
        elapsed = now - ps.last_rebalance_timestamp
        parts = []
        remaining = cooldown - elapsed
        parts.append(f"cooldown: {format_remaining(remaining)} remaining" if remaining > 0 else "cooldown: open")
        if interval > 0:
            remaining = interval - elapsed
            parts.append(f"next scheduled: {format_remaining(remaining)}" if remaining > 0 else "next scheduled: open")
        logger.info("[pos#%d] Rebalance window: %s", pid, " | ".join(parts))

    async def _cycle(self, pid: int, snapshot: LiquiditySnapshot) -> Optional[CycleOutcome]:
        ps = self._positions.get(pid)
        if ps is None:
            logger.warning("[Rebalancer] No state for pos#%d: skipping cycle", pid)
            return None

        cfg = ps.config
        strategy = self.config.strategy
        price = snapshot.price

        # Prices below the floor mean a decimals error in the feed
        if price < strategy.price_sanity_floor:
            reason = f"insane price {price!r} below sanity floor {strategy.price_sanity_floor}"
            logger.error("[pos#%d] ABORTING CYCLE: %s. Check price feed decimals.", pid, reason)
            return CycleOutcome(pid, ABORTED, reason=reason)

        now = self.clock()
        self._roll_counters(pid, ps, now)
        symbol = cfg.hedge_symbol

        funding_rate = await self.venue.get_funding_rate(symbol)
        raw_target = calculate_hedge(
            snapshot,
            funding_rate,
            hedge_token=cfg.hedge_token,
            hedge_floor=strategy.hedge_floor,
            negative_funding_threshold=strategy.negative_funding_threshold,
        )
        target = HedgeTarget(
            size=raw_target.size * cfg.hedge_ratio,
            notional_usd=raw_target.notional_usd * cfg.hedge_ratio,
            hedge_ratio=raw_target.hedge_ratio,
        )
        current = await self.venue.get_position(symbol)
        equity = await self.venue.get_account_equity()

        tracker = self.tracker(pid)
        virtual_size, avg_entry = tracker.virtual_state()
        if virtual_size > 0 and avg_entry < strategy.price_sanity_floor:
            tracker.repair_entry_price(price)
        tracker.accumulate_funding(funding_rate, current.notional_usd)
        lp_fees_usd = snapshot.fees_usd
        lp_value_usd = snapshot.value_usd + lp_fees_usd
        pnl = tracker.compute(lp_value_usd, equity, lp_fees_usd, price)
        ps.pnl = tracker.state_for_persist()

        net_delta = snapshot.amount_of(cfg.hedge_token) * cfg.hedge_ratio - current.size
        log_cycle(pid, snapshot, target.notional_usd, funding_rate, current.size, net_delta)

        last_status = self._last_range_status.get(pid)
        if last_status is not None and last_status != snapshot.range_status:
            logger.info("[pos#%d] range status changed: %s -> %s", pid, last_status, snapshot.range_status)
        self._last_range_status[pid] = snapshot.range_status

        limits = self._limits(cfg)
        interval = strategy.rebalance_interval_min * 60
        self._log_window(pid, ps, limits.cooldown_seconds, interval, now)

        ctx = TriggerContext(
            target_size=target.size,
            current_size=current.size,
            price=price,
            last_rebalance_price=ps.last_rebalance_price,
            last_rebalance_timestamp=ps.last_rebalance_timestamp,
            now=now,
            price_movement_threshold=_pick(cfg.price_movement_threshold, strategy.price_movement_threshold),
            emergency_threshold=_pick(
                cfg.emergency_price_movement_threshold, strategy.emergency_price_movement_threshold),
            timer_interval_seconds=interval,
            timer_min_mismatch=strategy.timer_min_mismatch,
        )
        trigger = evaluate_triggers(ctx)
        if trigger is None:
            logger.info("[pos#%d] No rebalance needed", pid)
            ps.last_price = price
            return CycleOutcome(pid, SKIPPED, target=target, from_size=current.size,
                                to_size=current.size, pnl=pnl)
        if trigger.is_emergency:
            logger.warning("[pos#%d] %s", pid, trigger.reason)
        else:
            logger.info("[pos#%d] %s", pid, trigger.reason)

        effective_size, effective_notional = self._effective_target(trigger, target, current, cfg, price)
        change_usd = abs(effective_notional - current.notional_usd)
        verdict = run_safety_checks(
            SafetyRequest(
                change_usd=change_usd,
                total_notional_usd=effective_notional,
                target_size=effective_size,
                current_size=current.size,
                daily_count=ps.daily_rebalance_count,
                hourly_count=ps.hourly_rebalance_count,
                last_rebalance_timestamp=ps.last_rebalance_timestamp,
                now=now,
            ),
            limits,
            trigger.gate_mode,
        )
        if not verdict.allowed:
            logger.info("[pos#%d] Rebalance blocked by safety: %s", pid, verdict.reason)
            ps.last_price = price
            return CycleOutcome(pid, BLOCKED, reason=verdict.reason or '', trigger=trigger,
                                target=target, from_size=current.size, to_size=current.size, pnl=pnl)

        logger.info(
            "[pos#%d] %s [trigger: %s]: %.4f -> %.4f ($%.2f -> $%.2f)",
            pid,
            'EMERGENCY REBALANCE' if trigger.is_emergency else 'REBALANCING',
            trigger.kind,
            current.size,
            effective_size,
            current.notional_usd,
            effective_notional,
        )

        if self.config.pnl.reconcile_virtual_size:
            tracker.sync_size(current.size, price)
        size_before, avg_before = tracker.virtual_state()

        if effective_size <= 0:
            fill = await self.venue.close_position(symbol)
        else:
            fill = await self.venue.set_position(symbol, effective_size, effective_notional)

        exec_price = fill.avg_price if fill is not None and fill.avg_price > 0 else price
        size_change = effective_size - current.size
        trade_pnl = 0.0
        if size_change < 0 and size_before > 0:
            closed = min(size_before, abs(size_change))
            trade_pnl = (avg_before - exec_price) * closed

        tracker.record_trade(size_change, exec_price)
        if tracker.is_initialized:
            fee_usd = tracker.record_trade_fee(change_usd)
        else:
            fee_usd = change_usd * self.config.pnl.taker_fee

        event = RebalanceEvent(
            position_id=pid,
            timestamp=now,
            from_size=current.size,
            to_size=effective_size,
            from_notional=current.notional_usd,
            to_notional=effective_notional,
            price=price,
            trigger=trigger.kind,
            reason=trigger.reason,
            is_emergency=trigger.is_emergency,
            trade_pnl_usd=trade_pnl,
        )
        ps.rebalances.append(event)
        del ps.rebalances[:-self.config.state.history_limit]

        ps.last_hedge = HedgeState(
            symbol=symbol,
            size=max(0.0, effective_size),
            notional_usd=max(0.0, effective_notional),
            side='short' if effective_size > 0 else 'none',
        )
        ps.last_price = price
        ps.last_rebalance_price = price
        ps.last_rebalance_timestamp = now
        ps.daily_rebalance_count += 1
        ps.hourly_rebalance_count += 1

        pnl = tracker.compute(lp_value_usd, equity, lp_fees_usd, price)
        self.save_state()
        logger.info(
            "[pos#%d] Rebalance complete. Daily count: %d/%d",
            pid, ps.daily_rebalance_count, strategy.max_daily_rebalances,
        )

        self._pending_audit.append(AuditRecord(
            position_id=pid,
            timestamp=pd.Timestamp(now, unit='s', tz='UTC').isoformat(),
            coin=symbol,
            trigger=trigger.kind,
            trigger_reason=trigger.reason,
            is_emergency=trigger.is_emergency,
            from_size=current.size,
            to_size=effective_size,
            from_notional=current.notional_usd,
            to_notional=effective_notional,
            price=price,
            range_status=snapshot.range_status,
            total_pos_usd=snapshot.value_usd,
            funding_rate=funding_rate,
            net_delta=net_delta,
            hl_equity=equity,
            hedge_ratio=cfg.hedge_ratio,
            daily_count=ps.daily_rebalance_count,
            action=fill.action if fill else None,
            avg_px=fill.avg_price if fill else None,
            executed_sz=fill.size if fill else None,
            trade_value_usd=fill.size * fill.avg_price if fill else None,
            fee_usd=fee_usd,
            trade_pnl_usd=trade_pnl,
            token0_symbol=snapshot.token0.symbol,
            token0_amount=snapshot.token0.amount,
            token1_symbol=snapshot.token1.symbol,
            token1_amount=snapshot.token1.amount,
            pnl_virtual_usd=pnl.virtual_pnl_usd,
            pnl_virtual_pct=pnl.virtual_pnl_percent,
            pnl_realized_usd=pnl.realized_pnl_usd,
            pnl_unrealized_usd=pnl.unrealized_pnl_usd,
            pnl_lp_fees_usd=pnl.lp_fees_usd,
            pnl_funding_usd=pnl.cumulative_funding_usd,
            pnl_hl_fees_usd=pnl.cumulative_hl_fees_usd,
        ))

        return CycleOutcome(
            pid, EXECUTED, reason=trigger.reason, trigger=trigger, target=target,
            from_size=current.size, to_size=effective_size, fill=fill,
            trade_pnl_usd=trade_pnl, pnl=pnl,
        )

    def _effective_target(
        self,
        trigger: TriggerResult,
        target: HedgeTarget,
        current: HedgeState,
        cfg: PositionConfig,
        price: float,
    ):
        """Return ``(size, notional)`` the venue should be moved to.

        An emergency closes only `emergency_hedge_ratio` of the gap.
        """
        if trigger.kind != EMERGENCY:
            return target.size, target.notional_usd
        ratio = _pick(cfg.emergency_hedge_ratio, self.config.strategy.emergency_hedge_ratio)
        if ratio >= 1.0:
            return target.size, target.notional_usd
        size = current.size + (target.size - current.size) * ratio
        if target.size > 0:
            unit = target.notional_usd / target.size
        elif current.size > 0:
            unit = current.notional_usd / current.size
        else:
            unit = price
        return size, size * unit


def _pick(override: Optional[float], default: float) -> float:
    return default if override is None else override
