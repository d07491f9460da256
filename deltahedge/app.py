"""
Application entry point.

This module defines a simple command-line interface for running the
hedging bot in different modes (run, activate, deactivate, reset-pnl,
update-config, backtest).  It wires the configuration, the hedge venue,
the audit sink, the rebalance engine and the polling driver together.

Only the ``run`` process owns the engine state.  The control modes
queue a command in the control inbox, which the running driver applies
before its next poll.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import time
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, List, Optional

from .config.schema import Config, load_config
from .data.csv_data import TickCSVLoader
from .data.log_data import BotLogLoader
from .data.position_reader import JsonSnapshotReader
from .execution.backtest_exec import BacktestEngine
from .execution.live_exec import PollingDriver
from .execution.models import PositionConfig
from .execution.rebalancer import RebalanceEngine
from .execution.venue import create_venue
from .reporting.audit import create_audit_sink
from .reporting.report import generate_backtest_report
from .utils.control import ACTIVATE, DEACTIVATE, RESET_ACCOUNTING, UPDATE_CONFIG, enqueue_command

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'

# Option name -> PositionConfig field for update-config
OVERRIDE_OPTIONS = {
    'hedge_ratio': 'hedge_ratio',
    'price_threshold': 'price_movement_threshold',
    'emergency_threshold': 'emergency_price_movement_threshold',
    'cooldown': 'cooldown_seconds',
    'emergency_hedge_ratio': 'emergency_hedge_ratio',
}


def log_formatter() -> logging.Formatter:
    """Formatter for the cycle log.  Timestamps are written in UTC."""
    formatter = logging.Formatter(LOG_FORMAT, LOG_DATEFMT)
    formatter.converter = time.gmtime
    return formatter


def _setup_logging(verbose: bool, log_dir: Optional[str] = None) -> None:
    """Configure logging for the application.

    With `log_dir` set, everything is also written to a rotating
    ``bot.log`` that the log tick loader can replay.
    """
    level = logging.DEBUG if verbose else logging.INFO
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        handlers.append(RotatingFileHandler(
            os.path.join(log_dir, 'bot.log'), maxBytes=10 * 1024 * 1024, backupCount=5, encoding='utf-8',
        ))
    formatter = log_formatter()
    for handler in handlers:
        handler.setFormatter(formatter)
    logging.basicConfig(level=level, handlers=handlers)


def _position_from_args(args: argparse.Namespace) -> PositionConfig:
    if args.position_id is None or not args.symbol:
        raise SystemExit("--position-id and --symbol are required for this mode")
    return PositionConfig(
        position_id=args.position_id,
        pool_address=args.pool or '',
        hedge_symbol=args.symbol,
        hedge_token=args.hedge_token,
        hedge_ratio=1.0 if args.hedge_ratio is None else args.hedge_ratio,
        price_movement_threshold=args.price_threshold,
        emergency_price_movement_threshold=args.emergency_threshold,
        cooldown_seconds=args.cooldown,
        emergency_hedge_ratio=args.emergency_hedge_ratio,
    )


def _build_driver(config: Config) -> PollingDriver:
    engine = RebalanceEngine(
        create_venue(config.venue),
        config,
        audit_sink=create_audit_sink(config.audit),
        state_file=config.state.state_file,
    )
    return PollingDriver(config, engine, JsonSnapshotReader(config.driver.snapshot_file))


def _control_command(args: argparse.Namespace) -> Dict[str, Any]:
    if args.mode == 'activate':
        return {'op': ACTIVATE, 'position': _position_from_args(args).to_dict()}
    if args.position_id is None:
        raise SystemExit(f"--position-id is required for {args.mode}")
    if args.mode == 'deactivate':
        return {'op': DEACTIVATE, 'position_id': args.position_id}
    if args.mode == 'reset-pnl':
        return {'op': RESET_ACCOUNTING, 'position_id': args.position_id}
    changes = {
        field: getattr(args, option)
        for option, field in OVERRIDE_OPTIONS.items()
        if getattr(args, option) is not None
    }
    if not changes:
        raise SystemExit("update-config needs at least one override option")
    return {'op': UPDATE_CONFIG, 'position_id': args.position_id, 'changes': changes}


def _run_backtest(config: Config, args: argparse.Namespace) -> None:
    if not args.ticks:
        raise SystemExit("--ticks is required for backtest mode")
    position = _position_from_args(args)
    if args.ticks.endswith('.csv'):
        ticks = TickCSVLoader(args.ticks).load()
    else:
        ticks = BotLogLoader(args.ticks, position_id=args.position_id).load()
    logging.info("Running backtest over %d ticks...", len(ticks))
    result = BacktestEngine(config, position).run(ticks)
    metrics = generate_backtest_report(result, out_dir=args.out)
    logging.info(
        "Backtest complete: %d rebalances, final P&L $%.2f. Results saved to '%s'.",
        metrics['num_rebalances'], metrics['final_virtual_pnl_usd'], args.out,
    )


def main(argv: Optional[List[str]] = None) -> None:
    """Parse command-line arguments and dispatch to the appropriate mode."""
    parser = argparse.ArgumentParser(description="Delta-neutral LP hedging bot")
    parser.add_argument('mode', choices=['run', 'activate', 'deactivate', 'reset-pnl', 'update-config', 'backtest'],
                        help="Operating mode")
    parser.add_argument('--config', default='config.yaml', help="Path to configuration YAML file")
    parser.add_argument('--position-id', type=int, help="Liquidity position id")
    parser.add_argument('--pool', help="Pool address of the position")
    parser.add_argument('--symbol', help="Hedge perpetual symbol, e.g. ETH")
    parser.add_argument('--hedge-token', default='token0', choices=['token0', 'token1'],
                        help="Pool token that is hedged")
    parser.add_argument('--hedge-ratio', type=float, help="Fraction of the target to hedge (default 1.0)")
    parser.add_argument('--price-threshold', type=float, help="Per-position normal price trigger")
    parser.add_argument('--emergency-threshold', type=float, help="Per-position emergency price trigger")
    parser.add_argument('--cooldown', type=float, help="Per-position cooldown in seconds")
    parser.add_argument('--emergency-hedge-ratio', type=float, help="Per-position emergency gap fraction")
    parser.add_argument('--ticks', help="Backtest input: tick CSV or bot log file")
    parser.add_argument('--out', default='results', help="Backtest output directory")
    parser.add_argument('-v', '--verbose', action='store_true', help="Enable debug logging")
    args = parser.parse_args(argv)

    config = load_config(args.config)
    _setup_logging(args.verbose, config.driver.log_dir if args.mode == 'run' else None)

    if args.mode == 'backtest':
        _run_backtest(config, args)
        return

    if args.mode == 'run':
        driver = _build_driver(config)
        try:
            asyncio.run(driver.run())
        except KeyboardInterrupt:
            logging.info("Interrupted, state saved.")
        return

    command = _control_command(args)
    enqueue_command(config.driver.control_file, command)
    logging.info(
        "Queued %s in %s: applied by the running driver before its next poll.",
        command['op'], config.driver.control_file,
    )


if __name__ == '__main__':
    main()
