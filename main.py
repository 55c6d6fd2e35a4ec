#!/usr/bin/env python3
"""
Trading Engine CLI: backtest | batch | serve
Usage:
  python main.py backtest AAPL --strategy hybrid_ai_trend [--interval 1h] [--config config.yaml]
  python main.py batch --strategy hann_trend [--symbols AAPL MSFT ...] [--us-only]
  python main.py serve [--host 0.0.0.0] [--port 8000]
"""

from __future__ import annotations
import argparse
import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from trading_engine.backtesting.batch import BatchOrchestrator, PrefetchEvent, ProgressEvent, ResultEvent
from trading_engine.backtesting.engine import BacktestEngine
from trading_engine.core.config import load_config
from trading_engine.core.errors import EngineError
from trading_engine.core.logger import setup_logging
from trading_engine.data.cache import BarCache
from trading_engine.data.provider import YahooProvider
from trading_engine.risk.manager import RiskManager
from trading_engine.strategies.registry import create_strategy

logger = logging.getLogger("trading_engine")


def parse_params(pairs) -> dict:
    """key=value pairs -> params dict (values validated by the strategy)."""
    params = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep:
            raise SystemExit(f"bad --param {pair!r}, expected key=value")
        params[key.strip()] = value.strip()
    return params


def print_metrics(m) -> None:
    print(f"Total trades: {m.total_trades} (wins: {m.winning_trades}, losses: {m.losing_trades}, open: {m.open_trades})")
    print(f"Total return: {m.total_return_pct:.2f}%")
    print(f"Win rate: {m.win_rate:.1f}%")
    print(f"Risk/reward: {m.risk_reward:.2f}")
    print(f"Max drawdown: {m.max_drawdown:.2f}%")
    print(f"Sharpe ratio: {m.sharpe_ratio:.2f}")
    print(f"Profit factor: {m.profit_factor:.2f}")
    print(f"Expectancy: {m.expectancy:.2f} per trade")


def _engine_parts(config):
    cache = BarCache(YahooProvider(config.data_base_url, config.data_timeout), config.cache_dir)
    risk_manager = RiskManager(
        trade_amount=config.trade_amount,
        min_notional=config.min_notional,
        min_risk_reward=config.min_risk_reward,
    )
    return cache, risk_manager


def run_backtest(args) -> int:
    """Backtest one symbol and print metrics (or the full result as JSON)."""
    config = load_config(args.config, ROOT)
    setup_logging(config.log_level, config.log_dir, config.log_file)
    cache, risk_manager = _engine_parts(config)
    strategy = create_strategy(args.strategy, parse_params(args.param))
    interval = args.interval or strategy.default_interval
    engine = BacktestEngine(
        strategy,
        risk_manager,
        long_only=args.long_only,
        entry_on_next_open=config.entry_on_next_open,
        include_end_trades=config.include_end_trades,
        count_open_as_wins=config.count_open_as_wins,
    )
    symbol = args.symbol.upper()
    result = engine.run(cache.get(symbol, interval), symbol)
    if args.json:
        print(json.dumps(result.to_dict(), default=str))
        return 0
    print(f"\n--- Backtest {symbol} {strategy.name} {interval} ---")
    print_metrics(result.metrics)
    return 0


def run_batch(args) -> int:
    """Backtest a watchlist with progress on stderr."""
    config = load_config(args.config, ROOT)
    setup_logging(config.log_level, config.log_dir, config.log_file)
    cache, risk_manager = _engine_parts(config)
    orchestrator = BatchOrchestrator(
        cache,
        risk_manager,
        max_workers=config.batch_max_workers,
        prefetch_max_workers=config.prefetch_max_workers,
        entry_on_next_open=config.entry_on_next_open,
        include_end_trades=config.include_end_trades,
        count_open_as_wins=config.count_open_as_wins,
    )
    symbols = args.symbols or config.watchlist
    if not symbols:
        logger.error("No symbols: pass --symbols or set batch.watchlist in config.yaml")
        return 1
    interval = args.interval or create_strategy(args.strategy).default_interval
    events = orchestrator.run_batch(
        symbols, args.strategy, parse_params(args.param), interval, us_only=args.us_only, long_only=args.long_only
    )
    try:
        for event in events:
            if isinstance(event, PrefetchEvent):
                print(f"prefetch {event.current}/{event.total} {event.symbol}", file=sys.stderr)
            elif isinstance(event, ProgressEvent):
                print(f"backtest {event.current}/{event.total} {event.symbol}", file=sys.stderr)
            elif isinstance(event, ResultEvent):
                result = event.result
                print(f"\n--- Watchlist {args.strategy} {interval}: {len(result.per_stock)} symbols ---")
                print_metrics(result.metrics)
                for skip in result.skipped_symbols:
                    print(f"skipped {skip['symbol']}: {skip['reason']}")
    except KeyboardInterrupt:
        logger.info("Batch interrupted by user")
        return 130
    return 0


def run_serve(args) -> int:
    import uvicorn

    from trading_engine.api.app import build_services, create_app

    config = load_config(args.config, ROOT)
    setup_logging(config.log_level, config.log_dir, config.log_file)
    app = create_app(build_services(config))
    uvicorn.run(app, host=args.host or config.api_host, port=args.port or config.api_port, log_config=None)
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Trading Engine CLI")
    parser.add_argument("--config", type=Path, default=None, help="Path to config.yaml")
    sub = parser.add_subparsers(dest="mode", required=True)

    bt = sub.add_parser("backtest", help="Backtest one symbol")
    bt.add_argument("symbol")
    bt.add_argument("--json", action="store_true", help="Print the full result as JSON")

    batch = sub.add_parser("batch", help="Backtest a watchlist")
    batch.add_argument("--symbols", nargs="*", default=None)
    batch.add_argument("--us-only", action="store_true")

    for p in (bt, batch):
        p.add_argument("--strategy", required=True)
        p.add_argument("--interval", default=None)
        p.add_argument("--param", action="append", help="Strategy parameter key=value (repeatable)")
        p.add_argument("--long-only", action="store_true")

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)

    args = parser.parse_args()
    try:
        if args.mode == "backtest":
            return run_backtest(args)
        if args.mode == "batch":
            return run_batch(args)
        return run_serve(args)
    except EngineError as e:
        logger.error("%s: %s", e.reason, e.detail)
        return 2


if __name__ == "__main__":
    sys.exit(main())
