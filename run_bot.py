#!/usr/bin/env python
"""
Script to run the trading engine in backtest, demo or live mode.
"""
import os
import json
import asyncio
import argparse
from datetime import datetime, timedelta, timezone

from trading_engine.config import (
    logger, DEFAULT_PAIR, INITIAL_BALANCE, TradingConfig, validate_config,
    has_exchange_credentials, get_strategy_summary_file
)
from trading_engine.backtester import BacktestOptions, run_backtest
from trading_engine.demo_runner import DemoTrader
from trading_engine.exceptions import TradingEngineError
from trading_engine.exchange_client import ExchangeClient, PaperExchangeClient
from trading_engine.main import TradingManager
from trading_engine.models import Strategy, StrategyType
from trading_engine.optimizer import improve_strategy, run_backtest_optimization
from trading_engine.price_feed import PriceFeed
from trading_engine.utils.event_bus import EventBus
from trading_engine.utils.logger import TradeJournal, send_telegram_message
from trading_engine.utils.scheduler import PeriodicScheduler

POSITION_POLL_INTERVAL = 10.0


def load_strategy(args) -> Strategy:
    """Build the strategy from a JSON file or from the command line."""
    if args.strategy_file:
        with open(args.strategy_file) as f:
            data = json.load(f)
        if args.pair:
            data['pair'] = args.pair
        return Strategy.from_dict(data)

    strategy_type = args.strategy.upper()
    return Strategy(
        id=f"{strategy_type.lower()}_{(args.pair or DEFAULT_PAIR).lower()}",
        name=f"{strategy_type} {args.pair or DEFAULT_PAIR}",
        type=strategy_type,
        parameters=json.loads(args.params) if args.params else {},
        pair=args.pair or DEFAULT_PAIR
    )


async def create_gateway(paper: bool, event_bus: EventBus, seed=None):
    if paper:
        logger.info("Using paper exchange")
        return await PaperExchangeClient(event_bus=event_bus, seed=seed).initialize()
    return await ExchangeClient(event_bus=event_bus).initialize()


async def run_backtest_mode(strategy: Strategy, days: int, balance: float, paper: bool, seed=None):
    """Backtest the strategy over the last `days` days and report the result."""
    gateway = await create_gateway(paper, EventBus(), seed)
    end = datetime.now(timezone.utc)
    options = BacktestOptions(start_date=end - timedelta(days=days), end_date=end, initial_balance=balance)

    try:
        result = await run_backtest(strategy, options, gateway)
    finally:
        await gateway.close()
    strategy.performance = result.to_performance()

    backtest_msg = (
        f"📊 <b>Backtest Results</b> ({strategy.name})\n"
        f"Trades: {result.total_trades}\n"
        f"Win Rate: {result.win_rate:.2%}\n"
        f"Final Balance: {result.final_balance:.2f}\n"
        f"Max Drawdown: {result.max_drawdown:.2f}\n"
        f"Sharpe Ratio: {result.sharpe_ratio:.2f}\n"
        f"Profit Factor: {result.metrics.profit_factor:.2f}"
    )
    print(backtest_msg.replace("<b>", "").replace("</b>", ""))
    await send_telegram_message(backtest_msg)
    return result


async def run_optimize_mode(strategy: Strategy, ranges: dict, target: str, days: int,
                            balance: float, paper: bool, seed=None):
    """Grid-search the strategy parameters over the last `days` days."""
    gateway = await create_gateway(paper, EventBus(), seed)
    end = datetime.now(timezone.utc)
    options = BacktestOptions(start_date=end - timedelta(days=days), end_date=end, initial_balance=balance)

    try:
        candles = await gateway.get_historical_data(strategy.pair, options.start_date, options.end_date)
    finally:
        await gateway.close()

    optimization = run_backtest_optimization(strategy, candles, ranges, options, target)
    for rank, run in enumerate(optimization.results[:5], 1):
        print(f"{rank}. {run['parameters']} {target}: {run['score']:.4f}")

    best = optimization.best_strategy or strategy
    if best.performance:
        print(f"Best run: P&L {best.performance.total_pnl:.2f}, win rate {best.performance.win_rate:.2%}, "
              f"trades {best.performance.trades_count}")
    improved = improve_strategy(best, candles)
    print(f"Suggested parameters: {dict(improved.parameters)}")
    return optimization


async def run_demo_mode(strategy: Strategy, balance: float, duration: float, paper: bool, seed=None):
    """Paper-trade the strategy for `duration` seconds (forever when 0)."""
    gateway = await create_gateway(paper, EventBus(), seed)
    journal = TradeJournal(summary_file=get_strategy_summary_file(f"demo_{strategy.id}"))
    trader = DemoTrader(gateway, journal=journal)
    trader.start(strategy, balance)

    try:
        if duration > 0:
            await asyncio.sleep(duration)
        else:
            await asyncio.Event().wait()
    except asyncio.CancelledError:
        logger.info("Demo run cancelled")
    finally:
        trader.stop()
        await trader.scheduler.wait_idle()
        await gateway.close()

    performance = trader.get_performance()
    print(f"Demo trades: {performance.total_trades}, win rate: {performance.win_rate:.2%}, "
          f"P&L: {performance.profit_loss:.2f} ({performance.profit_loss_percent:.2f}%), "
          f"live ready: {performance.is_live_ready}")
    print(journal.generate_performance_report())
    return performance


async def run_live_mode(strategy: Strategy, paper: bool, seed=None):
    """Trade the strategy until interrupted or a circuit breaker trips."""
    event_bus = EventBus()
    gateway = await create_gateway(paper, event_bus, seed)
    price_feed = PriceFeed(gateway, event_bus)
    journal = TradeJournal(summary_file=get_strategy_summary_file(strategy.id), event_bus=event_bus)
    manager = TradingManager(gateway, price_feed, event_bus, TradingConfig(), journal=journal)

    position_poller = None
    if hasattr(gateway, 'poll_positions'):
        position_poller = PeriodicScheduler(gateway.poll_positions, POSITION_POLL_INTERVAL, name="position-poller")

    manager.add_strategy(strategy)
    price_feed.start()
    await manager.start()
    if position_poller:
        position_poller.start()

    await send_telegram_message(
        f"🚀 <b>Trading Started</b>\nStrategy: {strategy.name}\nPair: {strategy.pair}"
    )

    try:
        while manager.is_running:
            await asyncio.sleep(1)
    except asyncio.CancelledError:
        logger.info("Trading cancelled")
    finally:
        await manager.stop()
        price_feed.stop()
        if position_poller:
            position_poller.stop()
        await manager.scheduler.wait_idle()
        await gateway.close()
        await send_telegram_message(
            f"🛑 <b>Trading Stopped</b>\n{manager.stop_reason or 'Stopped by user'}"
        )

    print(journal.generate_performance_report())
    return manager.get_status()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Run the trading engine')
    parser.add_argument('mode', choices=['backtest', 'optimize', 'demo', 'live'],
                        help='backtest or optimize over history, paper-trade live data, or trade for real')
    parser.add_argument('--strategy', type=str, default=StrategyType.MA_CROSSOVER.value,
                        help='Strategy type: ' + ', '.join(t.value for t in StrategyType))
    parser.add_argument('--strategy-file', type=str, default=None,
                        help='JSON file with a full strategy definition (overrides --strategy)')
    parser.add_argument('--pair', type=str, default=None,
                        help=f'Trading pair (default: {DEFAULT_PAIR})')
    parser.add_argument('--params', type=str, default=None,
                        help='Strategy parameters as JSON, e.g. \'{"shortPeriod": 10, "longPeriod": 50}\'')
    parser.add_argument('--ranges', type=str, default=None,
                        help='Optimize ranges as JSON, e.g. \'{"shortPeriod": [5, 20, 5]}\'')
    parser.add_argument('--target', type=str, default='net_profit',
                        help='Metric to maximise when optimizing (default: net_profit)')
    parser.add_argument('--balance', type=float, default=INITIAL_BALANCE,
                        help=f'Initial balance for backtest and demo (default: {INITIAL_BALANCE})')
    parser.add_argument('--days', type=int, default=30,
                        help='Backtest window in days (default: 30)')
    parser.add_argument('--duration', type=float, default=0,
                        help='Demo run time in seconds, 0 to run until interrupted')
    parser.add_argument('--paper', action='store_true', default=False,
                        help='Use the simulated exchange instead of the real one')
    parser.add_argument('--seed', type=int, default=None,
                        help='Random seed for the simulated exchange')
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    paper = args.paper or (args.mode != 'live' and not has_exchange_credentials())
    if not validate_config(require_exchange=not paper):
        logger.error("Invalid configuration. Exiting.")
        return 1

    if args.mode == 'live' and not paper and not os.path.exists(".env"):
        logger.warning("No .env file found, reading credentials from the environment only")

    try:
        strategy = load_strategy(args)
        ranges = {name: tuple(bounds) for name, bounds in json.loads(args.ranges or "{}").items()}
    except (OSError, ValueError, KeyError, TypeError) as e:
        logger.error(f"Could not load strategy or ranges: {e}")
        return 1

    print(f"Mode: {args.mode}")
    print(f"Strategy: {strategy.name} ({strategy.type})")
    print(f"Pair: {strategy.pair}")
    print(f"Exchange: {'paper' if paper else 'live'}")

    try:
        if args.mode == 'backtest':
            asyncio.run(run_backtest_mode(strategy, args.days, args.balance, paper, args.seed))
        elif args.mode == 'optimize':
            asyncio.run(run_optimize_mode(strategy, ranges, args.target, args.days, args.balance, paper, args.seed))
        elif args.mode == 'demo':
            asyncio.run(run_demo_mode(strategy, args.balance, args.duration, paper, args.seed))
        else:
            asyncio.run(run_live_mode(strategy, paper, args.seed))
    except KeyboardInterrupt:
        logger.info("Stopped by user")
    except TradingEngineError as e:
        logger.error(f"{args.mode.capitalize()} failed: {e}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
