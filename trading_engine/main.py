"""
Main module for live trading.

The TradingManager runs registered strategies against the exchange gateway
under the configured risk limits: it sizes entries, places the protective
orders, manages exits on every price update and trips circuit breakers on
excessive losses.
"""
from dataclasses import fields, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Union

from trading_engine.config import logger, TradingConfig
from trading_engine.exceptions import ConfigurationError, GatewayError, RiskBreach
from trading_engine.models import (
    AccountBalance, DailyStats, LiquidationWarning, Position, PositionSide,
    PriceUpdate, SignalType, Strategy, TradeJournalEntry, utc_now
)
from trading_engine.price_feed import PriceFeed, PriceSubscription
from trading_engine.strategies.signal_generator import generate_signal
from trading_engine.utils.event_bus import EventBus, Subscription
from trading_engine.utils.logger import TradeJournal, send_telegram_message
from trading_engine.utils.position_manager import PositionBook, TrailingStopManager
from trading_engine.utils.risk import (
    CorrelationPolicy, GroupCorrelationPolicy, adjust_risk_percent, correlated_symbols,
    correlation_ratio, optimal_position_size, portfolio_risk
)
from trading_engine.utils.scheduler import PeriodicScheduler


class TradingManager:
    """
    Live trading across any number of strategies.

    Args:
        gateway: Exchange gateway used for balances, market data and orders
        price_feed: Live price source driving exit management
        event_bus: Bus carrying position, margin and liquidation events
        config: Risk settings
        clock: Callable returning the current aware UTC datetime
        correlation_policy: Decides whether two pairs move together
        journal: Trade journal receiving every fill
        notify: Send Telegram notifications for fills and breaker trips
    """

    def __init__(self, gateway, price_feed: PriceFeed, event_bus: Optional[EventBus] = None,
                 config: Optional[TradingConfig] = None,
                 clock: Callable[[], datetime] = utc_now,
                 correlation_policy: Optional[CorrelationPolicy] = None,
                 journal: Optional[TradeJournal] = None,
                 notify: bool = True):
        self.gateway = gateway
        self.price_feed = price_feed
        self.event_bus = event_bus or price_feed.event_bus
        self.config = config or TradingConfig()
        self.clock = clock
        self.correlation_policy = correlation_policy or GroupCorrelationPolicy(self.config.correlated_groups)
        self.journal = journal or TradeJournal(event_bus=self.event_bus)
        self.notify = notify

        self.strategies: Dict[str, Strategy] = {}
        self.positions = PositionBook()
        self.trailing = TrailingStopManager(self.config.trailing_stop_percent)
        self.scheduler = PeriodicScheduler(self.tick, self.config.update_interval, name="trading-manager")

        self.is_running = False
        self.stop_reason: Optional[str] = None
        self.balance: Optional[AccountBalance] = None
        self.peak_equity = 0.0
        self.current_drawdown = 0.0
        self.daily_stats: Optional[DailyStats] = None
        self.daily_history: List[DailyStats] = []

        self._price_subscriptions: Dict[str, PriceSubscription] = {}
        self._event_subscriptions: List[Subscription] = []
        self._trade_ids: Dict[tuple, int] = {}
        self._closing: Set[tuple] = set()
        # Price subscriptions kept for open positions of removed strategies
        self._exit_subscriptions: Dict[tuple, PriceSubscription] = {}
        self._day_seeded = False

    # Strategy registry

    def add_strategy(self, strategy: Strategy):
        """Register a strategy and watch its pair."""
        if strategy.id in self.strategies:
            self.remove_strategy(strategy.id)
        self.strategies[strategy.id] = strategy
        self._subscribe_strategy(strategy)
        logger.info(f"Added strategy {strategy.name} ({strategy.id}) on {strategy.pair}")

    def remove_strategy(self, strategy_id: str) -> bool:
        """
        Unregister a strategy. Its open position, if any, stays tracked.

        While that position is open its pair stays subscribed so stop-loss,
        take-profit and trailing exits keep firing. Otherwise the price feed
        keeps the pair only as long as another subscription references it.
        """
        strategy = self.strategies.pop(strategy_id, None)
        if strategy is None:
            return False
        subscription = self._price_subscriptions.pop(strategy_id, None)
        key = (strategy_id, strategy.pair)
        if subscription is not None:
            if self.positions.has_position(*key) and key not in self._exit_subscriptions:
                self._exit_subscriptions[key] = subscription
                logger.info(f"Keeping {strategy.pair} subscribed until the position of {strategy_id} closes")
            else:
                subscription.cancel()
        logger.info(f"Removed strategy {strategy.name} ({strategy_id})")
        return True

    def _subscribe_strategy(self, strategy: Strategy):
        if strategy.id not in self._price_subscriptions and strategy.pair:
            self._price_subscriptions[strategy.id] = self.price_feed.subscribe(
                strategy.pair, self._on_price_update
            )

    def _watch_orphaned_positions(self):
        for position in self.positions.open_positions():
            key = (position.strategy_id, position.symbol)
            if position.strategy_id not in self.strategies and key not in self._exit_subscriptions:
                self._exit_subscriptions[key] = self.price_feed.subscribe(
                    position.symbol, self._on_price_update
                )

    def update_config(self, **changes):
        """Change risk settings on a running manager."""
        known = {f.name for f in fields(TradingConfig)}
        unknown = set(changes) - known
        if unknown:
            raise ConfigurationError(f"Unknown config settings: {', '.join(sorted(unknown))}")

        for key, value in changes.items():
            setattr(self.config, key, value)

        self.trailing.trailing_stop_percent = self.config.trailing_stop_percent
        self.scheduler.interval = self.config.update_interval
        if 'correlated_groups' in changes:
            self.correlation_policy = GroupCorrelationPolicy(self.config.correlated_groups)
        logger.info(f"Updated trading config: {changes}")

    # Sizing

    def calculate_optimal_position_size(self, strategy: Strategy, balance: float,
                                        risk_percent: Optional[float] = None) -> float:
        """Fixed-fractional size at the live price. 0 when no price is known."""
        latest = self.price_feed.get_latest_price(strategy.pair)
        if latest is None:
            logger.warning(f"No live price for {strategy.pair}, cannot size position")
            return 0.0
        return optimal_position_size(
            strategy,
            latest.price,
            balance,
            self.config.risk_per_trade if risk_percent is None else risk_percent,
            self.config.stop_loss_percent,
            self.config.max_leverage
        )

    def check_position_correlation(self, candidate: Union[str, Position]) -> Dict[str, Any]:
        """How correlated a candidate pair is with the open positions."""
        pair = candidate.symbol if isinstance(candidate, Position) else candidate
        open_positions = [p for p in self.positions.open_positions() if p is not candidate]
        symbols = correlated_symbols(pair, open_positions, self.correlation_policy)
        return {
            'is_correlated': bool(symbols),
            'correlation_ratio': correlation_ratio(pair, open_positions, self.correlation_policy),
            'correlated_symbols': symbols
        }

    def suggest_position_size(self, strategy: Strategy, balance: float,
                              risk_percent: Optional[float] = None) -> float:
        """Optimal size with the risk scaled down for portfolio load and correlation."""
        requested = self.config.risk_per_trade if risk_percent is None else risk_percent
        total_risk = portfolio_risk(self.positions.open_positions(), balance, self.config.stop_loss_percent)
        correlation = self.check_position_correlation(strategy.pair)
        adjusted = adjust_risk_percent(
            requested, total_risk, correlation['correlation_ratio'], self.config.correlation_threshold
        )
        if adjusted != requested:
            logger.info(f"Risk for {strategy.name} adjusted from {requested:.2f}% to {adjusted:.2f}% "
                        f"(portfolio risk {total_risk:.1f}%, correlation {correlation['correlation_ratio']:.2f})")
        return self.calculate_optimal_position_size(strategy, balance, adjusted)

    # Update cycle

    async def tick(self):
        """One update cycle: balance, daily stats, exits, breakers, then entries."""
        if not self.is_running:
            return

        await self._refresh_balance()
        self._roll_daily_stats()
        await self._check_exits()

        if await self._check_circuit_breakers():
            return

        for strategy in list(self.strategies.values()):
            if not self.is_running:
                break
            # Reservations held by an overlapping tick count against the limit
            if self.positions.slots_in_use >= self.config.max_positions:
                logger.debug(f"Maximum of {self.config.max_positions} positions reached")
                break
            if not self.positions.reserve(strategy.id, strategy.pair, limit=self.config.max_positions):
                continue
            try:
                await self._evaluate_strategy(strategy)
            except GatewayError as e:
                logger.error(f"Trade for {strategy.name} failed: {e}")
            finally:
                self.positions.release(strategy.id, strategy.pair)

    async def _refresh_balance(self):
        try:
            balance = await self.gateway.get_account_balance()
        except GatewayError as e:
            logger.warning(f"Balance refresh failed, using cached balance: {e}")
            if self.balance is not None:
                self.balance = replace(self.balance, stale=True)
            return

        self.balance = balance
        if balance.stale:
            return

        # Drawdown only follows balances actually reported by the exchange
        self.peak_equity = max(self.peak_equity, balance.equity)
        if self.peak_equity > 0:
            self.current_drawdown = (self.peak_equity - balance.equity) / self.peak_equity * 100

    def _roll_daily_stats(self):
        """
        Start a new day on a UTC date change.

        A day opened without a confirmed balance has no start balance yet.
        It takes one from the first fresh balance, backing out the P&L
        already realised that day.
        """
        today = self.clock().date().isoformat()
        if self.daily_stats is not None and self.daily_stats.date != today:
            previous = self.daily_stats
            self.daily_history.append(previous)
            logger.info(f"Daily stats for {previous.date}: {previous.trades} trades, P&L {previous.pnl:.2f}")
            self.daily_stats = None
            if self._day_seeded:
                carried = previous.end_balance
                self.daily_stats = DailyStats(date=today, start_balance=carried, end_balance=carried)

        if self.daily_stats is None:
            self.daily_stats = DailyStats(date=today, start_balance=0.0, end_balance=0.0)
            self._day_seeded = False

        if not self._day_seeded and self.balance is not None and not self.balance.stale:
            stats = self.daily_stats
            stats.start_balance = self.balance.total - stats.pnl
            stats.end_balance = self.balance.total
            self._day_seeded = True
            logger.info(f"Daily start balance for {stats.date}: {stats.start_balance:.2f}")

    def _enforce_risk_limits(self):
        """Raise RiskBreach when a loss limit is exceeded."""
        if self.daily_stats is not None:
            daily_loss = self.daily_stats.loss_percent
            if daily_loss > self.config.max_daily_loss:
                raise RiskBreach('Daily loss', daily_loss, self.config.max_daily_loss)

        if self.current_drawdown > self.config.max_drawdown:
            raise RiskBreach('Drawdown', self.current_drawdown, self.config.max_drawdown)

    async def _check_circuit_breakers(self) -> bool:
        try:
            self._enforce_risk_limits()
        except RiskBreach as e:
            logger.error(f"Circuit breaker tripped: {e}")
            await self.stop(reason=str(e))
            if self.notify:
                await send_telegram_message(f"🚨 <b>Trading Stopped</b>\n{e}")
            return True
        return False

    async def _evaluate_strategy(self, strategy: Strategy):
        candles = await self.gateway.get_market_data(strategy.pair)
        if not candles:
            logger.warning(f"No market data for {strategy.pair}, skipping {strategy.name}")
            return

        signal = generate_signal(strategy, candles)
        if signal.signal is None:
            logger.debug(f"{strategy.name}: {signal.reason}")
            return

        balance = self.balance.available if self.balance else 0.0
        size = self.suggest_position_size(strategy, balance)
        if size <= 0:
            logger.warning(f"Invalid position size calculated for {strategy.name}: {size}")
            return

        logger.info(f"{strategy.name} signal {signal.signal.value}: {signal.reason}")
        await self.execute_trade(strategy, signal.signal, size, reason=signal.reason)

    async def execute_trade(self, strategy: Strategy, signal: SignalType, size: float,
                            reason: str = "") -> Optional[Position]:
        """
        Open a position with a market order, then place its stop and take-profit.

        A failing market order raises GatewayError and records nothing.
        Returns None when the slot is already taken.
        """
        if self.positions.has_position(strategy.id, strategy.pair):
            logger.info(f"{strategy.name} already has an open position on {strategy.pair}")
            return None

        side = 'buy' if signal == SignalType.BUY else 'sell'
        order = await self.gateway.place_order(strategy.pair, side, 'market', size)

        latest = self.price_feed.get_latest_price(strategy.pair)
        entry_price = order.price or (latest.price if latest else 0.0)
        position_side = PositionSide.LONG if signal == SignalType.BUY else PositionSide.SHORT
        stop_pct = self.config.stop_loss_percent / 100
        take_pct = self.config.take_profit_percent / 100

        if position_side == PositionSide.LONG:
            stop_loss = entry_price * (1 - stop_pct)
            take_profit = entry_price * (1 + take_pct)
        else:
            stop_loss = entry_price * (1 + stop_pct)
            take_profit = entry_price * (1 - take_pct)

        position = Position(
            symbol=strategy.pair,
            strategy_id=strategy.id,
            side=position_side,
            size=order.size or size,
            entry_price=entry_price,
            open_time=self.clock(),
            stop_loss=stop_loss,
            take_profit=take_profit
        )
        self.positions.add(position)

        exit_side = 'sell' if side == 'buy' else 'buy'
        for kind, trigger in (('stop', stop_loss), ('takeProfit', take_profit)):
            try:
                await self.gateway.place_conditional_order(strategy.pair, exit_side, kind, position.size, trigger)
            except GatewayError as e:
                logger.error(f"Could not place {kind} order for {strategy.pair}: {e}")

        trade_id = self.journal.next_trade_id()
        self._trade_ids[(strategy.id, strategy.pair)] = trade_id
        await self.journal.record(TradeJournalEntry.from_position(
            trade_id, position, 'OPEN', reason=reason, balance=self._balance_total()
        ))

        logger.info(f"Opened {position_side.value} {strategy.pair} for {strategy.name}: "
                    f"{position.size:.6f} at {entry_price:.2f}, SL {stop_loss:.2f}, TP {take_profit:.2f}")
        if self.notify:
            await send_telegram_message(
                f"🟢 <b>{position_side.value.upper()} Entry</b> ({strategy.name})\n"
                f"Pair: {strategy.pair}\nPrice: {entry_price:.2f}\nSize: {position.size:.6f}\n"
                f"Stop Loss: {stop_loss:.2f}\nTake Profit: {take_profit:.2f}\nReason: {reason}"
            )
        return position

    async def close_position(self, position: Position, price: float, reason: str) -> Optional[float]:
        """
        Close a tracked position with a market order. Returns the realised P&L.

        A failing exit order raises GatewayError and the position stays open.
        """
        key = (position.strategy_id, position.symbol)
        if not position.is_open or key in self._closing:
            return None

        exit_side = 'sell' if position.side == PositionSide.LONG else 'buy'
        self._closing.add(key)
        try:
            order = await self.gateway.place_order(position.symbol, exit_side, 'market', position.size)
        finally:
            self._closing.discard(key)
        pnl = position.close(order.price or price, self.clock())
        self.positions.remove(position)
        watcher = self._exit_subscriptions.pop(key, None)
        if watcher is not None:
            watcher.cancel()

        if self.daily_stats is None:
            self._roll_daily_stats()
        self.daily_stats.record_trade(pnl)

        trade_id = self._trade_ids.pop(key, None) or self.journal.next_trade_id()
        await self.journal.record(TradeJournalEntry.from_position(
            trade_id, position, 'CLOSE', reason=reason, balance=self._balance_total()
        ))

        logger.info(f"Closed {position.side.value} {position.symbol} for {position.strategy_id} at "
                    f"{position.exit_price:.2f}, P&L: {pnl:.2f} ({reason})")
        if self.notify:
            emoji = "✅" if pnl > 0 else "❌"
            await send_telegram_message(
                f"{emoji} <b>{position.side.value.upper()} Exit</b> ({position.strategy_id})\n"
                f"Pair: {position.symbol}\nEntry: {position.entry_price:.2f}\n"
                f"Exit: {position.exit_price:.2f}\nP&L: {pnl:.2f}\nReason: {reason}"
            )
        return pnl

    def _balance_total(self) -> Optional[float]:
        return self.balance.total if self.balance else None

    # Exit management

    async def _manage_position(self, position: Position, price: float):
        reason = self.trailing.manage(position, price)
        if reason is None:
            return
        try:
            await self.close_position(position, price, reason)
        except GatewayError as e:
            logger.error(f"Exit for {position.symbol} ({reason}) failed, will retry: {e}")

    async def _check_exits(self):
        for position in self.positions.open_positions():
            latest = self.price_feed.get_latest_price(position.symbol)
            if latest is not None:
                await self._manage_position(position, latest.price)

    async def _on_price_update(self, update: PriceUpdate):
        for position in self.positions.positions_for_symbol(update.pair):
            await self._manage_position(position, update.price)

    async def _on_liquidation_warning(self, warning: LiquidationWarning):
        distance = warning.distance_percent
        logger.warning(f"Liquidation warning for {warning.symbol}: mark {warning.mark_price:.2f}, "
                       f"liquidation {warning.liquidation_price:.2f} ({distance:.2f}% away)")
        if distance >= self.config.liquidation_distance:
            return

        for position in self.positions.positions_for_symbol(warning.symbol):
            try:
                await self.close_position(position, warning.mark_price, "Liquidation risk")
            except GatewayError as e:
                logger.error(f"Could not close {warning.symbol} near liquidation: {e}")

    def _on_position_update(self, update: Dict[str, Any]):
        mark_price = update.get('mark_price')
        if not mark_price:
            return
        for position in self.positions.positions_for_symbol(update.get('symbol', '')):
            position.update_mark(mark_price)
            if update.get('liquidation_price'):
                position.liquidation_price = float(update['liquidation_price'])

    def _on_margin_update(self, update: Dict[str, Any]):
        logger.info(f"Margin update for {update.get('symbol')}: ratio {update.get('margin_ratio')}")

    # Lifecycle

    async def start(self):
        """Start trading. No-op while running."""
        if self.is_running:
            return

        self._event_subscriptions = [
            self.gateway.on_position_update(self._on_position_update),
            self.gateway.on_liquidation_warning(self._on_liquidation_warning),
            self.gateway.on_margin_update(self._on_margin_update),
        ]
        for strategy in self.strategies.values():
            self._subscribe_strategy(strategy)
        self._watch_orphaned_positions()

        self.stop_reason = None
        self.is_running = True
        self.scheduler.start()
        logger.info(f"Trading manager started with {len(self.strategies)} strategies")

    async def stop(self, reason: Optional[str] = None):
        """
        Stop trading and release every subscription and timer.

        Idempotent. Open positions stay in memory.
        """
        if reason:
            self.stop_reason = reason

        self.scheduler.stop()
        for subscription in self._price_subscriptions.values():
            subscription.cancel()
        self._price_subscriptions.clear()
        for subscription in self._exit_subscriptions.values():
            subscription.cancel()
        self._exit_subscriptions.clear()
        for subscription in self._event_subscriptions:
            subscription.cancel()
        self._event_subscriptions = []

        if self.is_running:
            self.is_running = False
            logger.info(f"Trading manager stopped{f': {reason}' if reason else ''}")

    def get_status(self) -> Dict[str, Any]:
        return {
            'is_running': self.is_running,
            'stop_reason': self.stop_reason,
            'active_strategies': [s.to_dict() for s in self.strategies.values()],
            'open_positions': [p.to_dict() for p in self.positions.open_positions()],
            'daily_stats': self.daily_stats.to_dict() if self.daily_stats else None,
            'balance': self.balance.total if self.balance else None,
            'drawdown': self.current_drawdown,
        }
