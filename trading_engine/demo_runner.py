"""
Demo (paper) trading against live market data.

Runs the backtester's position mechanics on a polling loop and keeps the
performance record that decides whether a strategy may trade real capital.
"""
from datetime import datetime
from typing import Callable, List, Optional

from trading_engine.config import (
    logger, INITIAL_BALANCE, FEE_RATE, SLIPPAGE, RISK_PER_TRADE, STOP_LOSS_PERCENT,
    DEMO_POLL_INTERVAL, READY_MIN_WIN_RATE, READY_MIN_RETURN_PERCENT,
    READY_MIN_TRADES, READY_MIN_DAYS
)
from trading_engine.backtester import PaperLedger
from trading_engine.exceptions import GatewayError
from trading_engine.models import (
    BacktestTrade, DemoPerformance, SignalType, Strategy, TradeJournalEntry, utc_now
)
from trading_engine.strategies.signal_generator import generate_signal
from trading_engine.utils.logger import TradeJournal
from trading_engine.utils.scheduler import PeriodicScheduler

SECONDS_PER_DAY = 24 * 60 * 60


def is_live_ready(win_rate: float, profit_loss_percent: float, total_trades: int,
                  elapsed_seconds: float) -> bool:
    """All promotion gates must pass."""
    return (
        total_trades >= READY_MIN_TRADES and
        win_rate >= READY_MIN_WIN_RATE and
        profit_loss_percent >= READY_MIN_RETURN_PERCENT and
        elapsed_seconds >= READY_MIN_DAYS * SECONDS_PER_DAY
    )


class DemoTrader:
    """
    Paper-trades one strategy at a time.

    Args:
        gateway: Exchange gateway used for market data
        interval: Poll period in seconds
        clock: Callable returning the current aware datetime
        journal: Optional trade journal receiving every fill
    """

    def __init__(self, gateway, interval: float = DEMO_POLL_INTERVAL,
                 clock: Callable[[], datetime] = utc_now,
                 journal: Optional[TradeJournal] = None,
                 fee_rate: float = FEE_RATE, slippage: float = SLIPPAGE):
        self.gateway = gateway
        self.clock = clock
        self.journal = journal
        self.fee_rate = fee_rate
        self.slippage = slippage
        self.scheduler = PeriodicScheduler(self.tick, interval, name="demo-trader")

        self.strategy: Optional[Strategy] = None
        self.initial_balance = INITIAL_BALANCE
        self.ledger = PaperLedger(balance=INITIAL_BALANCE, fee_rate=fee_rate, slippage=slippage)
        self.start_time: Optional[datetime] = None
        self.is_running = False
        self._trade_ids: List[int] = []

    def start(self, strategy: Strategy, initial_balance: float = INITIAL_BALANCE):
        """Start demo trading. No-op while already running."""
        if self.is_running:
            return

        self.strategy = strategy
        self.initial_balance = initial_balance
        self.ledger = PaperLedger(
            balance=initial_balance,
            fee_rate=self.fee_rate,
            slippage=self.slippage,
            risk_per_trade=RISK_PER_TRADE,
            stop_loss_percent=STOP_LOSS_PERCENT
        )
        self._trade_ids = []
        self.start_time = self.clock()
        self.is_running = True
        self.scheduler.start()

        logger.info(f"Demo trading started with strategy: {strategy.name}")

    def stop(self):
        """Stop demo trading. Idempotent."""
        if not self.is_running:
            return
        self.scheduler.stop()
        self.is_running = False
        logger.info("Demo trading stopped")

    async def tick(self):
        """One poll: fetch market data, evaluate the strategy, open or close."""
        strategy = self.strategy
        if not self.is_running or strategy is None or not strategy.pair:
            return

        try:
            candles = await self.gateway.get_market_data(strategy.pair)
        except GatewayError as e:
            logger.warning(f"Demo trader could not fetch market data: {e}")
            return

        # Stopped while the request was in flight
        if not self.is_running or not candles:
            return

        last = candles[-1]
        signal = generate_signal(strategy, candles)
        timestamp = self.clock()

        if self.ledger.position is None:
            if signal.signal is None:
                return
            trade = self.ledger.open_position(signal.signal, last.close, timestamp, signal.reason)
            if trade:
                logger.info(f"Demo trade opened: {trade.type.value} {trade.amount:.4f} at {trade.price:.2f} ({signal.reason})")
                await self._journal(trade)
        else:
            reason = self.ledger.exit_reason(signal, last.close)
            if reason:
                trade = self.ledger.close_position(last.close, timestamp, reason)
                logger.info(f"Demo trade closed: {trade.type.value} {trade.amount:.4f} at {trade.price:.2f}, "
                            f"P&L: {trade.pnl:.2f} ({reason})")
                await self._journal(trade)

    async def _journal(self, trade: BacktestTrade):
        if self.journal is None:
            return
        if trade.action == 'OPEN':
            trade_id = self.journal.next_trade_id()
            self._trade_ids.append(trade_id)
        else:
            trade_id = self._trade_ids[-1]
        await self.journal.record(self._to_entry(trade, trade_id))

    def _to_entry(self, trade: BacktestTrade, trade_id: int) -> TradeJournalEntry:
        opening = trade.action == 'OPEN'
        long_side = (trade.type == SignalType.BUY) == opening
        return TradeJournalEntry(
            trade_id=trade_id,
            timestamp=trade.timestamp,
            action=trade.action,
            strategy_id=self.strategy.id,
            pair=self.strategy.pair,
            side='long' if long_side else 'short',
            price=trade.price,
            size=trade.amount,
            pnl=trade.pnl if not opening else 0.0,
            pnl_percent=trade.pnl_percent if not opening else 0.0,
            balance=trade.balance,
            reason=trade.reason
        )

    def get_performance(self) -> DemoPerformance:
        """Performance snapshot, recomputed from the ledger on every call."""
        end_time = self.clock()
        duration = (end_time - self.start_time).total_seconds() if self.start_time else 0.0
        duration_days = duration / SECONDS_PER_DAY

        completed = self.ledger.completed_trades
        total_trades = len(completed)
        winning_trades = len([t for t in completed if t.pnl > 0])
        losing_trades = len([t for t in completed if t.pnl < 0])
        win_rate = winning_trades / total_trades if total_trades > 0 else 0.0

        profit_loss = self.ledger.balance - self.initial_balance
        profit_loss_percent = profit_loss / self.initial_balance * 100 if self.initial_balance else 0.0
        annualized_return = 0.0
        if duration_days > 0 and profit_loss_percent > -100:
            try:
                annualized_return = ((1 + profit_loss_percent / 100) ** (365 / duration_days) - 1) * 100
            except OverflowError:
                annualized_return = float('inf')

        trades = []
        if self.strategy is not None:
            round_trip = 0
            for trade in self.ledger.trades:
                if trade.action == 'OPEN':
                    round_trip += 1
                trades.append(self._to_entry(trade, round_trip))

        return DemoPerformance(
            start_time=self.start_time,
            end_time=end_time,
            duration_seconds=duration,
            initial_balance=self.initial_balance,
            current_balance=self.ledger.balance,
            total_trades=total_trades,
            winning_trades=winning_trades,
            losing_trades=losing_trades,
            win_rate=win_rate,
            profit_loss=profit_loss,
            profit_loss_percent=profit_loss_percent,
            annualized_return=annualized_return,
            trades=trades,
            is_live_ready=is_live_ready(win_rate, profit_loss_percent, total_trades, duration)
        )
