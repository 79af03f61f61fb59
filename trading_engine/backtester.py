"""
Backtester for evaluating trading strategies.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from trading_engine.config import (
    logger, INITIAL_BALANCE, FEE_RATE, SLIPPAGE, RISK_PER_TRADE, STOP_LOSS_PERCENT
)
from trading_engine.exceptions import DataUnavailable
from trading_engine.models import (
    BacktestResult, BacktestTrade, Candle, PositionSide, Signal, SignalType, Strategy
)
from trading_engine.strategies.signal_generator import generate_signal, get_strategy_lookback
from trading_engine.utils.metrics import calculate_metrics


@dataclass
class BacktestOptions:
    """Settings for a single backtest run."""
    start_date: datetime
    end_date: datetime
    initial_balance: float = INITIAL_BALANCE
    fee_rate: float = FEE_RATE
    slippage: float = SLIPPAGE
    risk_per_trade: float = RISK_PER_TRADE  # percent of balance
    stop_loss_percent: float = STOP_LOSS_PERCENT


@dataclass
class SimulatedPosition:
    side: PositionSide
    size: float
    entry_price: float
    entry_fee: float
    open_time: datetime


@dataclass
class PaperLedger:
    """
    Single-position simulated account.

    Sizing is fixed-fractional: the amount risked between entry and the stop
    loss equals `risk_per_trade` percent of the balance. Fills move the price
    against the trader by `slippage` and pay `fee_rate` on the notional.
    """
    balance: float
    fee_rate: float = FEE_RATE
    slippage: float = SLIPPAGE
    risk_per_trade: float = RISK_PER_TRADE
    stop_loss_percent: float = STOP_LOSS_PERCENT
    position: Optional[SimulatedPosition] = None
    trades: List[BacktestTrade] = field(default_factory=list)

    @property
    def completed_trades(self) -> List[BacktestTrade]:
        return [t for t in self.trades if t.action == 'CLOSE']

    def open_position(self, signal: SignalType, price: float, timestamp: datetime,
                      reason: str = "") -> Optional[BacktestTrade]:
        """Open a position on a BUY or SELL signal. Returns the ledger entry."""
        if self.position is not None or price <= 0:
            return None

        risk_amount = self.balance * (self.risk_per_trade / 100)
        if signal == SignalType.BUY:
            side = PositionSide.LONG
            stop_price = price * (1 - self.stop_loss_percent / 100)
            entry_price = price * (1 + self.slippage)
        else:
            side = PositionSide.SHORT
            stop_price = price * (1 + self.stop_loss_percent / 100)
            entry_price = price * (1 - self.slippage)

        risk_per_unit = abs(price - stop_price)
        if risk_per_unit == 0 or risk_amount <= 0:
            return None
        size = risk_amount / risk_per_unit

        fee = entry_price * size * self.fee_rate
        self.balance -= fee
        self.position = SimulatedPosition(
            side=side,
            size=size,
            entry_price=entry_price,
            entry_fee=fee,
            open_time=timestamp
        )

        trade = BacktestTrade(
            timestamp=timestamp,
            action='OPEN',
            type=signal,
            price=entry_price,
            amount=size,
            total=entry_price * size,
            pnl=-fee,
            pnl_percent=-fee / self.balance * 100 if self.balance else 0.0,
            balance=self.balance,
            reason=reason
        )
        self.trades.append(trade)
        return trade

    def stop_loss_hit(self, price: float) -> bool:
        position = self.position
        if position is None:
            return False
        if position.side == PositionSide.LONG:
            return price <= position.entry_price * (1 - self.stop_loss_percent / 100)
        return price >= position.entry_price * (1 + self.stop_loss_percent / 100)

    def exit_reason(self, signal: Signal, price: float) -> Optional[str]:
        """Why the open position should be closed at this step, or None."""
        position = self.position
        if position is None:
            return None
        if position.side == PositionSide.LONG and signal.is_sell:
            return f"Opposing signal: {signal.reason}"
        if position.side == PositionSide.SHORT and signal.is_buy:
            return f"Opposing signal: {signal.reason}"
        if self.stop_loss_hit(price):
            return f"Stop loss hit at {price:.2f}"
        return None

    def close_position(self, price: float, timestamp: datetime,
                       reason: str = "") -> Optional[BacktestTrade]:
        """Close the open position. The CLOSE entry P&L is net of both fees."""
        position = self.position
        if position is None:
            return None

        if position.side == PositionSide.LONG:
            exit_price = price * (1 - self.slippage)
            gross = (exit_price - position.entry_price) * position.size
            exit_type = SignalType.SELL
        else:
            exit_price = price * (1 + self.slippage)
            gross = (position.entry_price - exit_price) * position.size
            exit_type = SignalType.BUY

        exit_fee = exit_price * position.size * self.fee_rate
        self.balance += gross - exit_fee
        net_pnl = gross - exit_fee - position.entry_fee
        notional = position.entry_price * position.size

        trade = BacktestTrade(
            timestamp=timestamp,
            action='CLOSE',
            type=exit_type,
            price=exit_price,
            amount=position.size,
            total=exit_price * position.size,
            pnl=net_pnl,
            pnl_percent=net_pnl / notional * 100 if notional else 0.0,
            balance=self.balance,
            reason=reason
        )
        self.trades.append(trade)
        self.position = None
        return trade


def simulate_backtest(strategy: Strategy, candles: Sequence[Candle],
                      options: BacktestOptions) -> BacktestResult:
    """
    Replay candles through the signal generator.

    Args:
        strategy: Strategy to test
        candles: Historical candles in chronological order
        options: Balance, friction and risk settings

    Returns:
        BacktestResult with the ledger, balance history and metrics
    """
    if not candles:
        raise DataUnavailable(strategy.pair, "No historical data available for the specified period")

    ledger = PaperLedger(
        balance=options.initial_balance,
        fee_rate=options.fee_rate,
        slippage=options.slippage,
        risk_per_trade=options.risk_per_trade,
        stop_loss_percent=options.stop_loss_percent
    )
    balance_history: List[Dict[str, Any]] = [
        {'timestamp': options.start_date, 'balance': options.initial_balance}
    ]
    lookback = get_strategy_lookback(strategy)

    for i in range(1, len(candles)):
        if i < lookback:
            continue

        candle = candles[i]
        price = candle.close
        signal = generate_signal(strategy, candles[:i + 1])

        if ledger.position is None:
            if signal.signal is not None:
                trade = ledger.open_position(signal.signal, price, candle.timestamp, signal.reason)
                if trade:
                    logger.debug(f"Backtest {strategy.id} open {trade.type.value} at {trade.price:.2f} - {signal.reason}")
                    balance_history.append({'timestamp': candle.timestamp, 'balance': ledger.balance})
        else:
            reason = ledger.exit_reason(signal, price)
            if reason:
                trade = ledger.close_position(price, candle.timestamp, reason)
                logger.debug(f"Backtest {strategy.id} close at {trade.price:.2f}, P&L: {trade.pnl:.2f} - {reason}")
                balance_history.append({'timestamp': candle.timestamp, 'balance': ledger.balance})

    if ledger.position is not None:
        last = candles[-1]
        ledger.close_position(last.close, last.timestamp, "End of backtest")
        balance_history.append({'timestamp': last.timestamp, 'balance': ledger.balance})

    result = BacktestResult(
        strategy_id=strategy.id,
        start_date=options.start_date,
        end_date=options.end_date,
        initial_balance=options.initial_balance,
        final_balance=ledger.balance,
        trades=ledger.trades,
        balance_history=balance_history,
        metrics=calculate_metrics(ledger.completed_trades)
    )

    logger.info(f"Backtest {strategy.name}: {result.total_trades} trades, Win rate: {result.win_rate:.2%}, "
                f"Final balance: {result.final_balance:.2f}, Max drawdown: {result.max_drawdown:.2f}, "
                f"Profit factor: {result.metrics.profit_factor:.2f}")

    return result


async def run_backtest(strategy: Strategy, options: BacktestOptions, gateway) -> BacktestResult:
    """
    Fetch history for the strategy's pair and backtest it.

    Raises:
        DataUnavailable: when the gateway returns no candles for the window
    """
    if not strategy.pair:
        raise DataUnavailable(strategy.pair, "Pair is required to fetch historical data")

    candles = await gateway.get_historical_data(strategy.pair, options.start_date, options.end_date)
    if not candles:
        logger.warning(f"No historical data for {strategy.pair} between {options.start_date} and {options.end_date}")
        raise DataUnavailable(strategy.pair, "No historical data available for the specified period")

    return simulate_backtest(strategy, candles, options)
