from datetime import timedelta

import pytest

from conftest import START, FakeGateway, make_candles, make_strategy
from trading_engine.backtester import BacktestOptions, PaperLedger, run_backtest, simulate_backtest
from trading_engine.exceptions import DataUnavailable
from trading_engine.models import Signal, SignalType

TREND_REVERSAL = [10, 9, 8, 7, 6, 7, 9, 12, 15]


def options(**overrides):
    settings = dict(start_date=START, end_date=START + timedelta(days=1), initial_balance=10000.0)
    settings.update(overrides)
    return BacktestOptions(**settings)


FLAT_MULTI_FACTOR = {'strategies': [
    {'id': 'ma', 'type': 'MA_CROSSOVER', 'parameters': {'shortPeriod': 2, 'longPeriod': 4}},
    {'id': 'rsi', 'type': 'RSI', 'parameters': {'period': 5}},
], 'operator': 'OR'}


@pytest.mark.parametrize("strategy_type, parameters", [
    ("MA_CROSSOVER", {'shortPeriod': 2, 'longPeriod': 4}),
    ("RSI", {'period': 5}),
    ("BREAKOUT", {'lookbackPeriod': 5}),
    ("MACD", {}),
    ("BOLLINGER_BANDS", {'period': 5}),
    ("ICHIMOKU", {}),
    ("PATTERN_RECOGNITION", {}),
    ("MULTI_FACTOR", FLAT_MULTI_FACTOR),
])
def test_constant_prices_produce_no_trades(strategy_type, parameters):
    strategy = make_strategy(strategy_type, parameters)
    result = simulate_backtest(strategy, make_candles([100] * 100), options())
    assert result.trades == []
    assert result.total_trades == 0
    assert result.final_balance == 10000.0
    assert result.balance_history == [{'timestamp': START, 'balance': 10000.0}]


def test_open_position_is_closed_at_end(ma_strategy):
    result = simulate_backtest(ma_strategy, make_candles(TREND_REVERSAL), options())

    assert [t.action for t in result.trades] == ['OPEN', 'CLOSE']
    opening, closing = result.trades
    assert opening.type == SignalType.BUY
    assert closing.reason == "End of backtest"
    assert closing.pnl > 0
    assert result.final_balance == pytest.approx(10000.0 + closing.pnl)
    assert result.total_trades == 1
    assert result.win_rate == 1.0


def test_open_entry_records_fee_as_loss(ma_strategy):
    result = simulate_backtest(ma_strategy, make_candles(TREND_REVERSAL), options(slippage=0.0))
    opening = result.trades[0]
    assert opening.price == 9.0
    assert opening.pnl == pytest.approx(-opening.total * 0.001)


def test_fixed_fractional_size(ma_strategy):
    result = simulate_backtest(ma_strategy, make_candles(TREND_REVERSAL),
                               options(slippage=0.0, risk_per_trade=2.0, stop_loss_percent=2.0))
    # 2% of 10000 at risk over a 2% stop at 9.0
    assert result.trades[0].amount == pytest.approx(200 / 0.18)


def test_empty_candles_raise(ma_strategy):
    with pytest.raises(DataUnavailable):
        simulate_backtest(ma_strategy, [], options())


@pytest.mark.asyncio
async def test_run_backtest_fetches_history(ma_strategy):
    gateway = FakeGateway(make_candles(TREND_REVERSAL))
    result = await run_backtest(ma_strategy, options(), gateway)
    assert result.strategy_id == ma_strategy.id
    assert result.total_trades == 1


@pytest.mark.asyncio
async def test_run_backtest_without_history_raises(ma_strategy):
    with pytest.raises(DataUnavailable):
        await run_backtest(ma_strategy, options(), FakeGateway())


class TestPaperLedger:

    def test_stop_loss_exit(self):
        ledger = PaperLedger(balance=1000.0, slippage=0.0)
        ledger.open_position(SignalType.BUY, 100.0, START)
        reason = ledger.exit_reason(Signal.none("quiet"), 97.0)
        assert reason == "Stop loss hit at 97.00"

    def test_opposing_signal_exit(self):
        ledger = PaperLedger(balance=1000.0)
        ledger.open_position(SignalType.SELL, 100.0, START)
        reason = ledger.exit_reason(Signal(SignalType.BUY, "reversal"), 100.0)
        assert reason == "Opposing signal: reversal"

    def test_single_position(self):
        ledger = PaperLedger(balance=1000.0)
        assert ledger.open_position(SignalType.BUY, 100.0, START) is not None
        assert ledger.open_position(SignalType.BUY, 100.0, START) is None
        assert len(ledger.trades) == 1

    def test_short_profit_net_of_fees(self):
        ledger = PaperLedger(balance=1000.0, fee_rate=0.001, slippage=0.0)
        opening = ledger.open_position(SignalType.SELL, 100.0, START)
        closing = ledger.close_position(90.0, START)
        gross = 10.0 * opening.amount
        fees = (100.0 + 90.0) * opening.amount * 0.001
        assert closing.type == SignalType.BUY
        assert closing.pnl == pytest.approx(gross - fees)
        assert ledger.balance == pytest.approx(1000.0 + gross - fees)
