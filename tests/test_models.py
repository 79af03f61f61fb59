import pytest

from conftest import START, make_strategy
from trading_engine.models import (
    DailyStats, LiquidationWarning, Position, PositionSide, PositionStatus, Strategy,
    StrategyPerformance, StrategyType, TradeJournalEntry
)


class TestStrategy:

    def test_type_string_becomes_enum(self):
        assert make_strategy("RSI").type == StrategyType.RSI

    def test_parameters_are_read_only(self):
        strategy = make_strategy("RSI", {'period': 14})
        with pytest.raises(TypeError):
            strategy.parameters['period'] = 7

    def test_param_default_for_missing_or_none(self):
        strategy = make_strategy("RSI", {'period': None})
        assert strategy.param('period', 14) == 14
        assert strategy.param('oversold', 30) == 30

    def test_improved_is_a_copy(self):
        strategy = make_strategy("RSI", {'period': 14, 'oversold': 30})
        strategy.performance = StrategyPerformance(total_pnl=5.0)

        improved = strategy.improved({'oversold': 25})

        assert improved.id == "rsi_1_improved"
        assert improved.name == "RSI test (Improved)"
        assert dict(improved.parameters) == {'period': 14, 'oversold': 25}
        assert improved.performance is None
        assert strategy.param('oversold') == 30

    def test_dict_round_trip(self):
        strategy = make_strategy("MACD", {'fastPeriod': 12})
        strategy.performance = StrategyPerformance(total_pnl=12.5, trades_count=3)

        restored = Strategy.from_dict(strategy.to_dict())

        assert restored == strategy

    def test_from_dict_takes_pair_from_parameters(self):
        restored = Strategy.from_dict({'id': 'x', 'type': 'RSI', 'parameters': {'pair': 'ETH-USDT'}})
        assert restored.pair == 'ETH-USDT'
        assert restored.name == 'x'

    def test_nested_strategies_serialized(self):
        inner = make_strategy("RSI")
        outer = make_strategy("MULTI_FACTOR", {'strategies': [inner], 'operator': 'AND'})
        assert outer.to_dict()['parameters']['strategies'] == [inner.to_dict()]


class TestPosition:

    def test_mark_defaults_to_entry(self):
        position = Position("BTC-USDT", "s1", PositionSide.LONG, 2.0, 100.0, START)
        assert position.mark_price == 100.0

    def test_short_pnl(self):
        position = Position("BTC-USDT", "s1", PositionSide.SHORT, 2.0, 100.0, START)
        position.update_mark(90.0)
        assert position.unrealized_pnl == pytest.approx(20.0)

    def test_close_once(self):
        position = Position("BTC-USDT", "s1", PositionSide.LONG, 2.0, 100.0, START)

        assert position.close(110.0, START) == pytest.approx(20.0)
        assert position.status == PositionStatus.CLOSED
        assert position.unrealized_pnl == 0.0
        with pytest.raises(ValueError):
            position.close(120.0, START)
        assert position.realized_pnl == pytest.approx(20.0)

    def test_journal_entries_from_position(self):
        position = Position("BTC-USDT", "s1", PositionSide.LONG, 2.0, 100.0, START)
        opening = TradeJournalEntry.from_position(1, position, 'OPEN', reason="signal")
        position.close(95.0, START)
        closing = TradeJournalEntry.from_position(1, position, 'CLOSE', reason="Stop loss")

        assert opening.pnl == 0.0
        assert opening.price == 100.0
        assert closing.price == 95.0
        assert closing.pnl == pytest.approx(-10.0)
        assert closing.pnl_percent == pytest.approx(-5.0)


class TestDailyStats:

    def test_record_trades(self):
        stats = DailyStats(date="2024-01-01", start_balance=1000.0, end_balance=1000.0)
        stats.record_trade(50.0)
        stats.record_trade(-80.0)
        stats.record_trade(0.0)

        assert (stats.trades, stats.wins, stats.losses) == (3, 1, 1)
        assert stats.pnl == pytest.approx(-30.0)
        assert stats.end_balance == pytest.approx(970.0)
        assert stats.loss_percent == pytest.approx(3.0)

    def test_no_loss_when_profitable(self):
        stats = DailyStats(date="2024-01-01", start_balance=1000.0, end_balance=1000.0)
        stats.record_trade(10.0, balance=1010.0)
        assert stats.loss_percent == 0.0
        assert stats.end_balance == 1010.0


def test_liquidation_distance():
    warning = LiquidationWarning("BTC-USDT", mark_price=100.0, liquidation_price=97.0)
    assert warning.distance_percent == pytest.approx(3.0)
    assert LiquidationWarning("BTC-USDT", 0.0, 97.0).distance_percent == 0.0
