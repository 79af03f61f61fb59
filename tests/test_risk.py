import pytest

from conftest import START, make_strategy
from trading_engine.models import Position, PositionSide
from trading_engine.utils.position_manager import PositionBook, TrailingStopManager
from trading_engine.utils.risk import (
    GroupCorrelationPolicy, adjust_risk_percent, base_asset, correlation_ratio,
    optimal_position_size, portfolio_risk, stop_distance
)

GROUPS = [["BTC", "ETH"], ["SOL", "ADA", "AVAX"]]


def position(symbol="BTC-USDT", side=PositionSide.LONG, entry=100.0, size=1.0, strategy_id="s1", **kwargs):
    return Position(symbol=symbol, strategy_id=strategy_id, side=side, size=size,
                    entry_price=entry, open_time=START, **kwargs)


class TestSizing:

    def test_fixed_fractional(self):
        size = optimal_position_size(make_strategy("MA_CROSSOVER"), 100.0, 10000.0, 2.0, 2.0, 5.0)
        assert size == pytest.approx(100.0)

    def test_rsi_low_oversold_widens_stop(self):
        strategy = make_strategy("RSI", {'oversold': 25})
        assert stop_distance(strategy, 100.0, 2.0) == pytest.approx(2.5)
        assert optimal_position_size(strategy, 100.0, 10000.0, 2.0, 2.0, 5.0) == pytest.approx(80.0)

    def test_breakout_high_threshold_widens_stop(self):
        strategy = make_strategy("BREAKOUT", {'breakoutThreshold': 3})
        assert stop_distance(strategy, 100.0, 2.0) == pytest.approx(3.0)

    def test_default_thresholds_do_not_widen(self):
        assert stop_distance(make_strategy("RSI"), 100.0, 2.0) == pytest.approx(2.0)
        assert stop_distance(make_strategy("BREAKOUT"), 100.0, 2.0) == pytest.approx(2.0)

    def test_leverage_cap(self):
        size = optimal_position_size(make_strategy("MA_CROSSOVER"), 100.0, 1000.0, 50.0, 0.5, 2.0)
        assert size == pytest.approx(20.0)

    @pytest.mark.parametrize("price", [None, 0.0, -1.0])
    def test_no_price_no_size(self, price):
        assert optimal_position_size(make_strategy("MA_CROSSOVER"), price, 10000.0, 2.0, 2.0, 5.0) == 0.0


class TestPortfolio:

    def test_base_asset(self):
        assert base_asset("btc-usdt") == "BTC"
        assert base_asset("ETH/USDT") == "ETH"
        assert base_asset("SOL") == "SOL"

    def test_group_policy(self):
        policy = GroupCorrelationPolicy(GROUPS)
        assert policy("BTC-USDT", "ETH-USDT")
        assert policy("BTC-USDT", "BTC-USDC")
        assert not policy("BTC-USDT", "SOL-USDT")

    def test_correlation_ratio(self):
        policy = GroupCorrelationPolicy(GROUPS)
        positions = [position("BTC-USDT"), position("SOL-USDT", strategy_id="s2")]
        assert correlation_ratio("ETH-USDT", positions, policy) == pytest.approx(0.5)
        assert correlation_ratio("ETH-USDT", [], policy) == 0.0

    def test_portfolio_risk_uses_stop_distance(self):
        positions = [position(size=10.0, stop_loss=95.0), position("ETH-USDT", size=1.0, entry=200.0)]
        # 10 * 5 + 1 * 200 * 2%
        assert portfolio_risk(positions, 1000.0, 2.0) == pytest.approx(5.4)

    @pytest.mark.parametrize("total_risk, ratio, expected", [
        (10.0, 0.0, 2.0),
        (30.0, 0.0, 1.5),
        (60.0, 0.0, 1.0),
        (10.0, 0.8, 2.0 * 0.2),
        (10.0, 0.7, 2.0),
    ])
    def test_adjust_risk_percent(self, total_risk, ratio, expected):
        assert adjust_risk_percent(2.0, total_risk, ratio, 0.7) == pytest.approx(expected)


class TestPositionBook:

    def test_reservation_is_exclusive(self):
        book = PositionBook()
        assert book.reserve("s1", "BTC-USDT")
        assert not book.reserve("s1", "BTC-USDT")
        assert book.reserve("s1", "ETH-USDT")
        assert book.reserve("s2", "BTC-USDT")

    def test_reservations_count_against_limit(self):
        book = PositionBook()
        book.add(position())
        assert book.reserve("s2", "ETH-USDT", limit=2)
        assert book.slots_in_use == 2
        assert not book.reserve("s3", "SOL-USDT", limit=2)
        book.release("s2", "ETH-USDT")
        assert book.reserve("s3", "SOL-USDT", limit=2)
        assert book.reserve("s4", "ADA-USDT")

    def test_add_consumes_reservation(self):
        book = PositionBook()
        book.reserve("s1", "BTC-USDT")
        book.add(position())
        assert not book.is_reserved("s1", "BTC-USDT")
        assert not book.reserve("s1", "BTC-USDT")
        with pytest.raises(ValueError):
            book.add(position())

    def test_remove_moves_to_closed(self):
        book = PositionBook()
        opened = position()
        book.add(opened)
        book.remove(opened)
        assert len(book) == 0
        assert book.closed_positions == [opened]
        assert book.reserve("s1", "BTC-USDT")


class TestTrailingStops:

    def test_no_trailing_stop_while_losing(self):
        manager = TrailingStopManager(1.0)
        tracked = position()
        assert not manager.update_trailing_stop(tracked, 99.0)
        assert tracked.trailing_stop is None

    def test_short_trailing_stop_only_moves_down(self):
        manager = TrailingStopManager(1.0)
        tracked = position(side=PositionSide.SHORT)
        assert manager.update_trailing_stop(tracked, 90.0)
        assert tracked.trailing_stop == pytest.approx(90.9)
        assert not manager.update_trailing_stop(tracked, 95.0)
        assert tracked.trailing_stop == pytest.approx(90.9)
        assert manager.check_exit(tracked, 91.0) == "Trailing stop hit at 90.90"

    def test_stop_loss_checked_first(self):
        manager = TrailingStopManager(1.0)
        tracked = position(stop_loss=98.0, take_profit=104.0)
        assert manager.check_exit(tracked, 97.0) == "Stop loss hit at 98.00"
        assert manager.check_exit(tracked, 104.0) == "Take profit hit at 104.00"
        assert manager.check_exit(tracked, 101.0) is None

    def test_manage_marks_to_market(self):
        manager = TrailingStopManager(1.0)
        tracked = position(size=2.0)
        assert manager.manage(tracked, 103.0) is None
        assert tracked.unrealized_pnl == pytest.approx(6.0)
        assert tracked.trailing_stop == pytest.approx(101.97)
