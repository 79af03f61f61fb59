import pytest

from conftest import START, make_candles, make_strategy
from trading_engine.models import Candle, SignalType
from trading_engine.strategies.signal_generator import (
    DEFAULT_LOOKBACK, generate_signal, get_strategy_lookback
)

BUY_SUB = {'id': 'fast', 'name': 'fast', 'type': 'MA_CROSSOVER',
           'parameters': {'shortPeriod': 2, 'longPeriod': 4}}
SELL_SUB = {'id': 'slow', 'name': 'slow', 'type': 'MA_CROSSOVER',
            'parameters': {'shortPeriod': 4, 'longPeriod': 2}}


def test_ma_crossover_fires_on_first_complete_window(ma_strategy):
    prices = [1, 2, 3, 4, 5, 10]
    signal = generate_signal(ma_strategy, make_candles(prices[:4]))
    assert signal.signal == SignalType.BUY
    assert "crossed above" in signal.reason


def test_ma_crossover_does_not_repeat_without_new_cross(ma_strategy):
    signal = generate_signal(ma_strategy, make_candles([1, 2, 3, 4, 5]))
    assert signal.signal is None
    assert signal.reason.startswith("No signal")


def test_not_enough_data(ma_strategy):
    signal = generate_signal(ma_strategy, make_candles([1, 2, 3]))
    assert signal.signal is None
    assert signal.reason == "Not enough data. Need at least 4 periods."


def test_no_data_for_pair(ma_strategy):
    signal = generate_signal(ma_strategy, make_candles([1, 2, 3, 4], pair="ETH-USDT"))
    assert signal.reason == "No data available for BTC-USDT"


def test_candles_of_other_pairs_are_ignored(ma_strategy):
    candles = make_candles([1, 2, 3, 4]) + make_candles([9, 9, 9, 9], pair="ETH-USDT")
    assert generate_signal(ma_strategy, candles).signal == SignalType.BUY


def test_unknown_strategy_type():
    strategy = make_strategy("FOO")
    signal = generate_signal(strategy, make_candles([1, 2, 3]))
    assert signal.signal is None
    assert signal.reason == "Unknown strategy type: FOO"


def test_invalid_parameters_do_not_raise():
    strategy = make_strategy("MA_CROSSOVER", {'shortPeriod': 'abc', 'longPeriod': 4})
    signal = generate_signal(strategy, make_candles([1, 2, 3, 4]))
    assert signal.signal is None
    assert signal.reason.startswith("Invalid strategy parameters")


def test_rsi_crossing_above_oversold():
    strategy = make_strategy("RSI", {'period': 3, 'oversold': 30, 'overbought': 70})
    signal = generate_signal(strategy, make_candles([10, 9, 8, 7, 8]))
    assert signal.signal == SignalType.BUY


def test_breakout_up():
    strategy = make_strategy("BREAKOUT", {'lookbackPeriod': 5, 'breakoutThreshold': 2})
    signal = generate_signal(strategy, make_candles([100] * 5 + [103]))
    assert signal.signal == SignalType.BUY
    assert signal.reason == "Upward breakout detected (2% threshold)"


def test_bollinger_touch_of_lower_band():
    strategy = make_strategy("BOLLINGER_BANDS", {'period': 5, 'standardDeviations': 1})
    signal = generate_signal(strategy, make_candles([10, 11, 10, 11, 10, 11, 5]))
    assert signal.signal == SignalType.BUY


class TestMultiFactor:

    def test_and_requires_every_sub_strategy(self):
        strategy = make_strategy("MULTI_FACTOR", {'strategies': [BUY_SUB, BUY_SUB], 'operator': 'AND'})
        signal = generate_signal(strategy, make_candles([1, 2, 3, 4]))
        assert signal.signal == SignalType.BUY
        assert signal.reason == "All sub-strategies agree on BUY signal"

    def test_and_with_disagreement_is_no_signal(self):
        strategy = make_strategy("MULTI_FACTOR", {'strategies': [BUY_SUB, SELL_SUB], 'operator': 'AND'})
        assert generate_signal(strategy, make_candles([1, 2, 3, 4])).signal is None

    def test_or_tie_is_no_signal(self):
        strategy = make_strategy("MULTI_FACTOR", {'strategies': [BUY_SUB, SELL_SUB], 'operator': 'OR'})
        signal = generate_signal(strategy, make_candles([1, 2, 3, 4]))
        assert signal.signal is None
        assert signal.reason == "No clear signal from multi-factor strategy"

    def test_weighted_follows_heavier_side(self):
        strategy = make_strategy("MULTI_FACTOR", {
            'strategies': [BUY_SUB, SELL_SUB], 'weights': [1, 2], 'operator': 'WEIGHTED'
        })
        assert generate_signal(strategy, make_candles([1, 2, 3, 4])).signal == SignalType.SELL

    def test_sub_strategies_inherit_pair(self):
        strategy = make_strategy("MULTI_FACTOR", {'strategies': [BUY_SUB]}, pair="ETH-USDT")
        signal = generate_signal(strategy, make_candles([1, 2, 3, 4], pair="ETH-USDT"))
        assert signal.signal == SignalType.BUY

    def test_no_sub_strategies(self):
        strategy = make_strategy("MULTI_FACTOR", {'strategies': []})
        signal = generate_signal(strategy, make_candles([1, 2, 3, 4]))
        assert signal.reason == "No sub-strategies defined for multi-factor strategy"


@pytest.mark.parametrize("strategy_type, parameters, expected", [
    ("MA_CROSSOVER", {'shortPeriod': 10, 'longPeriod': 50}, 50),
    ("RSI", {}, 14),
    ("BREAKOUT", {'lookbackPeriod': 30}, 30),
    ("MACD", {}, 35),
    ("BOLLINGER_BANDS", {}, 20),
    ("FOO", {}, DEFAULT_LOOKBACK),
])
def test_strategy_lookback(strategy_type, parameters, expected):
    assert get_strategy_lookback(make_strategy(strategy_type, parameters)) == expected


def test_lookback_falls_back_on_bad_parameters():
    strategy = make_strategy("RSI", {'period': -1})
    assert get_strategy_lookback(strategy) == DEFAULT_LOOKBACK


def test_rsi_crossing_below_overbought():
    strategy = make_strategy("RSI", {'period': 3, 'oversold': 30, 'overbought': 70})
    signal = generate_signal(strategy, make_candles([7, 8, 9, 10, 9]))
    assert signal.signal == SignalType.SELL
    assert signal.reason == "RSI (66.67) crossed below overbought threshold (70)"


def test_bollinger_flat_window_has_no_signal():
    strategy = make_strategy("BOLLINGER_BANDS", {'period': 5})
    signal = generate_signal(strategy, make_candles([100] * 5))
    assert signal.signal is None


class TestMacd:
    PARAMETERS = {'fastPeriod': 2, 'slowPeriod': 4, 'signalPeriod': 3}

    def test_histogram_turning_positive_buys(self):
        strategy = make_strategy("MACD", self.PARAMETERS)
        signal = generate_signal(strategy, make_candles([10, 9, 8, 7, 6, 5, 4, 8]))
        assert signal.signal == SignalType.BUY
        assert signal.reason.startswith("MACD histogram turned positive")

    def test_histogram_staying_positive_does_not_repeat(self):
        strategy = make_strategy("MACD", self.PARAMETERS)
        signal = generate_signal(strategy, make_candles([10, 9, 8, 7, 6, 5, 4, 8, 9]))
        assert signal.signal is None
        assert signal.reason.startswith("No signal. MACD:")

    def test_histogram_turning_negative_sells(self):
        strategy = make_strategy("MACD", self.PARAMETERS)
        signal = generate_signal(strategy, make_candles([1, 2, 3, 4, 5, 6, 7, 3]))
        assert signal.signal == SignalType.SELL


class TestIchimoku:
    PARAMETERS = {'conversionPeriod': 2, 'basePeriod': 4, 'laggingSpanPeriod': 4, 'displacement': 1}

    def test_tenkan_crossing_above_kijun_buys(self):
        strategy = make_strategy("ICHIMOKU", self.PARAMETERS)
        signal = generate_signal(strategy, make_candles([9, 9, 3, 5, 5, 6]))
        assert signal.signal == SignalType.BUY
        assert signal.reason == "Tenkan-sen (5.50) crossed above Kijun-sen (4.50)"

    def test_tenkan_crossing_below_kijun_sells(self):
        strategy = make_strategy("ICHIMOKU", self.PARAMETERS)
        signal = generate_signal(strategy, make_candles([3, 3, 9, 7, 7, 6]))
        assert signal.signal == SignalType.SELL
        assert signal.reason == "Tenkan-sen (6.50) crossed below Kijun-sen (7.50)"

    def test_price_leaving_cloud_upwards_buys(self):
        # Equal periods keep Tenkan and Kijun together, leaving only the cloud
        strategy = make_strategy("ICHIMOKU", dict(self.PARAMETERS, basePeriod=2))
        signal = generate_signal(strategy, make_candles([5, 5, 5, 5, 5, 9]))
        assert signal.signal == SignalType.BUY
        assert signal.reason == "Price (9.00) crossed above the cloud"


class TestPatternRecognition:

    @staticmethod
    def candles_ending_with(last):
        return make_candles([100] * 4) + [last]

    def test_hammer_meets_default_strength(self):
        strategy = make_strategy("PATTERN_RECOGNITION")
        candles = self.candles_ending_with(Candle(START, 100, 100.35, 98, 100.3, 100, 'BTC-USDT'))
        signal = generate_signal(strategy, candles)
        assert signal.signal == SignalType.BUY
        assert signal.reason == "hammer pattern detected (70% confidence)"

    def test_pattern_below_min_strength(self):
        strategy = make_strategy("PATTERN_RECOGNITION", {'minStrength': 0.8})
        candles = self.candles_ending_with(Candle(START, 100, 100.35, 98, 100.3, 100, 'BTC-USDT'))
        signal = generate_signal(strategy, candles)
        assert signal.signal is None
        assert signal.reason == "hammer pattern detected but signal strength (70%) below threshold"

    def test_doji_below_default_strength(self):
        strategy = make_strategy("PATTERN_RECOGNITION")
        candles = self.candles_ending_with(Candle(START, 100, 101, 99, 100.05, 100, 'BTC-USDT'))
        signal = generate_signal(strategy, candles)
        assert signal.signal is None
        assert signal.reason == "doji pattern detected but signal strength (50%) below threshold"

    def test_doji_has_no_direction(self):
        strategy = make_strategy("PATTERN_RECOGNITION", {'minStrength': 0.5})
        candles = self.candles_ending_with(Candle(START, 100, 101, 99, 100.05, 100, 'BTC-USDT'))
        signal = generate_signal(strategy, candles)
        assert signal.signal is None
        assert signal.reason == "doji pattern detected but it has no direction"

    def test_pattern_filter(self):
        strategy = make_strategy("PATTERN_RECOGNITION", {'patterns': 'doji'})
        candles = self.candles_ending_with(Candle(START, 100, 100.35, 98, 100.3, 100, 'BTC-USDT'))
        signal = generate_signal(strategy, candles)
        assert signal.reason == "No significant candlestick patterns detected"

    def test_non_list_patterns_are_rejected(self):
        strategy = make_strategy("PATTERN_RECOGNITION", {'patterns': 5})
        signal = generate_signal(strategy, make_candles([1, 2, 3, 4, 5]))
        assert signal.signal is None
        assert signal.reason.startswith("Invalid strategy parameters")


class TestMultiFactorParameters:

    def test_non_list_weights_are_rejected(self):
        strategy = make_strategy("MULTI_FACTOR", {
            'strategies': [BUY_SUB], 'weights': 3, 'operator': 'WEIGHTED'
        })
        signal = generate_signal(strategy, make_candles([1, 2, 3, 4]))
        assert signal.signal is None
        assert signal.reason.startswith("Invalid strategy parameters")

    def test_sub_strategy_with_own_id_is_rejected(self):
        strategy = make_strategy("MULTI_FACTOR", {
            'strategies': [{'id': 'multi_factor_1', 'type': 'MULTI_FACTOR', 'parameters': {}}]
        })
        signal = generate_signal(strategy, make_candles([1, 2, 3, 4]))
        assert signal.signal is None
        assert "cannot contain itself" in signal.reason
        assert get_strategy_lookback(strategy) == DEFAULT_LOOKBACK

    def test_strategy_listed_inside_itself_is_rejected(self):
        subs = []
        strategy = make_strategy("MULTI_FACTOR", {'strategies': subs}, strategy_id="outer")
        subs.append(strategy)
        signal = generate_signal(strategy, make_candles([1, 2, 3, 4]))
        assert signal.signal is None
        assert "cannot contain itself" in signal.reason

    def test_malformed_sub_strategy_parameters(self):
        strategy = make_strategy("MULTI_FACTOR", {
            'strategies': [{'id': 'bad', 'type': 'RSI', 'parameters': 5}]
        })
        signal = generate_signal(strategy, make_candles([1, 2, 3, 4]))
        assert signal.signal is None
        assert signal.reason.startswith("Invalid strategy parameters")
