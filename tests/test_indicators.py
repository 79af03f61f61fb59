import pytest

from conftest import START, make_candles
from trading_engine.models import Candle
from trading_engine.utils.indicators import (
    calculate_sma, calculate_ema, calculate_rsi, calculate_macd, calculate_bollinger_bands,
    calculate_breakout, calculate_ichimoku, calculate_vwap, calculate_volatility,
    candles_to_frame, detect_candlestick_patterns
)


def test_sma_uses_last_period_values():
    assert calculate_sma([1, 2, 3, 4, 5], 3) == pytest.approx(4.0)


def test_sma_short_history_is_zero():
    assert calculate_sma([1, 2], 3) == 0.0


def test_ema_seeded_with_first_value():
    # alpha = 2 / (3 + 1) = 0.5: 1 -> 1.5 -> 2.25
    assert calculate_ema([1, 2, 3], 3) == pytest.approx(2.25)


def test_rsi_neutral_without_enough_changes():
    assert calculate_rsi([1, 2, 3], 3) == 50.0


def test_rsi_is_100_without_losses():
    assert calculate_rsi(list(range(1, 17)), 14) == 100.0


def test_rsi_balanced_changes():
    assert calculate_rsi([10, 11, 10], 2) == pytest.approx(50.0)


def test_macd_signal_is_single_smoothing_step():
    prices = [float(p) for p in range(1, 40)]
    result = calculate_macd(prices, 12, 26, 9)
    assert result['signal'] == pytest.approx(result['macd'] * 0.2)
    assert result['histogram'] == pytest.approx(result['macd'] * 0.8)


def test_bollinger_constant_prices_collapse():
    bands = calculate_bollinger_bands([5.0] * 20, 20, 2)
    assert bands == {'upper': 5.0, 'middle': 5.0, 'lower': 5.0}


def test_bollinger_short_history():
    assert calculate_bollinger_bands([1, 2], 20)['middle'] == 0.0


def test_breakout_directions():
    flat = [100.0] * 20
    assert calculate_breakout(flat + [103.0], 20, 2) == 'up'
    assert calculate_breakout(flat + [97.0], 20, 2) == 'down'
    assert calculate_breakout(flat + [101.0], 20, 2) is None


def test_breakout_needs_prior_window():
    assert calculate_breakout([100.0] * 20, 20, 2) is None


def test_ichimoku_short_history_is_zero():
    result = calculate_ichimoku([1.0] * 10)
    assert all(value == 0.0 for value in result.values())


def test_ichimoku_lines_are_midpoints():
    prices = [float(p) for p in range(1, 79)]
    result = calculate_ichimoku(prices)
    assert result['conversion_line'] == pytest.approx((78 + 70) / 2)
    assert result['base_line'] == pytest.approx((78 + 53) / 2)
    assert result['lagging_span'] == prices[-27]


def test_vwap_weights_typical_price_by_volume():
    candles = [
        Candle(START, 10, 12, 8, 10, 1.0, 'BTC-USDT'),
        Candle(START, 20, 22, 18, 20, 3.0, 'BTC-USDT'),
    ]
    assert calculate_vwap(candles) == pytest.approx((10 * 1 + 20 * 3) / 4)


def test_volatility_of_constant_prices_is_zero():
    assert calculate_volatility([10, 10, 10]) == 0.0


def test_candles_to_frame_columns():
    frame = candles_to_frame(make_candles([1, 2, 3]))
    assert list(frame.columns) == ['timestamp', 'open', 'high', 'low', 'close', 'volume', 'pair']
    assert frame['close'].tolist() == [1.0, 2.0, 3.0]


def test_bullish_engulfing_detected():
    candles = make_candles([10, 10, 10, 10])
    candles.append(Candle(START, 10, 10.2, 8.9, 9, 100, 'BTC-USDT'))
    candles.append(Candle(START, 8.5, 10.6, 8.4, 10.5, 100, 'BTC-USDT'))
    patterns = detect_candlestick_patterns(candles, ['engulfing'])
    assert patterns[0]['pattern'] == 'bullish engulfing'
    assert patterns[0]['direction'] == 'bullish'


def test_patterns_need_five_candles():
    assert detect_candlestick_patterns(make_candles([1, 2, 3])) == []


def with_last_candles(*candles):
    return make_candles([10] * (5 - len(candles))) + list(candles)


def test_doji_detected():
    candles = with_last_candles(Candle(START, 100, 101, 99, 100.05, 100, 'BTC-USDT'))
    assert detect_candlestick_patterns(candles) == [
        {'pattern': 'doji', 'direction': 'neutral', 'strength': 0.5}
    ]


def test_hammer_detected():
    candles = with_last_candles(Candle(START, 100, 100.35, 98, 100.3, 100, 'BTC-USDT'))
    assert detect_candlestick_patterns(candles) == [
        {'pattern': 'hammer', 'direction': 'bullish', 'strength': 0.7}
    ]


def test_bearish_engulfing_detected():
    candles = with_last_candles(
        Candle(START, 9, 10.1, 8.9, 10, 100, 'BTC-USDT'),
        Candle(START, 10.5, 10.6, 8.4, 8.5, 100, 'BTC-USDT'),
    )
    patterns = detect_candlestick_patterns(candles, ['engulfing'])
    assert patterns == [{'pattern': 'bearish engulfing', 'direction': 'bearish', 'strength': 0.8}]


def test_morning_star_detected():
    candles = with_last_candles(
        Candle(START, 10, 10.1, 7.9, 8, 100, 'BTC-USDT'),
        Candle(START, 7.5, 7.7, 7.2, 7.4, 100, 'BTC-USDT'),
        Candle(START, 7.6, 9.1, 7.5, 9, 100, 'BTC-USDT'),
    )
    patterns = detect_candlestick_patterns(candles, ['morningstar'])
    assert patterns == [{'pattern': 'morning star', 'direction': 'bullish', 'strength': 0.9}]


def test_evening_star_detected():
    candles = with_last_candles(
        Candle(START, 8, 10.1, 7.9, 10, 100, 'BTC-USDT'),
        Candle(START, 10.5, 10.8, 10.3, 10.6, 100, 'BTC-USDT'),
        Candle(START, 10.4, 10.5, 8.9, 9, 100, 'BTC-USDT'),
    )
    patterns = detect_candlestick_patterns(candles, ['eveningstar'])
    assert patterns == [{'pattern': 'evening star', 'direction': 'bearish', 'strength': 0.9}]


def test_patterns_sorted_strongest_first():
    # Tiny body with a long lower shadow is both a doji and a hammer
    candles = with_last_candles(Candle(START, 100, 100.25, 98, 100.2, 100, 'BTC-USDT'))
    assert [p['pattern'] for p in detect_candlestick_patterns(candles)] == ['hammer', 'doji']


def test_flat_candles_have_no_patterns():
    assert detect_candlestick_patterns(make_candles([10] * 5)) == []
