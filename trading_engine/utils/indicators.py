"""
Technical indicators for trading strategies.

Every function takes the price (or candle) history in chronological order and
returns the indicator value for the last element. When the history is shorter
than the indicator's lookback a neutral value is returned instead of raising.
"""
import numpy as np
import pandas as pd
from typing import Optional, Dict, List, Sequence

from trading_engine.models import Candle


DEFAULT_PATTERNS = ['doji', 'hammer', 'engulfing', 'morningstar', 'eveningstar']


def candles_to_frame(candles: Sequence[Candle]) -> pd.DataFrame:
    """Convert a candle list into an OHLCV DataFrame."""
    return pd.DataFrame(
        [c.to_dict() for c in candles],
        columns=['timestamp', 'open', 'high', 'low', 'close', 'volume', 'pair']
    )


def calculate_sma(data: Sequence[float], period: int) -> float:
    """Simple Moving Average of the last `period` values, 0 if not enough data."""
    if period <= 0 or len(data) < period:
        return 0.0
    return float(np.mean(np.asarray(data[-period:], dtype=float)))


def calculate_ema(data: Sequence[float], period: int) -> float:
    """Exponential Moving Average seeded with the first value, 0 if not enough data."""
    if period <= 0 or len(data) < period:
        return 0.0
    # adjust=False gives ema[0] = data[0], ema[i] = k * data[i] + (1 - k) * ema[i-1]
    series = pd.Series(data, dtype=float)
    return float(series.ewm(span=period, adjust=False).mean().iloc[-1])


def calculate_rsi(data: Sequence[float], period: int = 14) -> float:
    """
    Relative Strength Index of the last value.

    Average gain and loss are the means of the last `period` price changes.
    Returns 50 when there is not more than `period` prices and 100 when the
    window holds no losses.
    """
    if len(data) <= period:
        return 50.0

    changes = np.diff(np.asarray(data, dtype=float))[-period:]
    gains = np.where(changes > 0, changes, 0.0)
    losses = np.where(changes < 0, -changes, 0.0)

    avg_gain = gains.mean()
    avg_loss = losses.mean()

    if avg_loss == 0:
        return 100.0

    rs = avg_gain / avg_loss
    return float(100 - 100 / (1 + rs))


def calculate_macd(data: Sequence[float], fast_period: int = 12, slow_period: int = 26,
                   signal_period: int = 9) -> Dict[str, float]:
    """
    Calculate MACD.

    The signal line is a single smoothing step of the current MACD value
    (macd * 2 / (signal_period + 1)), not an EMA over the MACD history.
    """
    fast_ema = calculate_ema(data, fast_period)
    slow_ema = calculate_ema(data, slow_period)
    macd = fast_ema - slow_ema
    signal = macd * (2 / (signal_period + 1))
    return {
        'macd': macd,
        'signal': signal,
        'histogram': macd - signal
    }


def calculate_bollinger_bands(data: Sequence[float], period: int = 20,
                              std_dev: float = 2.0) -> Dict[str, float]:
    """Bollinger Bands using the population standard deviation of the window."""
    if period <= 0 or len(data) < period:
        return {'upper': 0.0, 'middle': 0.0, 'lower': 0.0}

    window = np.asarray(data[-period:], dtype=float)
    middle = window.mean()
    std = window.std(ddof=0)

    return {
        'upper': float(middle + std_dev * std),
        'middle': float(middle),
        'lower': float(middle - std_dev * std)
    }


def calculate_breakout(data: Sequence[float], lookback_period: int,
                       threshold: float) -> Optional[str]:
    """
    Detect a breakout of the last price out of the prior `lookback_period` range.

    `threshold` is a percentage applied to the range high and low.
    Returns 'up', 'down' or None.
    """
    if lookback_period <= 0 or len(data) < lookback_period + 1:
        return None

    current_price = data[-1]
    prior = np.asarray(data[-lookback_period - 1:-1], dtype=float)

    upper_threshold = prior.max() * (1 + threshold / 100)
    lower_threshold = prior.min() * (1 - threshold / 100)

    if current_price > upper_threshold:
        return 'up'
    if current_price < lower_threshold:
        return 'down'
    return None


def _midpoint(data: Sequence[float], period: int) -> float:
    window = data[-period:]
    return (max(window) + min(window)) / 2


def calculate_ichimoku(data: Sequence[float], conversion_period: int = 9, base_period: int = 26,
                       lagging_span_period: int = 52, displacement: int = 26) -> Dict[str, float]:
    """Ichimoku cloud components computed from closing prices."""
    required = max(conversion_period, base_period, lagging_span_period) + displacement
    if len(data) < required:
        return {
            'conversion_line': 0.0,
            'base_line': 0.0,
            'leading_span_a': 0.0,
            'leading_span_b': 0.0,
            'lagging_span': 0.0
        }

    conversion_line = _midpoint(data, conversion_period)
    base_line = _midpoint(data, base_period)

    return {
        'conversion_line': conversion_line,
        'base_line': base_line,
        'leading_span_a': (conversion_line + base_line) / 2,
        'leading_span_b': _midpoint(data, lagging_span_period),
        'lagging_span': data[-1 - displacement]
    }


def calculate_vwap(candles: Sequence[Candle]) -> float:
    """Volume Weighted Average Price over the given candles."""
    if not candles:
        return 0.0
    df = candles_to_frame(candles)
    total_volume = df['volume'].sum()
    if total_volume == 0:
        return 0.0
    typical_price = (df['high'] + df['low'] + df['close']) / 3
    return float((typical_price * df['volume']).sum() / total_volume)


def calculate_volatility(prices: Sequence[float]) -> float:
    """Population standard deviation of simple returns."""
    if len(prices) < 2:
        return 0.0
    returns = pd.Series(prices, dtype=float).pct_change().dropna()
    return float(returns.std(ddof=0))


def _body(candle: Candle) -> float:
    return abs(candle.close - candle.open)


def detect_candlestick_patterns(candles: Sequence[Candle],
                                patterns: Optional[Sequence[str]] = None) -> List[Dict]:
    """
    Detect candlestick patterns on the most recent candles.

    Returns a list of {'pattern', 'direction', 'strength'} dicts sorted by
    strength, strongest first. Needs at least 5 candles.
    """
    if len(candles) < 5:
        return []
    if patterns is None:
        patterns = DEFAULT_PATTERNS
    if isinstance(patterns, str):
        patterns = [patterns]

    results = []
    first, middle, last = candles[-3], candles[-2], candles[-1]
    prev = middle

    total_range = last.high - last.low
    body_size = _body(last)

    # Doji: open and close are very close
    if 'doji' in patterns and total_range > 0 and body_size / total_range < 0.1:
        results.append({'pattern': 'doji', 'direction': 'neutral', 'strength': 0.5})

    # Hammer: small body, long lower shadow, little or no upper shadow
    if 'hammer' in patterns and total_range > 0:
        lower_shadow = min(last.open, last.close) - last.low
        upper_shadow = last.high - max(last.open, last.close)
        if (body_size / total_range < 0.3 and
                lower_shadow / total_range > 0.6 and
                upper_shadow / total_range < 0.1):
            results.append({'pattern': 'hammer', 'direction': 'bullish', 'strength': 0.7})

    if 'engulfing' in patterns:
        if (prev.close < prev.open and last.close > last.open and
                last.open < prev.close and last.close > prev.open):
            results.append({'pattern': 'bullish engulfing', 'direction': 'bullish', 'strength': 0.8})

        if (prev.close > prev.open and last.close < last.open and
                last.open > prev.close and last.close < prev.open):
            results.append({'pattern': 'bearish engulfing', 'direction': 'bearish', 'strength': 0.8})

    if 'morningstar' in patterns:
        if (first.close < first.open and
                _body(first) > _body(middle) and
                max(middle.open, middle.close) < first.close and
                last.close > last.open and
                last.close > middle.high):
            results.append({'pattern': 'morning star', 'direction': 'bullish', 'strength': 0.9})

    if 'eveningstar' in patterns:
        if (first.close > first.open and
                _body(first) > _body(middle) and
                min(middle.open, middle.close) > first.close and
                last.close < last.open and
                last.close < middle.low):
            results.append({'pattern': 'evening star', 'direction': 'bearish', 'strength': 0.9})

    results.sort(key=lambda r: r['strength'], reverse=True)
    return results
