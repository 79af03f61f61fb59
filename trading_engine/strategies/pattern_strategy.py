"""
Candlestick pattern rule.
"""
from typing import List, Sequence

from trading_engine.exceptions import ConfigurationError
from trading_engine.models import Candle, Signal, Strategy
from trading_engine.strategies.base_strategy import BaseStrategy
from trading_engine.utils.indicators import DEFAULT_PATTERNS, detect_candlestick_patterns

MIN_PATTERN_CANDLES = 5


class PatternStrategy(BaseStrategy):
    """Trades the strongest directional candlestick pattern on the last candles."""

    name = "pattern_recognition"
    default_parameters = {'patterns': list(DEFAULT_PATTERNS), 'minStrength': 0.7}

    def required_lookback(self, strategy: Strategy) -> int:
        return MIN_PATTERN_CANDLES

    def check_signal(self, strategy: Strategy, prices: List[float],
                     candles: Sequence[Candle]) -> Signal:
        if len(candles) < MIN_PATTERN_CANDLES:
            return Signal.none(
                f"Not enough data. Need at least {MIN_PATTERN_CANDLES} candles for pattern recognition."
            )

        patterns = self.get_param(strategy, 'patterns')
        if isinstance(patterns, str):
            patterns = [patterns]
        if not isinstance(patterns, (list, tuple)) or not all(isinstance(p, str) for p in patterns):
            raise ConfigurationError(f"Parameter 'patterns' must be a list of pattern names, got {patterns!r}")
        min_strength = self.get_float(strategy, 'minStrength')

        results = detect_candlestick_patterns(candles, list(patterns))
        if not results:
            return Signal.none("No significant candlestick patterns detected")

        strongest = results[0]
        confidence = f"{strongest['strength'] * 100:.0f}% confidence"

        if strongest['strength'] >= min_strength:
            if strongest['direction'] == 'bullish':
                return self.buy(f"{strongest['pattern']} pattern detected ({confidence})")
            if strongest['direction'] == 'bearish':
                return self.sell(f"{strongest['pattern']} pattern detected ({confidence})")
            return Signal.none(f"{strongest['pattern']} pattern detected but it has no direction")

        return Signal.none(
            f"{strongest['pattern']} pattern detected but signal strength "
            f"({strongest['strength'] * 100:.0f}%) below threshold"
        )
