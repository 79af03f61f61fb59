"""
Range breakout rule.
"""
from typing import List, Sequence

from trading_engine.models import Candle, Signal, Strategy
from trading_engine.strategies.base_strategy import BaseStrategy
from trading_engine.utils.indicators import calculate_breakout


class BreakoutStrategy(BaseStrategy):
    """Fires when price leaves the recent high/low range by more than the threshold."""

    name = "breakout"
    default_parameters = {'lookbackPeriod': 20, 'breakoutThreshold': 2}

    def required_lookback(self, strategy: Strategy) -> int:
        return self.get_int(strategy, 'lookbackPeriod')

    def check_signal(self, strategy: Strategy, prices: List[float],
                     candles: Sequence[Candle]) -> Signal:
        lookback = self.get_int(strategy, 'lookbackPeriod')
        threshold = self.get_float(strategy, 'breakoutThreshold')

        if len(prices) < lookback:
            return self.not_enough_data(lookback)

        direction = calculate_breakout(prices, lookback, threshold)

        if direction == 'up':
            return self.buy(f"Upward breakout detected ({threshold:g}% threshold)")
        if direction == 'down':
            return self.sell(f"Downward breakout detected ({threshold:g}% threshold)")

        return Signal.none("No breakout detected")
