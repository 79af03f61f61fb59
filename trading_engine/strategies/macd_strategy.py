"""
MACD histogram rule.
"""
from typing import List, Sequence

from trading_engine.models import Candle, Signal, Strategy
from trading_engine.strategies.base_strategy import BaseStrategy
from trading_engine.utils.indicators import calculate_macd


class MacdStrategy(BaseStrategy):
    """Fires when the MACD histogram changes sign."""

    name = "macd"
    default_parameters = {'fastPeriod': 12, 'slowPeriod': 26, 'signalPeriod': 9}

    def required_lookback(self, strategy: Strategy) -> int:
        fast = self.get_int(strategy, 'fastPeriod')
        slow = self.get_int(strategy, 'slowPeriod')
        return max(fast, slow) + self.get_int(strategy, 'signalPeriod')

    def check_signal(self, strategy: Strategy, prices: List[float],
                     candles: Sequence[Candle]) -> Signal:
        fast = self.get_int(strategy, 'fastPeriod')
        slow = self.get_int(strategy, 'slowPeriod')
        signal_period = self.get_int(strategy, 'signalPeriod')
        required = max(fast, slow) + signal_period

        if len(prices) < required:
            return self.not_enough_data(required)

        current = calculate_macd(prices, fast, slow, signal_period)
        previous = calculate_macd(prices[:-1], fast, slow, signal_period)
        histogram = current['histogram']

        if self.crossed_above(previous['histogram'], 0.0, histogram, 0.0):
            return self.buy(f"MACD histogram turned positive ({histogram:.2f})")

        if self.crossed_below(previous['histogram'], 0.0, histogram, 0.0):
            return self.sell(f"MACD histogram turned negative ({histogram:.2f})")

        return Signal.none(
            f"No signal. MACD: {current['macd']:.2f}, Signal: {current['signal']:.2f}, "
            f"Histogram: {histogram:.2f}"
        )
