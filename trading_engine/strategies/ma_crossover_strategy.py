"""
Moving average crossover rule.
"""
from typing import List, Sequence

from trading_engine.models import Candle, Signal, Strategy
from trading_engine.strategies.base_strategy import BaseStrategy
from trading_engine.utils.indicators import calculate_sma


class MaCrossoverStrategy(BaseStrategy):
    """Fires when the short SMA crosses the long SMA."""

    name = "ma_crossover"
    default_parameters = {'shortPeriod': 10, 'longPeriod': 50}

    def required_lookback(self, strategy: Strategy) -> int:
        return max(self.get_int(strategy, 'shortPeriod'), self.get_int(strategy, 'longPeriod'))

    def check_signal(self, strategy: Strategy, prices: List[float],
                     candles: Sequence[Candle]) -> Signal:
        short_period = self.get_int(strategy, 'shortPeriod')
        long_period = self.get_int(strategy, 'longPeriod')
        required = max(short_period, long_period)

        if len(prices) < required:
            return self.not_enough_data(required)

        short_ma = calculate_sma(prices, short_period)
        long_ma = calculate_sma(prices, long_period)

        # Previous step only counts once both averages existed
        prev_prices = prices[:-1]
        if len(prev_prices) >= required:
            prev_short_ma = calculate_sma(prev_prices, short_period)
            prev_long_ma = calculate_sma(prev_prices, long_period)
        else:
            prev_short_ma = prev_long_ma = None

        if self.crossed_above(prev_short_ma, prev_long_ma, short_ma, long_ma):
            return self.buy(f"Short MA ({short_ma:.2f}) crossed above Long MA ({long_ma:.2f})")

        if self.crossed_below(prev_short_ma, prev_long_ma, short_ma, long_ma):
            return self.sell(f"Short MA ({short_ma:.2f}) crossed below Long MA ({long_ma:.2f})")

        return Signal.none(f"No signal. Short MA: {short_ma:.2f}, Long MA: {long_ma:.2f}")
