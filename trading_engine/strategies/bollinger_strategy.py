"""
Bollinger band touch rule.
"""
from typing import List, Sequence

from trading_engine.models import Candle, Signal, Strategy
from trading_engine.strategies.base_strategy import BaseStrategy
from trading_engine.utils.indicators import calculate_bollinger_bands


class BollingerStrategy(BaseStrategy):
    """
    BUY when price crosses down into the lower band, SELL when it crosses
    up into the upper band. A price that stays outside a band does not fire
    again.
    """

    name = "bollinger_bands"
    default_parameters = {'period': 20, 'standardDeviations': 2}

    def required_lookback(self, strategy: Strategy) -> int:
        return self.get_int(strategy, 'period')

    def check_signal(self, strategy: Strategy, prices: List[float],
                     candles: Sequence[Candle]) -> Signal:
        period = self.get_int(strategy, 'period')
        std_dev = self.get_float(strategy, 'standardDeviations')

        if len(prices) < period:
            return self.not_enough_data(period)

        bands = calculate_bollinger_bands(prices, period, std_dev)
        price = prices[-1]
        if bands['upper'] == bands['lower']:
            return Signal.none(f"No signal. Bands have no width at {price:.2f}")

        prev_prices = prices[:-1]
        if len(prev_prices) >= period:
            prev_bands = calculate_bollinger_bands(prev_prices, period, std_dev)
            prev_price = prev_prices[-1]
            above_lower_before = prev_price > prev_bands['lower']
            below_upper_before = prev_price < prev_bands['upper']
        else:
            above_lower_before = below_upper_before = True

        if above_lower_before and price <= bands['lower']:
            return self.buy(
                f"Price ({price:.2f}) crossed to or below lower Bollinger Band ({bands['lower']:.2f})"
            )

        if below_upper_before and price >= bands['upper']:
            return self.sell(
                f"Price ({price:.2f}) crossed to or above upper Bollinger Band ({bands['upper']:.2f})"
            )

        return Signal.none(
            f"No signal. Price: {price:.2f}, Upper: {bands['upper']:.2f}, "
            f"Middle: {bands['middle']:.2f}, Lower: {bands['lower']:.2f}"
        )
