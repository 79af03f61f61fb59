"""
Ichimoku cloud rule.
"""
from typing import List, Sequence

from trading_engine.models import Candle, Signal, Strategy
from trading_engine.strategies.base_strategy import BaseStrategy
from trading_engine.utils.indicators import calculate_ichimoku


class IchimokuStrategy(BaseStrategy):
    """
    Tenkan/Kijun cross first, then price crossing out of the cloud.
    """

    name = "ichimoku"
    default_parameters = {
        'conversionPeriod': 9,
        'basePeriod': 26,
        'laggingSpanPeriod': 52,
        'displacement': 26
    }

    def _periods(self, strategy: Strategy):
        return (
            self.get_int(strategy, 'conversionPeriod'),
            self.get_int(strategy, 'basePeriod'),
            self.get_int(strategy, 'laggingSpanPeriod'),
            self.get_int(strategy, 'displacement')
        )

    def required_lookback(self, strategy: Strategy) -> int:
        conversion, base, lagging, displacement = self._periods(strategy)
        return max(conversion, base, lagging) + displacement

    def check_signal(self, strategy: Strategy, prices: List[float],
                     candles: Sequence[Candle]) -> Signal:
        conversion, base, lagging, displacement = self._periods(strategy)
        required = max(conversion, base, lagging) + displacement

        if len(prices) < required:
            return self.not_enough_data(required)

        cloud = calculate_ichimoku(prices, conversion, base, lagging, displacement)
        tenkan = cloud['conversion_line']
        kijun = cloud['base_line']

        prev_prices = prices[:-1]
        if len(prev_prices) >= required:
            prev_cloud = calculate_ichimoku(prev_prices, conversion, base, lagging, displacement)
            prev_tenkan = prev_cloud['conversion_line']
            prev_kijun = prev_cloud['base_line']
        else:
            prev_tenkan = prev_kijun = None

        if self.crossed_above(prev_tenkan, prev_kijun, tenkan, kijun):
            return self.buy(f"Tenkan-sen ({tenkan:.2f}) crossed above Kijun-sen ({kijun:.2f})")

        if self.crossed_below(prev_tenkan, prev_kijun, tenkan, kijun):
            return self.sell(f"Tenkan-sen ({tenkan:.2f}) crossed below Kijun-sen ({kijun:.2f})")

        price = prices[-1]
        prev_price = prices[-2]
        span_a = cloud['leading_span_a']
        span_b = cloud['leading_span_b']
        cloud_top = max(span_a, span_b)
        cloud_bottom = min(span_a, span_b)

        if price > cloud_top and prev_price <= cloud_top:
            return self.buy(f"Price ({price:.2f}) crossed above the cloud")

        if price < cloud_bottom and prev_price >= cloud_bottom:
            return self.sell(f"Price ({price:.2f}) crossed below the cloud")

        return Signal.none(
            f"No signal. Price: {price:.2f}, Conversion: {tenkan:.2f}, Base: {kijun:.2f}"
        )
