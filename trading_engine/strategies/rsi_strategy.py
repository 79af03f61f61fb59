"""
RSI-based trading rule.
"""
from typing import List, Sequence

from trading_engine.models import Candle, Signal, Strategy
from trading_engine.strategies.base_strategy import BaseStrategy
from trading_engine.utils.indicators import calculate_rsi


class RsiStrategy(BaseStrategy):
    """
    RSI rule: BUY when RSI climbs back above the oversold level,
    SELL when it drops back below the overbought level.
    """

    name = "rsi"
    default_parameters = {'period': 14, 'overbought': 70, 'oversold': 30}

    def required_lookback(self, strategy: Strategy) -> int:
        return self.get_int(strategy, 'period')

    def check_signal(self, strategy: Strategy, prices: List[float],
                     candles: Sequence[Candle]) -> Signal:
        period = self.get_int(strategy, 'period')
        overbought = self.get_float(strategy, 'overbought')
        oversold = self.get_float(strategy, 'oversold')

        if len(prices) < period:
            return self.not_enough_data(period)

        rsi = calculate_rsi(prices, period)
        prev_rsi = calculate_rsi(prices[:-1], period)

        if self.crossed_above(prev_rsi, oversold, rsi, oversold):
            return self.buy(f"RSI ({rsi:.2f}) crossed above oversold threshold ({oversold:g})")

        if self.crossed_below(prev_rsi, overbought, rsi, overbought):
            return self.sell(f"RSI ({rsi:.2f}) crossed below overbought threshold ({overbought:g})")

        return Signal.none(f"No signal. RSI: {rsi:.2f}")
