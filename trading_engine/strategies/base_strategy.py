"""
Base strategy class for implementing signal rules.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from trading_engine.exceptions import ConfigurationError
from trading_engine.models import Candle, Signal, SignalType, Strategy


class BaseStrategy(ABC):
    """
    Base class for all signal rules.

    A rule is stateless: it reads parameters from the Strategy record and
    the price history passed in, and returns a Signal for the last step.
    """

    name: str = "base_strategy"
    default_parameters: Dict[str, Any] = {}

    def get_param(self, strategy: Strategy, key: str) -> Any:
        """Read a parameter, falling back to the rule's default."""
        return strategy.param(key, self.default_parameters.get(key))

    def get_int(self, strategy: Strategy, key: str) -> int:
        """Read a positive integer parameter."""
        value = self.get_param(strategy, key)
        try:
            number = int(value)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Parameter '{key}' must be an integer, got {value!r}")
        if number <= 0:
            raise ConfigurationError(f"Parameter '{key}' must be positive, got {number}")
        return number

    def get_float(self, strategy: Strategy, key: str) -> float:
        """Read a numeric parameter."""
        value = self.get_param(strategy, key)
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Parameter '{key}' must be a number, got {value!r}")

    @abstractmethod
    def required_lookback(self, strategy: Strategy) -> int:
        """Minimum number of candles needed before the rule can fire."""
        pass

    @abstractmethod
    def check_signal(self, strategy: Strategy, prices: List[float],
                     candles: Sequence[Candle]) -> Signal:
        """
        Evaluate the rule on the latest step.

        Args:
            strategy: Strategy definition with the rule's parameters
            prices: Closing prices of the strategy's pair, oldest first
            candles: Candles the prices were taken from

        Returns:
            Signal with BUY, SELL or None and the reason
        """
        pass

    @staticmethod
    def crossed_above(prev_a: Optional[float], prev_b: Optional[float], a: float, b: float) -> bool:
        """True when `a` moves from at-or-below `b` to above it.

        A missing previous value means there was no earlier relation to hold,
        so the cross counts as soon as `a` is above `b`.
        """
        if prev_a is None or prev_b is None:
            return a > b
        return prev_a <= prev_b and a > b

    @staticmethod
    def crossed_below(prev_a: Optional[float], prev_b: Optional[float], a: float, b: float) -> bool:
        """True when `a` moves from at-or-above `b` to below it."""
        if prev_a is None or prev_b is None:
            return a < b
        return prev_a >= prev_b and a < b

    @staticmethod
    def buy(reason: str) -> Signal:
        return Signal(signal=SignalType.BUY, reason=reason)

    @staticmethod
    def sell(reason: str) -> Signal:
        return Signal(signal=SignalType.SELL, reason=reason)

    @staticmethod
    def not_enough_data(required: int) -> Signal:
        return Signal.none(f"Not enough data. Need at least {required} periods.")
