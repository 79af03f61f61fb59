"""
Multi-factor rule combining the signals of several sub-strategies.
"""
from dataclasses import replace
from typing import Callable, List, Sequence

from trading_engine.exceptions import ConfigurationError
from trading_engine.models import Candle, Signal, SignalType, Strategy
from trading_engine.strategies.base_strategy import BaseStrategy

OPERATORS = ('AND', 'OR', 'WEIGHTED')


class MultiFactorStrategy(BaseStrategy):
    """
    Evaluates each sub-strategy on the same candle history and combines the
    results with one of three operators:

    - AND: every sub-strategy must agree
    - OR: the side with more votes wins, a tie gives no signal
    - WEIGHTED: the side with the larger weight sum wins, a tie gives no signal

    Args:
        evaluate: Callable producing a Signal for (strategy, candles)
        lookback: Callable returning the lookback of a strategy
    """

    name = "multi_factor"
    default_parameters = {'strategies': [], 'weights': [], 'operator': 'AND'}

    def __init__(self, evaluate: Callable[[Strategy, Sequence[Candle]], Signal],
                 lookback: Callable[[Strategy], int]):
        self.evaluate = evaluate
        self.lookback = lookback

    def sub_strategies(self, strategy: Strategy) -> List[Strategy]:
        """Sub-strategies as Strategy records, inheriting the parent pair when unset."""
        subs = self.get_param(strategy, 'strategies')
        if not isinstance(subs, (list, tuple)):
            raise ConfigurationError("Parameter 'strategies' must be a list")

        result = []
        for sub in subs:
            if isinstance(sub, dict):
                try:
                    sub = Strategy.from_dict(sub)
                except KeyError as e:
                    raise ConfigurationError(f"Sub-strategy is missing field {e}")
                except (TypeError, ValueError) as e:
                    raise ConfigurationError(f"Invalid sub-strategy definition: {e}")
            if not isinstance(sub, Strategy):
                raise ConfigurationError(f"Sub-strategy must be a Strategy or dict, got {type(sub).__name__}")
            if sub is strategy or sub.id == strategy.id:
                raise ConfigurationError(f"Multi-factor strategy {strategy.id} cannot contain itself")
            if not sub.pair:
                sub = replace(sub, pair=strategy.pair)
            result.append(sub)
        return result

    def weights(self, strategy: Strategy, count: int) -> List[float]:
        raw = self.get_param(strategy, 'weights') or []
        if not isinstance(raw, (list, tuple)):
            raise ConfigurationError(f"Parameter 'weights' must be a list, got {raw!r}")
        weights = []
        for i in range(count):
            try:
                weights.append(float(raw[i]) if i < len(raw) else 1.0)
            except (TypeError, ValueError):
                raise ConfigurationError(f"Weight {raw[i]!r} is not a number")
        return weights

    def required_lookback(self, strategy: Strategy) -> int:
        return max((self.lookback(sub) for sub in self.sub_strategies(strategy)), default=0)

    def check_signal(self, strategy: Strategy, prices: List[float],
                     candles: Sequence[Candle]) -> Signal:
        subs = self.sub_strategies(strategy)
        if not subs:
            return Signal.none("No sub-strategies defined for multi-factor strategy")

        operator = str(self.get_param(strategy, 'operator')).upper()
        if operator not in OPERATORS:
            raise ConfigurationError(f"Unknown multi-factor operator '{operator}'")

        weights = self.weights(strategy, len(subs))
        signals = [self.evaluate(sub, candles).signal for sub in subs]

        buys = [w for s, w in zip(signals, weights) if s == SignalType.BUY]
        sells = [w for s, w in zip(signals, weights) if s == SignalType.SELL]

        if operator == 'AND':
            if len(buys) == len(signals):
                return self.buy("All sub-strategies agree on BUY signal")
            if len(sells) == len(signals):
                return self.sell("All sub-strategies agree on SELL signal")

        elif operator == 'OR':
            if len(buys) > len(sells):
                return self.buy(f"{len(buys)} sub-strategies indicate BUY")
            if len(sells) > len(buys):
                return self.sell(f"{len(sells)} sub-strategies indicate SELL")

        else:
            buy_weight = sum(buys)
            sell_weight = sum(sells)
            if buy_weight > sell_weight:
                return self.buy(
                    f"Weighted sub-strategies favor BUY ({buy_weight:.2f} vs {sell_weight:.2f})"
                )
            if sell_weight > buy_weight:
                return self.sell(
                    f"Weighted sub-strategies favor SELL ({sell_weight:.2f} vs {buy_weight:.2f})"
                )

        return Signal.none("No clear signal from multi-factor strategy")
